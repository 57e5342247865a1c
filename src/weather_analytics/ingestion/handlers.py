"""Entity handlers plugged into the dual-write committer.

A handler knows how to decode one kind of queue payload, enrich it, turn it
into a relational write (or decide that none is needed) and shape the row
appended to the analytical log.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any
from pydantic import BaseModel
from sqlalchemy import null, select
from sqlalchemy.orm import Session
from weather_analytics.infrastructure.context import PipelineContext
from weather_analytics.infrastructure.db import upsert
from weather_analytics.ingestion.change_detection import WriteDecision, decide_lead_event, decide_page, decide_user
from weather_analytics.ingestion.enrichment import EnrichedLeadEvent, detect_language, enrich_lead_event, validate_page_language
from weather_analytics.models.tables import Page, User
from weather_analytics.validation.messages import LeadEventMessage, PageMessage, UserMessage, decode_message

logger = logging.getLogger(__name__)


def _excluded(columns, **extra):
    return lambda stmt: {**{c: stmt.excluded[c] for c in columns}, **extra}


class EntityHandler(ABC):
    kind: str
    table: str
    message_model: type[BaseModel]
    writes_relational: bool = True

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx

    def decode(self, data: bytes) -> BaseModel:
        return decode_message(self.message_model, data)

    def enrich(self, record: Any) -> Any:
        return record

    @abstractmethod
    def apply(self, session: Session, record: Any, seen: set, now: datetime) -> WriteDecision:
        """Run change detection and execute the relational statement if one is needed."""

    @abstractmethod
    def warehouse_row(self, record: Any, now: datetime) -> dict[str, Any]:
        ...

    def describe(self, record: Any) -> str:
        return self.kind


class LeadEventHandler(EntityHandler):
    kind = "lead_event"
    table = "lead_event"
    message_model = LeadEventMessage
    # the analytical log is the only durable copy of an event
    writes_relational = False

    def enrich(self, record: LeadEventMessage) -> EnrichedLeadEvent:
        return enrich_lead_event(record, self.ctx.geo_reader)

    def apply(self, session, record: EnrichedLeadEvent, seen, now):
        return decide_lead_event((record.event.brand, record.event.uuid), seen)

    def warehouse_row(self, record: EnrichedLeadEvent, now):
        ev = record.event
        return {
            "datetime": now,
            "brand": ev.brand,
            "uuid": ev.uuid,
            "lead_uuid": ev.lead_uuid,
            "name": ev.name,
            "page_type": ev.page_type,
            "page_language": ev.page_language,
            "device": ev.device,
            "url": ev.url,
            "referrer": ev.referrer,
            "referrer_type": record.referrer_type,
            "relevant_referrer": ev.relevant_referrer,
            "metas": ev.metas.to_json(),
            "time_spent": ev.metas.time_spent,
            "reading_rate": ev.metas.reading_rate,
            "consent": ev.consent,
            "ip": record.ip,
            "location_country": record.location.country,
            "location_city": record.location.city,
        }

    def describe(self, record: EnrichedLeadEvent) -> str:
        return f"lead event {record.event.name} {record.event.uuid}"


PAGE_COLUMNS = (
    "type", "language", "publication_date", "modification_date", "title", "description",
    "content", "section", "sub_section", "image", "is_paid", "updated_at",
)


class PageHandler(EntityHandler):
    kind = "page"
    table = "page"
    message_model = PageMessage

    def enrich(self, record: PageMessage) -> PageMessage:
        validate_page_language(record, self.ctx.language_detector or detect_language)
        return record

    def apply(self, session, record: PageMessage, seen, now):
        current = session.execute(
            select(Page)
            .where(Page.brand == record.brand, Page.url == record.url)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        decision = decide_page(record, current)
        if not decision.writes:
            return decision
        values = {
            "brand": record.brand,
            "url": record.url,
            "type": record.type,
            "language": record.language,
            "publication_date": record.publication_date,
            "modification_date": record.modification_date,
            "title": record.title,
            "description": record.description,
            "content": record.content,
            "section": record.section,
            "sub_section": record.sub_section,
            "image": record.image,
            "is_paid": record.is_paid,
            "updated_at": now,
        }
        # content changed, the similarity job recomputes the vector
        update = _excluded(PAGE_COLUMNS, content_vector=null())
        upsert(session, Page, values, ("brand", "url"), update=update)
        return decision

    def warehouse_row(self, record: PageMessage, now):
        return {
            "datetime": now,
            "brand": record.brand,
            "url": record.url,
            "type": record.type,
            "language": record.language,
            "publication_date": record.publication_date,
            "modification_date": record.modification_date,
            "title": record.title,
            "description": record.description,
            "content": record.content,
            "section": record.section,
            "sub_section": record.sub_section,
            "image": record.image,
            "is_paid": record.is_paid,
        }

    def describe(self, record: PageMessage) -> str:
        return f"page {record.brand} {record.url}"


USER_COLUMNS = ("user_id", "email", "first_name", "last_name", "is_subscriber", "updated_at")


class UserHandler(EntityHandler):
    kind = "user"
    table = "user"
    message_model = UserMessage

    def apply(self, session, record: UserMessage, seen, now):
        current = session.execute(
            select(User)
            .where(User.brand == record.brand, User.lead_uuid == record.lead_uuid)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        decision = decide_user(record, current)
        if not decision.writes:
            return decision
        values = {
            "brand": record.brand,
            "lead_uuid": record.lead_uuid,
            "user_id": record.user_id,
            "email": record.email,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "is_subscriber": record.is_subscriber,
            "updated_at": now,
        }
        upsert(session, User, values, ("brand", "lead_uuid"), update=_excluded(USER_COLUMNS))
        return decision

    def warehouse_row(self, record: UserMessage, now):
        return {
            "datetime": now,
            "brand": record.brand,
            "lead_uuid": record.lead_uuid,
            "user_id": record.user_id,
            "email": record.email,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "is_subscriber": record.is_subscriber,
        }

    def describe(self, record: UserMessage) -> str:
        return f"user {record.brand} {record.lead_uuid}"


HANDLERS: dict[str, type[EntityHandler]] = {
    LeadEventHandler.kind: LeadEventHandler,
    PageHandler.kind: PageHandler,
    UserHandler.kind: UserHandler,
}


def handler_for(kind: str, ctx: PipelineContext) -> EntityHandler:
    try:
        return HANDLERS[kind](ctx)
    except KeyError:
        raise ValueError(f"unknown entity kind {kind!r}") from None
