"""Backfill analytical rows lost after a relational commit.

The ingestion committer acks page and user messages even when the analytical
append fails, since the relational row is already durable. This job finds
relational rows touched within the lookback whose latest analytical echo is
missing or older than ``updated_at`` and appends them again.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from celery import shared_task
from prometheus_client import Counter
from sqlalchemy import select
from weather_analytics.infrastructure.context import PipelineContext, get_context
from weather_analytics.models.tables import Brand, Page, User
from weather_analytics.tasks.common import run_for_all_brands, utcnow

logger = logging.getLogger(__name__)

RECONCILED_ROWS = Counter('warehouse_reconciled_rows_total', 'Analytical rows re-appended from the relational store', ['table'])

LAST_SEEN_QUERY = """
SELECT {key} AS entity_key, MAX(datetime) AS last_seen
FROM {table}
WHERE brand = ? AND datetime >= ?
GROUP BY {key}
"""


def page_row(page: Page) -> dict:
    return {
        "datetime": page.updated_at,
        "brand": page.brand,
        "url": page.url,
        "type": page.type,
        "language": page.language,
        "publication_date": page.publication_date,
        "modification_date": page.modification_date,
        "title": page.title,
        "description": page.description,
        "content": page.content,
        "section": page.section,
        "sub_section": page.sub_section,
        "image": page.image,
        "is_paid": page.is_paid,
    }


def user_row(user: User) -> dict:
    return {
        "datetime": user.updated_at,
        "brand": user.brand,
        "lead_uuid": user.lead_uuid,
        "user_id": user.user_id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "is_subscriber": user.is_subscriber,
    }


def _missing(ctx: PipelineContext, table: str, key_col: str, brand: str, since: datetime, records, key_of) -> list:
    wh = ctx.warehouse
    seen = {
        r["entity_key"]: r["last_seen"]
        for r in wh.query(LAST_SEEN_QUERY.format(key=key_col, table=wh.table(table)), [brand, since])
    }
    missing = []
    for rec in records:
        last_seen = seen.get(key_of(rec))
        if last_seen is None or last_seen < rec.updated_at:
            missing.append(rec)
    return missing


def reconcile_brand(ctx: PipelineContext, brand: Brand, now: datetime) -> int:
    since = now - timedelta(hours=ctx.settings.reconcile_lookback_hours)
    session = ctx.session_factory()
    try:
        pages = session.execute(
            select(Page).where(Page.brand == brand.name, Page.updated_at >= since)
        ).scalars().all()
        users = session.execute(
            select(User).where(User.brand == brand.name, User.updated_at >= since)
        ).scalars().all()
    finally:
        session.close()

    written = 0
    stale_pages = _missing(ctx, "page", "url", brand.name, since, pages, lambda p: p.url)
    if stale_pages:
        written += ctx.warehouse.insert_rows("page", [page_row(p) for p in stale_pages])
        RECONCILED_ROWS.labels(table="page").inc(len(stale_pages))
    stale_users = _missing(ctx, "user", "lead_uuid", brand.name, since, users, lambda u: u.lead_uuid)
    if stale_users:
        written += ctx.warehouse.insert_rows("user", [user_row(u) for u in stale_users])
        RECONCILED_ROWS.labels(table="user").inc(len(stale_users))
    if written:
        logger.warning(f"Reconciled {len(stale_pages)} pages and {len(stale_users)} users into the warehouse for {brand.name}")
    return written


def reconcile_warehouse_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    return run_for_all_brands("reconcile_warehouse", lambda c, b: reconcile_brand(c, b, now), ctx)


@shared_task
def reconcile_warehouse():
    return reconcile_warehouse_job(get_context())
