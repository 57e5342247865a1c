from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import Any, TypeVar
from pydantic import BaseModel, Field, ValidationError, field_validator
from weather_analytics.errors import UnparseablePayload


def naive_utc(value: datetime | None) -> datetime | None:
    """Normalize to naive UTC, which is how both stores keep timestamps."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Metas(BaseModel):
    time_spent: float | None = Field(None, alias="timeSpent")
    reading_rate: float | None = Field(None, alias="readingRate")

    @field_validator("time_spent", "reading_rate", mode="before")
    @classmethod
    def _lenient_number(cls, v):
        # metas are free-form; a value that is not a number is treated as absent
        if isinstance(v, bool):
            return None
        if isinstance(v, (int, float)):
            return float(v)
        if isinstance(v, str):
            try:
                return float(v)
            except ValueError:
                return None
        return None

    class Config:
        populate_by_name = True
        extra = "allow"

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), sort_keys=True)


class LeadEventMessage(BaseModel):
    brand: str = Field(min_length=1, max_length=64)
    uuid: str = Field(min_length=1, max_length=64)
    lead_uuid: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=64)
    page_type: str = ""
    page_language: str = ""
    device: str = ""
    url: str = ""
    referrer: str = ""
    referrer_type: str = ""
    relevant_referrer: str = ""
    metas: Metas = Field(default_factory=Metas)
    consent: bool = False
    ip: str = ""

    @field_validator("metas", mode="before")
    @classmethod
    def _null_metas(cls, v):
        return {} if v is None else v


class PageMessage(BaseModel):
    sent_at: datetime = Field(alias="datetime")
    brand: str = Field(min_length=1, max_length=64)
    url: str = Field(min_length=1, max_length=2048)
    type: str = Field(min_length=1, max_length=32)
    language: str = ""
    publication_date: datetime
    modification_date: datetime | None = None
    title: str = ""
    description: str = ""
    content: str = ""
    section: str = ""
    sub_section: str | None = None
    image: str | None = None
    is_paid: bool = False

    @field_validator("sent_at", "publication_date", "modification_date")
    @classmethod
    def _to_naive_utc(cls, v):
        return naive_utc(v)


class UserMessage(BaseModel):
    sent_at: datetime = Field(alias="datetime")
    brand: str = Field(min_length=1, max_length=64)
    lead_uuid: str = Field(min_length=1, max_length=64)
    user_id: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    is_subscriber: bool = False

    @field_validator("sent_at")
    @classmethod
    def _to_naive_utc(cls, v):
        return naive_utc(v)


M = TypeVar("M", bound=BaseModel)


def decode_message(model: type[M], data: bytes) -> M:
    """Parse and validate a queue payload."""
    try:
        return model.model_validate_json(data)
    except ValidationError as ve:
        first: dict[str, Any] = ve.errors()[0] if ve.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise UnparseablePayload("malformed_payload", f"{loc}: {first.get('msg', 'invalid')}") from ve
