from __future__ import annotations
import enum
from datetime import datetime
from weather_analytics.models.tables import Page, User
from weather_analytics.validation.messages import PageMessage, UserMessage, naive_utc


class WriteDecision(enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    NOOP = "noop"

    @property
    def writes(self) -> bool:
        return self is not WriteDecision.NOOP


def _second_precision(value: datetime | None) -> datetime | None:
    value = naive_utc(value)
    return value.replace(microsecond=0) if value is not None else None


def decide_page(incoming: PageMessage, current: Page | None) -> WriteDecision:
    """Pages change only when their modification date moves."""
    if current is None:
        return WriteDecision.INSERT
    if _second_precision(incoming.modification_date) != _second_precision(current.modification_date):
        return WriteDecision.UPDATE
    return WriteDecision.NOOP


def decide_user(incoming: UserMessage, current: User | None) -> WriteDecision:
    if current is None:
        return WriteDecision.INSERT
    if bool(incoming.is_subscriber) != bool(current.is_subscriber):
        return WriteDecision.UPDATE
    return WriteDecision.NOOP


def decide_lead_event(key: tuple[str, str], seen: set[tuple[str, str]]) -> WriteDecision:
    """Lead events are append-only; only repeats inside one batch are dropped."""
    if key in seen:
        return WriteDecision.NOOP
    seen.add(key)
    return WriteDecision.INSERT
