"""Lead engagement momentum score.

Three consecutive 30-day windows of ``lead_engagement_metrics`` (oldest first)
are compared; the score is a weighted, view-normalized delta clamped to
``[-1, 1]``. A lead with no views in the two oldest windows scores 0; a lead
whose latest window went quiet after earlier activity scores -1.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from sqlalchemy import select
from sqlalchemy.orm import Session
from weather_analytics.models.tables import LeadEngagementMetric, User
from weather_analytics.scoring.similarity import round2

VIEW_WEIGHTS = (0.2, 0.5)
TIME_SPENT_WEIGHTS = (0.1, 0.3)
READING_RATE_WEIGHTS = (0.1, 0.3)
WINDOW_DAYS = 30


@dataclass(frozen=True)
class WindowAggregate:
    views: int = 0
    avg_time_spent: float = 0.0
    avg_reading_rate: float = 0.0


def engagement_score(w1: WindowAggregate, w2: WindowAggregate, w3: WindowAggregate) -> float:
    if w1.views == 0 and w2.views == 0:
        return 0.0
    if w3.views == 0:
        return -1.0
    delta = (
        VIEW_WEIGHTS[0] * (w2.views - w1.views)
        + VIEW_WEIGHTS[1] * (w3.views - w2.views)
        + TIME_SPENT_WEIGHTS[0] * (w2.avg_time_spent - w1.avg_time_spent)
        + TIME_SPENT_WEIGHTS[1] * (w3.avg_time_spent - w2.avg_time_spent)
        + READING_RATE_WEIGHTS[0] * (w2.avg_reading_rate - w1.avg_reading_rate)
        + READING_RATE_WEIGHTS[1] * (w3.avg_reading_rate - w2.avg_reading_rate)
    )
    total_views = w1.views + w2.views + w3.views
    return max(-1.0, min(1.0, round2(delta / total_views)))


@dataclass
class LeadEngagement:
    brand: str
    lead_uuid: str
    is_subscriber: bool | None
    windows: tuple[WindowAggregate, WindowAggregate, WindowAggregate]
    score: float


def _aggregate(buckets: list[list[LeadEngagementMetric]], idx: int) -> WindowAggregate:
    """Views are summed per window; averages divide by every row of the 90 days."""
    rows = buckets[idx]
    total_rows = sum(len(b) for b in buckets)
    if not total_rows:
        return WindowAggregate()
    return WindowAggregate(
        views=sum(r.view_count for r in rows),
        avg_time_spent=round2(sum(r.avg_time_spent or 0.0 for r in rows) / total_rows),
        avg_reading_rate=round2(sum(r.avg_reading_rate or 0.0 for r in rows) / total_rows),
    )


def load_lead_windows(session: Session, brand: str, lead_uuid: str, now: datetime) -> tuple[WindowAggregate, WindowAggregate, WindowAggregate]:
    oldest = now - timedelta(days=3 * WINDOW_DAYS)
    rows = session.execute(
        select(LeadEngagementMetric).where(
            LeadEngagementMetric.brand == brand,
            LeadEngagementMetric.lead_uuid == lead_uuid,
            LeadEngagementMetric.calculation_period >= oldest,
            LeadEngagementMetric.calculation_period <= now,
        )
    ).scalars().all()
    buckets: list[list[LeadEngagementMetric]] = [[], [], []]
    for r in rows:
        idx = min(2, int((r.calculation_period - oldest) / timedelta(days=WINDOW_DAYS)))
        buckets[idx].append(r)
    return _aggregate(buckets, 0), _aggregate(buckets, 1), _aggregate(buckets, 2)


def lead_engagement_score(session: Session, brand: str, lead_uuid: str, now: datetime | None = None) -> LeadEngagement:
    now = now or datetime.utcnow()
    windows = load_lead_windows(session, brand, lead_uuid, now)
    is_subscriber = session.execute(
        select(User.is_subscriber).where(User.brand == brand, User.lead_uuid == lead_uuid)
    ).scalar_one_or_none()
    return LeadEngagement(
        brand=brand,
        lead_uuid=lead_uuid,
        is_subscriber=is_subscriber,
        windows=windows,
        score=engagement_score(*windows),
    )
