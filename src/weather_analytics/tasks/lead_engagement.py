from __future__ import annotations
import logging
from datetime import datetime, timedelta
from celery import shared_task
from weather_analytics.infrastructure.context import PipelineContext, get_context
from weather_analytics.models.tables import Brand, LeadEngagementMetric
from weather_analytics.tasks.common import Window, iter_slices, merge_rollup, purge_before, run_for_all_brands, truncate, utcnow
from weather_analytics.validation.messages import naive_utc

logger = logging.getLogger(__name__)

JOB = "lead_engagement_metrics"

# Only leads active enough over the history window are tracked at all.
QUERY = """
WITH leads AS (
    SELECT lead_uuid
    FROM {lead_event}
    WHERE brand = ?
        AND datetime >= ?
        AND datetime < ?
    GROUP BY lead_uuid
    HAVING COUNT(*) >= ?
)
SELECT
    le.lead_uuid,
    COUNT(*) AS view_count,
    ROUND(AVG(le.time_spent), 2) AS avg_time_spent,
    ROUND(AVG(le.reading_rate), 2) AS avg_reading_rate
FROM {lead_event} le
JOIN leads l ON l.lead_uuid = le.lead_uuid
WHERE le.brand = ?
    AND le.datetime >= ?
    AND le.datetime < ?
GROUP BY le.lead_uuid
"""


def lead_engagement_for_brand(ctx: PipelineContext, brand: Brand, window: Window, period: datetime, purge: bool = True) -> int:
    s = ctx.settings
    wh = ctx.warehouse
    history_start = window.end - timedelta(days=s.engagement_history_days)
    session = ctx.session_factory()
    try:
        if purge:
            purge_before(session, LeadEngagementMetric, brand.name, window.end - timedelta(days=s.lead_engagement_retention_days), JOB)
            session.commit()
        rows = wh.query(
            QUERY.format(lead_event=wh.table("lead_event")),
            [brand.name, history_start, window.end, brand.page_view_threshold, brand.name, window.start, window.end],
        )
        written = 0
        for r in rows:
            written += merge_rollup(
                session, LeadEngagementMetric,
                {"brand": brand.name, "lead_uuid": r["lead_uuid"], "calculation_period": period},
                "view_count", r["view_count"],
                {"avg_time_spent": r["avg_time_spent"], "avg_reading_rate": r["avg_reading_rate"]},
                JOB,
            )
        session.commit()
        logger.info(f"Lead engagement metrics for {brand.name}: {written} leads (threshold {brand.page_view_threshold})")
        return written
    finally:
        session.close()


def generate_lead_engagement_metrics_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    window = Window.trailing(now, ctx.settings.aggregation_window_seconds)
    period = truncate(now, "day")
    return run_for_all_brands(JOB, lambda c, b: lead_engagement_for_brand(c, b, window, period), ctx)


def generate_historical_lead_engagement_metrics_job(ctx: PipelineContext, start: datetime, end: datetime):
    start = truncate(start, "day")

    def _per_brand(c: PipelineContext, b: Brand) -> int:
        total = 0
        for window in iter_slices(start, end, timedelta(days=1)):
            total += lead_engagement_for_brand(c, b, window, window.start, purge=False)
        return total

    return run_for_all_brands("historical_" + JOB, _per_brand, ctx)


@shared_task
def generate_lead_engagement_metrics():
    return generate_lead_engagement_metrics_job(get_context())


@shared_task
def generate_historical_lead_engagement_metrics(start: str, end: str):
    return generate_historical_lead_engagement_metrics_job(
        get_context(), naive_utc(datetime.fromisoformat(start)), naive_utc(datetime.fromisoformat(end))
    )
