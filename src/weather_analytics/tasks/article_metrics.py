from __future__ import annotations
import logging
from datetime import datetime, timedelta
from celery import shared_task
from weather_analytics.infrastructure.context import PipelineContext, get_context
from weather_analytics.models.tables import ArticleMetric, Brand
from weather_analytics.tasks.common import Window, iter_slices, merge_rollup, purge_before, run_for_all_brands, truncate, utcnow
from weather_analytics.validation.messages import naive_utc

logger = logging.getLogger(__name__)

JOB = "article_metrics"

QUERY = """
SELECT
    url,
    COUNT(*) AS view_count,
    ROUND(AVG(time_spent), 2) AS avg_time_spent,
    ROUND(AVG(reading_rate), 2) AS avg_reading_rate
FROM {lead_event}
WHERE brand = ?
    AND page_type = 'article'
    AND datetime >= ?
    AND datetime < ?
GROUP BY url
"""


def article_metrics_for_brand(ctx: PipelineContext, brand: Brand, window: Window, period: datetime, purge: bool = True) -> int:
    wh = ctx.warehouse
    session = ctx.session_factory()
    try:
        if purge:
            cutoff = window.end - timedelta(days=ctx.settings.article_metrics_retention_days)
            purge_before(session, ArticleMetric, brand.name, cutoff, JOB)
            session.commit()
        rows = wh.query(QUERY.format(lead_event=wh.table("lead_event")), [brand.name, window.start, window.end])
        written = 0
        for r in rows:
            written += merge_rollup(
                session, ArticleMetric,
                {"brand": brand.name, "url": r["url"], "calculation_period": period},
                "view_count", r["view_count"],
                {"avg_time_spent": r["avg_time_spent"], "avg_reading_rate": r["avg_reading_rate"]},
                JOB,
            )
        session.commit()
        logger.info(f"Article metrics for {brand.name}: {written} urls into period {period}")
        return written
    finally:
        session.close()


def generate_article_metrics_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    window = Window.trailing(now, ctx.settings.aggregation_window_seconds)
    period = truncate(now, "hour")
    return run_for_all_brands(JOB, lambda c, b: article_metrics_for_brand(c, b, window, period), ctx)


def generate_historical_article_metrics_job(ctx: PipelineContext, start: datetime, end: datetime):
    """Backfill hourly periods in ``[start, end)``; each slice lands in its own period."""
    start = truncate(start, "hour")

    def _per_brand(c: PipelineContext, b: Brand) -> int:
        total = 0
        for window in iter_slices(start, end, timedelta(hours=1)):
            total += article_metrics_for_brand(c, b, window, window.start, purge=False)
        return total

    return run_for_all_brands("historical_" + JOB, _per_brand, ctx)


@shared_task
def generate_article_metrics():
    return generate_article_metrics_job(get_context())


@shared_task
def generate_historical_article_metrics(start: str, end: str):
    return generate_historical_article_metrics_job(
        get_context(), naive_utc(datetime.fromisoformat(start)), naive_utc(datetime.fromisoformat(end))
    )
