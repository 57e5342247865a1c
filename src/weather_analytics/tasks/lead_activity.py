"""Per-lead reading activity rollups.

``lead_section_article_count`` and ``lead_article_view_count`` feed the read
API's interest profile; ``lead_read_articles`` remembers which fresh articles
a lead has already opened so recommendations can skip them.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from celery import shared_task
from sqlalchemy import delete, select
from weather_analytics.infrastructure.context import PipelineContext, get_context
from weather_analytics.models.tables import Brand, LeadArticleViewCount, LeadReadArticle, LeadSectionArticleCount, Page
from weather_analytics.tasks.common import (
    JOB_ROWS_PURGED, Window, insert_ignore, latest_pages_cte, merge_rollup, purge_before, run_for_all_brands,
    sum_rollup, truncate, utcnow,
)

logger = logging.getLogger(__name__)

SECTION_COUNT_QUERY = """
WITH {latest_page}
SELECT
    le.lead_uuid,
    p.section,
    COUNT(DISTINCT le.url) AS article_count,
    ROUND(AVG(le.time_spent), 2) AS avg_time_spent,
    ROUND(AVG(le.reading_rate), 2) AS avg_reading_rate
FROM {lead_event} le
JOIN latest_page p ON p.url = le.url
WHERE le.brand = ?
    AND p.type = 'article'
    AND COALESCE(p.section, '') <> ''
    AND le.datetime >= ?
    AND le.datetime < ?
GROUP BY le.lead_uuid, p.section
"""

VIEW_COUNT_QUERY = """
SELECT lead_uuid, COUNT(*) AS view_count
FROM {lead_event}
WHERE brand = ?
    AND page_type = 'article'
    AND datetime >= ?
    AND datetime < ?
GROUP BY lead_uuid
"""

READ_ARTICLES_QUERY = """
WITH {latest_page}
SELECT le.lead_uuid, le.url, MIN(le.datetime) AS first_read_at
FROM {lead_event} le
JOIN latest_page p ON p.url = le.url
WHERE le.brand = ?
    AND le.name = 'page_view'
    AND p.type = 'article'
    AND p.publication_date > ?
    AND le.datetime >= ?
    AND le.datetime < ?
GROUP BY le.lead_uuid, le.url
"""


def section_article_count_for_brand(ctx: PipelineContext, brand: Brand, window: Window, period: datetime) -> int:
    job = "lead_section_article_count"
    wh = ctx.warehouse
    sql = SECTION_COUNT_QUERY.format(latest_page=latest_pages_cte(wh.table("page")), lead_event=wh.table("lead_event"))
    session = ctx.session_factory()
    try:
        cutoff = window.end - timedelta(days=ctx.settings.lead_section_count_retention_days)
        purge_before(session, LeadSectionArticleCount, brand.name, cutoff, job)
        session.commit()
        rows = wh.query(sql, [brand.name, brand.name, window.start, window.end])
        written = 0
        for r in rows:
            written += merge_rollup(
                session, LeadSectionArticleCount,
                {"brand": brand.name, "lead_uuid": r["lead_uuid"], "section": r["section"], "calculation_period": period},
                "article_count", r["article_count"],
                {"avg_time_spent": r["avg_time_spent"], "avg_reading_rate": r["avg_reading_rate"]},
                job,
            )
        session.commit()
        return written
    finally:
        session.close()


def article_view_count_for_brand(ctx: PipelineContext, brand: Brand, window: Window, period: datetime) -> int:
    job = "lead_article_view_count"
    wh = ctx.warehouse
    session = ctx.session_factory()
    try:
        cutoff = window.end - timedelta(days=ctx.settings.lead_article_view_retention_days)
        purge_before(session, LeadArticleViewCount, brand.name, cutoff, job)
        session.commit()
        rows = wh.query(VIEW_COUNT_QUERY.format(lead_event=wh.table("lead_event")), [brand.name, window.start, window.end])
        written = 0
        for r in rows:
            written += sum_rollup(
                session, LeadArticleViewCount,
                {"brand": brand.name, "lead_uuid": r["lead_uuid"], "calculation_period": period},
                "view_count", r["view_count"], job,
            )
        session.commit()
        return written
    finally:
        session.close()


def read_articles_for_brand(ctx: PipelineContext, brand: Brand, window: Window) -> int:
    job = "lead_read_articles"
    wh = ctx.warehouse
    fresh_since = window.end - timedelta(days=ctx.settings.article_freshness_days)
    sql = READ_ARTICLES_QUERY.format(latest_page=latest_pages_cte(wh.table("page")), lead_event=wh.table("lead_event"))
    session = ctx.session_factory()
    try:
        stale_urls = select(Page.url).where(Page.brand == brand.name, Page.publication_date < fresh_since)
        result = session.execute(
            delete(LeadReadArticle).where(LeadReadArticle.brand == brand.name, LeadReadArticle.url.in_(stale_urls))
        )
        if result.rowcount:
            JOB_ROWS_PURGED.labels(job=job).inc(result.rowcount)
        session.commit()
        rows = wh.query(sql, [brand.name, brand.name, fresh_since, window.start, window.end])
        for r in rows:
            insert_ignore(
                session, LeadReadArticle,
                {"brand": brand.name, "lead_uuid": r["lead_uuid"], "url": r["url"], "first_read_at": r["first_read_at"]},
                ("brand", "url", "lead_uuid"), job,
            )
        session.commit()
        return len(rows)
    finally:
        session.close()


def generate_lead_section_article_count_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    window = Window.trailing(now, ctx.settings.aggregation_window_seconds)
    period = truncate(now, "day")
    return run_for_all_brands(
        "lead_section_article_count", lambda c, b: section_article_count_for_brand(c, b, window, period), ctx
    )


def generate_lead_article_view_count_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    window = Window.trailing(now, ctx.settings.aggregation_window_seconds)
    period = truncate(now, "day")
    return run_for_all_brands(
        "lead_article_view_count", lambda c, b: article_view_count_for_brand(c, b, window, period), ctx
    )


def generate_lead_read_articles_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    window = Window.trailing(now, ctx.settings.aggregation_window_seconds)
    return run_for_all_brands("lead_read_articles", lambda c, b: read_articles_for_brand(c, b, window), ctx)


@shared_task
def generate_lead_section_article_count():
    return generate_lead_section_article_count_job(get_context())


@shared_task
def generate_lead_article_view_count():
    return generate_lead_article_view_count_job(get_context())


@shared_task
def generate_lead_read_articles():
    return generate_lead_read_articles_job(get_context())
