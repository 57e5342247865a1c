from __future__ import annotations
import logging
from datetime import datetime, timedelta
from celery import shared_task
from weather_analytics.infrastructure.context import PipelineContext, get_context
from weather_analytics.models.tables import Brand, TopArticle, TopNextArticle
from weather_analytics.tasks.common import Window, latest_pages_cte, merge_rollup, purge_before, run_for_all_brands, truncate, utcnow

logger = logging.getLogger(__name__)

# Each view weighs 3600 / seconds-since-view, so fresher traffic ranks higher.
TOP_ARTICLES_QUERY = """
WITH {latest_page}
SELECT
    p.url,
    COALESCE(p.section, '') AS section,
    COALESCE(p.sub_section, '') AS sub_section,
    COUNT(*) AS view_count,
    ROUND(AVG(le.reading_rate), 2) AS avg_reading_rate,
    ROUND(AVG(le.time_spent), 2) AS avg_time_spent,
    ROUND(SUM(CASE
        WHEN date_diff('second', le.datetime, CAST(? AS TIMESTAMP)) > 0 THEN 3600.0 / date_diff('second', le.datetime, CAST(? AS TIMESTAMP))
        ELSE 0
    END)) AS recency_weight
FROM {lead_event} le
JOIN latest_page p ON p.url = le.url
WHERE le.brand = ?
    AND le.datetime >= ?
    AND le.datetime < ?
GROUP BY p.url, COALESCE(p.section, ''), COALESCE(p.sub_section, '')
ORDER BY recency_weight DESC
"""

TOP_NEXT_ARTICLES_QUERY = """
WITH ranked_next_urls AS (
    SELECT
        relevant_referrer AS url,
        url AS next_url,
        COUNT(*) AS view_count,
        ROUND(AVG(reading_rate), 2) AS avg_reading_rate,
        ROUND(AVG(time_spent), 2) AS avg_time_spent,
        row_number() OVER (PARTITION BY relevant_referrer ORDER BY COUNT(*) DESC, url) AS row_num
    FROM {lead_event}
    WHERE brand = ?
        AND COALESCE(relevant_referrer, '') <> ''
        AND url <> relevant_referrer
        AND page_type = 'article'
        AND datetime >= ?
        AND datetime < ?
    GROUP BY relevant_referrer, url
)
SELECT url, next_url, view_count, avg_reading_rate, avg_time_spent
FROM ranked_next_urls
WHERE row_num <= ?
ORDER BY url ASC, view_count DESC
"""


def top_article_levels(row: dict) -> list[tuple[str, str]]:
    """Keys the row is ranked under: all articles, its section, its sub-section."""
    # an empty section would be the all-articles key again and merge twice
    levels = [("", "")]
    if row["section"]:
        levels.append((row["section"], ""))
        if row["sub_section"]:
            levels.append((row["section"], row["sub_section"]))
    return levels


def top_articles_for_brand(ctx: PipelineContext, brand: Brand, window: Window, period: datetime) -> int:
    job = "top_articles"
    wh = ctx.warehouse
    sql = TOP_ARTICLES_QUERY.format(latest_page=latest_pages_cte(wh.table("page")), lead_event=wh.table("lead_event"))
    session = ctx.session_factory()
    try:
        purge_before(session, TopArticle, brand.name, window.end - timedelta(days=ctx.settings.top_articles_retention_days), job)
        session.commit()
        rows = wh.query(sql, [brand.name, window.end, window.end, brand.name, window.start, window.end])
        written = 0
        for r in rows:
            for section, sub_section in top_article_levels(r):
                written += merge_rollup(
                    session, TopArticle,
                    {
                        "brand": brand.name,
                        "url": r["url"],
                        "section": section,
                        "sub_section": sub_section,
                        "calculation_period": period,
                    },
                    "view_count", r["view_count"],
                    {
                        "avg_time_spent": r["avg_time_spent"],
                        "avg_reading_rate": r["avg_reading_rate"],
                        "recency_weight": r["recency_weight"],
                    },
                    job,
                )
        session.commit()
        logger.info(f"Top articles for {brand.name}: {len(rows)} articles, {written} ranked rows")
        return written
    finally:
        session.close()


def top_next_articles_for_brand(ctx: PipelineContext, brand: Brand, window: Window, period: datetime) -> int:
    job = "top_next_articles"
    wh = ctx.warehouse
    session = ctx.session_factory()
    try:
        purge_before(session, TopNextArticle, brand.name, window.end - timedelta(days=ctx.settings.top_articles_retention_days), job)
        session.commit()
        rows = wh.query(
            TOP_NEXT_ARTICLES_QUERY.format(lead_event=wh.table("lead_event")),
            [brand.name, window.start, window.end, ctx.settings.top_next_articles_limit],
        )
        written = 0
        for r in rows:
            written += merge_rollup(
                session, TopNextArticle,
                {"brand": brand.name, "url": r["url"], "next_url": r["next_url"], "calculation_period": period},
                "view_count", r["view_count"],
                {"avg_time_spent": r["avg_time_spent"], "avg_reading_rate": r["avg_reading_rate"]},
                job,
            )
        session.commit()
        return written
    finally:
        session.close()


def generate_top_articles_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    window = Window.trailing(now, ctx.settings.aggregation_window_seconds)
    period = truncate(now, "hour")
    return run_for_all_brands("top_articles", lambda c, b: top_articles_for_brand(c, b, window, period), ctx)


def generate_top_next_articles_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    window = Window.trailing(now, ctx.settings.aggregation_window_seconds)
    period = truncate(now, "hour")
    return run_for_all_brands("top_next_articles", lambda c, b: top_next_articles_for_brand(c, b, window, period), ctx)


@shared_task
def generate_top_articles():
    return generate_top_articles_job(get_context())


@shared_task
def generate_top_next_articles():
    return generate_top_next_articles_job(get_context())
