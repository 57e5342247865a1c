"""Content-derived jobs over the relational page table.

Content vectors and similarity pairs are a function of each page's *current*
content, which only the relational store holds (updates reset the vector to
NULL), so unlike the windowed rollups these read relational pages.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from celery import shared_task
from sqlalchemy import delete, or_, select, update
from weather_analytics.infrastructure.context import PipelineContext, get_context
from weather_analytics.models.tables import ArticleSection, Brand, ContentBasedArticle, Page
from weather_analytics.scoring.similarity import content_vector, similarity_pairs
from weather_analytics.tasks.common import JOB_ROWS_PURGED, JOB_ROWS_WRITTEN, insert_ignore, run_for_all_brands, utcnow
from weather_analytics.infrastructure.db import upsert

logger = logging.getLogger(__name__)


def content_vectors_for_brand(ctx: PipelineContext, brand: Brand) -> int:
    session = ctx.session_factory()
    try:
        pages = session.execute(
            select(Page.id, Page.content).where(
                Page.brand == brand.name, Page.type == "article", Page.content_vector.is_(None)
            )
        ).all()
        for page_id, content in pages:
            session.execute(update(Page).where(Page.id == page_id).values(content_vector=content_vector(content or "")))
        session.commit()
        if pages:
            JOB_ROWS_WRITTEN.labels(job="article_content_vectors").inc(len(pages))
            logger.info(f"Content vectors generated for {len(pages)} {brand.name} articles")
        return len(pages)
    finally:
        session.close()


def content_based_articles_for_brand(ctx: PipelineContext, brand: Brand, now: datetime) -> int:
    job = "content_based_articles"
    fresh_since = now - timedelta(days=ctx.settings.article_freshness_days)
    session = ctx.session_factory()
    try:
        stale_urls = select(Page.url).where(Page.brand == brand.name, Page.publication_date < fresh_since)
        result = session.execute(
            delete(ContentBasedArticle).where(
                ContentBasedArticle.brand == brand.name,
                or_(ContentBasedArticle.article_url_1.in_(stale_urls), ContentBasedArticle.article_url_2.in_(stale_urls)),
            )
        )
        if result.rowcount:
            JOB_ROWS_PURGED.labels(job=job).inc(result.rowcount)
        session.commit()

        articles = session.execute(
            select(Page.url, Page.content_vector).where(
                Page.brand == brand.name,
                Page.type == "article",
                Page.publication_date >= fresh_since,
                Page.content_vector.is_not(None),
            ).order_by(Page.url)
        ).all()
        written = 0
        for url_a, url_b, score in similarity_pairs((url, vec) for url, vec in articles):
            upsert(
                session, ContentBasedArticle,
                {"brand": brand.name, "article_url_1": url_a, "article_url_2": url_b, "similarity_score": score, "calculated_at": now},
                ("brand", "article_url_1", "article_url_2"),
                update=lambda stmt: {"similarity_score": stmt.excluded.similarity_score, "calculated_at": stmt.excluded.calculated_at},
            )
            written += 1
        session.commit()
        JOB_ROWS_WRITTEN.labels(job=job).inc(written)
        logger.info(f"Content-based articles for {brand.name}: {len(articles)} articles, {written} directed pairs")
        return written
    finally:
        session.close()


def article_sections_for_brand(ctx: PipelineContext, brand: Brand) -> int:
    job = "article_sections"
    session = ctx.session_factory()
    try:
        pairs = session.execute(
            select(Page.section, Page.sub_section).distinct().where(
                Page.brand == brand.name, Page.type == "article", Page.section != ""
            )
        ).all()
        for section, sub_section in pairs:
            insert_ignore(
                session, ArticleSection,
                {"brand": brand.name, "section": section, "sub_section": sub_section or ""},
                ("brand", "section", "sub_section"), job,
            )
        session.commit()
        return len(pairs)
    finally:
        session.close()


def generate_article_content_vectors_job(ctx: PipelineContext):
    return run_for_all_brands("article_content_vectors", content_vectors_for_brand, ctx)


def generate_content_based_articles_job(ctx: PipelineContext, now: datetime | None = None):
    now = now or utcnow()
    return run_for_all_brands("content_based_articles", lambda c, b: content_based_articles_for_brand(c, b, now), ctx)


def generate_article_sections_job(ctx: PipelineContext):
    return run_for_all_brands("article_sections", article_sections_for_brand, ctx)


@shared_task
def generate_article_content_vectors():
    return generate_article_content_vectors_job(get_context())


@shared_task
def generate_content_based_articles():
    return generate_content_based_articles_job(get_context())


@shared_task
def generate_article_sections():
    return generate_article_sections_job(get_context())
