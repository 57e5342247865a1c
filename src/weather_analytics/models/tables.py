from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, JSON, Float, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from weather_analytics.infrastructure.db import Base


class Brand(Base):
    __tablename__ = "brand"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    host: Mapped[str | None] = mapped_column(String(255), default=None)
    # minimum events over the engagement history before a lead is tracked
    page_view_threshold: Mapped[int] = mapped_column(Integer, default=5)


class Page(Base):
    __tablename__ = "page"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    url: Mapped[str] = mapped_column(String(2048))
    type: Mapped[str] = mapped_column(String(32), index=True)
    language: Mapped[str] = mapped_column(String(16))
    publication_date: Mapped[datetime] = mapped_column(DateTime, index=True)
    modification_date: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    title: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    content: Mapped[str] = mapped_column(Text, default="")
    section: Mapped[str] = mapped_column(String(128), default="")
    sub_section: Mapped[str | None] = mapped_column(String(128), default=None)
    image: Mapped[str | None] = mapped_column(String(2048), default=None)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    content_vector: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), default=None)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "url", name="uq_page_brand_url"),
        Index("ix_page_brand_type_pub", "brand", "type", "publication_date"),
    )


class User(Base):
    __tablename__ = "user"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    lead_uuid: Mapped[str] = mapped_column(String(64))
    user_id: Mapped[str] = mapped_column(String(128), default="")
    email: Mapped[str] = mapped_column(String(320), default="")
    first_name: Mapped[str] = mapped_column(String(128), default="")
    last_name: Mapped[str] = mapped_column(String(128), default="")
    is_subscriber: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "lead_uuid", name="uq_user_brand_lead"),
    )


# --- Rollups -------------------------------------------------------------


class ArticleMetric(Base):
    __tablename__ = "article_metrics"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    url: Mapped[str] = mapped_column(String(2048))
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_time_spent: Mapped[float] = mapped_column(Float, default=0.0)
    avg_reading_rate: Mapped[float] = mapped_column(Float, default=0.0)
    calculation_period: Mapped[datetime] = mapped_column(DateTime, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "url", "calculation_period", name="uq_article_metrics_key"),
    )


class LeadEngagementMetric(Base):
    __tablename__ = "lead_engagement_metrics"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    lead_uuid: Mapped[str] = mapped_column(String(64), index=True)
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_time_spent: Mapped[float] = mapped_column(Float, default=0.0)
    avg_reading_rate: Mapped[float] = mapped_column(Float, default=0.0)
    calculation_period: Mapped[datetime] = mapped_column(DateTime, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "lead_uuid", "calculation_period", name="uq_lead_engagement_key"),
    )


class LeadSectionArticleCount(Base):
    __tablename__ = "lead_section_article_count"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    lead_uuid: Mapped[str] = mapped_column(String(64), index=True)
    section: Mapped[str] = mapped_column(String(128))
    article_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_time_spent: Mapped[float] = mapped_column(Float, default=0.0)
    avg_reading_rate: Mapped[float] = mapped_column(Float, default=0.0)
    calculation_period: Mapped[datetime] = mapped_column(DateTime, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "lead_uuid", "section", "calculation_period", name="uq_lead_section_key"),
    )


class LeadArticleViewCount(Base):
    __tablename__ = "lead_article_view_count"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    lead_uuid: Mapped[str] = mapped_column(String(64), index=True)
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    calculation_period: Mapped[datetime] = mapped_column(DateTime, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "lead_uuid", "calculation_period", name="uq_lead_article_view_key"),
    )


class LeadReadArticle(Base):
    __tablename__ = "lead_read_articles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    lead_uuid: Mapped[str] = mapped_column(String(64), index=True)
    url: Mapped[str] = mapped_column(String(2048))
    first_read_at: Mapped[datetime] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("brand", "url", "lead_uuid", name="uq_lead_read_key"),
    )


class TopArticle(Base):
    __tablename__ = "top_articles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    url: Mapped[str] = mapped_column(String(2048))
    # '' means "all sections" / "all sub-sections" so the level is part of the key
    section: Mapped[str] = mapped_column(String(128), default="")
    sub_section: Mapped[str] = mapped_column(String(128), default="")
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_time_spent: Mapped[float] = mapped_column(Float, default=0.0)
    avg_reading_rate: Mapped[float] = mapped_column(Float, default=0.0)
    recency_weight: Mapped[float] = mapped_column(Float, default=0.0)
    calculation_period: Mapped[datetime] = mapped_column(DateTime, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "url", "section", "sub_section", "calculation_period", name="uq_top_articles_key"),
    )


class TopNextArticle(Base):
    __tablename__ = "top_next_articles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    url: Mapped[str] = mapped_column(String(2048))
    next_url: Mapped[str] = mapped_column(String(2048))
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_time_spent: Mapped[float] = mapped_column(Float, default=0.0)
    avg_reading_rate: Mapped[float] = mapped_column(Float, default=0.0)
    calculation_period: Mapped[datetime] = mapped_column(DateTime, index=True)

    __table_args__ = (
        UniqueConstraint("brand", "url", "next_url", "calculation_period", name="uq_top_next_key"),
    )


class ContentBasedArticle(Base):
    __tablename__ = "content_based_articles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    article_url_1: Mapped[str] = mapped_column(String(2048))
    article_url_2: Mapped[str] = mapped_column(String(2048))
    similarity_score: Mapped[float] = mapped_column(Float)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("brand", "article_url_1", "article_url_2", name="uq_content_based_key"),
    )


class ArticleSection(Base):
    __tablename__ = "article_section"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(64), index=True)
    section: Mapped[str] = mapped_column(String(128))
    sub_section: Mapped[str] = mapped_column(String(128), default="")

    __table_args__ = (
        UniqueConstraint("brand", "section", "sub_section", name="uq_article_section_key"),
    )
