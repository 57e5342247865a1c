from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


ENTITY_KINDS = ("lead_event", "page", "user")


class Settings(BaseSettings):
    environment: str = Field("dev", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Relational store (current state + rollups)
    postgres_dsn: str = Field("sqlite:///./weather.db", alias="POSTGRES_DSN")
    db_pool_size: int = Field(10, alias="DB_POOL_SIZE")
    # Analytical store (append-only log, DuckDB file or :memory:)
    warehouse_path: str = Field("weather_warehouse.duckdb", alias="WAREHOUSE_PATH")
    geoip_database_path: str = Field("GeoLite2-City.mmdb", alias="GEOIP_DATABASE_PATH")

    # Celery broker / result backend
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Queue subscriptions
    kafka_bootstrap_servers: str = Field("localhost:9092", alias="KAFKA_BOOTSTRAP_SERVERS")
    kafka_consumer_group: str = Field("weather", alias="KAFKA_CONSUMER_GROUP")
    kafka_poll_timeout_ms: int = Field(1000, alias="KAFKA_POLL_TIMEOUT_MS")
    kafka_max_poll_records: int = Field(500, alias="KAFKA_MAX_POLL_RECORDS")

    # Batch accumulator tunables per entity kind
    lead_event_max_batch_size: int = Field(1000, alias="LEAD_EVENT_MAX_BATCH_SIZE")
    page_max_batch_size: int = Field(10, alias="PAGE_MAX_BATCH_SIZE")
    user_max_batch_size: int = Field(10, alias="USER_MAX_BATCH_SIZE")
    batch_max_wait_seconds: float = Field(10.0, alias="BATCH_MAX_WAIT_SECONDS")

    # Aggregation jobs
    aggregation_window_seconds: int = Field(60, alias="AGGREGATION_WINDOW_SECONDS")
    job_max_workers: int = Field(8, alias="JOB_MAX_WORKERS")
    article_metrics_retention_days: int = Field(365, alias="ARTICLE_METRICS_RETENTION_DAYS")
    lead_engagement_retention_days: int = Field(90, alias="LEAD_ENGAGEMENT_RETENTION_DAYS")
    lead_section_count_retention_days: int = Field(30, alias="LEAD_SECTION_COUNT_RETENTION_DAYS")
    lead_article_view_retention_days: int = Field(90, alias="LEAD_ARTICLE_VIEW_RETENTION_DAYS")
    top_articles_retention_days: int = Field(2, alias="TOP_ARTICLES_RETENTION_DAYS")
    article_freshness_days: int = Field(15, alias="ARTICLE_FRESHNESS_DAYS")  # read articles + similarity pairs
    engagement_history_days: int = Field(90, alias="ENGAGEMENT_HISTORY_DAYS")
    top_next_articles_limit: int = Field(10, alias="TOP_NEXT_ARTICLES_LIMIT")
    reconcile_lookback_hours: int = Field(24, alias="RECONCILE_LOOKBACK_HOURS")

    # Prometheus exporter for ingestion workers (disabled when unset)
    metrics_port: int | None = Field(None, alias="METRICS_PORT")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables

    @property
    def warehouse_schema(self) -> str:
        return f"{self.environment}_weather"

    def topic_for(self, kind: str) -> str:
        return f"{self.environment}-{kind}"

    def max_batch_size_for(self, kind: str) -> int:
        return {
            "lead_event": self.lead_event_max_batch_size,
            "page": self.page_max_batch_size,
            "user": self.user_max_batch_size,
        }[kind]


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_bootstrap_servers(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [h.strip() for h in raw.split(",") if h.strip()]
