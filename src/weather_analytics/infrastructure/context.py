"""Explicitly constructed runtime context.

Workers and jobs receive a ``PipelineContext`` instead of reaching for module
globals, so tests can hand in a SQLite session factory, an in-memory warehouse
and a fake geo reader.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable
import geoip2.database
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from weather_analytics.config import Settings, get_settings
from weather_analytics.errors import StartupError, WarehouseError
from weather_analytics.infrastructure.db import build_engine, build_session_factory, healthcheck
from weather_analytics.infrastructure.warehouse import Warehouse

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    settings: Settings
    session_factory: sessionmaker[Session]
    warehouse: Warehouse
    geo_reader: Any | None = None
    language_detector: Callable[[str], str] | None = None

    def close(self) -> None:
        if self.geo_reader is not None:
            self.geo_reader.close()
        self.warehouse.close()
        bind = self.session_factory.kw.get("bind")
        if bind is not None:
            bind.dispose()


def open_geo_reader(path: str):
    try:
        return geoip2.database.Reader(path)
    except (OSError, ValueError) as e:
        raise StartupError(f"cannot open geo database {path}: {e}") from e


def build_context(settings: Settings, open_geo: bool = False) -> PipelineContext:
    """Open every connection the pipeline needs or fail fast with ``StartupError``."""
    from weather_analytics.ingestion.enrichment import detect_language

    try:
        engine = build_engine(settings)
        healthcheck(engine)
    except SQLAlchemyError as e:
        raise StartupError(f"relational store unavailable: {e}") from e
    try:
        warehouse = Warehouse(settings.warehouse_path, settings.warehouse_schema)
        warehouse.ensure_schema()
    except WarehouseError as e:
        engine.dispose()
        raise StartupError(str(e)) from e
    geo_reader = None
    if open_geo:
        try:
            geo_reader = open_geo_reader(settings.geoip_database_path)
        except StartupError:
            warehouse.close()
            engine.dispose()
            raise
    logger.info(f"Pipeline context ready (environment={settings.environment})")
    return PipelineContext(
        settings=settings,
        session_factory=build_session_factory(engine),
        warehouse=warehouse,
        geo_reader=geo_reader,
        language_detector=detect_language,
    )


@lru_cache
def get_context() -> PipelineContext:
    """Process-wide context for Celery task wrappers."""
    return build_context(get_settings())
