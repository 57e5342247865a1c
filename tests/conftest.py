from __future__ import annotations
import itertools
import json
from collections import namedtuple
from datetime import datetime
from types import SimpleNamespace
import geoip2.errors
import pytest
from weather_analytics.config import Settings
from weather_analytics.infrastructure.context import PipelineContext
from weather_analytics.infrastructure.db import Base, build_engine, build_session_factory
from weather_analytics.infrastructure.messaging import EventMessage
from weather_analytics.infrastructure.warehouse import Warehouse
from weather_analytics.models import tables  # noqa: F401
from weather_analytics.models.tables import Brand

KafkaRecord = namedtuple("KafkaRecord", ["offset", "value"])

GEO_FIXTURES = {
    "81.2.69.142": ("United Kingdom", "London"),
    "2.125.160.216": ("United Kingdom", ""),
}


class FakeGeoReader:
    """Stands in for ``geoip2.database.Reader`` with a fixed address table."""

    def __init__(self, broken: set[str] | None = None):
        self.broken = broken or set()
        self.lookups: list[str] = []
        self.closed = False

    def city(self, ip: str):
        self.lookups.append(ip)
        if ip in self.broken:
            raise OSError("database read failed")
        if ip.count(".") != 3:
            raise ValueError(f"{ip!r} does not appear to be an IPv4 or IPv6 address")
        if ip not in GEO_FIXTURES:
            raise geoip2.errors.AddressNotFoundError(f"The address {ip} is not in the database.")
        country, city = GEO_FIXTURES[ip]
        return SimpleNamespace(country=SimpleNamespace(name=country), city=SimpleNamespace(name=city or None))

    def close(self):
        self.closed = True


class FakeConsumer:
    """Minimal KafkaConsumer double: scripted polls, recorded commits and seeks."""

    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.commits: list[dict] = []
        self.seeks: list[tuple] = []
        self.closed = False
        self.listener = None
        self.topics = None
        self.on_empty = None

    def subscribe(self, topics, listener=None):
        self.topics = topics
        self.listener = listener

    def poll(self, timeout_ms=0, max_records=None):
        if self.batches:
            return self.batches.pop(0)
        if self.on_empty is not None:
            self.on_empty()
        return {}

    def seek(self, tp, offset):
        self.seeks.append((tp, offset))

    def commit(self, offsets=None):
        self.commits.append(dict(offsets or {}))

    def close(self, autocommit=True):
        self.closed = True


_ids = itertools.count(1)


def make_message(payload) -> EventMessage:
    data = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return EventMessage(data=data, message_id=f"test-{next(_ids)}")


def page_payload(**overrides) -> dict:
    payload = {
        "datetime": "2024-05-01T10:00:00Z",
        "brand": "alpha",
        "url": "https://alpha.example/news/storm",
        "type": "article",
        "language": "en-GB",
        "publication_date": "2024-05-01T08:00:00Z",
        "modification_date": "2024-05-01T09:00:00Z",
        "title": "Storm warning",
        "description": "Heavy rain expected",
        "content": "Heavy rain and strong winds are expected across the region tonight",
        "section": "news",
        "sub_section": "local",
        "is_paid": False,
    }
    payload.update(overrides)
    return payload


def user_payload(**overrides) -> dict:
    payload = {
        "datetime": "2024-05-01T10:00:00Z",
        "brand": "alpha",
        "lead_uuid": "lead-1",
        "user_id": "u-1",
        "email": "reader@example.com",
        "first_name": "Sam",
        "last_name": "Reader",
        "is_subscriber": False,
    }
    payload.update(overrides)
    return payload


def lead_event_payload(**overrides) -> dict:
    payload = {
        "brand": "alpha",
        "uuid": f"ev-{next(_ids)}",
        "lead_uuid": "lead-1",
        "name": "page_view",
        "page_type": "article",
        "page_language": "en",
        "device": "mobile",
        "url": "https://alpha.example/news/storm",
        "referrer": "https://www.google.com/search?q=storm",
        "relevant_referrer": "",
        "metas": {"timeSpent": 30.0, "readingRate": 0.5},
        "consent": True,
        "ip": "81.2.69.142",
    }
    payload.update(overrides)
    return payload


def event_row(brand: str, ts: datetime, **overrides) -> dict:
    row = {
        "datetime": ts,
        "brand": brand,
        "uuid": f"ev-{next(_ids)}",
        "lead_uuid": "lead-1",
        "name": "page_view",
        "page_type": "article",
        "url": "/a",
        "relevant_referrer": "",
        "time_spent": 10.0,
        "reading_rate": 1.0,
        "consent": True,
    }
    row.update(overrides)
    return row


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ENVIRONMENT="test",
        POSTGRES_DSN=f"sqlite:///{tmp_path / 'weather.db'}",
        WAREHOUSE_PATH=":memory:",
        JOB_MAX_WORKERS=1,
    )


@pytest.fixture
def engine(settings):
    eng = build_engine(settings)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def warehouse(settings):
    wh = Warehouse(settings.warehouse_path, settings.warehouse_schema)
    wh.ensure_schema()
    yield wh
    wh.close()


@pytest.fixture
def geo_reader():
    return FakeGeoReader(broken={"10.0.0.1"})


@pytest.fixture
def ctx(settings, session_factory, warehouse, geo_reader):
    return PipelineContext(
        settings=settings,
        session_factory=session_factory,
        warehouse=warehouse,
        geo_reader=geo_reader,
        language_detector=lambda text: "en",
    )


@pytest.fixture
def brands(session):
    rows = [Brand(name="alpha", page_view_threshold=2), Brand(name="beta", page_view_threshold=2)]
    session.add_all(rows)
    session.commit()
    return rows
