from __future__ import annotations
import json
import pytest
from kafka.structs import TopicPartition
from sqlalchemy import select
from weather_analytics.config import Settings, parse_bootstrap_servers
from weather_analytics.infrastructure.messaging import KafkaSubscription
from weather_analytics.ingestion.handlers import handler_for
from weather_analytics.ingestion.worker import build_pipeline, main
from weather_analytics.models.tables import Page
from conftest import FakeConsumer, KafkaRecord, page_payload


def test_settings_derive_names_per_environment():
    s = Settings(ENVIRONMENT="prod")
    assert s.topic_for("page") == "prod-page"
    assert s.warehouse_schema == "prod_weather"
    assert [s.max_batch_size_for(k) for k in ("lead_event", "page", "user")] == [1000, 10, 10]
    assert s.batch_max_wait_seconds == 10.0


def test_parse_bootstrap_servers():
    assert parse_bootstrap_servers("a:9092, b:9092,,") == ["a:9092", "b:9092"]
    assert parse_bootstrap_servers(None) == []


def test_unknown_kind_is_rejected(ctx):
    with pytest.raises(ValueError):
        handler_for("comment", ctx)


def test_cli_requires_known_kind():
    with pytest.raises(SystemExit):
        main(["--kind", "comment"])


def test_pipeline_flushes_and_commits_on_shutdown(ctx, session):
    tp = TopicPartition("test-page", 0)
    record = KafkaRecord(offset=0, value=json.dumps(page_payload()).encode())
    consumer = FakeConsumer([{tp: [record]}])
    subscription = KafkaSubscription("test-page", ctx.settings, consumer_factory=lambda: consumer)
    pipeline = build_pipeline("page", ctx, subscription=subscription)
    consumer.on_empty = pipeline.stop_event.set

    pipeline.run()

    assert consumer.closed
    assert consumer.commits[-1][tp].offset == 1
    assert pipeline.accumulator.flush_count == 1
    assert session.execute(select(Page.url)).scalar_one() == page_payload()["url"]
