"""Long-running queue consumer for one entity kind.

    weather-ingest --kind page

wires subscription -> accumulator -> dual-write committer and runs until
SIGINT/SIGTERM, then flushes what is buffered and settles it before closing the
consumer. Failing to open any required connection exits with status 1.
"""
from __future__ import annotations
import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import timedelta
from dotenv import load_dotenv
from prometheus_client import start_http_server
from weather_analytics.config import ENTITY_KINDS, Settings, get_settings
from weather_analytics.errors import StartupError
from weather_analytics.infrastructure.batching import BatchAccumulator, BatchConfig
from weather_analytics.infrastructure.context import PipelineContext, build_context
from weather_analytics.infrastructure.logging_setup import configure_logging
from weather_analytics.infrastructure.messaging import KafkaSubscription
from weather_analytics.ingestion.committer import DualWriteCommitter
from weather_analytics.ingestion.handlers import handler_for

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    kind: str
    subscription: KafkaSubscription
    accumulator: BatchAccumulator
    committer: DualWriteCommitter
    stop_event: threading.Event

    def run(self) -> None:
        self.accumulator.start()
        try:
            self.subscription.receive(self.accumulator.add_message, self.stop_event)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.stop_event.set()
        # final flush settles buffered messages while the consumer can still commit them
        self.accumulator.stop()
        self.subscription.close()


def build_pipeline(kind: str, ctx: PipelineContext, subscription: KafkaSubscription | None = None) -> Pipeline:
    settings = ctx.settings
    committer = DualWriteCommitter(ctx, handler_for(kind, ctx))
    config = BatchConfig(
        max_batch_size=settings.max_batch_size_for(kind),
        max_wait_time=timedelta(seconds=settings.batch_max_wait_seconds),
    )
    return Pipeline(
        kind=kind,
        subscription=subscription or KafkaSubscription(settings.topic_for(kind), settings),
        accumulator=BatchAccumulator(config, committer.process_batch, name=kind),
        committer=committer,
        stop_event=threading.Event(),
    )


def run(kind: str, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    ctx = build_context(settings, open_geo=(kind == "lead_event"))
    pipeline = build_pipeline(kind, ctx)

    def _stop(signum, frame):  # noqa
        logger.info(f"Received signal {signum}, stopping {kind} worker")
        pipeline.stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    logger.info(f"Starting {kind} worker on topic {settings.topic_for(kind)}")
    try:
        pipeline.run()
    finally:
        ctx.close()
    logger.info(f"{kind} worker stopped")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Consume one entity topic into the relational and analytical stores")
    parser.add_argument("--kind", required=True, choices=ENTITY_KINDS)
    args = parser.parse_args(argv)

    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_level)
    if settings.metrics_port:
        start_http_server(settings.metrics_port)
    try:
        run(args.kind, settings)
    except StartupError as e:
        logger.critical(f"Startup failed: {e}")
        sys.exit(1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
