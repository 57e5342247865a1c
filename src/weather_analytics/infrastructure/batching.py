"""Size- and time-bounded batching of queue messages.

A ``BatchAccumulator`` owns its buffer until a flush hands the whole buffer to
the batch handler. Flushes are serialized by the accumulator lock, which is held
across the handler call, so batches are disjoint and totally ordered.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, List
from prometheus_client import Counter, Histogram, Gauge
from weather_analytics.infrastructure.messaging import EventMessage

logger = logging.getLogger(__name__)


@dataclass
class BatchConfig:
    max_batch_size: int = 1000          # Flush as soon as this many messages are buffered
    max_wait_time: timedelta = field(default_factory=lambda: timedelta(seconds=10))  # Timer period

    def __post_init__(self):
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.max_wait_time.total_seconds() <= 0:
            raise ValueError("max_wait_time must be positive")


# Metrics
BATCH_FLUSHES = Counter('batch_flushes_total', 'Batch flushes by trigger', ['accumulator', 'trigger'])
BATCH_SIZE_HISTOGRAM = Histogram('batch_size_events', 'Batch size distribution', buckets=(1, 10, 50, 100, 500, 1000, 2000, 5000))
BATCH_PROCESSING_TIME = Histogram('batch_processing_seconds', 'Batch handler time', ['accumulator'])
BATCH_QUEUE_SIZE = Gauge('batch_queue_size', 'Current buffered messages', ['accumulator'])
BATCH_UNSETTLED = Counter('batch_unsettled_messages_total', 'Messages nacked because the handler left them unsettled', ['accumulator'])

BatchHandler = Callable[[List[EventMessage]], Any]


class BatchAccumulator:
    def __init__(self, config: BatchConfig, handler: BatchHandler, name: str = "default"):
        self.config = config
        self.name = name
        self._handler = handler
        self._lock = threading.Lock()
        self._buffer: List[EventMessage] = []
        self._timer: threading.Timer | None = None
        self._running = False
        self.flush_count = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm_timer()
        logger.info(
            f"Accumulator {self.name} started (max_batch_size={self.config.max_batch_size}, "
            f"max_wait_time={self.config.max_wait_time.total_seconds()}s)"
        )

    def stop(self) -> None:
        """Stop the timer and flush whatever is still buffered."""
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._buffer:
                self._flush_locked("shutdown")
        logger.info(f"Accumulator {self.name} stopped after {self.flush_count} flushes")

    def add_message(self, msg: EventMessage) -> None:
        with self._lock:
            self._buffer.append(msg)
            BATCH_QUEUE_SIZE.labels(accumulator=self.name).set(len(self._buffer))
            if len(self._buffer) >= self.config.max_batch_size:
                self._flush_locked("size")

    def tick(self) -> bool:
        """Timer callback: flush a non-empty buffer, then re-arm.

        Returns True when a batch was flushed.
        """
        with self._lock:
            flushed = False
            if self._buffer:
                self._flush_locked("timer")
                flushed = True
            # re-arm only after the flush decision so no tick is lost or doubled
            self._arm_timer()
        return flushed

    def _arm_timer(self) -> None:
        if not self._running:
            return
        self._timer = threading.Timer(self.config.max_wait_time.total_seconds(), self.tick)
        self._timer.daemon = True
        self._timer.name = f"batch-timer-{self.name}"
        self._timer.start()

    def _flush_locked(self, trigger: str) -> None:
        batch = self._buffer
        self._buffer = []
        BATCH_QUEUE_SIZE.labels(accumulator=self.name).set(0)
        BATCH_FLUSHES.labels(accumulator=self.name, trigger=trigger).inc()
        BATCH_SIZE_HISTOGRAM.observe(len(batch))
        self.flush_count += 1
        start = time.time()
        try:
            self._handler(batch)
        except Exception:
            # the timer thread must survive a failed batch; redelivery is the retry
            logger.exception(f"Batch handler for {self.name} failed on {len(batch)} messages ({trigger})")
        finally:
            BATCH_PROCESSING_TIME.labels(accumulator=self.name).observe(time.time() - start)
            unsettled = [m for m in batch if not m.settled]
            if unsettled:
                BATCH_UNSETTLED.labels(accumulator=self.name).inc(len(unsettled))
                logger.warning(f"Nacking {len(unsettled)} unsettled messages from {self.name} batch")
                for m in unsettled:
                    m.nack()
