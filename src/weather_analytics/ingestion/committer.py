"""Dual-write commit of a flushed batch.

Per batch: one relational transaction, a SAVEPOINT per message so a failing
statement only affects its own message, then (after a durable commit) one bulk
append of the staged rows into the analytical store. Every message leaves
``process_batch`` settled:

* invalid payload (content language mismatch) -> ack, nothing written
* unparseable payload or locale, transient enrichment or statement failure
  -> nack, broker redelivers
* nothing changed -> ack, nothing written
* staged -> nack if the commit fails, ack once the commit succeeded

A failed analytical append after a successful relational commit is logged and
the messages are still acked; redelivery would only hit the no-op path. Lead
events have no relational copy, so for them the append *is* the commit and a
failure nacks.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List
from prometheus_client import Counter, Histogram
from sqlalchemy.exc import SQLAlchemyError
from weather_analytics.errors import EnrichmentError, ValidationFailure, WarehouseError
from weather_analytics.infrastructure.context import PipelineContext
from weather_analytics.infrastructure.messaging import EventMessage
from weather_analytics.ingestion.change_detection import WriteDecision
from weather_analytics.ingestion.handlers import EntityHandler

logger = logging.getLogger(__name__)

INGEST_MESSAGES = Counter('ingest_messages_total', 'Messages processed by outcome', ['kind', 'outcome'])
INGEST_BATCH_SECONDS = Histogram('ingest_batch_seconds', 'Dual-write batch latency', ['kind'], buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30))
INGEST_COMMIT_FAILURES = Counter('ingest_commit_failures_total', 'Relational commit failures', ['kind'])
INGEST_WAREHOUSE_GAPS = Counter('ingest_warehouse_gap_rows_total', 'Relationally committed rows missing their analytical echo', ['kind'])


@dataclass
class BatchOutcome:
    kind: str
    received: int = 0
    inserted: int = 0
    updated: int = 0
    noop: int = 0
    dropped: int = 0
    nacked: int = 0
    warehouse_rows: int = 0
    warehouse_failed: bool = False
    commit_failed: bool = False
    duration: float = 0.0
    drop_reasons: dict[str, int] = field(default_factory=dict)

    @property
    def acked(self) -> int:
        return self.received - self.nacked

    def summary(self) -> str:
        return (
            f"{self.kind} batch: received={self.received} inserted={self.inserted} updated={self.updated} "
            f"noop={self.noop} dropped={self.dropped} nacked={self.nacked} "
            f"warehouse_rows={self.warehouse_rows} in {self.duration:.3f}s"
        )


@dataclass
class _Staged:
    message: EventMessage
    decision: WriteDecision
    row: dict[str, Any]


class DualWriteCommitter:
    def __init__(self, ctx: PipelineContext, handler: EntityHandler):
        self.ctx = ctx
        self.handler = handler

    @property
    def kind(self) -> str:
        return self.handler.kind

    def __call__(self, batch: List[EventMessage]) -> BatchOutcome:
        return self.process_batch(batch)

    def process_batch(self, batch: List[EventMessage]) -> BatchOutcome:
        start = time.time()
        outcome = BatchOutcome(kind=self.kind, received=len(batch))
        now = datetime.utcnow()
        staged: list[_Staged] = []
        seen: set = set()
        session = self.ctx.session_factory()
        try:
            for msg in batch:
                self._process_message(session, msg, now, seen, staged, outcome)
            if staged and self.handler.writes_relational:
                try:
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    INGEST_COMMIT_FAILURES.labels(kind=self.kind).inc()
                    logger.error(f"Commit of {len(staged)} {self.kind} rows failed, nacking: {e}")
                    for s in staged:
                        s.message.nack()
                    outcome.nacked += len(staged)
                    outcome.commit_failed = True
                    INGEST_MESSAGES.labels(kind=self.kind, outcome="nack").inc(len(staged))
                    staged = []
        finally:
            session.close()

        if staged:
            self._append_to_warehouse(staged, outcome)

        outcome.duration = time.time() - start
        INGEST_BATCH_SECONDS.labels(kind=self.kind).observe(outcome.duration)
        logger.info(outcome.summary())
        return outcome

    def _process_message(self, session, msg: EventMessage, now: datetime, seen: set, staged: list, outcome: BatchOutcome):
        handler = self.handler
        try:
            record = handler.enrich(handler.decode(msg.data))
        except ValidationFailure as e:
            if not e.permanent:
                logger.error(f"Cannot parse {self.kind} message {msg.message_id}, nacking: {e}")
                msg.nack()
                outcome.nacked += 1
                INGEST_MESSAGES.labels(kind=self.kind, outcome="nack").inc()
                return
            logger.warning(f"Dropping {self.kind} message {msg.message_id}: {e}")
            msg.ack()
            outcome.dropped += 1
            outcome.drop_reasons[e.reason] = outcome.drop_reasons.get(e.reason, 0) + 1
            INGEST_MESSAGES.labels(kind=self.kind, outcome="dropped").inc()
            return
        except EnrichmentError as e:
            logger.error(f"Enrichment of {self.kind} message {msg.message_id} failed: {e}")
            msg.nack()
            outcome.nacked += 1
            INGEST_MESSAGES.labels(kind=self.kind, outcome="nack").inc()
            return

        try:
            if handler.writes_relational:
                with session.begin_nested():
                    decision = handler.apply(session, record, seen, now)
            else:
                decision = handler.apply(session, record, seen, now)
        except SQLAlchemyError as e:
            logger.error(f"Relational write for {handler.describe(record)} failed: {e}")
            msg.nack()
            outcome.nacked += 1
            INGEST_MESSAGES.labels(kind=self.kind, outcome="nack").inc()
            return

        if decision is WriteDecision.NOOP:
            logger.debug(f"No change for {handler.describe(record)}, acking")
            msg.ack()
            outcome.noop += 1
            INGEST_MESSAGES.labels(kind=self.kind, outcome="noop").inc()
            return
        staged.append(_Staged(message=msg, decision=decision, row=handler.warehouse_row(record, now)))

    def _append_to_warehouse(self, staged: list[_Staged], outcome: BatchOutcome) -> None:
        rows = [s.row for s in staged]
        try:
            outcome.warehouse_rows = self.ctx.warehouse.insert_rows(self.handler.table, rows)
        except WarehouseError as e:
            outcome.warehouse_failed = True
            if not self.handler.writes_relational:
                logger.error(f"Analytical append of {len(rows)} {self.kind} rows failed, nacking: {e}")
                for s in staged:
                    s.message.nack()
                outcome.nacked += len(staged)
                INGEST_MESSAGES.labels(kind=self.kind, outcome="nack").inc(len(staged))
                return
            INGEST_WAREHOUSE_GAPS.labels(kind=self.kind).inc(len(rows))
            logger.error(
                f"Analytical append of {len(rows)} {self.kind} rows failed after relational commit; "
                f"acking anyway, reconcile_warehouse will backfill: {e}"
            )
        for s in staged:
            s.message.ack()
            if s.decision is WriteDecision.INSERT:
                outcome.inserted += 1
            else:
                outcome.updated += 1
            INGEST_MESSAGES.labels(kind=self.kind, outcome=s.decision.value).inc()
