"""Queue subscription and event message handles.

``KafkaSubscription`` turns a Kafka consumer group into a stream of
``EventMessage`` objects with individual ack/nack handles. KafkaConsumer is not
thread-safe, so settlements coming from the flush thread are queued and applied
by the polling thread between polls:

* acked offsets are committed as soon as they form a contiguous prefix of a
  partition's outstanding records;
* a nack seeks the partition back to the nacked offset, so that record and every
  later one is delivered again. Handles below the nacked offset stay valid; a
  later offset acked before its redelivery arrives is skipped on redelivery.
"""
from __future__ import annotations
import logging
import queue
import threading
from collections import OrderedDict
from typing import Callable
from kafka import KafkaConsumer, ConsumerRebalanceListener
from kafka.errors import KafkaError
from kafka.structs import TopicPartition, OffsetAndMetadata
from prometheus_client import Counter, Gauge
from weather_analytics.config import Settings, parse_bootstrap_servers
from weather_analytics.errors import StartupError

logger = logging.getLogger(__name__)

MESSAGES_RECEIVED = Counter('queue_messages_received_total', 'Messages pulled from the queue', ['topic'])
MESSAGES_SETTLED = Counter('queue_messages_settled_total', 'Message settlements', ['topic', 'outcome'])
OFFSET_COMMITS = Counter('queue_offset_commits_total', 'Offset commits issued', ['topic'])
OUTSTANDING_MESSAGES = Gauge('queue_outstanding_messages', 'Delivered but not yet settled messages', ['topic'])

ACK = "ack"
NACK = "nack"


class EventMessage:
    """Immutable payload plus a one-shot settlement handle."""

    def __init__(
        self,
        data: bytes,
        message_id: str,
        delivery_attempt: int = 1,
        on_ack: Callable[[], None] | None = None,
        on_nack: Callable[[], None] | None = None,
    ):
        self.data = data
        self.message_id = message_id
        self.delivery_attempt = delivery_attempt
        self._on_ack = on_ack
        self._on_nack = on_nack
        self._lock = threading.Lock()
        self._state: str | None = None

    @property
    def state(self) -> str | None:
        return self._state

    @property
    def settled(self) -> bool:
        return self._state is not None

    def ack(self) -> bool:
        return self._settle(ACK, self._on_ack)

    def nack(self) -> bool:
        return self._settle(NACK, self._on_nack)

    def _settle(self, state: str, callback: Callable[[], None] | None) -> bool:
        with self._lock:
            if self._state is not None:
                logger.warning(f"Message {self.message_id} already {self._state}ed, ignoring {state}")
                return False
            self._state = state
        if callback is not None:
            callback()
        return True

    def __repr__(self) -> str:
        return f"EventMessage(id={self.message_id!r}, attempt={self.delivery_attempt}, state={self._state})"


def _offset_meta(offset: int) -> OffsetAndMetadata:
    # kafka-python >= 2.1 added leader_epoch to the namedtuple
    if "leader_epoch" in OffsetAndMetadata._fields:
        return OffsetAndMetadata(offset, "", -1)
    return OffsetAndMetadata(offset, "")


class _Rebalance(ConsumerRebalanceListener):
    def __init__(self, subscription: "KafkaSubscription"):
        self._subscription = subscription

    def on_partitions_revoked(self, revoked):
        self._subscription._on_revoked(revoked)

    def on_partitions_assigned(self, assigned):
        logger.info(f"Assigned partitions: {sorted((tp.topic, tp.partition) for tp in assigned)}")


class KafkaSubscription:
    def __init__(
        self,
        topic: str,
        settings: Settings,
        consumer_factory: Callable[[], KafkaConsumer] | None = None,
    ):
        self.topic = topic
        self.settings = settings
        self._consumer_factory = consumer_factory or self._build_consumer
        self._consumer: KafkaConsumer | None = None
        self._settlements: queue.Queue = queue.Queue()
        self._pending: dict[TopicPartition, OrderedDict[int, str | None]] = {}
        self._generation: dict[TopicPartition, int] = {}
        self._attempts: dict[tuple[TopicPartition, int], int] = {}
        self._delivered_gen: dict[tuple[TopicPartition, int], int] = {}
        self._superseded: dict[TopicPartition, dict[int, int]] = {}
        self._done: dict[TopicPartition, set[int]] = {}

    def _build_consumer(self) -> KafkaConsumer:
        s = self.settings
        return KafkaConsumer(
            bootstrap_servers=parse_bootstrap_servers(s.kafka_bootstrap_servers),
            group_id=s.kafka_consumer_group,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_records=s.kafka_max_poll_records,
        )

    def open(self) -> None:
        if self._consumer is not None:
            return
        try:
            consumer = self._consumer_factory()
            consumer.subscribe([self.topic], listener=_Rebalance(self))
        except KafkaError as e:
            raise StartupError(f"cannot subscribe to {self.topic}: {e}") from e
        self._consumer = consumer
        logger.info(f"Subscribed to {self.topic} as group {self.settings.kafka_consumer_group}")

    def receive(self, callback: Callable[[EventMessage], None], stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set, handing every record to ``callback``.

        The callback runs on this thread; it must not block for longer than the
        consumer's max poll interval.
        """
        self.open()
        consumer = self._consumer
        while not stop_event.is_set():
            self._apply_settlements()
            try:
                batch = consumer.poll(
                    timeout_ms=self.settings.kafka_poll_timeout_ms,
                    max_records=self.settings.kafka_max_poll_records,
                )
            except KafkaError as e:
                logger.error(f"Poll on {self.topic} failed: {e}")
                continue
            skipped: set[TopicPartition] = set()
            for tp, records in batch.items():
                for record in records:
                    msg = self._wrap(tp, record)
                    if msg is None:
                        skipped.add(tp)
                    else:
                        callback(msg)
            if skipped:
                self._commit(skipped)
        self._apply_settlements()

    def _wrap(self, tp: TopicPartition, record) -> EventMessage | None:
        pending = self._pending.setdefault(tp, OrderedDict())
        self._superseded.get(tp, {}).pop(record.offset, None)
        done = self._done.get(tp)
        if done and record.offset in done:
            # redelivered by a rewind but already acked before it
            done.discard(record.offset)
            pending[record.offset] = ACK
            logger.debug(f"Skipping already acked {tp.topic}/{tp.partition}/{record.offset}")
            return None
        gen = self._generation.setdefault(tp, 0)
        pending[record.offset] = None
        key = (tp, record.offset)
        self._delivered_gen[key] = gen
        self._attempts[key] = self._attempts.get(key, 0) + 1
        MESSAGES_RECEIVED.labels(topic=self.topic).inc()
        OUTSTANDING_MESSAGES.labels(topic=self.topic).inc()
        return EventMessage(
            data=record.value,
            message_id=f"{tp.topic}/{tp.partition}/{record.offset}",
            delivery_attempt=self._attempts[key],
            on_ack=lambda: self._settlements.put((tp, record.offset, gen, ACK)),
            on_nack=lambda: self._settlements.put((tp, record.offset, gen, NACK)),
        )

    def _apply_settlements(self) -> None:
        touched: set[TopicPartition] = set()
        while True:
            try:
                tp, offset, gen, outcome = self._settlements.get_nowait()
            except queue.Empty:
                break
            MESSAGES_SETTLED.labels(topic=self.topic, outcome=outcome).inc()
            OUTSTANDING_MESSAGES.labels(topic=self.topic).dec()
            pending = self._pending.get(tp)
            if pending is not None and offset in pending and self._delivered_gen.get((tp, offset)) == gen:
                if outcome == ACK:
                    pending[offset] = ACK
                else:
                    self._rewind(tp, offset)
                touched.add(tp)
            elif self._superseded.get(tp, {}).get(offset) == gen:
                # handle dropped by a rewind before it settled
                del self._superseded[tp][offset]
                if outcome == ACK:
                    self._done.setdefault(tp, set()).add(offset)
            else:
                logger.debug(f"Ignoring stale {outcome} for {tp.topic}/{tp.partition}/{offset}")
        if touched:
            self._commit(touched)

    def _rewind(self, tp: TopicPartition, offset: int) -> None:
        """Seek back to ``offset``; offsets below it keep their handles.

        Later offsets are delivered again. Those already acked, or acked
        before their redelivery arrives, are skipped instead of handed out twice.
        """
        pending = self._pending[tp]
        superseded = self._superseded.setdefault(tp, {})
        done = self._done.setdefault(tp, set())
        for off in [o for o in pending if o >= offset]:
            state = pending.pop(off)
            gen = self._delivered_gen.pop((tp, off), None)
            if off == offset:
                continue
            if state == ACK:
                done.add(off)
            elif gen is not None:
                superseded[off] = gen
        self._generation[tp] = self._generation.get(tp, 0) + 1
        self._consumer.seek(tp, offset)
        logger.info(f"Rewound {tp.topic}/{tp.partition} to offset {offset} for redelivery")

    def _commit(self, partitions: set[TopicPartition]) -> None:
        offsets: dict[TopicPartition, OffsetAndMetadata] = {}
        for tp in partitions:
            pending = self._pending.get(tp)
            last = None
            while pending:
                off, state = next(iter(pending.items()))
                if state != ACK:
                    break
                pending.popitem(last=False)
                self._attempts.pop((tp, off), None)
                self._delivered_gen.pop((tp, off), None)
                last = off
            if last is not None:
                offsets[tp] = _offset_meta(last + 1)
        if not offsets:
            return
        try:
            self._consumer.commit(offsets=offsets)
            OFFSET_COMMITS.labels(topic=self.topic).inc()
        except KafkaError as e:
            # uncommitted records are redelivered after restart or rebalance
            logger.error(f"Offset commit on {self.topic} failed: {e}")

    def _on_revoked(self, revoked) -> None:
        self._apply_settlements()
        revoked = set(revoked)
        for tp in revoked:
            self._pending.pop(tp, None)
            self._superseded.pop(tp, None)
            self._done.pop(tp, None)
            self._generation[tp] = self._generation.get(tp, 0) + 1
        for per_offset in (self._attempts, self._delivered_gen):
            for key in [k for k in per_offset if k[0] in revoked]:
                del per_offset[key]
        logger.info(f"Revoked partitions: {sorted((tp.topic, tp.partition) for tp in revoked)}")

    def close(self) -> None:
        if self._consumer is None:
            return
        self._apply_settlements()
        self._consumer.close(autocommit=False)
        self._consumer = None
        logger.info(f"Subscription to {self.topic} closed")
