from __future__ import annotations
import threading
import time
from datetime import timedelta
import pytest
from weather_analytics.infrastructure.batching import BatchAccumulator, BatchConfig
from conftest import make_message


class RecordingHandler:
    def __init__(self, settle=True, fail=False):
        self.batches = []
        self.settle = settle
        self.fail = fail
        self.flushed = threading.Event()

    def __call__(self, batch):
        self.batches.append(list(batch))
        if self.settle:
            for m in batch:
                m.ack()
        self.flushed.set()
        if self.fail:
            raise RuntimeError("handler exploded")


def test_batch_config_rejects_bad_values():
    with pytest.raises(ValueError):
        BatchConfig(max_batch_size=0)
    with pytest.raises(ValueError):
        BatchConfig(max_wait_time=timedelta(0))


def test_flushes_when_size_reached():
    handler = RecordingHandler()
    acc = BatchAccumulator(BatchConfig(max_batch_size=3), handler, name="size")
    msgs = [make_message({"n": i}) for i in range(4)]
    for m in msgs:
        acc.add_message(m)
    assert [len(b) for b in handler.batches] == [3]
    assert handler.batches[0] == msgs[:3]
    assert len(acc) == 1
    assert acc.flush_count == 1


def test_tick_flushes_only_non_empty_buffer():
    handler = RecordingHandler()
    acc = BatchAccumulator(BatchConfig(max_batch_size=10), handler, name="tick")
    assert acc.tick() is False
    acc.add_message(make_message({"n": 1}))
    assert acc.tick() is True
    assert len(handler.batches) == 1
    assert acc.tick() is False


def test_timer_flushes_partial_batch():
    handler = RecordingHandler()
    acc = BatchAccumulator(BatchConfig(max_batch_size=100, max_wait_time=timedelta(milliseconds=50)), handler, name="timer")
    acc.start()
    try:
        msg = make_message({"n": 1})
        acc.add_message(msg)
        assert handler.flushed.wait(timeout=5)
        assert msg.state == "ack"
    finally:
        acc.stop()


def test_stop_flushes_remaining_messages():
    handler = RecordingHandler()
    acc = BatchAccumulator(BatchConfig(max_batch_size=100), handler, name="stop")
    acc.add_message(make_message({"n": 1}))
    acc.add_message(make_message({"n": 2}))
    acc.stop()
    assert [len(b) for b in handler.batches] == [2]
    assert len(acc) == 0


def test_handler_failure_nacks_unsettled_messages():
    handler = RecordingHandler(settle=False, fail=True)
    acc = BatchAccumulator(BatchConfig(max_batch_size=2), handler, name="fail")
    first, second = make_message({"n": 1}), make_message({"n": 2})
    acc.add_message(first)
    acc.add_message(second)
    assert first.state == "nack"
    assert second.state == "nack"
    # still usable after a failed batch
    acc.add_message(make_message({"n": 3}))
    assert len(acc) == 1


def test_partially_settled_batch_keeps_existing_settlements():
    def handler(batch):
        batch[0].ack()

    acc = BatchAccumulator(BatchConfig(max_batch_size=2), handler, name="partial")
    first, second = make_message({"n": 1}), make_message({"n": 2})
    acc.add_message(first)
    acc.add_message(second)
    assert first.state == "ack"
    assert second.state == "nack"


def test_partial_batch_gets_exactly_one_timer_flush():
    handler = RecordingHandler()
    acc = BatchAccumulator(BatchConfig(max_batch_size=100, max_wait_time=timedelta(milliseconds=20)), handler, name="once")
    acc.start()
    try:
        acc.add_message(make_message({"n": 1}))
        assert handler.flushed.wait(timeout=5)
        # several more intervals pass with an empty buffer
        time.sleep(0.2)
        assert len(handler.batches) == 1
        assert acc.flush_count == 1
    finally:
        acc.stop()
    assert len(handler.batches) == 1


def test_concurrent_producers_and_timer_yield_disjoint_complete_batches():
    handler = RecordingHandler()
    acc = BatchAccumulator(BatchConfig(max_batch_size=7, max_wait_time=timedelta(milliseconds=5)), handler, name="concurrent")
    producers, per_producer = 8, 50
    msgs = [[make_message({"p": p, "n": n}) for n in range(per_producer)] for p in range(producers)]
    start = threading.Event()

    def produce(batch):
        start.wait()
        for i, m in enumerate(batch):
            acc.add_message(m)
            if i % 10 == 0:
                time.sleep(0.002)

    threads = [threading.Thread(target=produce, args=(batch,)) for batch in msgs]
    acc.start()
    for t in threads:
        t.start()
    start.set()
    for t in threads:
        t.join(timeout=10)
    acc.stop()

    delivered = [m.message_id for batch in handler.batches for m in batch]
    expected = {m.message_id for batch in msgs for m in batch}
    assert len(delivered) == len(expected)
    assert set(delivered) == expected
    assert all(0 < len(batch) <= 7 for batch in handler.batches)
    assert all(m.state == "ack" for batch in msgs for m in batch)
