from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import allure
import pytest

from todo_bot.queue.accumulator import BatchAccumulator, ClosedBatch
from todo_bot.queue.models import CloseReason

pytestmark = [
    allure.epic("Message Queue"),
    allure.feature("Batch Accumulation"),
]

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def _accumulator(**kwargs: object) -> BatchAccumulator:
    counter = itertools.count(1)
    return BatchAccumulator(
        batch_id_factory=lambda: f"b{next(counter)}",
        clock=lambda: T0,
        **kwargs,  # type: ignore[arg-type]
    )


def test_adds_within_idle_window_share_one_batch_in_receipt_order() -> None:
    accumulator = _accumulator(idle_window_seconds=30, max_batch_size=10)

    first = accumulator.add("c1", "m1", now=T0)
    second = accumulator.add("c1", "m2", now=T0 + timedelta(seconds=5))
    third = accumulator.add("c1", "m3", now=T0 + timedelta(seconds=20))

    assert first.created is True
    assert second.created is False
    assert {first.batch_id, second.batch_id, third.batch_id} == {"b1"}
    assert [first.position, second.position, third.position] == [0, 1, 2]
    assert [r.flushed for r in (first, second, third)] == [False, False, False]
    assert accumulator.open_batches()[0].message_ids == ["m1", "m2", "m3"]


def test_each_add_restarts_the_inactivity_deadline() -> None:
    accumulator = _accumulator(idle_window_seconds=30)
    accumulator.add("c1", "m1", now=T0)
    accumulator.add("c1", "m2", now=T0 + timedelta(seconds=20))

    assert accumulator.tick_expired(T0 + timedelta(seconds=35)) == []
    assert accumulator.next_deadline() == T0 + timedelta(seconds=50)
    assert accumulator.tick_expired(T0 + timedelta(seconds=50)) == ["b1"]


def test_idle_expiry_closes_exactly_once() -> None:
    accumulator = _accumulator(idle_window_seconds=30)
    accumulator.add("c1", "m1", now=T0)

    assert accumulator.tick_expired(T0 + timedelta(seconds=31)) == ["b1"]
    assert accumulator.tick_expired(T0 + timedelta(seconds=32)) == []
    assert accumulator.tick_expired(T0 + timedelta(hours=1)) == []
    assert accumulator.open_batches() == []


def test_reaching_max_batch_size_closes_immediately() -> None:
    accumulator = _accumulator(max_batch_size=3)
    results = [accumulator.add("c1", f"m{i}", now=T0) for i in range(3)]

    assert [r.flushed for r in results] == [False, False, True]
    assert accumulator.open_batches() == []

    follow_up = accumulator.add("c1", "m3", now=T0)
    assert follow_up.created is True
    assert follow_up.batch_id == "b2"
    assert follow_up.position == 0


def test_conversations_batch_independently() -> None:
    accumulator = _accumulator(idle_window_seconds=30)
    accumulator.add("c1", "m1", now=T0)
    accumulator.add("c2", "m2", now=T0 + timedelta(seconds=10))

    assert accumulator.tick_expired(T0 + timedelta(seconds=30)) == ["b1"]
    assert [batch.conversation_id for batch in accumulator.open_batches()] == ["c2"]


def test_flush_closes_one_or_all_conversations() -> None:
    accumulator = _accumulator()
    accumulator.add("c1", "m1", now=T0)
    accumulator.add("c2", "m2", now=T0)
    accumulator.add("c3", "m3", now=T0)

    only_c2 = accumulator.flush("c2")
    assert [(b.batch_id, b.reason) for b in only_c2] == [("b2", CloseReason.FLUSH)]

    rest = accumulator.flush(reason=CloseReason.SHUTDOWN)
    assert sorted(b.batch_id for b in rest) == ["b1", "b3"]
    assert {b.reason for b in rest} == {CloseReason.SHUTDOWN}
    assert accumulator.flush() == []


def test_rollback_removes_message_and_empty_batch() -> None:
    accumulator = _accumulator()
    first = accumulator.add("c1", "m1", now=T0)
    second = accumulator.add("c1", "m2", now=T0)

    accumulator.rollback(second)
    assert accumulator.open_batches()[0].message_ids == ["m1"]

    accumulator.rollback(first)
    assert accumulator.open_batches() == []


def test_rollback_of_size_flush_reopens_batch_without_failed_message() -> None:
    accumulator = _accumulator(max_batch_size=2)
    accumulator.add("c1", "m1", now=T0)
    flushed = accumulator.add("c1", "m2", now=T0)
    assert flushed.flushed is True

    accumulator.rollback(flushed)

    [reopened] = accumulator.open_batches()
    assert reopened.batch_id == flushed.batch_id
    assert reopened.message_ids == ["m1"]


def test_on_close_failure_keeps_batch_open() -> None:
    accumulator = _accumulator(idle_window_seconds=30)
    accumulator.add("c1", "m1", now=T0)

    def _failing_close(_: ClosedBatch) -> None:
        raise RuntimeError("store unavailable")

    with pytest.raises(RuntimeError):
        accumulator.close_expired(T0 + timedelta(seconds=31), on_close=_failing_close)
    assert [batch.batch_id for batch in accumulator.open_batches()] == ["b1"]

    seen: list[ClosedBatch] = []
    closed = accumulator.close_expired(T0 + timedelta(seconds=31), on_close=seen.append)
    assert [batch.batch_id for batch in closed] == ["b1"]
    assert seen[0].message_ids == ("m1",)
    assert seen[0].reason == CloseReason.IDLE_TIMEOUT


def test_commit_releases_flushed_batch_and_its_lock() -> None:
    accumulator = _accumulator(max_batch_size=2)
    accumulator.add("c1", "m1", now=T0)
    flushed = accumulator.add("c1", "m2", now=T0)
    assert "c1" in accumulator._just_flushed

    accumulator.commit(flushed)

    assert accumulator._just_flushed == {}
    assert accumulator._locks == {}
    accumulator.rollback(flushed)
    assert accumulator.open_batches() == []


def test_conversation_locks_do_not_outlive_their_batches() -> None:
    accumulator = _accumulator(idle_window_seconds=30)
    for index in range(50):
        accumulator.add(f"c{index}", "m1", now=T0)
    assert len(accumulator._locks) == 50

    accumulator.flush("c0")
    accumulator.close_expired(T0 + timedelta(seconds=31))
    assert accumulator._locks == {}

    with accumulator.conversation_lock("c1"), accumulator.conversation_lock("c1"):
        assert set(accumulator._locks) == {"c1"}
    assert accumulator._locks == {}
