"""Per-conversation accumulation of inbound messages into OPEN batches."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from todo_bot.queue.models import AddResult, CloseReason
from todo_bot.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OpenBatch:
    """In-memory state of one conversation's OPEN batch."""

    batch_id: str
    conversation_id: str
    created_at: datetime
    deadline: datetime
    message_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


@dataclass(slots=True)
class ClosedBatch:
    """A batch the accumulator has just stopped accepting messages for."""

    batch_id: str
    conversation_id: str
    message_ids: tuple[str, ...]
    reason: CloseReason


class BatchAccumulator:
    """Owns the "current OPEN batch per conversation" mapping.

    Each conversation has its own re-entrant lock, so adds for different
    conversations never serialize against each other. Callers that need to
    pair an ``add`` with a store write hold :meth:`conversation_lock` across
    both, which keeps :meth:`tick_expired` from closing the batch in between.
    """

    def __init__(
        self,
        *,
        idle_window_seconds: float = 30.0,
        max_batch_size: int = 10,
        clock: Callable[[], datetime] = utc_now,
        batch_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.idle_window = timedelta(seconds=idle_window_seconds)
        self.max_batch_size = max_batch_size
        self._clock = clock
        self._batch_id_factory = batch_id_factory or (lambda: str(uuid4()))
        self._open: dict[str, OpenBatch] = {}
        self._just_flushed: dict[str, OpenBatch] = {}
        self._locks: dict[str, _LockEntry] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def conversation_lock(self, conversation_id: str) -> Iterator[None]:
        """Hold the conversation's lock; it is dropped once no batch or holder needs it."""

        entry = self._acquire_entry(conversation_id)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(conversation_id, entry)

    def add(
        self,
        conversation_id: str,
        message_id: str,
        *,
        now: datetime | None = None,
    ) -> AddResult:
        """Append a message to the conversation's OPEN batch, creating it if absent.

        The inactivity deadline restarts at ``now + idle_window``. Reaching
        ``max_batch_size`` closes the batch immediately (``flushed=True``).
        """

        now = now or self._clock()
        with self.conversation_lock(conversation_id):
            self._just_flushed.pop(conversation_id, None)
            batch = self._open.get(conversation_id)
            created = batch is None
            if batch is None:
                batch = OpenBatch(
                    batch_id=self._batch_id_factory(),
                    conversation_id=conversation_id,
                    created_at=now,
                    deadline=now + self.idle_window,
                )
                self._open[conversation_id] = batch
                logger.debug("Opened batch %s for conversation %s", batch.batch_id, conversation_id)

            batch.message_ids.append(message_id)
            batch.deadline = now + self.idle_window
            position = len(batch.message_ids) - 1
            flushed = len(batch.message_ids) >= self.max_batch_size
            if flushed:
                del self._open[conversation_id]
                self._just_flushed[conversation_id] = batch
                logger.info(
                    "Batch %s reached size limit (%d messages)",
                    batch.batch_id,
                    len(batch.message_ids),
                )
            return AddResult(
                batch_id=batch.batch_id,
                conversation_id=conversation_id,
                message_id=message_id,
                position=position,
                created=created,
                flushed=flushed,
            )

    def commit(self, result: AddResult) -> None:
        """Forget the undo state of an ``add`` whose persistence succeeded."""

        if not result.flushed:
            return
        with self.conversation_lock(result.conversation_id):
            batch = self._just_flushed.get(result.conversation_id)
            if batch is not None and batch.batch_id == result.batch_id:
                del self._just_flushed[result.conversation_id]

    def rollback(self, result: AddResult) -> None:
        """Undo an ``add`` whose persistence failed."""

        with self.conversation_lock(result.conversation_id):
            batch = self._open.get(result.conversation_id)
            if batch is None and result.flushed:
                # The add closed the batch; reopen it without the failed message.
                batch = self._just_flushed.pop(result.conversation_id, None)
                if batch is None or batch.batch_id != result.batch_id:
                    return
                self._open[result.conversation_id] = batch
            if batch is None or batch.batch_id != result.batch_id:
                return
            if batch.message_ids and batch.message_ids[-1] == result.message_id:
                batch.message_ids.pop()
            if not batch.message_ids:
                del self._open[result.conversation_id]

    def tick_expired(self, now: datetime | None = None) -> list[str]:
        """Close every OPEN batch whose inactivity deadline has elapsed."""

        return [closed.batch_id for closed in self.close_expired(now)]

    def close_expired(
        self,
        now: datetime | None = None,
        *,
        on_close: Callable[[ClosedBatch], None] | None = None,
    ) -> list[ClosedBatch]:
        """Like :meth:`tick_expired`, returning the closed batches.

        ``on_close`` runs under the conversation lock, before another add can
        open the next batch. If it raises, the batch stays open.
        """

        now = now or self._clock()
        candidates = [
            conversation_id
            for conversation_id, batch in list(self._open.items())
            if batch.deadline <= now
        ]
        closed: list[ClosedBatch] = []
        for conversation_id in candidates:
            with self.conversation_lock(conversation_id):
                batch = self._open.get(conversation_id)
                # Re-check under the lock: a concurrent add may have pushed the deadline.
                if batch is None or batch.deadline > now:
                    continue
                closed_batch = _to_closed(batch, CloseReason.IDLE_TIMEOUT)
                if on_close is not None:
                    on_close(closed_batch)
                del self._open[conversation_id]
                closed.append(closed_batch)
                logger.info(
                    "Batch %s idle for %ss, closing with %d messages",
                    batch.batch_id,
                    self.idle_window.total_seconds(),
                    len(batch.message_ids),
                )
        return closed

    def flush(
        self,
        conversation_id: str | None = None,
        *,
        reason: CloseReason = CloseReason.FLUSH,
        on_close: Callable[[ClosedBatch], None] | None = None,
    ) -> list[ClosedBatch]:
        """Force-close one conversation's OPEN batch, or all of them."""

        conversation_ids = (
            [conversation_id] if conversation_id is not None else list(self._open.keys())
        )
        closed: list[ClosedBatch] = []
        for key in conversation_ids:
            with self.conversation_lock(key):
                batch = self._open.get(key)
                if batch is None:
                    continue
                closed_batch = _to_closed(batch, reason)
                if on_close is not None:
                    on_close(closed_batch)
                del self._open[key]
                closed.append(closed_batch)
        return closed

    def next_deadline(self) -> datetime | None:
        deadlines = [batch.deadline for batch in list(self._open.values())]
        return min(deadlines) if deadlines else None

    def open_batches(self) -> list[OpenBatch]:
        """Snapshot of OPEN batches, oldest first."""

        snapshot = [
            OpenBatch(
                batch_id=batch.batch_id,
                conversation_id=batch.conversation_id,
                created_at=batch.created_at,
                deadline=batch.deadline,
                message_ids=list(batch.message_ids),
            )
            for batch in list(self._open.values())
        ]
        return sorted(snapshot, key=lambda batch: batch.created_at)

    def _acquire_entry(self, conversation_id: str) -> _LockEntry:
        with self._registry_lock:
            entry = self._locks.get(conversation_id)
            if entry is None:
                entry = _LockEntry()
                self._locks[conversation_id] = entry
            entry.users += 1
            return entry

    def _release_entry(self, conversation_id: str, entry: _LockEntry) -> None:
        with self._registry_lock:
            entry.users -= 1
            if (
                entry.users == 0
                and conversation_id not in self._open
                and conversation_id not in self._just_flushed
            ):
                self._locks.pop(conversation_id, None)


def _to_closed(batch: OpenBatch, reason: CloseReason) -> ClosedBatch:
    return ClosedBatch(
        batch_id=batch.batch_id,
        conversation_id=batch.conversation_id,
        message_ids=tuple(batch.message_ids),
        reason=reason,
    )
