"""Queue manager: accumulation, dispatch, retry policy and lifecycle."""

from __future__ import annotations

import logging
import queue
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TypeVar
from uuid import uuid4

from todo_bot.queue.accumulator import BatchAccumulator, ClosedBatch
from todo_bot.queue.failure_classifier import FAILURE_CLASSIFIER_VERSION
from todo_bot.queue.models import (
    AddResult,
    BatchState,
    BatchView,
    CloseReason,
    DeliveryResult,
    MessageCreate,
    RecoverySummary,
)
from todo_bot.queue.pipeline import DeliveryPipeline
from todo_bot.queue.repository import QueueRepository
from todo_bot.queue.retry_policy import RetryPolicy
from todo_bot.storage.common import StoreError, retry_store_call, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueueClosedError(RuntimeError):
    """Raised by ``add`` once shutdown has begun."""


class BatchOutcome(str, Enum):
    """What one ``process_batch`` call did with a batch."""

    DELIVERED = "delivered"
    RETRIED = "retried"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate counters for CLI reporting and tests."""

    processed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: BatchOutcome) -> None:
        if outcome is BatchOutcome.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if outcome is BatchOutcome.DELIVERED:
            self.delivered += 1
        elif outcome is BatchOutcome.RETRIED:
            self.retried += 1
        else:
            self.failed += 1


class QueueManager:
    """Owns the batch state machine for one process.

    Inbound messages are persisted under their conversation's lock and routed
    into the accumulator. A ticker thread closes idle batches and offers due
    CLOSED batches to a bounded work queue; worker threads claim them, run the
    delivery pipeline and apply the retry policy. Use :meth:`recover` once
    before :meth:`start`, and :meth:`shutdown` to stop.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        pipeline: DeliveryPipeline,
        accumulator: BatchAccumulator | None = None,
        retry_policy: RetryPolicy | None = None,
        tick_interval_seconds: float = 1.0,
        worker_count: int = 4,
        work_queue_size: int = 100,
        store_retry_attempts: int = 3,
        store_retry_base_seconds: float = 0.2,
        graceful_shutdown_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.accumulator = accumulator or BatchAccumulator(clock=clock)
        self.retry_policy = retry_policy or RetryPolicy()
        self.tick_interval_seconds = tick_interval_seconds
        self.worker_count = worker_count
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_base_seconds = store_retry_base_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._clock = clock

        self._work_queue: queue.Queue[str] = queue.Queue(maxsize=work_queue_size)
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

        self._accepting = True
        self._active_adds = 0
        self._adds_cond = threading.Condition()

        self._halt = threading.Event()
        self._stop_requested = threading.Event()
        self._stop_reason: str | None = None
        self._ticker_thread: threading.Thread | None = None
        self._worker_threads: list[threading.Thread] = []
        self._shut_down = False

    @property
    def is_accepting(self) -> bool:
        return self._accepting

    # -- inbound ----------------------------------------------------------------

    def add(
        self,
        conversation_id: str,
        text: str,
        received_at: datetime | None = None,
    ) -> AddResult:
        """Persist one inbound message and route it into its OPEN batch.

        Returns once the message is durable. Store errors propagate to the
        caller with the accumulator left unchanged.
        """

        with self._adds_cond:
            if not self._accepting:
                raise QueueClosedError("Queue is shutting down; message rejected.")
            self._active_adds += 1
        try:
            result = self._add_locked(conversation_id, text, received_at)
        finally:
            with self._adds_cond:
                self._active_adds -= 1
                self._adds_cond.notify_all()

        if result.flushed:
            self._offer(result.batch_id)
        return result

    def _add_locked(
        self,
        conversation_id: str,
        text: str,
        received_at: datetime | None,
    ) -> AddResult:
        now = self._clock()
        message = MessageCreate(
            message_id=str(uuid4()),
            conversation_id=conversation_id,
            text=text,
            received_at=received_at or now,
        )
        with self.accumulator.conversation_lock(conversation_id):
            result = self.accumulator.add(conversation_id, message.message_id, now=now)
            try:
                self.repository.save_message(
                    message,
                    batch_id=result.batch_id,
                    position=result.position,
                    close_reason=CloseReason.SIZE_LIMIT if result.flushed else None,
                    now=now,
                )
            except StoreError:
                self.accumulator.rollback(result)
                raise
            self.accumulator.commit(result)
        logger.debug(
            "Queued message %s into batch %s at position %d",
            message.message_id,
            result.batch_id,
            result.position,
        )
        return result

    def flush(self, conversation_id: str | None = None) -> list[str]:
        """Close OPEN batches now instead of waiting for the idle window."""

        closed = self.accumulator.flush(
            conversation_id,
            reason=CloseReason.FLUSH,
            on_close=self._persist_close,
        )
        for batch in closed:
            self._offer(batch.batch_id)
        return [batch.batch_id for batch in closed]

    # -- recovery and operator actions ------------------------------------------

    def recover(self) -> RecoverySummary:
        """Reconcile persisted state left by a previous process.

        OPEN batches are closed, PROCESSING batches go back to CLOSED with
        their attempt count kept and a backoff applied, FAILED batches stay
        dead-lettered. Safe to run more than once.
        """

        now = self._clock()
        summary = RecoverySummary()
        summary.closed_open = len(
            self.repository.close_open_batches(reason=CloseReason.RECOVERY, now=now),
        )
        for batch in self.repository.list_batches(states=(BatchState.PROCESSING,)):
            delay = self.retry_policy.delay_for(max(batch.attempt_count, 1))
            if self.repository.requeue_interrupted(
                batch_id=batch.batch_id,
                next_attempt_at=now + timedelta(seconds=delay),
            ):
                summary.requeued_processing += 1
        summary.pending_closed = len(self.repository.list_batches(states=(BatchState.CLOSED,)))
        summary.dead_letters = len(self.repository.list_dead_letters())
        logger.info(
            "Recovery: closed %d open, requeued %d interrupted, %d pending, %d dead letters",
            summary.closed_open,
            summary.requeued_processing,
            summary.pending_closed,
            summary.dead_letters,
        )
        return summary

    def pending(self) -> list[BatchView]:
        return self.repository.list_pending()

    def dead_letters(self) -> list[BatchView]:
        return self.repository.list_dead_letters()

    def retry_dead_letter(self, batch_id: str) -> None:
        self.repository.retry_dead_letter(batch_id=batch_id, now=self._clock())
        logger.info("Dead letter %s requeued by operator", batch_id)
        self._offer(batch_id)

    # -- dispatch ---------------------------------------------------------------

    def start(self) -> None:
        """Start the ticker and the worker pool."""

        if self._ticker_thread is not None:
            return
        self._halt.clear()
        for index in range(self.worker_count):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(f"worker-{index + 1}",),
                name=f"todo-bot-worker-{index + 1}",
                daemon=True,
            )
            thread.start()
            self._worker_threads.append(thread)
        self._ticker_thread = threading.Thread(
            target=self._tick_loop,
            name="todo-bot-ticker",
            daemon=True,
        )
        self._ticker_thread.start()
        logger.info("Queue manager started with %d workers", self.worker_count)

    def tick(self, now: datetime | None = None) -> list[str]:
        """Close idle batches and offer due CLOSED batches to the workers."""

        now = now or self._clock()
        self.accumulator.close_expired(now, on_close=self._persist_close)
        due = self.repository.list_due_batch_ids(now=now, limit=self._work_queue.maxsize or 100)
        return [batch_id for batch_id in due if self._offer(batch_id)]

    def run_pending(self, now: datetime | None = None) -> WorkerRunSummary:
        """Synchronously close idle batches and process every due batch once."""

        now = now or self._clock()
        self.accumulator.close_expired(now, on_close=self._persist_close)
        summary = WorkerRunSummary()
        for batch_id in self.repository.list_due_batch_ids(now=now):
            summary.record(self.process_batch(batch_id, now=now))
        return summary

    def process_batch(
        self,
        batch_id: str,
        *,
        worker_id: str = "inline",
        now: datetime | None = None,
    ) -> BatchOutcome:
        """Claim one batch and drive it through extraction and delivery.

        A store error after the claim sends the batch back to CLOSED with a
        backoff instead of leaving it PROCESSING until the next restart.
        """

        now = now or self._clock()
        if self.pipeline.has_pending_call(batch_id):
            logger.info("Batch %s has a timed-out sink append running; not claiming", batch_id)
            return BatchOutcome.SKIPPED
        batch = self._with_store_retry(
            "claim",
            lambda: self.repository.claim_batch(batch_id=batch_id, worker_id=worker_id, now=now),
        )
        if batch is None:
            return BatchOutcome.SKIPPED

        logger.info(
            "Processing batch %s (%d messages, attempt %d)",
            batch_id,
            batch.message_count,
            batch.attempt_count,
        )
        try:
            return self._deliver_claimed(batch)
        except StoreError as error:
            if self._requeue_after_store_error(batch, error):
                return BatchOutcome.RETRIED
            raise

    def _deliver_claimed(self, batch: BatchView) -> BatchOutcome:
        batch_id = batch.batch_id
        messages = self._with_store_retry(
            "load_messages",
            lambda: self.repository.get_batch_messages(batch_id=batch_id),
        )
        result = self.pipeline.process(batch, messages)
        if result.ok:
            self._with_store_retry(
                "complete",
                lambda: self.repository.complete_batch(batch_id=batch_id),
            )
            logger.info(
                "Batch %s delivered with %d items%s",
                batch_id,
                len(result.items),
                " (receipt already recorded)" if result.delivery_skipped else "",
            )
            return BatchOutcome.DELIVERED
        return self._retry_or_fail(batch=batch, result=result)

    def _requeue_after_store_error(self, batch: BatchView, error: StoreError) -> bool:
        delay = self.retry_policy.delay_for(max(batch.attempt_count, 1))
        next_attempt_at = self._clock() + timedelta(seconds=delay)
        try:
            requeued = self._with_store_retry(
                "requeue",
                lambda: self.repository.requeue_interrupted(
                    batch_id=batch.batch_id,
                    next_attempt_at=next_attempt_at,
                    error_summary=f"Store error during attempt: {error}"[:500],
                ),
            )
        except StoreError:
            logger.exception("Batch %s stays PROCESSING until recovery", batch.batch_id)
            return False
        if requeued:
            logger.warning(
                "Batch %s attempt %d hit a store error (%s); requeued in %.1fs",
                batch.batch_id,
                batch.attempt_count,
                error,
                delay,
            )
        return requeued

    def _retry_or_fail(self, *, batch: BatchView, result: DeliveryResult) -> BatchOutcome:
        classification = result.error
        if classification is None:
            raise RuntimeError("Failed delivery result must carry a classification.")
        details = {
            **classification.to_event_details(stage=result.stage or "unknown"),
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
        }

        if classification.retryable and self.retry_policy.retries_left(batch.attempt_count):
            delay = self.retry_policy.delay_for(batch.attempt_count)
            next_attempt_at = self._clock() + timedelta(seconds=delay)
            self._with_store_retry(
                "schedule_retry",
                lambda: self.repository.schedule_retry(
                    batch_id=batch.batch_id,
                    next_attempt_at=next_attempt_at,
                    failure_class=classification.failure_class,
                    error_summary=classification.error_summary,
                    details={**details, "delay_seconds": round(delay, 3)},
                ),
            )
            logger.warning(
                "Batch %s attempt %d failed (%s); retrying in %.1fs",
                batch.batch_id,
                batch.attempt_count,
                classification.failure_class.value,
                delay,
            )
            return BatchOutcome.RETRIED

        self._with_store_retry(
            "fail",
            lambda: self.repository.fail_batch(
                batch_id=batch.batch_id,
                failure_class=classification.failure_class,
                error_summary=classification.error_summary,
                details={**details, "attempt": batch.attempt_count},
            ),
        )
        logger.error(
            "Batch %s dead-lettered after %d attempts (%s): %s",
            batch.batch_id,
            batch.attempt_count,
            classification.failure_class.value,
            classification.error_summary,
        )
        return BatchOutcome.FAILED

    def _offer(self, batch_id: str) -> bool:
        if self._ticker_thread is None or self._halt.is_set():
            return False
        with self._in_flight_lock:
            if batch_id in self._in_flight:
                return False
            try:
                self._work_queue.put_nowait(batch_id)
            except queue.Full:
                # Stays CLOSED in the store and is offered again on the next tick.
                return False
            self._in_flight.add(batch_id)
        return True

    def _persist_close(self, batch: ClosedBatch) -> None:
        self._with_store_retry(
            "close",
            lambda: self.repository.close_batch(
                batch_id=batch.batch_id,
                reason=batch.reason,
                now=self._clock(),
            ),
        )
        logger.info(
            "Batch %s closed (%s) with %d messages",
            batch.batch_id,
            batch.reason.value,
            len(batch.message_ids),
        )

    def _with_store_retry(self, operation: str, call: Callable[[], T]) -> T:
        return retry_store_call(
            operation,
            call,
            attempts=self.store_retry_attempts,
            base_seconds=self.store_retry_base_seconds,
        )

    def _tick_loop(self) -> None:
        while not self._halt.wait(self.tick_interval_seconds):
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Ticker error")

    def _worker_loop(self, worker_id: str) -> None:
        while True:
            try:
                batch_id = self._work_queue.get(timeout=0.2)
            except queue.Empty:
                if self._halt.is_set():
                    return
                continue
            try:
                # After halt, queued ids stay CLOSED in the store for the next run.
                if not self._halt.is_set():
                    self.process_batch(batch_id, worker_id=worker_id)
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s failed on batch %s", worker_id, batch_id)
            finally:
                with self._in_flight_lock:
                    self._in_flight.discard(batch_id)
                self._work_queue.task_done()

    # -- lifecycle --------------------------------------------------------------

    def request_stop(self, reason: str) -> None:
        if not self._stop_requested.is_set():
            logger.info("Stop requested (%s)", reason)
            self._stop_reason = reason
        self._stop_requested.set()

    def wait_until_stopped(self, poll_seconds: float = 0.5) -> str | None:
        """Block until :meth:`request_stop` is called; returns the stop reason."""

        while not self._stop_requested.wait(poll_seconds):
            pass
        return self._stop_reason

    def shutdown(self) -> None:
        """Stop accepting, drain workers, persist OPEN batches, close the store.

        Workers get ``graceful_shutdown_seconds`` to finish their current
        batch. A worker still running after that is waited for anyway: the
        store is never closed under a live worker.
        """

        if self._shut_down:
            return
        self._shut_down = True
        with self._adds_cond:
            self._accepting = False
            self._adds_cond.wait_for(lambda: self._active_adds == 0)
        logger.info("Queue manager shutting down")

        self._halt.set()
        deadline = time.monotonic() + self.graceful_shutdown_seconds
        threads = [*self._worker_threads]
        if self._ticker_thread is not None:
            threads.append(self._ticker_thread)
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning(
                    "Thread %s still busy after %.1fs grace; waiting for its current batch",
                    thread.name,
                    self.graceful_shutdown_seconds,
                )
                # Collaborator calls are bounded by the attempt deadline.
                thread.join()
        self._worker_threads = []
        self._ticker_thread = None

        try:
            closed = self.accumulator.flush(
                reason=CloseReason.SHUTDOWN,
                on_close=self._persist_close,
            )
            logger.info("Persisted %d open batches as closed", len(closed))
        finally:
            self.pipeline.close(timeout=max(0.0, deadline - time.monotonic()))
            self.repository.close()
        logger.info("Queue manager stopped")

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        """Route SIGINT/SIGTERM to :meth:`request_stop` while the block runs."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
