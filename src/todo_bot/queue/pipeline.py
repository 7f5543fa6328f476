"""Two-step extraction + delivery pipeline for one claimed batch."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from todo_bot.collaborators.base import Extractor, Sink
from todo_bot.queue.failure_classifier import classify_failure
from todo_bot.queue.models import BatchView, DeliveryResult, MessageView
from todo_bot.queue.repository import QueueRepository
from todo_bot.storage.common import StoreError, retry_store_call

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXTRACTION_STAGE = "extraction"
DELIVERY_STAGE = "delivery"


class DeliveryPipeline:
    """Runs extraction then delivery for a batch and reports a classified result.

    The pipeline never raises for collaborator failures; it returns a
    ``DeliveryResult`` whose ``error`` carries the classification. Store
    errors are retried a few times, then propagate to the caller.

    A sink append that overruns its deadline cannot be interrupted. It is
    cancelled if it has not started yet; otherwise it is tracked until it
    returns, and :meth:`has_pending_call` reports the batch as busy so no
    second append for it can start meanwhile. A late successful append
    still records the delivery receipt.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        extractor: Extractor,
        sink: Sink,
        attempt_timeout_seconds: float = 60.0,
        max_concurrent_calls: int = 8,
        store_retry_attempts: int = 3,
        store_retry_base_seconds: float = 0.2,
    ) -> None:
        self.repository = repository
        self.extractor = extractor
        self.sink = sink
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_base_seconds = store_retry_base_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_calls,
            thread_name_prefix="todo-bot-call",
        )
        self._abandoned: dict[str, Future[Any]] = {}
        self._abandoned_cond = threading.Condition()

    def has_pending_call(self, batch_id: str) -> bool:
        """True while a timed-out sink append for ``batch_id`` is still running."""

        with self._abandoned_cond:
            return batch_id in self._abandoned

    def close(self, timeout: float = 0.0) -> None:
        """Wait up to ``timeout`` seconds for timed-out appends, then stop the executor."""

        with self._abandoned_cond:
            settled = self._abandoned_cond.wait_for(lambda: not self._abandoned, timeout=timeout)
            if not settled:
                logger.warning(
                    "Closing with timed-out sink appends still running for: %s",
                    ", ".join(sorted(self._abandoned)),
                )
        self._executor.shutdown(wait=False, cancel_futures=True)

    def process(self, batch: BatchView, messages: Sequence[MessageView]) -> DeliveryResult:
        """Extract items from the batch text and append them to the sink."""

        if self._already_delivered(batch):
            logger.info("Batch %s already has a delivery receipt; skipping sink", batch.batch_id)
            return DeliveryResult(batch_id=batch.batch_id, delivery_skipped=True)

        text = build_extraction_text(messages)
        try:
            items = self._call_with_deadline(
                lambda: self.extractor.extract(text),
                batch_id=batch.batch_id,
            )
        except Exception as error:  # noqa: BLE001
            classification = classify_failure(stage=EXTRACTION_STAGE, error=error)
            logger.warning(
                "Extraction failed for batch %s (%s): %s",
                batch.batch_id,
                classification.failure_class.value,
                classification.error_summary,
            )
            return DeliveryResult(
                batch_id=batch.batch_id,
                error=classification,
                stage=EXTRACTION_STAGE,
            )

        items = list(items)
        logger.info("Extracted %d items from batch %s", len(items), batch.batch_id)
        if items:
            try:
                self._call_with_deadline(
                    lambda: self.sink.append(batch.batch_id, items),
                    batch_id=batch.batch_id,
                    receipt_item_count=len(items),
                )
            except Exception as error:  # noqa: BLE001
                classification = classify_failure(stage=DELIVERY_STAGE, error=error)
                logger.warning(
                    "Delivery failed for batch %s (%s): %s",
                    batch.batch_id,
                    classification.failure_class.value,
                    classification.error_summary,
                )
                return DeliveryResult(
                    batch_id=batch.batch_id,
                    items=items,
                    error=classification,
                    stage=DELIVERY_STAGE,
                )

        self._store_call(
            "mark_delivered",
            lambda: self.repository.mark_delivered(batch_id=batch.batch_id, item_count=len(items)),
        )
        return DeliveryResult(batch_id=batch.batch_id, items=items)

    def _already_delivered(self, batch: BatchView) -> bool:
        if batch.delivered_at is not None:
            return True
        stored = self._store_call(
            "get_batch",
            lambda: self.repository.get_batch(batch_id=batch.batch_id),
        )
        return stored.delivered_at is not None

    def _call_with_deadline(
        self,
        call: Callable[[], T],
        *,
        batch_id: str,
        receipt_item_count: int | None = None,
    ) -> T:
        if self.attempt_timeout_seconds <= 0:
            return call()
        future = self._executor.submit(call)
        try:
            return future.result(timeout=self.attempt_timeout_seconds)
        except FutureTimeoutError:
            # Classified as a transient TIMEOUT failure by the caller.
            if not future.cancel() and receipt_item_count is not None:
                self._track_abandoned(batch_id, future, receipt_item_count)
            raise

    def _track_abandoned(self, batch_id: str, future: Future[Any], item_count: int) -> None:
        logger.warning("Sink append for batch %s overran its deadline; still running", batch_id)
        with self._abandoned_cond:
            self._abandoned[batch_id] = future
        future.add_done_callback(
            lambda done: self._settle_abandoned(batch_id, done, item_count),
        )

    def _settle_abandoned(self, batch_id: str, future: Future[Any], item_count: int) -> None:
        try:
            if future.cancelled() or future.exception() is not None:
                logger.warning("Timed-out sink append for batch %s did not complete", batch_id)
            else:
                logger.warning(
                    "Timed-out sink append for batch %s completed late; recording receipt",
                    batch_id,
                )
                self._store_call(
                    "mark_delivered",
                    lambda: self.repository.mark_delivered(
                        batch_id=batch_id,
                        item_count=item_count,
                    ),
                )
        except StoreError:
            logger.exception("Failed to record late delivery receipt for batch %s", batch_id)
        finally:
            with self._abandoned_cond:
                self._abandoned.pop(batch_id, None)
                self._abandoned_cond.notify_all()

    def _store_call(self, operation: str, call: Callable[[], T]) -> T:
        return retry_store_call(
            operation,
            call,
            attempts=self.store_retry_attempts,
            base_seconds=self.store_retry_base_seconds,
        )


def build_extraction_text(messages: Sequence[MessageView]) -> str:
    """Concatenate message texts in receipt order, one per line."""

    ordered = sorted(messages, key=lambda message: message.position)
    return "\n".join(message.text.strip() for message in ordered if message.text.strip())
