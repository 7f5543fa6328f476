"""Controllers for todo-bot CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from todo_bot.collaborators import (
    AppsScriptSink,
    Extractor,
    JsonlSink,
    LineExtractor,
    OpenRouterExtractor,
    Sink,
)
from todo_bot.config import Settings
from todo_bot.queue.accumulator import BatchAccumulator
from todo_bot.queue.manager import QueueClosedError, QueueManager
from todo_bot.queue.models import BatchView, CloseReason, MessageCreate
from todo_bot.queue.pipeline import DeliveryPipeline
from todo_bot.queue.repository import QueueRepository
from todo_bot.queue.retry_policy import RetryPolicy
from todo_bot.storage.common import StoreError, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DRY_RUN_OUTPUT = Path("todo_items.jsonl")


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the long-running bot process."""

    db_path: Path | None
    dry_run: bool
    output_path: Path | None


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for adding one message by hand."""

    db_path: Path | None
    conversation_id: str
    text: str


@dataclass(slots=True)
class QueueFlushCommand:
    db_path: Path | None
    conversation_id: str | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for pending / dead-letter listings."""

    db_path: Path | None
    limit: int | None = None


@dataclass(slots=True)
class QueueBatchCommand:
    """CLI input for inspect/retry of one batch."""

    db_path: Path | None
    batch_id: str


@dataclass(slots=True)
class QueueGcCommand:
    db_path: Path | None
    days: int


class QueueCliController:
    """Command handlers used by the CLI layer."""

    def serve(self, command: ServeCommand, *, input_lines: Iterable[str]) -> list[str]:
        """Run the queue until input ends or a stop signal arrives.

        Each input line is ``conversation_id<TAB>text``.
        """

        settings = Settings.from_env(db_path=command.db_path)
        if command.dry_run:
            settings.validate()
        else:
            settings.validate_for_delivery()

        with ExitStack() as stack:
            extractor, sink = _collaborators(settings=settings, command=command, stack=stack)
            repository = QueueRepository(
                db_path=settings.db_path,
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            )
            repository.init_schema()
            manager = build_manager(
                settings=settings,
                repository=repository,
                extractor=extractor,
                sink=sink,
            )
            try:
                recovery = manager.recover()
                manager.start()
                with manager.signal_handlers():
                    reader = threading.Thread(
                        target=_pump_messages,
                        args=(manager, input_lines),
                        name="todo-bot-input",
                        daemon=True,
                    )
                    reader.start()
                    reason = manager.wait_until_stopped()
            finally:
                manager.shutdown()

        return [
            (
                "Recovery: "
                f"closed_open={recovery.closed_open} "
                f"requeued_processing={recovery.requeued_processing} "
                f"pending_closed={recovery.pending_closed} "
                f"dead_letters={recovery.dead_letters}"
            ),
            f"Stopped: {reason or 'unknown'}",
        ]

    def add(self, command: QueueAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        text = command.text.strip()
        if not text:
            raise ValueError("Message text must not be empty.")

        with _repository(settings) as repository:
            open_batch = repository.find_open_batch(conversation_id=command.conversation_id)
            batch_id = open_batch.batch_id if open_batch is not None else str(uuid4())
            position = open_batch.message_count if open_batch is not None else 0
            size_reached = position + 1 >= settings.batching.max_batch_size
            message = MessageCreate(
                message_id=str(uuid4()),
                conversation_id=command.conversation_id,
                text=text,
                received_at=utc_now(),
            )
            batch = repository.save_message(
                message,
                batch_id=batch_id,
                position=position,
                close_reason=CloseReason.SIZE_LIMIT if size_reached else None,
            )
        return [
            f"Message queued: {message.message_id}",
            f"Batch: {batch.batch_id} state={batch.state.value} messages={batch.message_count}",
        ]

    def flush(self, command: QueueFlushCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            closed = repository.close_open_batches(
                reason=CloseReason.FLUSH,
                conversation_id=command.conversation_id,
            )
        lines = [f"Closed batches: {len(closed)}"]
        lines.extend(f"  {batch_id}" for batch_id in closed)
        return lines

    def pending(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            batches = repository.list_pending()
        if command.limit is not None:
            batches = batches[: command.limit]
        lines = [f"Pending batches: {len(batches)}"]
        lines.extend(_batch_line(batch) for batch in batches)
        return lines

    def dead_letters(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            batches = repository.list_dead_letters()
        if command.limit is not None:
            batches = batches[: command.limit]
        lines = [f"Dead letters: {len(batches)}"]
        for batch in batches:
            lines.append(_batch_line(batch))
            lines.append(f"    error={batch.error_summary or '-'}")
        return lines

    def inspect(self, command: QueueBatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_batch_details(batch_id=command.batch_id)

        batch = details.batch
        item_count = batch.delivered_item_count
        lines = [
            f"Batch: {batch.batch_id}",
            f"Conversation: {batch.conversation_id}",
            f"State: {batch.state.value}",
            f"Attempts: {batch.attempt_count}",
            f"Next attempt: {batch.next_attempt_at.isoformat()}",
            f"Closed: {batch.close_reason.value if batch.close_reason else '-'}",
            f"Failure class: {batch.failure_class.value if batch.failure_class else '-'}",
            f"Error: {batch.error_summary or '-'}",
            (
                "Delivered: "
                f"{batch.delivered_at.isoformat() if batch.delivered_at else '-'} "
                f"items={item_count if item_count is not None else '-'}"
            ),
            f"Messages: {len(details.messages)}",
        ]
        for message in details.messages:
            lines.append(f"  [{message.position}] {message.text}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.state_from.value if event.state_from else '-'} -> "
                f"{event.state_to.value if event.state_to else '-'}",
            )
        return lines

    def retry(self, command: QueueBatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.retry_dead_letter(batch_id=command.batch_id)
        return [f"Batch re-queued: {command.batch_id}"]

    def gc(self, command: QueueGcCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        cutoff = utc_now() - timedelta(days=command.days)
        with _repository(settings) as repository:
            purged = repository.purge_delivered(older_than=cutoff)
        return [f"Purged delivered batches: {purged} (older than {command.days} days)"]


def build_manager(
    *,
    settings: Settings,
    repository: QueueRepository,
    extractor: Extractor,
    sink: Sink,
) -> QueueManager:
    """Wire a queue manager from settings."""

    pipeline = DeliveryPipeline(
        repository=repository,
        extractor=extractor,
        sink=sink,
        attempt_timeout_seconds=settings.delivery.attempt_timeout_seconds,
        max_concurrent_calls=settings.delivery.worker_count * 2,
    )
    return QueueManager(
        repository=repository,
        pipeline=pipeline,
        accumulator=BatchAccumulator(
            idle_window_seconds=settings.batching.idle_window_seconds,
            max_batch_size=settings.batching.max_batch_size,
        ),
        retry_policy=RetryPolicy(
            max_attempts=settings.delivery.max_attempts,
            base_seconds=settings.delivery.retry_base_seconds,
            max_seconds=settings.delivery.retry_max_seconds,
        ),
        tick_interval_seconds=settings.batching.tick_interval_seconds,
        worker_count=settings.delivery.worker_count,
        work_queue_size=settings.delivery.work_queue_size,
        graceful_shutdown_seconds=settings.delivery.shutdown_grace_seconds(),
    )


def parse_input_line(line: str) -> tuple[str, str] | None:
    """Split ``conversation_id<TAB>text``; ``None`` for blank or malformed lines."""

    conversation_id, separator, text = line.rstrip("\r\n").partition("\t")
    if not separator or not conversation_id.strip() or not text.strip():
        return None
    return conversation_id.strip(), text.strip()


def _pump_messages(manager: QueueManager, input_lines: Iterable[str]) -> None:
    try:
        for line in input_lines:
            parsed = parse_input_line(line)
            if parsed is None:
                if line.strip():
                    logger.warning("Ignoring malformed input line: %r", line[:80])
                continue
            conversation_id, text = parsed
            try:
                manager.add(conversation_id, text)
            except QueueClosedError:
                return
            except StoreError:
                logger.exception("Failed to persist message for conversation %s", conversation_id)
    finally:
        manager.request_stop("end of input")


def _collaborators(
    *,
    settings: Settings,
    command: ServeCommand,
    stack: ExitStack,
) -> tuple[Extractor, Sink]:
    if command.dry_run:
        return LineExtractor(), JsonlSink(command.output_path or DEFAULT_DRY_RUN_OUTPUT)
    extractor = stack.enter_context(
        OpenRouterExtractor(
            api_key=settings.extraction.api_key,
            model=settings.extraction.model,
            base_url=settings.extraction.base_url,
            timeout_seconds=settings.delivery.attempt_timeout_seconds,
        ),
    )
    sink = stack.enter_context(
        AppsScriptSink(
            script_url=settings.sheets.script_url,
            timeout_seconds=settings.delivery.attempt_timeout_seconds,
        ),
    )
    return extractor, sink


def _batch_line(batch: BatchView) -> str:
    return (
        f"  {batch.batch_id} conversation={batch.conversation_id} "
        f"state={batch.state.value} messages={batch.message_count} "
        f"attempts={batch.attempt_count} "
        f"next_attempt_at={batch.next_attempt_at.isoformat()} "
        f"failure_class={batch.failure_class.value if batch.failure_class else '-'}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[QueueRepository]:
    repository = QueueRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
