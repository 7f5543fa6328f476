"""Durable store for queued messages and batch delivery state."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from todo_bot.queue.models import (
    PENDING_STATES,
    BatchDetails,
    BatchEventView,
    BatchState,
    BatchView,
    CloseReason,
    FailureClass,
    MessageCreate,
    MessageView,
)
from todo_bot.storage.alembic_runner import upgrade_head
from todo_bot.storage.common import (
    RecordNotFoundError,
    StoreError,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from todo_bot.storage.sqlmodel_models import QueueBatch, QueueBatchEvent, QueuedMessage

logger = logging.getLogger(__name__)

_RECEIPT_STATES = frozenset(
    {BatchState.PROCESSING.value, BatchState.CLOSED.value, BatchState.FAILED.value},
)


class QueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every public method runs in its own transaction. State transitions are
    conditional updates keyed by ``(batch_id, expected state)``, so two writers
    racing on the same batch resolve to exactly one winner while writes to
    different batches never wait on a Python-level lock.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._closed = False

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise StoreError(f"Schema migration failed for {self.db_path}: {error}") from error

    def close(self) -> None:
        """Checkpoint the WAL into the database file and release engine handles."""

        if self._closed:
            return
        try:
            with self.engine.connect() as connection:
                connection.execute(text("PRAGMA wal_checkpoint(FULL)"))
        except SQLAlchemyError as error:
            raise StoreError(f"Failed to checkpoint {self.db_path}: {error}") from error
        finally:
            self.engine.dispose()
            self._closed = True

    # -- writes ---------------------------------------------------------------

    def save_message(
        self,
        message: MessageCreate,
        *,
        batch_id: str,
        position: int,
        close_reason: CloseReason | None = None,
        now: datetime | None = None,
    ) -> BatchView:
        """Persist a message into its conversation's OPEN batch.

        Creates the OPEN batch row on first use. When ``close_reason`` is set
        the batch is closed in the same transaction.
        """

        now = now or utc_now()
        with self._session() as session:
            batch = session.exec(
                select(QueueBatch).where(QueueBatch.batch_id == batch_id),
            ).one_or_none()
            if batch is None:
                batch = QueueBatch(
                    batch_id=batch_id,
                    conversation_id=message.conversation_id,
                    state=BatchState.OPEN.value,
                    message_count=0,
                    attempt_count=0,
                    next_attempt_at=to_db_datetime(now),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                session.add(batch)
                session.flush()
                self._add_event(
                    session=session,
                    batch_id=batch_id,
                    event_type="opened",
                    state_from=None,
                    state_to=BatchState.OPEN,
                    details={"conversation_id": message.conversation_id},
                )
            elif batch.state != BatchState.OPEN.value:
                raise StoreError(
                    f"Batch {batch_id} is {batch.state}; messages can only join an open batch.",
                )
            elif batch.conversation_id != message.conversation_id:
                raise StoreError(
                    f"Batch {batch_id} belongs to conversation {batch.conversation_id}, "
                    f"not {message.conversation_id}.",
                )

            session.add(
                QueuedMessage(
                    message_id=message.message_id,
                    batch_id=batch_id,
                    conversation_id=message.conversation_id,
                    position=position,
                    text=message.text,
                    received_at=to_db_datetime(message.received_at),
                    created_at=to_db_datetime(now),
                ),
            )
            batch.message_count += 1
            batch.updated_at = to_db_datetime(now)
            if close_reason is not None:
                self._apply_close(session=session, batch=batch, reason=close_reason, now=now)
            session.add(batch)
            session.commit()
            session.refresh(batch)
            return self._to_batch_view(session=session, row=batch)

    def close_batch(
        self,
        *,
        batch_id: str,
        reason: CloseReason,
        now: datetime | None = None,
    ) -> bool:
        """Transition OPEN -> CLOSED; returns False when the batch is not open."""

        now = now or utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == BatchState.OPEN.value,
                )
                .values(
                    state=BatchState.CLOSED.value,
                    closed_at=to_db_datetime(now),
                    close_reason=reason.value,
                    next_attempt_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="closed",
                state_from=BatchState.OPEN,
                state_to=BatchState.CLOSED,
                details={"reason": reason.value},
            )
            session.commit()
            return True

    def close_open_batches(
        self,
        *,
        reason: CloseReason,
        conversation_id: str | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Close every persisted OPEN batch, optionally for one conversation."""

        with self._session() as session:
            statement = select(QueueBatch.batch_id).where(
                QueueBatch.state == BatchState.OPEN.value,
            )
            if conversation_id is not None:
                statement = statement.where(QueueBatch.conversation_id == conversation_id)
            batch_ids = list(session.exec(statement).all())
        return [
            batch_id
            for batch_id in batch_ids
            if self.close_batch(batch_id=batch_id, reason=reason, now=now)
        ]

    def claim_batch(
        self,
        *,
        batch_id: str,
        worker_id: str,
        now: datetime | None = None,
    ) -> BatchView | None:
        """Atomically claim a due CLOSED batch: CLOSED -> PROCESSING, attempt += 1."""

        now = now or utc_now()
        with self._session() as session:
            candidate = session.exec(
                select(QueueBatch).where(
                    QueueBatch.batch_id == batch_id,
                    QueueBatch.state == BatchState.CLOSED.value,
                    QueueBatch.next_attempt_at <= to_db_datetime(now),
                ),
            ).one_or_none()
            if candidate is None:
                return None

            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == BatchState.CLOSED.value,
                    col(QueueBatch.attempt_count) == candidate.attempt_count,
                )
                .values(
                    state=BatchState.PROCESSING.value,
                    attempt_count=candidate.attempt_count + 1,
                    worker_id=worker_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            claimed = session.exec(
                select(QueueBatch).where(QueueBatch.batch_id == batch_id),
            ).one()
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="claimed",
                state_from=BatchState.CLOSED,
                state_to=BatchState.PROCESSING,
                details={"worker_id": worker_id, "attempt": claimed.attempt_count},
            )
            session.commit()
            session.refresh(claimed)
            return self._to_batch_view(session=session, row=claimed)

    def mark_delivered(self, *, batch_id: str, item_count: int) -> bool:
        """Record the delivery receipt on a batch that is not yet finalized.

        Normally the batch is PROCESSING. An append that outlived its attempt
        deadline may land after the batch went back to CLOSED or to FAILED;
        its receipt is still recorded so the next attempt skips the sink.
        """

        now = utc_now()
        with self._session() as session:
            row = session.exec(
                select(QueueBatch).where(QueueBatch.batch_id == batch_id),
            ).one_or_none()
            if row is None or row.state not in _RECEIPT_STATES or row.delivered_at is not None:
                return False
            state = BatchState(row.state)
            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == state.value,
                    col(QueueBatch.delivered_at).is_(None),
                )
                .values(
                    delivered_at=to_db_datetime(now),
                    delivered_item_count=item_count,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="delivery_recorded",
                state_from=state,
                state_to=state,
                details={"item_count": item_count},
            )
            session.commit()
            return True

    def complete_batch(self, *, batch_id: str) -> bool:
        """PROCESSING -> DELIVERED; constituent messages are deleted."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == BatchState.PROCESSING.value,
                )
                .values(
                    state=BatchState.DELIVERED.value,
                    worker_id=None,
                    failure_class=None,
                    error_summary=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            deleted = session.exec(
                sa_delete(QueuedMessage).where(col(QueuedMessage.batch_id) == batch_id),
            )
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="delivered",
                state_from=BatchState.PROCESSING,
                state_to=BatchState.DELIVERED,
                details={"messages_deleted": deleted.rowcount},
            )
            session.commit()
            return True

    def schedule_retry(
        self,
        *,
        batch_id: str,
        next_attempt_at: datetime,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """PROCESSING -> CLOSED with a future ``next_attempt_at``."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == BatchState.PROCESSING.value,
                )
                .values(
                    state=BatchState.CLOSED.value,
                    next_attempt_at=to_db_datetime(next_attempt_at),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="retry_scheduled",
                state_from=BatchState.PROCESSING,
                state_to=BatchState.CLOSED,
                details={
                    "next_attempt_at": to_utc_aware_datetime(next_attempt_at).isoformat(),
                    "failure_class": failure_class.value,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def fail_batch(
        self,
        *,
        batch_id: str,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """PROCESSING -> FAILED (dead letter)."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == BatchState.PROCESSING.value,
                )
                .values(
                    state=BatchState.FAILED.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="dead_lettered",
                state_from=BatchState.PROCESSING,
                state_to=BatchState.FAILED,
                details={
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def requeue_interrupted(
        self,
        *,
        batch_id: str,
        next_attempt_at: datetime,
        error_summary: str = "Interrupted while processing.",
    ) -> bool:
        """PROCESSING -> CLOSED after a crash or a store failure mid-attempt.

        ``attempt_count`` is kept as is.
        """

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == BatchState.PROCESSING.value,
                )
                .values(
                    state=BatchState.CLOSED.value,
                    next_attempt_at=to_db_datetime(next_attempt_at),
                    failure_class=FailureClass.COLLABORATOR_TRANSIENT.value,
                    error_summary=error_summary,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="recovered_interrupted",
                state_from=BatchState.PROCESSING,
                state_to=BatchState.CLOSED,
                details={"next_attempt_at": to_utc_aware_datetime(next_attempt_at).isoformat()},
            )
            session.commit()
            return True

    def retry_dead_letter(self, *, batch_id: str, now: datetime | None = None) -> None:
        """Manual operator retry: FAILED -> CLOSED with a fresh attempt budget."""

        now = now or utc_now()
        with self._session() as session:
            row = session.exec(
                select(QueueBatch).where(QueueBatch.batch_id == batch_id),
            ).one_or_none()
            if row is None:
                raise RecordNotFoundError("Batch", batch_id)
            if row.state != BatchState.FAILED.value:
                raise StoreError(f"Only failed batches can be retried manually, got {row.state}.")

            result = session.exec(
                sa_update(QueueBatch)
                .where(
                    col(QueueBatch.batch_id) == batch_id,
                    col(QueueBatch.state) == BatchState.FAILED.value,
                )
                .values(
                    state=BatchState.CLOSED.value,
                    attempt_count=0,
                    next_attempt_at=to_db_datetime(now),
                    failure_class=None,
                    error_summary=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise StoreError(
                    "Batch state changed concurrently while retrying; "
                    f"please retry command (batch_id={batch_id}).",
                )
            self._add_event(
                session=session,
                batch_id=batch_id,
                event_type="manual_retry",
                state_from=BatchState.FAILED,
                state_to=BatchState.CLOSED,
                details={"previous_attempt_count": row.attempt_count},
            )
            session.commit()

    def delete_message(self, *, message_id: str) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_delete(QueuedMessage).where(col(QueuedMessage.message_id) == message_id),
            )
            session.commit()
            return result.rowcount == 1

    def delete_batch(self, *, batch_id: str) -> bool:
        """Delete a batch with its messages and events."""

        with self._session() as session:
            session.exec(sa_delete(QueuedMessage).where(col(QueuedMessage.batch_id) == batch_id))
            session.exec(
                sa_delete(QueueBatchEvent).where(col(QueueBatchEvent.batch_id) == batch_id),
            )
            result = session.exec(
                sa_delete(QueueBatch).where(col(QueueBatch.batch_id) == batch_id),
            )
            session.commit()
            return result.rowcount == 1

    def purge_delivered(self, *, older_than: datetime) -> int:
        """Drop DELIVERED archive rows last touched before ``older_than``."""

        with self._session() as session:
            batch_ids = list(
                session.exec(
                    select(QueueBatch.batch_id).where(
                        QueueBatch.state == BatchState.DELIVERED.value,
                        QueueBatch.updated_at < to_db_datetime(older_than),
                    ),
                ).all(),
            )
        return sum(1 for batch_id in batch_ids if self.delete_batch(batch_id=batch_id))

    # -- reads ----------------------------------------------------------------

    def get_batch(self, *, batch_id: str) -> BatchView:
        with self._session() as session:
            row = session.exec(
                select(QueueBatch).where(QueueBatch.batch_id == batch_id),
            ).one_or_none()
            if row is None:
                raise RecordNotFoundError("Batch", batch_id)
            return self._to_batch_view(session=session, row=row)

    def find_open_batch(self, *, conversation_id: str) -> BatchView | None:
        with self._session() as session:
            row = session.exec(
                select(QueueBatch).where(
                    QueueBatch.conversation_id == conversation_id,
                    QueueBatch.state == BatchState.OPEN.value,
                ),
            ).one_or_none()
            if row is None:
                return None
            return self._to_batch_view(session=session, row=row)

    def get_message(self, *, message_id: str) -> MessageView:
        with self._session() as session:
            row = session.exec(
                select(QueuedMessage).where(QueuedMessage.message_id == message_id),
            ).one_or_none()
        if row is None:
            raise RecordNotFoundError("Message", message_id)
        return _to_message_view(row)

    def get_batch_messages(self, *, batch_id: str) -> list[MessageView]:
        """Messages of a batch in receipt order."""

        with self._session() as session:
            rows = session.exec(
                select(QueuedMessage)
                .where(QueuedMessage.batch_id == batch_id)
                .order_by(col(QueuedMessage.position).asc()),
            ).all()
        return [_to_message_view(row) for row in rows]

    def list_pending(self) -> list[BatchView]:
        """Every batch not yet DELIVERED, oldest first."""

        return self.list_batches(states=PENDING_STATES)

    def list_dead_letters(self) -> list[BatchView]:
        return self.list_batches(states=(BatchState.FAILED,))

    def list_batches(
        self,
        *,
        states: tuple[BatchState, ...] | None = None,
        limit: int | None = None,
    ) -> list[BatchView]:
        with self._session() as session:
            statement = select(QueueBatch).order_by(
                col(QueueBatch.created_at).asc(),
                col(QueueBatch.batch_id).asc(),
            )
            if states is not None:
                statement = statement.where(
                    col(QueueBatch.state).in_([state.value for state in states]),
                )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [self._to_batch_view(session=session, row=row) for row in rows]

    def list_due_batch_ids(self, *, now: datetime, limit: int = 100) -> list[str]:
        """CLOSED batches whose ``next_attempt_at`` has passed, in creation order."""

        with self._session() as session:
            return list(
                session.exec(
                    select(QueueBatch.batch_id)
                    .where(
                        QueueBatch.state == BatchState.CLOSED.value,
                        QueueBatch.next_attempt_at <= to_db_datetime(now),
                    )
                    .order_by(
                        col(QueueBatch.created_at).asc(),
                        col(QueueBatch.batch_id).asc(),
                    )
                    .limit(limit),
                ).all(),
            )

    def get_batch_details(self, *, batch_id: str) -> BatchDetails:
        """Return batch with messages and event stream."""

        batch = self.get_batch(batch_id=batch_id)
        messages = self.get_batch_messages(batch_id=batch_id)
        with self._session() as session:
            event_rows = session.exec(
                select(QueueBatchEvent)
                .where(QueueBatchEvent.batch_id == batch_id)
                .order_by(col(QueueBatchEvent.created_at).asc(), col(QueueBatchEvent.id).asc()),
            ).all()

        events: list[BatchEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                BatchEventView(
                    event_id=row.id or 0,
                    batch_id=row.batch_id,
                    event_type=row.event_type,
                    state_from=BatchState(row.state_from) if row.state_from is not None else None,
                    state_to=BatchState(row.state_to) if row.state_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return BatchDetails(batch=batch, messages=messages, events=events)

    # -- internals ------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._closed:
            raise StoreError(f"Store is closed: {self.db_path}")
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as error:
            logger.error("Store operation failed on %s: %s", self.db_path, error)
            raise StoreError(str(error)) from error

    def _apply_close(
        self,
        *,
        session: Session,
        batch: QueueBatch,
        reason: CloseReason,
        now: datetime,
    ) -> None:
        batch.state = BatchState.CLOSED.value
        batch.closed_at = to_db_datetime(now)
        batch.close_reason = reason.value
        batch.next_attempt_at = to_db_datetime(now)
        self._add_event(
            session=session,
            batch_id=batch.batch_id,
            event_type="closed",
            state_from=BatchState.OPEN,
            state_to=BatchState.CLOSED,
            details={"reason": reason.value},
        )

    def _add_event(
        self,
        *,
        session: Session,
        batch_id: str,
        event_type: str,
        state_from: BatchState | None,
        state_to: BatchState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueBatchEvent(
                batch_id=batch_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )

    def _to_batch_view(self, *, session: Session, row: QueueBatch) -> BatchView:
        message_ids = session.exec(
            select(QueuedMessage.message_id)
            .where(QueuedMessage.batch_id == row.batch_id)
            .order_by(col(QueuedMessage.position).asc()),
        ).all()
        return BatchView(
            batch_id=row.batch_id,
            conversation_id=row.conversation_id,
            message_ids=tuple(message_ids),
            state=BatchState(row.state),
            attempt_count=row.attempt_count,
            next_attempt_at=to_utc_aware_datetime(row.next_attempt_at),
            created_at=to_utc_aware_datetime(row.created_at),
            updated_at=to_utc_aware_datetime(row.updated_at),
            closed_at=to_utc_aware_datetime(row.closed_at) if row.closed_at is not None else None,
            close_reason=CloseReason(row.close_reason) if row.close_reason is not None else None,
            worker_id=row.worker_id,
            failure_class=(
                FailureClass(row.failure_class) if row.failure_class is not None else None
            ),
            error_summary=row.error_summary,
            delivered_at=(
                to_utc_aware_datetime(row.delivered_at) if row.delivered_at is not None else None
            ),
            delivered_item_count=row.delivered_item_count,
        )


def _to_message_view(row: QueuedMessage) -> MessageView:
    return MessageView(
        message_id=row.message_id,
        conversation_id=row.conversation_id,
        batch_id=row.batch_id,
        position=row.position,
        text=row.text,
        received_at=to_utc_aware_datetime(row.received_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )
