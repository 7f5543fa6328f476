"""SQLModel ORM tables for the delivery queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class QueueBatch(SQLModel, table=True):
    __tablename__ = "queue_batches"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_batches_dispatch", "state", "next_attempt_at", "created_at"),
        Index(
            "uq_queue_batches_conversation_open",
            "conversation_id",
            unique=True,
            sqlite_where=text("state = 'open'"),
        ),
    )

    batch_id: str = Field(primary_key=True)
    conversation_id: str = Field(index=True)
    state: str = Field(index=True)
    message_count: int = Field(default=0)
    attempt_count: int = Field(default=0)
    next_attempt_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    close_reason: str | None = None
    worker_id: str | None = Field(default=None, index=True)
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    delivered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    delivered_item_count: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("batch_id", "position", name="uq_queue_messages_batch_position"),
    )

    message_id: str = Field(primary_key=True)
    batch_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_batches.batch_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    conversation_id: str = Field(index=True)
    position: int
    text: str = Field(sa_column=Column(Text, nullable=False))
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueBatchEvent(SQLModel, table=True):
    __tablename__ = "queue_batch_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_batch_events_batch_time", "batch_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    batch_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_batches.batch_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    state_from: str | None = Field(default=None, index=True)
    state_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
