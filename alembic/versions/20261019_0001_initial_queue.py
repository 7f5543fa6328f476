"""Create batch, message and batch event tables for the delivery queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_batches",
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_reason", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_item_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index(
        "ix_queue_batches_conversation_id",
        "queue_batches",
        ["conversation_id"],
        unique=False,
    )
    op.create_index("ix_queue_batches_state", "queue_batches", ["state"], unique=False)
    op.create_index("ix_queue_batches_worker_id", "queue_batches", ["worker_id"], unique=False)
    op.create_index(
        "ix_queue_batches_failure_class",
        "queue_batches",
        ["failure_class"],
        unique=False,
    )
    op.create_index(
        "idx_queue_batches_dispatch",
        "queue_batches",
        ["state", "next_attempt_at", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_queue_batches_conversation_open",
        "queue_batches",
        ["conversation_id"],
        unique=True,
        sqlite_where=sa.text("state = 'open'"),
    )

    op.create_table(
        "queue_messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["queue_batches.batch_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id"),
        sa.UniqueConstraint("batch_id", "position", name="uq_queue_messages_batch_position"),
    )
    op.create_index("ix_queue_messages_batch_id", "queue_messages", ["batch_id"], unique=False)
    op.create_index(
        "ix_queue_messages_conversation_id",
        "queue_messages",
        ["conversation_id"],
        unique=False,
    )

    op.create_table(
        "queue_batch_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("state_from", sa.String(), nullable=True),
        sa.Column("state_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["queue_batches.batch_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_queue_batch_events_batch_id",
        "queue_batch_events",
        ["batch_id"],
        unique=False,
    )
    op.create_index(
        "ix_queue_batch_events_event_type",
        "queue_batch_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "ix_queue_batch_events_state_from",
        "queue_batch_events",
        ["state_from"],
        unique=False,
    )
    op.create_index(
        "ix_queue_batch_events_state_to",
        "queue_batch_events",
        ["state_to"],
        unique=False,
    )
    op.create_index(
        "idx_queue_batch_events_batch_time",
        "queue_batch_events",
        ["batch_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_queue_batch_events_batch_time", table_name="queue_batch_events")
    op.drop_index("ix_queue_batch_events_state_to", table_name="queue_batch_events")
    op.drop_index("ix_queue_batch_events_state_from", table_name="queue_batch_events")
    op.drop_index("ix_queue_batch_events_event_type", table_name="queue_batch_events")
    op.drop_index("ix_queue_batch_events_batch_id", table_name="queue_batch_events")
    op.drop_table("queue_batch_events")
    op.drop_index("ix_queue_messages_conversation_id", table_name="queue_messages")
    op.drop_index("ix_queue_messages_batch_id", table_name="queue_messages")
    op.drop_table("queue_messages")
    op.drop_index("uq_queue_batches_conversation_open", table_name="queue_batches")
    op.drop_index("idx_queue_batches_dispatch", table_name="queue_batches")
    op.drop_index("ix_queue_batches_failure_class", table_name="queue_batches")
    op.drop_index("ix_queue_batches_worker_id", table_name="queue_batches")
    op.drop_index("ix_queue_batches_state", table_name="queue_batches")
    op.drop_index("ix_queue_batches_conversation_id", table_name="queue_batches")
    op.drop_table("queue_batches")
