"""Add manual-processing queue and processed command comments."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "manual_queue",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_name", sa.String(), nullable=False, server_default=""),
        sa.Column("task_url", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("branch", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_manual_queue_status", "manual_queue", ["status"], unique=False)

    op.create_table(
        "processed_comments",
        sa.Column("comment_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("command", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("comment_id"),
    )
    op.create_index(
        "ix_processed_comments_task_id",
        "processed_comments",
        ["task_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_processed_comments_task_id", table_name="processed_comments")
    op.drop_table("processed_comments")
    op.drop_index("ix_manual_queue_status", table_name="manual_queue")
    op.drop_table("manual_queue")
