"""SQLModel ORM tables for pipeline, watcher and queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class PipelineRow(SQLModel, table=True):
    __tablename__ = "pipelines"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    task_name: str = ""
    current_stage: str = Field(index=True)
    status: str = Field(index=True)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    total_duration_ms: int | None = None


class PipelineStageRow(SQLModel, table=True):
    __tablename__ = "pipeline_stages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "stage", name="uq_pipeline_stages_task_stage"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("pipelines.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    stage: str
    name: str
    status: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    extra_json: str | None = Field(default=None, sa_column=Column(Text))


class PipelineErrorRow(SQLModel, table=True):
    __tablename__ = "pipeline_errors"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("pipelines.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    stage: str
    error: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PrWatchRow(SQLModel, table=True):
    __tablename__ = "pr_watches"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(unique=True, index=True)
    task_name: str = ""
    branch: str
    owner: str
    repo: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewWatchRow(SQLModel, table=True):
    __tablename__ = "review_watches"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(unique=True, index=True)
    task_name: str = ""
    branch: str
    owner: str
    repo: str
    pr_number: int
    pr_url: str = ""
    stage: str
    iteration: int = 0
    max_iterations: int = 3
    last_commit_sha: str | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ManualQueueRow(SQLModel, table=True):
    __tablename__ = "manual_queue"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    task_name: str = ""
    task_url: str | None = None
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    branch: str
    reason: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ProcessedCommentRow(SQLModel, table=True):
    __tablename__ = "processed_comments"  # type: ignore[bad-override]

    comment_id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    command: str | None = None
    processed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
