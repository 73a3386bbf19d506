"""Durable pipeline state backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from agent_relay.clients.base import Task, default_branch_name
from agent_relay.errors import (
    InvalidStageTransitionError,
    PipelineAlreadyActiveError,
    PipelineNotFoundError,
    StageBusyError,
)
from agent_relay.pipeline.models import (
    DEFAULT_STAGE_NAMES,
    DETECTION_STAGE_NAME,
    EXPECTED_STAGE_COUNT,
    TERMINAL_STATUSES,
    ManualQueueEntry,
    ManualQueueStatus,
    PipelineErrorEntry,
    PipelineRecord,
    PipelineStage,
    PipelineSummary,
    StageEntry,
    StageStatus,
    is_transition_allowed,
)
from agent_relay.storage.alembic_runner import upgrade_head
from agent_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_relay.storage.sqlmodel_models import (
    ManualQueueRow,
    PipelineErrorRow,
    PipelineRow,
    PipelineStageRow,
    ProcessedCommentRow,
)

_TERMINAL_STATUS_VALUES = tuple(status.value for status in TERMINAL_STATUSES)

INTERRUPTED_ERROR = "Interrupted: relay stopped before the stage finished"


class PipelineStateStore:
    """Single source of truth for per-task pipeline records.

    Every mutating call runs as one SQLite transaction under a store-wide
    re-entrant lock, so a watcher thread and the orchestrator never lose each
    other's updates. Other repositories sharing the database reuse the same
    lock through :meth:`transaction`.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock
        self._lock = threading.RLock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Serialized read-modify-write session; commits on clean exit."""

        with self._lock, Session(self.engine) as session, session.begin():
            yield session

    def init_pipeline(self, task_id: str, task_name: str) -> PipelineRecord:
        """Create a fresh record seeded with a completed detection entry.

        A terminal record for the same task is replaced; an active one is an error.
        """

        now = self.now()
        with self.transaction() as session:
            existing = session.get(PipelineRow, task_id)
            if existing is not None:
                if existing.status not in _TERMINAL_STATUS_VALUES:
                    raise PipelineAlreadyActiveError(task_id)
                _delete_pipeline_children(session, task_id=task_id)
                session.delete(existing)
                session.flush()

            session.add(
                PipelineRow(
                    task_id=task_id,
                    task_name=task_name,
                    current_stage=PipelineStage.DETECTED.value,
                    status=StageStatus.IN_PROGRESS.value,
                    metadata_json="{}",
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.add(
                PipelineStageRow(
                    task_id=task_id,
                    stage=PipelineStage.DETECTED.value,
                    name=DETECTION_STAGE_NAME,
                    status=StageStatus.COMPLETED.value,
                    started_at=to_db_datetime(now),
                    completed_at=to_db_datetime(now),
                    duration_ms=0,
                ),
            )
            session.flush()
            return self._require_record(session, task_id)

    def get(self, task_id: str) -> PipelineRecord | None:
        with self._lock, Session(self.engine) as session:
            return _load_record(session, task_id)

    def update_stage(
        self,
        task_id: str,
        stage: PipelineStage,
        name: str | None = None,
        **extra: Any,
    ) -> PipelineRecord:
        """Enter ``stage`` (or re-enter its existing entry) and mark it in progress."""

        return self._enter_stage(task_id, stage, name=name, extra=extra, only_if_idle=False)

    def try_begin_stage(
        self,
        task_id: str,
        stage: PipelineStage,
        name: str | None = None,
        **extra: Any,
    ) -> PipelineRecord | None:
        """Like :meth:`update_stage`, but return None if the stage is already running."""

        try:
            return self._enter_stage(task_id, stage, name=name, extra=extra, only_if_idle=True)
        except StageBusyError:
            return None

    def complete_stage(self, task_id: str, stage: PipelineStage, **extra: Any) -> PipelineRecord:
        """Mark the stage entry completed; the overall pipeline status is untouched."""

        return self._finish_stage(
            task_id,
            stage,
            status=StageStatus.COMPLETED,
            error=None,
            extra=extra,
        )

    def fail_stage(
        self,
        task_id: str,
        stage: PipelineStage,
        error: BaseException | str,
        **extra: Any,
    ) -> PipelineRecord:
        """Mark the stage entry failed and append to the error log."""

        return self._finish_stage(
            task_id,
            stage,
            status=StageStatus.FAILED,
            error=_error_text(error),
            extra=extra,
        )

    def update_metadata(self, task_id: str, patch: dict[str, Any]) -> PipelineRecord:
        """Shallow-merge ``patch`` into the record metadata."""

        now = self.now()
        with self.transaction() as session:
            row = _require_row(session, task_id)
            metadata = _loads(row.metadata_json)
            metadata.update(patch)
            row.metadata_json = _dumps(metadata)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.flush()
            return self._require_record(session, task_id)

    def store_agent_execution(
        self,
        task_id: str,
        agent: str,
        info: dict[str, Any],
    ) -> PipelineRecord:
        """Record how an agent was invoked for this task, keyed by agent name."""

        now = self.now()
        with self.transaction() as session:
            row = _require_row(session, task_id)
            metadata = _loads(row.metadata_json)
            executions = dict(metadata.get("agent_execution") or {})
            executions[agent] = {**info, "started_at": info.get("started_at") or now.isoformat()}
            metadata["agent_execution"] = executions
            row.metadata_json = _dumps(metadata)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.flush()
            return self._require_record(session, task_id)

    def get_agent_execution(self, task_id: str, agent: str | None = None) -> dict[str, Any] | None:
        record = self.get(task_id)
        if record is None:
            return None
        executions = record.metadata.get("agent_execution")
        if not isinstance(executions, dict):
            return None
        if agent is None:
            return executions
        return executions.get(agent)

    def complete(self, task_id: str, result: dict[str, Any] | None = None) -> PipelineRecord:
        """Mark the pipeline completed; a no-op on an already-terminal record."""

        now = self.now()
        with self.transaction() as session:
            row = _require_row(session, task_id)
            if row.status in _TERMINAL_STATUS_VALUES:
                return self._require_record(session, task_id)

            row.status = StageStatus.COMPLETED.value
            row.current_stage = PipelineStage.COMPLETED.value
            row.completed_at = to_db_datetime(now)
            row.updated_at = to_db_datetime(now)
            row.total_duration_ms = _duration_ms(row.created_at, now)
            if result:
                metadata = _loads(row.metadata_json)
                metadata.update(result)
                row.metadata_json = _dumps(metadata)
            session.add(row)
            session.flush()
            return self._require_record(session, task_id)

    def fail(self, task_id: str, error: BaseException | str) -> PipelineRecord:
        """Mark the pipeline failed at its current stage; a no-op once terminal."""

        now = self.now()
        with self.transaction() as session:
            row = _require_row(session, task_id)
            if row.status in _TERMINAL_STATUS_VALUES:
                return self._require_record(session, task_id)

            row.status = StageStatus.FAILED.value
            row.failed_at = to_db_datetime(now)
            row.updated_at = to_db_datetime(now)
            row.total_duration_ms = _duration_ms(row.created_at, now)
            session.add(row)
            session.add(
                PipelineErrorRow(
                    task_id=task_id,
                    stage=row.current_stage,
                    error=_error_text(error),
                    created_at=to_db_datetime(now),
                ),
            )
            session.flush()
            return self._require_record(session, task_id)

    def get_active(self) -> list[PipelineRecord]:
        """Records whose overall status is in progress, oldest first."""

        with self._lock, Session(self.engine) as session:
            task_ids = session.exec(
                select(PipelineRow.task_id)
                .where(PipelineRow.status == StageStatus.IN_PROGRESS.value)
                .order_by(col(PipelineRow.created_at).asc()),
            ).all()
            return [self._require_record(session, task_id) for task_id in task_ids]

    def cleanup(self, older_than: timedelta) -> int:
        """Delete terminal records finished before ``now - older_than``."""

        cutoff = to_db_datetime(self.now() - older_than)
        with self.transaction() as session:
            rows = session.exec(
                select(PipelineRow).where(col(PipelineRow.status).in_(_TERMINAL_STATUS_VALUES)),
            ).all()
            expired = [
                row.task_id
                for row in rows
                if (finished := row.completed_at or row.failed_at) is not None
                and to_db_datetime(finished) < cutoff
            ]
            for task_id in expired:
                _delete_pipeline_rows(session, task_id=task_id)
            return len(expired)

    def recover_interrupted(self, reason: str = INTERRUPTED_ERROR) -> list[PipelineRecord]:
        """Fail stage entries and pipelines left in progress by a process that died.

        Only safe while no stage is running in this process. Returns the
        pipelines that were still in progress; their stage entries and any
        in-progress entry of a finished pipeline are marked failed.
        """

        now = self.now()
        with self.transaction() as session:
            stage_rows = session.exec(
                select(PipelineStageRow).where(
                    PipelineStageRow.status == StageStatus.IN_PROGRESS.value,
                ),
            ).all()
            for entry in stage_rows:
                entry.status = StageStatus.FAILED.value
                entry.completed_at = to_db_datetime(now)
                entry.duration_ms = _duration_ms(entry.started_at, now)
                entry.error = reason
                session.add(entry)
                session.add(
                    PipelineErrorRow(
                        task_id=entry.task_id,
                        stage=entry.stage,
                        error=reason,
                        created_at=to_db_datetime(now),
                    ),
                )

            pipeline_rows = session.exec(
                select(PipelineRow)
                .where(PipelineRow.status == StageStatus.IN_PROGRESS.value)
                .order_by(col(PipelineRow.created_at).asc()),
            ).all()
            interrupted_tasks = {entry.task_id for entry in stage_rows}
            for row in pipeline_rows:
                row.status = StageStatus.FAILED.value
                row.failed_at = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
                row.total_duration_ms = _duration_ms(row.created_at, now)
                session.add(row)
                if row.task_id not in interrupted_tasks:
                    session.add(
                        PipelineErrorRow(
                            task_id=row.task_id,
                            stage=row.current_stage,
                            error=reason,
                            created_at=to_db_datetime(now),
                        ),
                    )
            session.flush()
            return [self._require_record(session, row.task_id) for row in pipeline_rows]

    def get_summary(self, task_id: str) -> PipelineSummary | None:
        record = self.get(task_id)
        if record is None:
            return None

        completed = sum(1 for entry in record.stages if entry.status == StageStatus.COMPLETED)
        progress = min(100, round(completed / EXPECTED_STAGE_COUNT * 100))
        end = record.completed_at or record.failed_at or self.now()
        metadata = record.typed_metadata
        return PipelineSummary(
            task_id=record.task_id,
            task_name=record.task_name,
            current_stage=record.current_stage,
            status=record.status,
            progress=progress,
            duration=end - record.created_at,
            has_errors=bool(record.errors),
            error_count=len(record.errors),
            stage_count=len(record.stages),
            review_iterations=metadata.review_iterations,
            branch=metadata.branch,
            pr_number=metadata.pr_number,
        )

    def _enter_stage(  # noqa: PLR0913
        self,
        task_id: str,
        stage: PipelineStage,
        *,
        name: str | None,
        extra: dict[str, Any],
        only_if_idle: bool,
    ) -> PipelineRecord:
        now = self.now()
        with self.transaction() as session:
            row = _require_row(session, task_id)
            entry = _get_stage_row(session, task_id=task_id, stage=stage)
            if entry is None:
                current = PipelineStage(row.current_stage)
                if not is_transition_allowed(current, stage):
                    raise InvalidStageTransitionError(task_id, current.value, stage.value)
                entry = PipelineStageRow(
                    task_id=task_id,
                    stage=stage.value,
                    name=name or DEFAULT_STAGE_NAMES[stage],
                    status=StageStatus.IN_PROGRESS.value,
                    started_at=to_db_datetime(now),
                    extra_json=_dumps(extra) if extra else None,
                )
            else:
                if only_if_idle and entry.status == StageStatus.IN_PROGRESS.value:
                    raise StageBusyError(task_id, stage.value)
                entry.status = StageStatus.IN_PROGRESS.value
                entry.started_at = to_db_datetime(now)
                entry.completed_at = None
                entry.duration_ms = None
                entry.error = None
                if name:
                    entry.name = name
                if extra:
                    entry.extra_json = _dumps({**_loads(entry.extra_json), **extra})

            row.current_stage = stage.value
            row.updated_at = to_db_datetime(now)
            session.add(entry)
            session.add(row)
            session.flush()
            return self._require_record(session, task_id)

    def _finish_stage(
        self,
        task_id: str,
        stage: PipelineStage,
        *,
        status: StageStatus,
        error: str | None,
        extra: dict[str, Any],
    ) -> PipelineRecord:
        now = self.now()
        with self.transaction() as session:
            row = _require_row(session, task_id)
            entry = _get_stage_row(session, task_id=task_id, stage=stage)
            if entry is not None:
                entry.status = status.value
                entry.completed_at = to_db_datetime(now)
                entry.duration_ms = _duration_ms(entry.started_at, now)
                if error is not None:
                    entry.error = error
                if extra:
                    entry.extra_json = _dumps({**_loads(entry.extra_json), **extra})
                session.add(entry)
            if error is not None:
                session.add(
                    PipelineErrorRow(
                        task_id=task_id,
                        stage=stage.value,
                        error=error,
                        created_at=to_db_datetime(now),
                    ),
                )
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.flush()
            return self._require_record(session, task_id)

    def _require_record(self, session: Session, task_id: str) -> PipelineRecord:
        record = _load_record(session, task_id)
        if record is None:
            raise PipelineNotFoundError(task_id)
        return record


class ManualQueueRepository:
    """Tasks routed to manual processing after a fatal pipeline failure."""

    def __init__(self, store: PipelineStateStore) -> None:
        self.store = store

    def add(self, task: Task, reason: str, *, branch: str | None = None) -> ManualQueueEntry:
        """Queue a task; re-adding a pending task keeps the original entry."""

        now = self.store.now()
        with self.store.transaction() as session:
            row = session.get(ManualQueueRow, task.task_id)
            if row is not None and row.status == ManualQueueStatus.PENDING.value:
                return _to_queue_entry(row)
            if row is None:
                row = ManualQueueRow(
                    task_id=task.task_id,
                    branch=branch or default_branch_name(task.task_id),
                    status=ManualQueueStatus.PENDING.value,
                    queued_at=to_db_datetime(now),
                )
            row.task_name = task.name
            row.task_url = task.url
            row.description = task.description
            row.branch = branch or row.branch or default_branch_name(task.task_id)
            row.reason = reason
            row.status = ManualQueueStatus.PENDING.value
            row.queued_at = to_db_datetime(now)
            row.resolved_at = None
            session.add(row)
            session.flush()
            return _to_queue_entry(row)

    def list_pending(self) -> list[ManualQueueEntry]:
        with self.store.transaction() as session:
            rows = session.exec(
                select(ManualQueueRow)
                .where(ManualQueueRow.status == ManualQueueStatus.PENDING.value)
                .order_by(col(ManualQueueRow.queued_at).asc()),
            ).all()
            return [_to_queue_entry(row) for row in rows]

    def mark_resolved(self, task_id: str) -> bool:
        now = self.store.now()
        with self.store.transaction() as session:
            row = session.get(ManualQueueRow, task_id)
            if row is None or row.status != ManualQueueStatus.PENDING.value:
                return False
            row.status = ManualQueueStatus.RESOLVED.value
            row.resolved_at = to_db_datetime(now)
            session.add(row)
            return True


class ProcessedCommentRepository:
    """Command comments that were already acted on."""

    def __init__(self, store: PipelineStateStore) -> None:
        self.store = store

    def has(self, comment_id: str) -> bool:
        with self.store.transaction() as session:
            return session.get(ProcessedCommentRow, comment_id) is not None

    def add(self, comment_id: str, task_id: str, command: str | None = None) -> None:
        self.claim(comment_id, task_id, command)

    def claim(self, comment_id: str, task_id: str, command: str | None = None) -> bool:
        """Atomically mark the comment processed; False if it already was."""

        now = self.store.now()
        with self.store.transaction() as session:
            if session.get(ProcessedCommentRow, comment_id) is not None:
                return False
            session.add(
                ProcessedCommentRow(
                    comment_id=comment_id,
                    task_id=task_id,
                    command=command,
                    processed_at=to_db_datetime(now),
                ),
            )
            return True


def _require_row(session: Session, task_id: str) -> PipelineRow:
    row = session.get(PipelineRow, task_id)
    if row is None:
        raise PipelineNotFoundError(task_id)
    return row


def _get_stage_row(
    session: Session,
    *,
    task_id: str,
    stage: PipelineStage,
) -> PipelineStageRow | None:
    return session.exec(
        select(PipelineStageRow).where(
            PipelineStageRow.task_id == task_id,
            PipelineStageRow.stage == stage.value,
        ),
    ).one_or_none()


def _delete_pipeline_children(session: Session, *, task_id: str) -> None:
    session.exec(sa_delete(PipelineStageRow).where(col(PipelineStageRow.task_id) == task_id))
    session.exec(sa_delete(PipelineErrorRow).where(col(PipelineErrorRow.task_id) == task_id))


def _delete_pipeline_rows(session: Session, *, task_id: str) -> None:
    _delete_pipeline_children(session, task_id=task_id)
    session.exec(sa_delete(PipelineRow).where(col(PipelineRow.task_id) == task_id))


def _load_record(session: Session, task_id: str) -> PipelineRecord | None:
    row = session.get(PipelineRow, task_id)
    if row is None:
        return None
    stage_rows = session.exec(
        select(PipelineStageRow)
        .where(PipelineStageRow.task_id == task_id)
        .order_by(col(PipelineStageRow.id).asc()),
    ).all()
    error_rows = session.exec(
        select(PipelineErrorRow)
        .where(PipelineErrorRow.task_id == task_id)
        .order_by(col(PipelineErrorRow.id).asc()),
    ).all()
    return PipelineRecord(
        task_id=row.task_id,
        task_name=row.task_name,
        current_stage=PipelineStage(row.current_stage),
        status=StageStatus(row.status),
        stages=[_to_stage_entry(stage_row) for stage_row in stage_rows],
        metadata=_loads(row.metadata_json),
        errors=[
            PipelineErrorEntry(
                stage=error_row.stage,
                error=error_row.error,
                timestamp=to_utc_aware_datetime(error_row.created_at),
            )
            for error_row in error_rows
        ],
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        failed_at=to_utc_aware_datetime(row.failed_at) if row.failed_at is not None else None,
        total_duration_ms=row.total_duration_ms,
    )


def _to_stage_entry(row: PipelineStageRow) -> StageEntry:
    return StageEntry(
        name=row.name,
        stage=PipelineStage(row.stage),
        status=StageStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        duration_ms=row.duration_ms,
        error=row.error,
        extra=_loads(row.extra_json),
    )


def _to_queue_entry(row: ManualQueueRow) -> ManualQueueEntry:
    return ManualQueueEntry(
        task_id=row.task_id,
        task_name=row.task_name,
        task_url=row.task_url,
        description=row.description,
        branch=row.branch,
        reason=row.reason,
        status=ManualQueueStatus(row.status),
        queued_at=to_utc_aware_datetime(row.queued_at),
        resolved_at=(
            to_utc_aware_datetime(row.resolved_at) if row.resolved_at is not None else None
        ),
    )


def _duration_ms(started_at: datetime, finished_at: datetime) -> int:
    started = to_utc_aware_datetime(started_at)
    finished = to_utc_aware_datetime(finished_at)
    return max(0, int((finished - started).total_seconds() * 1000))


def _error_text(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return error


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def _loads(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return {}
    return parsed
