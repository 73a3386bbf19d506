"""Controllers for agent-relay CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_relay.config import Settings
from agent_relay.daemon import RelayDaemon, build_runtime
from agent_relay.pipeline.models import PipelineRecord, StageName
from agent_relay.pipeline.repository import ManualQueueRepository, PipelineStateStore


@dataclass(slots=True)
class RunCommand:
    """CLI input for the relay daemon."""

    db_path: Path | None
    once: bool


@dataclass(slots=True)
class StatusCommand:
    """CLI input for single pipeline inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ActiveCommand:
    db_path: Path | None


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for finished pipeline cleanup."""

    db_path: Path | None
    days: int | None


@dataclass(slots=True)
class QueueCommand:
    """CLI input for the manual-intervention queue."""

    db_path: Path | None
    resolve_task_id: str | None = None


@dataclass(slots=True)
class RerunCommand:
    """CLI input for review/fixes re-runs."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class RerunOutput:
    """Re-run report to render in CLI."""

    lines: list[str]
    success: bool


class AgentRelayCliController:
    """Coordinates daemon, inspection and re-run CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_daemon()
        daemon = RelayDaemon(settings)
        if not command.once:
            daemon.run()
            return ["Relay stopped."]

        tasks, prs, reviews = daemon.run_once()
        return [
            "Task poll: "
            f"seen={tasks.seen} commands={tasks.commands} started={tasks.started} "
            f"succeeded={tasks.succeeded} failed={tasks.failed} skipped={tasks.skipped}",
            "PR watcher: "
            f"checked={prs.checked} found={prs.found} timed_out={prs.timed_out} "
            f"errors={prs.errors}",
            "Review watcher: "
            f"checked={reviews.checked} reviews={reviews.reviews} fixes={reviews.fixes} "
            f"completed={reviews.completed} errors={reviews.errors}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            record = store.get(command.task_id)
            summary = store.get_summary(command.task_id)
        if record is None or summary is None:
            return [f"Pipeline not found: {command.task_id}"]

        lines = [
            f"Task: {record.task_id} {record.task_name}",
            f"Stage: {summary.current_stage.value}",
            f"Status: {summary.status.value}",
            f"Progress: {summary.progress}%",
            f"Duration: {_format_duration(summary.duration)}",
            f"Branch: {summary.branch or '-'}",
            f"PR: {summary.pr_number if summary.pr_number is not None else '-'}",
            f"Review iterations: {summary.review_iterations}",
            f"Stages: {summary.stage_count}",
        ]
        for entry in record.stages:
            duration = _format_duration(entry.duration) if entry.duration is not None else "-"
            lines.append(
                f"  {entry.started_at.isoformat()} {entry.stage.value} "
                f"status={entry.status.value} duration={duration} error={entry.error or '-'}",
            )
        lines.append(f"Errors: {summary.error_count}")
        for error in record.errors:
            lines.append(f"  {error.timestamp.isoformat()} [{error.stage}] {error.error}")
        return lines

    def active(self, command: ActiveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            records = store.get_active()
        lines = [f"Active pipelines: {len(records)}"]
        lines.extend(_record_line(record) for record in records)
        return lines

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        days = command.days if command.days is not None else settings.pipeline.cleanup_after_days
        with _store(settings) as store:
            removed = store.cleanup(timedelta(days=days))
        return [f"Removed {removed} finished pipelines older than {days} days."]

    def queue(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            manual_queue = ManualQueueRepository(store)
            if command.resolve_task_id is not None:
                if manual_queue.mark_resolved(command.resolve_task_id):
                    return [f"Resolved: {command.resolve_task_id}"]
                return [f"No pending entry for {command.resolve_task_id}"]
            entries = manual_queue.list_pending()

        lines = [f"Manual queue: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.task_id} {entry.task_name} branch={entry.branch} "
                f"queued_at={entry.queued_at.isoformat()} reason={entry.reason}",
            )
            if entry.task_url:
                lines.append(f"    {entry.task_url}")
        return lines

    def rerun_review(self, command: RerunCommand) -> RerunOutput:
        return self._rerun(command, StageName.REVIEW)

    def rerun_fixes(self, command: RerunCommand) -> RerunOutput:
        return self._rerun(command, StageName.FIXES)

    def _rerun(self, command: RerunCommand, stage: StageName) -> RerunOutput:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_daemon()
        runtime = build_runtime(settings)
        try:
            if stage == StageName.REVIEW:
                result = runtime.orchestrator.rerun_review(command.task_id)
            else:
                result = runtime.orchestrator.rerun_fixes(command.task_id)
        finally:
            runtime.close()

        if result.success:
            return RerunOutput(
                lines=[
                    f"{stage.value} re-run completed: "
                    f"task_id={result.task_id} branch={result.branch}",
                ],
                success=True,
            )
        return RerunOutput(
            lines=[f"{stage.value} re-run failed: task_id={result.task_id} error={result.error}"],
            success=False,
        )


def _record_line(record: PipelineRecord) -> str:
    metadata = record.typed_metadata
    return (
        f"  {record.task_id} stage={record.current_stage.value} status={record.status.value} "
        f"branch={metadata.branch or '-'} updated_at={record.updated_at.isoformat()} "
        f"name={record.task_name}"
    )


def _format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{seconds:02d}s"
    if minutes:
        return f"{minutes}m{seconds:02d}s"
    return f"{seconds}s"


@contextmanager
def _store(settings: Settings) -> Iterator[PipelineStateStore]:
    store = PipelineStateStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
