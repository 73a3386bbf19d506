"""Top-level sequencer driving a task through analysis, implementation, review and fixes."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from agent_relay.clients.base import Task, default_branch_name
from agent_relay.config import RepositorySettings
from agent_relay.errors import (
    PipelineNotFoundError,
    StageBusyError,
    StageExecutionError,
    StageNotReadyError,
)
from agent_relay.pipeline.models import (
    PipelineRecord,
    PipelineStage,
    ProcessTaskResult,
    RerunResult,
    StageContext,
    StageName,
    StageStatus,
)
from agent_relay.pipeline.notifications import (
    TrackerNotifier,
    pipeline_failed_message,
    rerun_complete_message,
    rerun_failed_message,
    workflow_complete_message,
)
from agent_relay.pipeline.repository import ManualQueueRepository, PipelineStateStore
from agent_relay.pipeline.stages import StageRunner

logger = logging.getLogger(__name__)

_REPO_TAG_PREFIX = "repo:"
_REPO_MARKER_RE = re.compile(r"\[(?:repo|repository)\s*:\s*([^\]]+)\]", re.IGNORECASE)

PrWatchRegistrar = Callable[[Task, str], None]


def detect_repository(task: Task) -> str | None:
    """Return the repository a task names explicitly, if any.

    Checked in order: a ``repository`` custom field, a ``repo:<name>`` tag and a
    ``[Repo: name]`` marker in the description.
    """

    for field_name, value in task.custom_fields.items():
        if field_name.strip().lower() == "repository" and value.strip():
            return value.strip()

    for tag in task.tags:
        normalized = tag.strip()
        if normalized.lower().startswith(_REPO_TAG_PREFIX):
            name = normalized[len(_REPO_TAG_PREFIX) :].strip()
            if name:
                return name

    match = _REPO_MARKER_RE.search(task.description or "")
    if match is not None:
        return match.group(1).strip()
    return None


class TaskOrchestrator:
    """Walk a new task through the fixed stage order.

    Analysis, review and fixes degrade gracefully; an implementation failure
    ends the pipeline and routes the task to the manual queue.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: PipelineStateStore,
        runner: StageRunner,
        notifier: TrackerNotifier,
        manual_queue: ManualQueueRepository,
        repository: RepositorySettings,
        register_pr_watch: PrWatchRegistrar | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.notifier = notifier
        self.manual_queue = manual_queue
        self.repository = repository
        self.register_pr_watch = register_pr_watch

    def process_task(self, task: Task) -> ProcessTaskResult:
        """Run the full pipeline for a task that has no active record."""

        task_id = task.task_id
        requested_repo = detect_repository(task)
        if requested_repo and requested_repo not in {
            self.repository.repo,
            self.repository.full_name,
        }:
            logger.warning(
                "Task %s names repository %r but active repository is %r; using active",
                task_id,
                requested_repo,
                self.repository.full_name,
            )

        self.store.init_pipeline(task_id, task.name)
        self.store.update_metadata(task_id, {"repository": self.repository.full_name})
        logger.info("Pipeline started for %s (%s)", task_id, task.name)

        try:
            analysis = self._run_analysis(task)

            try:
                implementation = self.runner.run(
                    StageName.IMPLEMENTATION,
                    task,
                    self._context(StageName.IMPLEMENTATION, analysis=analysis),
                )
            except StageExecutionError as error:
                return self._fail_pipeline(task, error=str(error))

            branch = implementation.branch or default_branch_name(task_id)
            self.store.update_metadata(task_id, {"branch": branch})
            if self.register_pr_watch is not None:
                self.register_pr_watch(task, branch)

            failed_stages: list[str] = []
            for stage in (StageName.REVIEW, StageName.FIXES):
                if not self._run_non_fatal(stage, task, branch=branch):
                    failed_stages.append(stage.value)

            self.store.complete(task_id, {"branch": branch})
            self.notifier.comment(
                task_id,
                workflow_complete_message(branch=branch, failed_stages=failed_stages),
            )
            logger.info("Pipeline completed for %s", task_id)
            return ProcessTaskResult(task_id=task_id, success=True, branch=branch)
        except Exception as error:
            logger.exception("Unexpected pipeline error for %s", task_id)
            return self._fail_pipeline(task, error=str(error) or type(error).__name__)

    def rerun_review(self, task_id: str) -> RerunResult:
        return self._rerun(task_id, StageName.REVIEW)

    def rerun_fixes(self, task_id: str) -> RerunResult:
        return self._rerun(task_id, StageName.FIXES)

    def _rerun(self, task_id: str, stage: StageName) -> RerunResult:
        """Re-invoke one post-implementation stage.

        Raises:
            PipelineNotFoundError: the task has no pipeline record.
            StageNotReadyError: implementation has not completed.
            StageBusyError: the stage is already running for this task.
        """

        record = self.store.get(task_id)
        if record is None:
            raise PipelineNotFoundError(task_id)
        branch = _validate_implementation_complete(record)

        metadata = record.typed_metadata
        if metadata.repository and metadata.repository != self.repository.full_name:
            logger.warning(
                "Task %s was processed against %r; re-running against active %r",
                task_id,
                metadata.repository,
                self.repository.full_name,
            )

        task = Task(task_id=task_id, name=record.task_name)
        context = self._context(
            stage,
            branch=branch,
            pr_number=metadata.pr_number,
            pr_url=metadata.pr_url,
            iteration=metadata.review_iterations,
        )
        logger.info("Re-running %s for %s on %s", stage.value, task_id, branch)
        try:
            result = self.runner.run(stage, task, context, display_name=f"{stage.value} (re-run)")
        except StageExecutionError as error:
            self.notifier.comment(task_id, rerun_failed_message(stage, error=str(error)))
            return RerunResult(task_id=task_id, stage=stage, success=False, error=str(error))

        result_branch = result.branch or branch
        self.notifier.comment(task_id, rerun_complete_message(stage, branch=result_branch))
        return RerunResult(task_id=task_id, stage=stage, success=True, branch=result_branch)

    def _run_analysis(self, task: Task) -> str | None:
        try:
            result = self.runner.run(
                StageName.ANALYSIS,
                task,
                self._context(StageName.ANALYSIS),
            )
        except StageBusyError:
            logger.info("Analysis already running for %s; continuing without it", task.task_id)
            return None
        except StageExecutionError as error:
            logger.warning("Analysis failed for %s, continuing without it: %s", task.task_id, error)
            return None
        if result.content:
            self.store.update_metadata(task.task_id, {"analysis": result.content})
        return result.content

    def _run_non_fatal(self, stage: StageName, task: Task, *, branch: str) -> bool:
        try:
            self.runner.run(stage, task, self._context(stage, branch=branch))
        except StageBusyError:
            logger.info("%s already running for %s; skipping", stage.value, task.task_id)
            return True
        except StageExecutionError as error:
            logger.warning("%s failed for %s, continuing: %s", stage.value, task.task_id, error)
            return False
        return True

    def _fail_pipeline(self, task: Task, *, error: str) -> ProcessTaskResult:
        record = self.store.fail(task.task_id, error)
        stage = record.current_stage.value
        branch = record.typed_metadata.branch or default_branch_name(task.task_id)
        self.manual_queue.add(task, error, branch=branch)
        self.notifier.comment(task.task_id, pipeline_failed_message(stage=stage, error=error))
        logger.error("Pipeline failed for %s at %s: %s", task.task_id, stage, error)
        return ProcessTaskResult(task_id=task.task_id, success=False, error=error)

    def _context(  # noqa: PLR0913
        self,
        stage: StageName,
        *,
        branch: str | None = None,
        analysis: str | None = None,
        pr_number: int | None = None,
        pr_url: str | None = None,
        iteration: int = 0,
    ) -> StageContext:
        return StageContext(
            stage=stage,
            repository=self.repository.full_name,
            branch=branch,
            analysis=analysis,
            pr_number=pr_number,
            pr_url=pr_url,
            iteration=iteration,
        )


def _validate_implementation_complete(record: PipelineRecord) -> str:
    entry = record.stage(PipelineStage.IMPLEMENTING)
    if entry is None or entry.status != StageStatus.COMPLETED:
        status = entry.status.value if entry is not None else "missing"
        raise StageNotReadyError(
            f"Task {record.task_id}: implementation stage is {status}, not completed",
        )
    branch = entry.extra.get("branch") or record.typed_metadata.branch
    return str(branch) if branch else default_branch_name(record.task_id)
