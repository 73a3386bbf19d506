"""Single-stage execution guarded by the state store."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime

from agent_relay.agents.base import StageExecutor
from agent_relay.clients.base import Task
from agent_relay.errors import StageBusyError, StageExecutionError
from agent_relay.pipeline.models import StageContext, StageName, StageResult
from agent_relay.pipeline.repository import PipelineStateStore

logger = logging.getLogger(__name__)


class StageRunner:
    """Run a stage executor and record the outcome in the store.

    The orchestrator, the watchers and the command dispatcher all go through
    the same runner, so a stage already in progress for a task is never
    started a second time.
    """

    def __init__(
        self,
        store: PipelineStateStore,
        executors: Mapping[StageName, StageExecutor],
    ) -> None:
        missing = [stage.value for stage in StageName if stage not in executors]
        if missing:
            raise ValueError(f"Missing stage executors: {', '.join(missing)}")
        self.store = store
        self.executors = dict(executors)

    def run(
        self,
        stage: StageName,
        task: Task,
        context: StageContext,
        *,
        display_name: str | None = None,
    ) -> StageResult:
        """Execute ``stage`` and return its result.

        Raises:
            StageBusyError: the stage is already in progress for this task.
            StageExecutionError: the executor raised or reported failure.
        """

        pipeline_stage = stage.pipeline_stage
        if self.store.try_begin_stage(task.task_id, pipeline_stage, name=display_name) is None:
            raise StageBusyError(task.task_id, pipeline_stage.value)

        started_at = self.store.now()
        logger.info("Running %s stage for %s", stage.value, task.task_id)
        try:
            result = self.executors[stage].execute(task, context)
        except Exception as error:
            message = str(error) or type(error).__name__
            logger.exception("%s stage raised for %s", stage.value, task.task_id)
            self.store.fail_stage(task.task_id, pipeline_stage, message)
            self._record_execution(stage, task, started_at=started_at, result=None, error=message)
            raise StageExecutionError(stage.value, message) from error

        self._record_execution(stage, task, started_at=started_at, result=result, error=None)
        if not result.success:
            message = result.error or f"{stage.value} stage reported failure"
            logger.warning("%s stage failed for %s: %s", stage.value, task.task_id, message)
            self.store.fail_stage(task.task_id, pipeline_stage, message)
            raise StageExecutionError(stage.value, message)

        extras = {"branch": result.branch} if result.branch else {}
        self.store.complete_stage(task.task_id, pipeline_stage, **extras)
        logger.info("%s stage completed for %s", stage.value, task.task_id)
        return result

    def _record_execution(
        self,
        stage: StageName,
        task: Task,
        *,
        started_at: datetime,
        result: StageResult | None,
        error: str | None,
    ) -> None:
        info: dict[str, object] = {
            "started_at": started_at.isoformat(),
            "finished_at": self.store.now().isoformat(),
        }
        if result is not None:
            info.update(result.details)
            if result.branch:
                info["branch"] = result.branch
        info["success"] = result is not None and result.success
        if error is not None:
            info["error"] = error
        self.store.store_agent_execution(task.task_id, stage.value, info)
