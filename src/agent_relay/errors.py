"""Exception hierarchy shared by the pipeline, watchers and external clients."""

from __future__ import annotations


class AgentRelayError(RuntimeError):
    """Base error for agent-relay failures."""


class ApiError(AgentRelayError):
    """External API call returned an unsuccessful response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(ApiError):
    """Transport-level failure talking to an external API."""


class RateLimitError(ApiError):
    """External API asked us to slow down."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class OperationTimeoutError(AgentRelayError):
    """Operation exceeded its overall deadline."""


class PipelineNotFoundError(AgentRelayError):
    """No pipeline record exists for the task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Pipeline not found for task {task_id}")
        self.task_id = task_id


class PipelineAlreadyActiveError(AgentRelayError):
    """A non-terminal pipeline record already exists for the task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Pipeline for task {task_id} is still in progress")
        self.task_id = task_id


class InvalidStageTransitionError(AgentRelayError, ValueError):
    """Requested stage is not reachable from the current stage."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Task {task_id}: transition {current!r} -> {requested!r} is not allowed",
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


class StageNotReadyError(AgentRelayError):
    """Prerequisite stage has not completed yet."""


class StageBusyError(AgentRelayError):
    """Stage is already running for this task from another trigger."""

    def __init__(self, task_id: str, stage: str) -> None:
        super().__init__(f"Stage {stage} is already in progress for task {task_id}")
        self.task_id = task_id
        self.stage = stage


class StageExecutionError(AgentRelayError):
    """Stage executor reported failure or raised."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
