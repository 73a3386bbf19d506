"""Domain models for pipeline state, stage execution and summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class PipelineStage(str, Enum):
    """Position of a task in the fixed stage sequence."""

    DETECTED = "detected"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    IMPLEMENTING = "implementing"
    IMPLEMENTED = "implemented"
    REVIEWING = "reviewing"
    REVIEWED = "reviewed"
    FIXING = "fixing"
    FIXED = "fixed"
    COMPLETED = "completed"
    FAILED = "failed"


class StageStatus(str, Enum):
    """Lifecycle status shared by pipelines and stage entries."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageName(str, Enum):
    """Agent-executed stages, one executor each."""

    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    FIXES = "fixes"

    @property
    def pipeline_stage(self) -> PipelineStage:
        return _STAGE_BY_NAME[self]


_STAGE_BY_NAME: dict[StageName, PipelineStage] = {
    StageName.ANALYSIS: PipelineStage.ANALYZING,
    StageName.IMPLEMENTATION: PipelineStage.IMPLEMENTING,
    StageName.REVIEW: PipelineStage.REVIEWING,
    StageName.FIXES: PipelineStage.FIXING,
}

DETECTION_STAGE_NAME = "detection"

DEFAULT_STAGE_NAMES: dict[PipelineStage, str] = {
    PipelineStage.DETECTED: DETECTION_STAGE_NAME,
    PipelineStage.ANALYZING: StageName.ANALYSIS.value,
    PipelineStage.ANALYZED: StageName.ANALYSIS.value,
    PipelineStage.IMPLEMENTING: StageName.IMPLEMENTATION.value,
    PipelineStage.IMPLEMENTED: StageName.IMPLEMENTATION.value,
    PipelineStage.REVIEWING: StageName.REVIEW.value,
    PipelineStage.REVIEWED: StageName.REVIEW.value,
    PipelineStage.FIXING: StageName.FIXES.value,
    PipelineStage.FIXED: StageName.FIXES.value,
    PipelineStage.COMPLETED: "completion",
    PipelineStage.FAILED: "failure",
}

# Entering a stage that already has an entry is always allowed (re-runs).
ALLOWED_TRANSITIONS: dict[PipelineStage, frozenset[PipelineStage]] = {
    PipelineStage.DETECTED: frozenset({PipelineStage.ANALYZING, PipelineStage.IMPLEMENTING}),
    PipelineStage.ANALYZING: frozenset({PipelineStage.ANALYZED, PipelineStage.IMPLEMENTING}),
    PipelineStage.ANALYZED: frozenset({PipelineStage.IMPLEMENTING}),
    PipelineStage.IMPLEMENTING: frozenset(
        {PipelineStage.IMPLEMENTED, PipelineStage.REVIEWING, PipelineStage.FIXING},
    ),
    PipelineStage.IMPLEMENTED: frozenset({PipelineStage.REVIEWING, PipelineStage.FIXING}),
    PipelineStage.REVIEWING: frozenset({PipelineStage.REVIEWED, PipelineStage.FIXING}),
    PipelineStage.REVIEWED: frozenset({PipelineStage.FIXING, PipelineStage.REVIEWING}),
    PipelineStage.FIXING: frozenset({PipelineStage.FIXED, PipelineStage.REVIEWING}),
    PipelineStage.FIXED: frozenset({PipelineStage.REVIEWING, PipelineStage.FIXING}),
    PipelineStage.COMPLETED: frozenset({PipelineStage.REVIEWING, PipelineStage.FIXING}),
    PipelineStage.FAILED: frozenset(),
}

TERMINAL_STATUSES: frozenset[StageStatus] = frozenset({StageStatus.COMPLETED, StageStatus.FAILED})

EXPECTED_STAGE_COUNT = 10


def is_transition_allowed(current: PipelineStage, requested: PipelineStage) -> bool:
    return current == requested or requested in ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class StageEntry:
    """One entry of the append-or-update stage log."""

    name: str
    stage: PipelineStage
    status: StageStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> timedelta | None:
        if self.duration_ms is None:
            return None
        return timedelta(milliseconds=self.duration_ms)


@dataclass(slots=True)
class PipelineErrorEntry:
    """Append-only error log item."""

    stage: str
    error: str
    timestamp: datetime


_KNOWN_METADATA_KEYS = frozenset(
    {
        "repository",
        "branch",
        "pr_number",
        "pr_url",
        "review_iterations",
        "max_review_iterations",
        "analysis",
        "agent_execution",
    },
)


@dataclass(slots=True)
class PipelineMetadata:
    """Typed view over well-known metadata keys; the rest stays in ``extra``."""

    repository: str | None = None
    branch: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    review_iterations: int = 0
    max_review_iterations: int | None = None
    analysis: str | None = None
    agent_execution: dict[str, dict[str, Any]] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> PipelineMetadata:
        pr_number = payload.get("pr_number")
        max_iterations = payload.get("max_review_iterations")
        agent_execution = payload.get("agent_execution")
        return cls(
            repository=_optional_str(payload.get("repository")),
            branch=_optional_str(payload.get("branch")),
            pr_number=int(pr_number) if pr_number is not None else None,
            pr_url=_optional_str(payload.get("pr_url")),
            review_iterations=int(payload.get("review_iterations") or 0),
            max_review_iterations=int(max_iterations) if max_iterations is not None else None,
            analysis=_optional_str(payload.get("analysis")),
            agent_execution=dict(agent_execution) if isinstance(agent_execution, dict) else {},
            extra={
                key: value for key, value in payload.items() if key not in _KNOWN_METADATA_KEYS
            },
        )


@dataclass(slots=True)
class PipelineRecord:
    """Durable per-task pipeline state."""

    task_id: str
    task_name: str
    current_stage: PipelineStage
    status: StageStatus
    stages: list[StageEntry]
    metadata: dict[str, Any]
    errors: list[PipelineErrorEntry]
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    total_duration_ms: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_duration(self) -> timedelta | None:
        if self.total_duration_ms is None:
            return None
        return timedelta(milliseconds=self.total_duration_ms)

    @property
    def typed_metadata(self) -> PipelineMetadata:
        return PipelineMetadata.from_mapping(self.metadata)

    def stage(self, stage: PipelineStage) -> StageEntry | None:
        for entry in self.stages:
            if entry.stage == stage:
                return entry
        return None


@dataclass(slots=True)
class PipelineSummary:
    """Read-only progress view for CLI and notifications."""

    task_id: str
    task_name: str
    current_stage: PipelineStage
    status: StageStatus
    progress: int
    duration: timedelta
    has_errors: bool
    error_count: int
    stage_count: int
    review_iterations: int
    branch: str | None = None
    pr_number: int | None = None


@dataclass(slots=True)
class StageContext:
    """Inputs handed to a stage executor."""

    stage: StageName
    repository: str
    branch: str | None = None
    analysis: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    iteration: int = 0


@dataclass(slots=True)
class StageResult:
    """Outcome reported by a stage executor."""

    success: bool
    branch: str | None = None
    error: str | None = None
    content: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessTaskResult:
    """Outcome of one full pipeline run."""

    task_id: str
    success: bool
    branch: str | None = None
    error: str | None = None


@dataclass(slots=True)
class RerunResult:
    """Outcome of a targeted single-stage re-run."""

    task_id: str
    stage: StageName
    success: bool
    branch: str | None = None
    error: str | None = None


class ManualQueueStatus(str, Enum):
    """Manual processing queue states."""

    PENDING = "pending"
    RESOLVED = "resolved"


@dataclass(slots=True)
class ManualQueueEntry:
    """Task routed to a human after a fatal pipeline failure."""

    task_id: str
    task_name: str
    task_url: str | None
    description: str
    branch: str
    reason: str
    status: ManualQueueStatus
    queued_at: datetime
    resolved_at: datetime | None = None


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
