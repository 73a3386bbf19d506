"""Runtime configuration for the task pipeline daemon."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND_TEMPLATES = {
    "analysis": "gemini --approval-mode auto_edit --prompt {prompt}",
    "implementation": "claude -p --permission-mode acceptEdits -- {prompt}",
    "review": "codex exec --sandbox workspace-write {prompt}",
    "fixes": "claude -p --permission-mode acceptEdits -- {prompt}",
}


@dataclass(slots=True)
class TrackerSettings:
    """Task tracker (ClickUp) connection settings."""

    api_base_url: str = "https://api.clickup.com/api/v2"
    api_key: str = ""
    workspace_id: str = ""
    bot_user_id: str = ""
    watch_statuses: tuple[str, ...] = ("bot in progress",)
    review_ready_status: str = "can be checked"
    comments_enabled: bool = True
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class RepositorySettings:
    """Active source repository and its host (GitHub) API."""

    owner: str = ""
    repo: str = ""
    path: Path | None = None
    base_branch: str = "main"
    api_base_url: str = "https://api.github.com"
    token: str = ""
    request_timeout_seconds: float = 10.0

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(slots=True)
class PipelineSettings:
    """Polling cadence and bounds for the orchestrator and watchers."""

    task_poll_interval_seconds: float = 15.0
    pr_check_interval_seconds: float = 30.0
    review_check_interval_seconds: float = 30.0
    pr_watch_timeout_seconds: int = 1_800
    max_review_iterations: int = 3
    cleanup_after_days: int = 7
    stage_workers: int = 2
    shutdown_join_seconds: float = 15.0


@dataclass(slots=True)
class RetrySettings:
    """Retry policy applied to tracker and host API calls."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_factor: float = 2.0


@dataclass(slots=True)
class AgentSettings:
    """External agent CLI invocation settings."""

    command_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_AGENT_COMMAND_TEMPLATES),
    )
    timeout_seconds: int = 1_800
    workdir_root: Path = Path(".agent_relay/runs")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_relay.db")
    sqlite_busy_timeout_ms: int = 5_000
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    repository: RepositorySettings = field(default_factory=RepositorySettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    agents: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        repo_path = os.getenv("AGENT_RELAY_REPO_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_RELAY_DB_PATH", ".agent_relay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            tracker=TrackerSettings(
                api_base_url=os.getenv(
                    "AGENT_RELAY_TRACKER_API_URL",
                    "https://api.clickup.com/api/v2",
                ),
                api_key=os.getenv("AGENT_RELAY_TRACKER_API_KEY", ""),
                workspace_id=os.getenv("AGENT_RELAY_TRACKER_WORKSPACE_ID", ""),
                bot_user_id=os.getenv("AGENT_RELAY_TRACKER_BOT_USER_ID", ""),
                watch_statuses=_csv_tuple(
                    os.getenv("AGENT_RELAY_TRACKER_WATCH_STATUSES", "bot in progress"),
                ),
                review_ready_status=os.getenv(
                    "AGENT_RELAY_TRACKER_REVIEW_READY_STATUS",
                    "can be checked",
                ),
                comments_enabled=_env_bool("AGENT_RELAY_TRACKER_COMMENTS_ENABLED", default=True),
                request_timeout_seconds=float(
                    os.getenv("AGENT_RELAY_TRACKER_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            repository=RepositorySettings(
                owner=os.getenv("AGENT_RELAY_REPO_OWNER", ""),
                repo=os.getenv("AGENT_RELAY_REPO_NAME", ""),
                path=Path(repo_path) if repo_path else None,
                base_branch=os.getenv("AGENT_RELAY_REPO_BASE_BRANCH", "main"),
                api_base_url=os.getenv("AGENT_RELAY_HOST_API_URL", "https://api.github.com"),
                token=os.getenv("AGENT_RELAY_HOST_TOKEN", ""),
                request_timeout_seconds=float(
                    os.getenv("AGENT_RELAY_HOST_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
            pipeline=PipelineSettings(
                task_poll_interval_seconds=float(
                    os.getenv("AGENT_RELAY_TASK_POLL_INTERVAL_SECONDS", "15.0"),
                ),
                pr_check_interval_seconds=float(
                    os.getenv("AGENT_RELAY_PR_CHECK_INTERVAL_SECONDS", "30.0"),
                ),
                review_check_interval_seconds=float(
                    os.getenv("AGENT_RELAY_REVIEW_CHECK_INTERVAL_SECONDS", "30.0"),
                ),
                pr_watch_timeout_seconds=int(
                    os.getenv("AGENT_RELAY_PR_WATCH_TIMEOUT_SECONDS", "1800"),
                ),
                max_review_iterations=int(os.getenv("AGENT_RELAY_MAX_REVIEW_ITERATIONS", "3")),
                cleanup_after_days=int(os.getenv("AGENT_RELAY_CLEANUP_AFTER_DAYS", "7")),
                stage_workers=int(os.getenv("AGENT_RELAY_STAGE_WORKERS", "2")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("AGENT_RELAY_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(os.getenv("AGENT_RELAY_RETRY_BASE_DELAY_SECONDS", "1.0")),
                max_delay_seconds=float(os.getenv("AGENT_RELAY_RETRY_MAX_DELAY_SECONDS", "30.0")),
                backoff_factor=float(os.getenv("AGENT_RELAY_RETRY_BACKOFF_FACTOR", "2.0")),
            ),
            agents=AgentSettings(
                command_templates=_collect_command_templates(),
                timeout_seconds=int(os.getenv("AGENT_RELAY_AGENT_TIMEOUT_SECONDS", "1800")),
                workdir_root=Path(os.getenv("AGENT_RELAY_WORKDIR_ROOT", ".agent_relay/runs")),
            ),
        )

    def validate_for_daemon(self) -> None:
        """Raise configuration error if the daemon cannot talk to its collaborators."""

        if not self.tracker.api_key:
            raise ValueError("AGENT_RELAY_TRACKER_API_KEY is required.")
        if not self.tracker.workspace_id:
            raise ValueError("AGENT_RELAY_TRACKER_WORKSPACE_ID is required.")
        if not self.repository.owner or not self.repository.repo:
            raise ValueError("AGENT_RELAY_REPO_OWNER and AGENT_RELAY_REPO_NAME are required.")
        _validate_api_url("AGENT_RELAY_TRACKER_API_URL", self.tracker.api_base_url)
        _validate_api_url("AGENT_RELAY_HOST_API_URL", self.repository.api_base_url)

        pipeline = self.pipeline
        for name, value in (
            ("AGENT_RELAY_TASK_POLL_INTERVAL_SECONDS", pipeline.task_poll_interval_seconds),
            ("AGENT_RELAY_PR_CHECK_INTERVAL_SECONDS", pipeline.pr_check_interval_seconds),
            ("AGENT_RELAY_REVIEW_CHECK_INTERVAL_SECONDS", pipeline.review_check_interval_seconds),
            ("AGENT_RELAY_PR_WATCH_TIMEOUT_SECONDS", pipeline.pr_watch_timeout_seconds),
            ("AGENT_RELAY_AGENT_TIMEOUT_SECONDS", self.agents.timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if pipeline.max_review_iterations < 1:
            raise ValueError("AGENT_RELAY_MAX_REVIEW_ITERATIONS must be >= 1.")
        if pipeline.stage_workers < 1:
            raise ValueError("AGENT_RELAY_STAGE_WORKERS must be >= 1.")
        if self.retry.max_attempts < 1:
            raise ValueError("AGENT_RELAY_RETRY_MAX_ATTEMPTS must be >= 1.")

        missing = sorted(set(DEFAULT_AGENT_COMMAND_TEMPLATES) - set(self.agents.command_templates))
        if missing:
            raise ValueError(f"Agent command templates missing for stages: {', '.join(missing)}")


def _collect_command_templates() -> dict[str, str]:
    templates = dict(DEFAULT_AGENT_COMMAND_TEMPLATES)
    for stage in DEFAULT_AGENT_COMMAND_TEMPLATES:
        override = os.getenv(f"AGENT_RELAY_{stage.upper()}_COMMAND", "").strip()
        if override:
            templates[stage] = override
    return templates


def _csv_tuple(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _validate_api_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
