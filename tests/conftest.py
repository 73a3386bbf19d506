"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_relay.clients.base import Comment, CommitInfo, PullRequestInfo, Task
from agent_relay.config import RepositorySettings
from agent_relay.pipeline.models import StageContext, StageName, StageResult
from agent_relay.pipeline.notifications import TrackerNotifier
from agent_relay.pipeline.orchestrator import TaskOrchestrator
from agent_relay.pipeline.repository import ManualQueueRepository, PipelineStateStore
from agent_relay.pipeline.stages import StageRunner

REPOSITORY = RepositorySettings(owner="acme", repo="widgets")


class ManualClock:
    """Deterministic clock for the state store."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 18, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@dataclass
class FakeTracker:
    tasks: list[Task] = field(default_factory=list)
    comments: dict[str, list[Comment]] = field(default_factory=dict)
    posted: list[tuple[str, str]] = field(default_factory=list)
    statuses: list[tuple[str, str]] = field(default_factory=list)
    fail_posts: bool = False

    def list_tasks(self) -> list[Task]:
        return list(self.tasks)

    def list_comments(self, task_id: str) -> list[Comment]:
        return list(self.comments.get(task_id, []))

    def post_comment(self, task_id: str, text: str) -> None:
        if self.fail_posts:
            raise RuntimeError("tracker unavailable")
        self.posted.append((task_id, text))

    def update_status(self, task_id: str, status: str) -> None:
        self.statuses.append((task_id, status))

    def comments_for(self, task_id: str) -> list[str]:
        return [text for posted_task_id, text in self.posted if posted_task_id == task_id]


@dataclass
class FakeHost:
    pull_requests: dict[str, PullRequestInfo] = field(default_factory=dict)
    commits: dict[str, CommitInfo] = field(default_factory=dict)
    pr_queries: list[str] = field(default_factory=list)
    error: Exception | None = None

    def find_pull_request(self, owner: str, repo: str, branch: str) -> PullRequestInfo:
        self.pr_queries.append(branch)
        if self.error is not None:
            raise self.error
        return self.pull_requests.get(branch, PullRequestInfo(found=False))

    def latest_commit(self, owner: str, repo: str, branch: str) -> CommitInfo | None:
        if self.error is not None:
            raise self.error
        return self.commits.get(branch)


class FakeExecutor:
    """Stage executor returning scripted results and recording calls."""

    def __init__(
        self,
        results: list[StageResult | Exception] | None = None,
        *,
        on_execute: Callable[[Task, StageContext], None] | None = None,
    ) -> None:
        self.results = list(results or [])
        self.calls: list[StageContext] = []
        self.on_execute = on_execute

    def execute(self, task: Task, context: StageContext) -> StageResult:
        self.calls.append(context)
        if self.on_execute is not None:
            self.on_execute(task, context)
        if self.results:
            outcome = self.results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return StageResult(success=True, branch=context.branch, content=f"{context.stage.value} ok")


@dataclass
class Harness:
    store: PipelineStateStore
    clock: ManualClock
    tracker: FakeTracker
    host: FakeHost
    executors: dict[StageName, FakeExecutor]
    runner: StageRunner
    notifier: TrackerNotifier
    manual_queue: ManualQueueRepository
    orchestrator: TaskOrchestrator
    pr_watches: list[tuple[str, str]]


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def store(tmp_path: Path, clock: ManualClock) -> Iterator[PipelineStateStore]:
    state_store = PipelineStateStore(tmp_path / "relay.db", clock=clock)
    state_store.init_schema()
    yield state_store
    state_store.close()


@pytest.fixture()
def harness(store: PipelineStateStore, clock: ManualClock) -> Harness:
    tracker = FakeTracker()
    host = FakeHost()
    executors = {stage: FakeExecutor() for stage in StageName}
    runner = StageRunner(store, executors)
    notifier = TrackerNotifier(tracker)
    manual_queue = ManualQueueRepository(store)
    pr_watches: list[tuple[str, str]] = []
    orchestrator = TaskOrchestrator(
        store=store,
        runner=runner,
        notifier=notifier,
        manual_queue=manual_queue,
        repository=REPOSITORY,
        register_pr_watch=lambda task, branch: pr_watches.append((task.task_id, branch)),
    )
    return Harness(
        store=store,
        clock=clock,
        tracker=tracker,
        host=host,
        executors=executors,
        runner=runner,
        notifier=notifier,
        manual_queue=manual_queue,
        orchestrator=orchestrator,
        pr_watches=pr_watches,
    )
