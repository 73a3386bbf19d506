from __future__ import annotations

import allure
import pytest
from conftest import Harness

from agent_relay.clients.base import CommitInfo, PullRequestInfo
from agent_relay.pipeline.models import PipelineStage, StageName
from agent_relay.watchers.models import CommitKind, PrWatchEntry, ReviewStage
from agent_relay.watchers.repository import ReviewWatchRepository
from agent_relay.watchers.review_cycle import ReviewCycleWatcher, classify_commit

pytestmark = [
    allure.epic("Completion Watchers"),
    allure.feature("Review Cycle"),
]

BRANCH = "task-T1"


def _prepare_pipeline(harness: Harness) -> None:
    harness.store.init_pipeline("T1", "Task T1")
    harness.store.update_stage("T1", PipelineStage.IMPLEMENTING)
    harness.store.complete_stage("T1", PipelineStage.IMPLEMENTING, branch=BRANCH)


def _watcher(harness: Harness, **kwargs: object) -> ReviewCycleWatcher:
    return ReviewCycleWatcher(
        watches=ReviewWatchRepository(harness.store),
        store=harness.store,
        host=harness.host,
        notifier=harness.notifier,
        runner=harness.runner,
        **kwargs,
    )


def _start(watcher: ReviewCycleWatcher) -> None:
    watcher.start_cycle(
        task_id="T1",
        task_name="Task T1",
        branch=BRANCH,
        owner="acme",
        repo="widgets",
        pr_number=42,
        pr_url="https://github.com/acme/widgets/pull/42",
    )


def _push(harness: Harness, sha: str, message: str) -> None:
    harness.host.commits[BRANCH] = CommitInfo(sha=sha, message=message)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("review: add TODO notes for error handling", {CommitKind.REVIEW}),
        ("review: looks good", {CommitKind.REVIEW}),
        ("Add TODO markers", {CommitKind.REVIEW}),
        ("fix: resolve TODO items from review", {CommitKind.REVIEW, CommitKind.FIX}),
        ("fix: typo", set()),
        ("feat: implement login", set()),
    ],
)
def test_classify_commit(message: str, expected: set[CommitKind]) -> None:
    assert classify_commit(message) == expected


def test_three_round_trips_then_cycle_is_removed(harness: Harness) -> None:
    _prepare_pipeline(harness)
    watcher = _watcher(harness, max_iterations=3)
    _start(watcher)

    _push(harness, "c0", "feat: implement login")
    watcher.tick()
    entry = watcher.watches.get("T1")
    assert entry is not None
    assert entry.last_commit_sha == "c0"
    assert entry.iteration == 0

    sha = 1
    for iteration in (1, 2, 3):
        _push(harness, f"c{sha}", f"review: round {iteration}\n\nTODO tighten validation")
        sha += 1
        summary = watcher.tick()
        assert summary.reviews == 1
        entry = watcher.watches.get("T1")
        assert entry is not None
        assert entry.iteration == iteration
        assert entry.stage == ReviewStage.WAITING_FOR_FIXES

        _push(harness, f"c{sha}", f"fix: address TODO items from round {iteration}")
        sha += 1
        summary = watcher.tick()
        assert summary.fixes == 1

    assert summary.completed == 1
    assert watcher.watches.get("T1") is None
    assert len(harness.executors[StageName.FIXES].calls) == 3
    assert len(harness.executors[StageName.REVIEW].calls) == 2
    assert [call.iteration for call in harness.executors[StageName.FIXES].calls] == [1, 2, 3]

    comments = harness.tracker.comments_for("T1")
    assert "Review Cycle Complete" in comments[-1]
    assert "**Total Iterations:** 3" in comments[-1]
    record = harness.store.get("T1")
    assert record is not None
    assert record.typed_metadata.review_iterations == 3
    assert record.typed_metadata.max_review_iterations == 3


def test_unrelated_commits_only_move_the_baseline(harness: Harness) -> None:
    _prepare_pipeline(harness)
    watcher = _watcher(harness)
    _start(watcher)
    _push(harness, "c0", "feat: implement login")
    watcher.tick()

    _push(harness, "c1", "chore: bump deps")
    summary = watcher.tick()

    assert (summary.reviews, summary.fixes) == (0, 0)
    entry = watcher.watches.get("T1")
    assert entry is not None
    assert entry.last_commit_sha == "c1"
    assert entry.stage == ReviewStage.WAITING_FOR_REVIEW
    assert entry.iteration == 0


def test_fix_commit_with_todo_counts_as_review_while_waiting_for_review(
    harness: Harness,
) -> None:
    _prepare_pipeline(harness)
    watcher = _watcher(harness)
    _start(watcher)
    _push(harness, "c0", "feat: implement login")
    watcher.tick()

    _push(harness, "c1", "fix: address TODO notes")
    summary = watcher.tick()

    assert (summary.reviews, summary.fixes) == (1, 0)
    entry = watcher.watches.get("T1")
    assert entry is not None
    assert entry.last_commit_sha == "c1"
    assert entry.stage == ReviewStage.WAITING_FOR_FIXES
    assert entry.iteration == 1
    assert len(harness.executors[StageName.FIXES].calls) == 1


def test_same_head_commit_is_ignored(harness: Harness) -> None:
    _prepare_pipeline(harness)
    watcher = _watcher(harness)
    _start(watcher)
    _push(harness, "c0", "feat: implement login")
    watcher.tick()
    _push(harness, "c1", "review: TODO")
    watcher.tick()
    watcher.tick()

    assert len(harness.executors[StageName.FIXES].calls) == 1


def test_fix_stage_launch_goes_through_launcher(harness: Harness) -> None:
    _prepare_pipeline(harness)
    jobs: list[object] = []
    watcher = _watcher(harness, launcher=jobs.append)
    _start(watcher)
    _push(harness, "c0", "feat")
    watcher.tick()
    _push(harness, "c1", "review: TODO")

    watcher.tick()

    assert len(jobs) == 1
    assert harness.executors[StageName.FIXES].calls == []
    entry = watcher.watches.get("T1")
    assert entry is not None
    assert entry.stage == ReviewStage.WAITING_FOR_FIXES


def test_start_cycle_is_a_no_op_when_task_already_watched(harness: Harness) -> None:
    _prepare_pipeline(harness)
    watcher = _watcher(harness)
    _start(watcher)

    duplicate = watcher.start_cycle(
        task_id="T1",
        task_name="Task T1",
        branch="other",
        owner="acme",
        repo="widgets",
        pr_number=99,
        pr_url="u",
    )

    assert duplicate is None
    entry = watcher.watches.get("T1")
    assert entry is not None
    assert entry.pr_number == 42


def test_on_pr_found_starts_cycle_from_pr_watch_entry(harness: Harness) -> None:
    _prepare_pipeline(harness)
    watcher = _watcher(harness)
    pr_entry = PrWatchEntry(
        task_id="T1",
        task_name="Task T1",
        branch=BRANCH,
        owner="acme",
        repo="widgets",
        started_at=harness.clock(),
    )

    watcher.on_pr_found(pr_entry, PullRequestInfo(found=True, number=7, url="https://pr/7"))

    entry = watcher.watches.get("T1")
    assert entry is not None
    assert (entry.pr_number, entry.pr_url, entry.iteration) == (7, "https://pr/7", 0)
    assert entry.stage == ReviewStage.WAITING_FOR_REVIEW


def test_host_errors_are_counted(harness: Harness) -> None:
    _prepare_pipeline(harness)
    watcher = _watcher(harness)
    _start(watcher)
    harness.host.error = RuntimeError("boom")

    summary = watcher.tick()

    assert summary.errors == 1
    assert watcher.watches.get("T1") is not None
