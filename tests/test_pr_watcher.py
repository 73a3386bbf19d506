from __future__ import annotations

from datetime import timedelta

import allure
from conftest import Harness

from agent_relay.clients.base import PullRequestInfo
from agent_relay.errors import NetworkError
from agent_relay.watchers.models import PrWatchEntry
from agent_relay.watchers.pr_watcher import PrWatcher
from agent_relay.watchers.repository import PrWatchRepository

pytestmark = [
    allure.epic("Completion Watchers"),
    allure.feature("Pull Request Detection"),
]


def _watcher(
    harness: Harness,
    *,
    found: list[tuple[PrWatchEntry, PullRequestInfo]] | None = None,
) -> PrWatcher:
    return PrWatcher(
        watches=PrWatchRepository(harness.store),
        store=harness.store,
        host=harness.host,
        notifier=harness.notifier,
        timeout_seconds=1_800,
        review_ready_status="can be checked",
        on_pr_found=(lambda entry, pr: found.append((entry, pr))) if found is not None else None,
    )


def _track(watcher: PrWatcher, task_id: str = "T1") -> PrWatchEntry:
    return watcher.track(
        task_id=task_id,
        task_name=f"Task {task_id}",
        branch=f"task-{task_id}",
        owner="acme",
        repo="widgets",
    )


def test_found_pull_request_is_announced_recorded_and_handed_off(harness: Harness) -> None:
    harness.store.init_pipeline("T1", "Task T1")
    found: list[tuple[PrWatchEntry, PullRequestInfo]] = []
    watcher = _watcher(harness, found=found)
    _track(watcher)
    harness.host.pull_requests["task-T1"] = PullRequestInfo(
        found=True,
        number=42,
        url="https://github.com/acme/widgets/pull/42",
        state="open",
    )

    summary = watcher.tick()

    assert (summary.checked, summary.found, summary.timed_out) == (1, 1, 0)
    assert watcher.watches.get("T1") is None
    assert harness.tracker.statuses == [("T1", "can be checked")]
    comment = harness.tracker.comments_for("T1")[0]
    assert "PR #42" in comment
    record = harness.store.get("T1")
    assert record is not None
    assert record.typed_metadata.pr_number == 42
    assert record.typed_metadata.pr_url == "https://github.com/acme/widgets/pull/42"
    assert [(entry.task_id, pr.number) for entry, pr in found] == [("T1", 42)]


def test_missing_pull_request_keeps_watching(harness: Harness) -> None:
    watcher = _watcher(harness)
    _track(watcher)

    summary = watcher.tick()

    assert (summary.checked, summary.found) == (1, 0)
    assert watcher.watches.get("T1") is not None
    assert harness.tracker.posted == []


def test_timeout_is_checked_before_querying_host(harness: Harness) -> None:
    watcher = _watcher(harness)
    entry = _track(watcher)
    harness.host.pull_requests["task-T1"] = PullRequestInfo(found=True, number=1, url="u")

    summary = watcher.tick(now=entry.started_at + timedelta(seconds=1_801))

    assert summary.timed_out == 1
    assert summary.found == 0
    assert harness.host.pr_queries == []
    assert watcher.watches.get("T1") is None
    comment = harness.tracker.comments_for("T1")[0]
    assert "Timeout Warning" in comment
    assert "30 minutes" in comment


def test_entry_exactly_at_timeout_is_still_queried(harness: Harness) -> None:
    watcher = _watcher(harness)
    entry = _track(watcher)

    summary = watcher.tick(now=entry.started_at + timedelta(seconds=1_800))

    assert summary.timed_out == 0
    assert harness.host.pr_queries == ["task-T1"]


def test_host_error_is_counted_and_entry_kept(harness: Harness) -> None:
    watcher = _watcher(harness)
    _track(watcher, "T1")
    _track(watcher, "T2")
    harness.host.error = NetworkError("connection reset")

    summary = watcher.tick()

    assert summary.errors == 2
    assert [entry.task_id for entry in watcher.watches.list_newest_first()] == ["T2", "T1"]


def test_callback_failure_does_not_break_tick(harness: Harness) -> None:
    def _explode(entry: PrWatchEntry, pull_request: PullRequestInfo) -> None:
        raise RuntimeError("review watcher down")

    watcher = _watcher(harness)
    watcher.on_pr_found = _explode
    _track(watcher)
    harness.host.pull_requests["task-T1"] = PullRequestInfo(found=True, number=5, url="u")

    summary = watcher.tick()

    assert summary.found == 1
    assert watcher.watches.get("T1") is None


def test_tracking_same_task_restarts_clock(harness: Harness) -> None:
    watcher = _watcher(harness)
    first = _track(watcher)
    harness.clock.advance(minutes=20)
    second = _track(watcher)

    assert second.started_at - first.started_at == timedelta(minutes=20)
    assert len(watcher.watches.list_newest_first()) == 1
