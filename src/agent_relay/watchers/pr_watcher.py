"""Poll the host for pull requests opened from implementation branches."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from agent_relay.clients.base import HostClient, PullRequestInfo
from agent_relay.errors import PipelineNotFoundError
from agent_relay.pipeline.notifications import (
    TrackerNotifier,
    pr_found_message,
    pr_timeout_message,
)
from agent_relay.pipeline.repository import PipelineStateStore
from agent_relay.watchers.models import PrWatchEntry
from agent_relay.watchers.repository import PrWatchRepository

logger = logging.getLogger(__name__)

PrFoundCallback = Callable[[PrWatchEntry, PullRequestInfo], None]


@dataclass(slots=True)
class PrTickSummary:
    """Counters for one PR watcher tick."""

    checked: int = 0
    found: int = 0
    timed_out: int = 0
    errors: int = 0


class PrWatcher:
    """Tick-driven watcher that gives up on a branch after a fixed timeout."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        watches: PrWatchRepository,
        store: PipelineStateStore,
        host: HostClient,
        notifier: TrackerNotifier,
        timeout_seconds: int = 1_800,
        review_ready_status: str = "can be checked",
        on_pr_found: PrFoundCallback | None = None,
    ) -> None:
        self.watches = watches
        self.store = store
        self.host = host
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds
        self.review_ready_status = review_ready_status
        self.on_pr_found = on_pr_found

    def track(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        task_name: str,
        branch: str,
        owner: str,
        repo: str,
    ) -> PrWatchEntry:
        entry = self.watches.upsert(
            PrWatchEntry(
                task_id=task_id,
                task_name=task_name,
                branch=branch,
                owner=owner,
                repo=repo,
                started_at=self.store.now(),
            ),
        )
        logger.info("Watching %s/%s@%s for a pull request (%s)", owner, repo, branch, task_id)
        return entry

    def tick(self, now: datetime | None = None) -> PrTickSummary:
        """Visit every entry once, newest first."""

        current = now or self.store.now()
        summary = PrTickSummary()
        for entry in self.watches.list_newest_first():
            summary.checked += 1
            if (current - entry.started_at).total_seconds() > self.timeout_seconds:
                self._handle_timeout(entry)
                summary.timed_out += 1
                continue

            try:
                pull_request = self.host.find_pull_request(entry.owner, entry.repo, entry.branch)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "PR lookup failed for %s (%s): %s",
                    entry.task_id,
                    entry.branch,
                    error,
                )
                summary.errors += 1
                continue

            if pull_request.found:
                self._handle_found(entry, pull_request)
                summary.found += 1
        return summary

    def _handle_timeout(self, entry: PrWatchEntry) -> None:
        logger.warning(
            "No pull request for %s after %ss; giving up",
            entry.task_id,
            self.timeout_seconds,
        )
        self.notifier.comment(
            entry.task_id,
            pr_timeout_message(branch=entry.branch, timeout_minutes=self.timeout_seconds // 60),
        )
        self.watches.remove(entry.task_id)

    def _handle_found(self, entry: PrWatchEntry, pull_request: PullRequestInfo) -> None:
        logger.info("Task %s -> PR #%s %s", entry.task_id, pull_request.number, pull_request.url)
        self.notifier.comment(
            entry.task_id,
            pr_found_message(pr_number=pull_request.number, pr_url=pull_request.url),
        )
        self.notifier.set_status(entry.task_id, self.review_ready_status)
        try:
            self.store.update_metadata(
                entry.task_id,
                {"pr_number": pull_request.number, "pr_url": pull_request.url},
            )
        except PipelineNotFoundError:
            logger.debug("No pipeline record for %s; PR not recorded", entry.task_id)

        self.watches.remove(entry.task_id)
        if self.on_pr_found is None:
            return
        try:
            self.on_pr_found(entry, pull_request)
        except Exception:
            logger.exception("PR follow-up failed for %s", entry.task_id)
