"""Bounded review/fix round trips driven by new commits on a PR branch."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from agent_relay.clients.base import CommitInfo, HostClient, PullRequestInfo, Task
from agent_relay.errors import AgentRelayError, PipelineNotFoundError
from agent_relay.pipeline.models import StageContext, StageName
from agent_relay.pipeline.notifications import (
    TrackerNotifier,
    fix_commit_message,
    review_commit_message,
    review_cycle_complete_message,
)
from agent_relay.pipeline.repository import PipelineStateStore
from agent_relay.pipeline.stages import StageRunner
from agent_relay.watchers.models import CommitKind, PrWatchEntry, ReviewStage, ReviewWatchEntry
from agent_relay.watchers.repository import ReviewWatchRepository

logger = logging.getLogger(__name__)

Launcher = Callable[[Callable[[], None]], object]

DEFAULT_MAX_ITERATIONS = 3


def classify_commit(message: str) -> frozenset[CommitKind]:
    """Kinds a commit counts as; a ``fix:`` commit mentioning a TODO is both.

    Review commits carry ``review:`` or a TODO marker, fix commits carry
    ``fix:`` and a TODO marker. The watcher stage decides which one applies.
    """

    kinds: set[CommitKind] = set()
    if "review:" in message or "TODO" in message:
        kinds.add(CommitKind.REVIEW)
    if "fix:" in message and "TODO" in message:
        kinds.add(CommitKind.FIX)
    return frozenset(kinds)


def run_inline(job: Callable[[], None]) -> None:
    job()


@dataclass(slots=True)
class ReviewTickSummary:
    """Counters for one review-cycle tick."""

    checked: int = 0
    reviews: int = 0
    fixes: int = 0
    completed: int = 0
    errors: int = 0


class ReviewCycleWatcher:
    """Alternate review and fix stages until ``max_iterations`` round trips finish."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        watches: ReviewWatchRepository,
        store: PipelineStateStore,
        host: HostClient,
        notifier: TrackerNotifier,
        runner: StageRunner,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        launcher: Launcher = run_inline,
    ) -> None:
        self.watches = watches
        self.store = store
        self.host = host
        self.notifier = notifier
        self.runner = runner
        self.max_iterations = max_iterations
        self.launcher = launcher

    def start_cycle(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        task_name: str,
        branch: str,
        owner: str,
        repo: str,
        pr_number: int,
        pr_url: str,
    ) -> ReviewWatchEntry | None:
        """Begin watching a PR; returns None if a cycle is already running."""

        if self.watches.get(task_id) is not None:
            logger.warning("Review cycle already exists for %s", task_id)
            return None
        now = self.store.now()
        entry = self.watches.upsert(
            ReviewWatchEntry(
                task_id=task_id,
                task_name=task_name,
                branch=branch,
                owner=owner,
                repo=repo,
                pr_number=pr_number,
                pr_url=pr_url,
                stage=ReviewStage.WAITING_FOR_REVIEW,
                iteration=0,
                max_iterations=self.max_iterations,
                last_commit_sha=None,
                started_at=now,
                updated_at=now,
            ),
        )
        self._mirror_iterations(entry)
        logger.info("Started review cycle for %s (PR #%s)", task_id, pr_number)
        return entry

    def on_pr_found(self, entry: PrWatchEntry, pull_request: PullRequestInfo) -> None:
        self.start_cycle(
            task_id=entry.task_id,
            task_name=entry.task_name,
            branch=entry.branch,
            owner=entry.owner,
            repo=entry.repo,
            pr_number=pull_request.number or 0,
            pr_url=pull_request.url or "",
        )

    def tick(self) -> ReviewTickSummary:
        summary = ReviewTickSummary()
        for entry in self.watches.list_newest_first():
            summary.checked += 1
            try:
                commit = self.host.latest_commit(entry.owner, entry.repo, entry.branch)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Commit lookup failed for %s (%s): %s",
                    entry.task_id,
                    entry.branch,
                    error,
                )
                summary.errors += 1
                continue
            if commit is None:
                continue

            if entry.last_commit_sha is None:
                entry.last_commit_sha = commit.sha
                entry.updated_at = self.store.now()
                self.watches.upsert(entry)
                continue
            if commit.sha == entry.last_commit_sha:
                continue

            self._advance(entry, commit, summary)
        return summary

    def _advance(
        self,
        entry: ReviewWatchEntry,
        commit: CommitInfo,
        summary: ReviewTickSummary,
    ) -> None:
        kinds = classify_commit(commit.message)
        entry.last_commit_sha = commit.sha
        entry.updated_at = self.store.now()

        if entry.stage == ReviewStage.WAITING_FOR_REVIEW and CommitKind.REVIEW in kinds:
            logger.info("Review commit on %s: %s", entry.task_id, _subject(commit.message))
            entry.iteration += 1
            entry.stage = ReviewStage.WAITING_FOR_FIXES
            self.notifier.comment(
                entry.task_id,
                review_commit_message(
                    iteration=entry.iteration,
                    max_iterations=entry.max_iterations,
                ),
            )
            self.watches.upsert(entry)
            self._mirror_iterations(entry)
            summary.reviews += 1
            self._launch(StageName.FIXES, entry)
            return

        if entry.stage == ReviewStage.WAITING_FOR_FIXES and CommitKind.FIX in kinds:
            logger.info("Fix commit on %s: %s", entry.task_id, _subject(commit.message))
            self.notifier.comment(
                entry.task_id,
                fix_commit_message(iteration=entry.iteration, max_iterations=entry.max_iterations),
            )
            summary.fixes += 1
            if entry.iteration < entry.max_iterations:
                entry.stage = ReviewStage.WAITING_FOR_REVIEW
                self.watches.upsert(entry)
                self._launch(StageName.REVIEW, entry)
                return

            logger.info(
                "Review cycle complete for %s after %d iterations",
                entry.task_id,
                entry.iteration,
            )
            self.notifier.comment(
                entry.task_id,
                review_cycle_complete_message(iterations=entry.iteration, pr_url=entry.pr_url),
            )
            self.watches.remove(entry.task_id)
            summary.completed += 1
            return

        self.watches.upsert(entry)

    def _launch(self, stage: StageName, entry: ReviewWatchEntry) -> None:
        task = Task(task_id=entry.task_id, name=entry.task_name)
        context = StageContext(
            stage=stage,
            repository=f"{entry.owner}/{entry.repo}",
            branch=entry.branch,
            pr_number=entry.pr_number,
            pr_url=entry.pr_url,
            iteration=entry.iteration,
        )

        def _job() -> None:
            try:
                self.runner.run(stage, task, context)
            except AgentRelayError as error:
                logger.warning("%s for %s did not complete: %s", stage.value, entry.task_id, error)

        self.launcher(_job)

    def _mirror_iterations(self, entry: ReviewWatchEntry) -> None:
        try:
            self.store.update_metadata(
                entry.task_id,
                {
                    "review_iterations": entry.iteration,
                    "max_review_iterations": entry.max_iterations,
                },
            )
        except PipelineNotFoundError:
            logger.debug("No pipeline record for %s; iteration count not mirrored", entry.task_id)


def _subject(message: str) -> str:
    lines = message.strip().splitlines()
    return lines[0] if lines else ""
