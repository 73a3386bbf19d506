"""Long-running relay: task polling and both completion watchers on their own threads."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from agent_relay.agents.cli_executor import CliStageExecutor
from agent_relay.clients.base import HostClient, Task, TrackerClient
from agent_relay.clients.clickup import ClickUpTrackerClient
from agent_relay.clients.github import GitHubHostClient
from agent_relay.commands import CommandDispatcher
from agent_relay.config import Settings
from agent_relay.pipeline.models import StageName
from agent_relay.pipeline.notifications import TrackerNotifier, pipeline_failed_message
from agent_relay.pipeline.orchestrator import TaskOrchestrator
from agent_relay.pipeline.repository import (
    INTERRUPTED_ERROR,
    ManualQueueRepository,
    PipelineStateStore,
    ProcessedCommentRepository,
)
from agent_relay.pipeline.stages import StageRunner
from agent_relay.retry import RetryPolicy
from agent_relay.watchers.pr_watcher import PrTickSummary, PrWatcher
from agent_relay.watchers.repository import PrWatchRepository, ReviewWatchRepository
from agent_relay.watchers.review_cycle import (
    Launcher,
    ReviewCycleWatcher,
    ReviewTickSummary,
    run_inline,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayRuntime:
    """Wired collaborators sharing one state store."""

    settings: Settings
    store: PipelineStateStore
    tracker: TrackerClient
    host: HostClient
    notifier: TrackerNotifier
    runner: StageRunner
    orchestrator: TaskOrchestrator
    dispatcher: CommandDispatcher
    pr_watcher: PrWatcher
    review_watcher: ReviewCycleWatcher
    manual_queue: ManualQueueRepository

    def close(self) -> None:
        for client in (self.tracker, self.host):
            close = getattr(client, "close", None)
            if close is not None:
                close()
        self.store.close()


def build_runtime(  # noqa: PLR0913
    settings: Settings,
    *,
    store: PipelineStateStore | None = None,
    tracker: TrackerClient | None = None,
    host: HostClient | None = None,
    runner: StageRunner | None = None,
    launcher: Launcher = run_inline,
    shutdown_requested: Callable[[], bool] | None = None,
) -> RelayRuntime:
    """Wire the pipeline from settings; any collaborator can be supplied instead."""

    if store is None:
        store = PipelineStateStore(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        store.init_schema()

    retry_policy = RetryPolicy.from_settings(settings.retry, on_retry=_log_retry)
    tracker = tracker or ClickUpTrackerClient(settings.tracker, retry_policy=retry_policy)
    host = host or GitHubHostClient(settings.repository, retry_policy=retry_policy)
    notifier = TrackerNotifier(tracker, comments_enabled=settings.tracker.comments_enabled)
    if runner is None:
        executor = CliStageExecutor(
            settings.agents,
            repository=settings.repository,
            shutdown_requested=shutdown_requested,
        )
        runner = StageRunner(store, dict.fromkeys(StageName, executor))

    manual_queue = ManualQueueRepository(store)
    review_watcher = ReviewCycleWatcher(
        watches=ReviewWatchRepository(store),
        store=store,
        host=host,
        notifier=notifier,
        runner=runner,
        max_iterations=settings.pipeline.max_review_iterations,
        launcher=launcher,
    )
    pr_watcher = PrWatcher(
        watches=PrWatchRepository(store),
        store=store,
        host=host,
        notifier=notifier,
        timeout_seconds=settings.pipeline.pr_watch_timeout_seconds,
        review_ready_status=settings.tracker.review_ready_status,
        on_pr_found=review_watcher.on_pr_found,
    )
    repository = settings.repository

    def _register_pr_watch(task: Task, branch: str) -> None:
        pr_watcher.track(
            task_id=task.task_id,
            task_name=task.name,
            branch=branch,
            owner=repository.owner,
            repo=repository.repo,
        )

    orchestrator = TaskOrchestrator(
        store=store,
        runner=runner,
        notifier=notifier,
        manual_queue=manual_queue,
        repository=repository,
        register_pr_watch=_register_pr_watch,
    )
    dispatcher = CommandDispatcher(
        tracker=tracker,
        notifier=notifier,
        orchestrator=orchestrator,
        processed=ProcessedCommentRepository(store),
        bot_user_id=settings.tracker.bot_user_id,
    )
    return RelayRuntime(
        settings=settings,
        store=store,
        tracker=tracker,
        host=host,
        notifier=notifier,
        runner=runner,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        pr_watcher=pr_watcher,
        review_watcher=review_watcher,
        manual_queue=manual_queue,
    )


@dataclass(slots=True)
class TaskPollSummary:
    """Counters for one task-poll tick."""

    seen: int = 0
    commands: int = 0
    started: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class RelayDaemon:
    """Run task polling, the PR watcher and the review watcher as periodic threads."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: PipelineStateStore | None = None,
        tracker: TrackerClient | None = None,
        host: HostClient | None = None,
        runner: StageRunner | None = None,
    ) -> None:
        self.settings = settings
        self._stop = threading.Event()
        self._stage_pool = ThreadPoolExecutor(
            max_workers=settings.pipeline.stage_workers,
            thread_name_prefix="relay-stage",
        )
        self.runtime = build_runtime(
            settings,
            store=store,
            tracker=tracker,
            host=host,
            runner=runner,
            launcher=self._stage_pool.submit,
            shutdown_requested=self._stop.is_set,
        )
        self._threads: list[threading.Thread] = []

    def poll_tasks(self) -> TaskPollSummary:
        """Dispatch command comments, then start pipelines for unseen tasks."""

        summary = TaskPollSummary()
        runtime = self.runtime
        try:
            tasks = runtime.tracker.list_tasks()
        except Exception as error:  # noqa: BLE001
            logger.warning("Task listing failed: %s", error)
            return summary
        summary.seen = len(tasks)
        summary.commands = len(runtime.dispatcher.poll(tasks))

        for task in tasks:
            if self._stop.is_set():
                break
            if runtime.store.get(task.task_id) is not None:
                summary.skipped += 1
                continue
            summary.started += 1
            result = runtime.orchestrator.process_task(task)
            if result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
        return summary

    def run(self) -> None:
        """Block until SIGINT/SIGTERM or :meth:`stop`."""

        pipeline = self.settings.pipeline
        self._recover_interrupted()
        removed = self.runtime.store.cleanup(timedelta(days=pipeline.cleanup_after_days))
        if removed:
            logger.info(
                "Removed %d finished pipelines older than %d days",
                removed,
                pipeline.cleanup_after_days,
            )

        with self._signal_handlers():
            self._start_thread("relay-tasks", self.poll_tasks, pipeline.task_poll_interval_seconds)
            self._start_thread(
                "relay-prs",
                self.runtime.pr_watcher.tick,
                pipeline.pr_check_interval_seconds,
            )
            self._start_thread(
                "relay-reviews",
                self.runtime.review_watcher.tick,
                pipeline.review_check_interval_seconds,
            )
            logger.info(
                "Relay started for %s (tracker workspace %s)",
                self.settings.repository.full_name,
                self.settings.tracker.workspace_id,
            )
            while not self._stop.wait(timeout=0.5):
                pass
        self._shutdown()

    def run_once(self) -> tuple[TaskPollSummary, PrTickSummary, ReviewTickSummary]:
        """One task poll and one tick of each watcher, then shut down."""

        try:
            self._recover_interrupted()
            tasks = self.poll_tasks()
            prs = self.runtime.pr_watcher.tick()
            reviews = self.runtime.review_watcher.tick()
        finally:
            self._shutdown()
        return tasks, prs, reviews

    def stop(self) -> None:
        self._stop.set()

    def _recover_interrupted(self) -> None:
        runtime = self.runtime
        for record in runtime.store.recover_interrupted():
            stage = record.current_stage.value
            logger.warning(
                "Pipeline %s was interrupted at %s; queued for manual work",
                record.task_id,
                stage,
            )
            runtime.manual_queue.add(
                Task(task_id=record.task_id, name=record.task_name),
                INTERRUPTED_ERROR,
                branch=record.typed_metadata.branch,
            )
            runtime.notifier.comment(
                record.task_id,
                pipeline_failed_message(stage=stage, error=INTERRUPTED_ERROR),
            )

    def _start_thread(self, name: str, tick: Callable[[], object], interval: float) -> None:
        thread = threading.Thread(
            target=self._periodic,
            args=(name, tick, interval),
            daemon=True,
            name=name,
        )
        thread.start()
        self._threads.append(thread)

    def _periodic(self, name: str, tick: Callable[[], object], interval: float) -> None:
        logger.debug("%s thread started", name)
        while not self._stop.is_set():
            try:
                tick()
            except Exception:
                logger.exception("%s tick failed", name)
            self._stop.wait(timeout=interval)
        logger.debug("%s thread stopped", name)

    def _shutdown(self) -> None:
        join_seconds = self.settings.pipeline.shutdown_join_seconds
        for thread in self._threads:
            thread.join(timeout=join_seconds)
            if thread.is_alive():
                logger.warning("%s did not stop within %ss", thread.name, join_seconds)
        self._threads.clear()
        self._stage_pool.shutdown(wait=True, cancel_futures=True)
        self.runtime.close()
        logger.info("Relay stopped")

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; shutting down", name)
            self._stop.set()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass


def _log_retry(attempt: int, error: BaseException, delay: float) -> None:
    logger.warning("API call failed (attempt %d): %s; retrying in %.1fs", attempt, error, delay)
