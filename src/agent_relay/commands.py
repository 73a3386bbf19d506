"""Operator commands posted as tracker comments."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from agent_relay.clients.base import Comment, Task, TrackerClient
from agent_relay.pipeline.models import RerunResult
from agent_relay.pipeline.notifications import (
    TrackerNotifier,
    command_ack_message,
    command_failed_message,
)
from agent_relay.pipeline.orchestrator import TaskOrchestrator
from agent_relay.pipeline.repository import ProcessedCommentRepository

logger = logging.getLogger(__name__)


class CommandType(str, Enum):
    """Recognized operator commands."""

    RERUN_REVIEW = "rerun_review"
    RERUN_FIXES = "rerun_fixes"
    NONE = "none"


_COMMAND_PATTERNS: tuple[tuple[CommandType, tuple[str, ...]], ...] = (
    (
        CommandType.RERUN_REVIEW,
        ("re-run check", "rerun check", "re-run review", "rerun review"),
    ),
    (CommandType.RERUN_FIXES, ("re-run fixes", "rerun fixes")),
)


def parse_command(text: str | None) -> CommandType:
    if not text:
        return CommandType.NONE
    haystack = text.lower()
    for command, patterns in _COMMAND_PATTERNS:
        if _first_match(haystack, patterns) is not None:
            return command
    return CommandType.NONE


@dataclass(slots=True)
class DispatchOutcome:
    """What happened to one comment."""

    comment_id: str
    command: CommandType
    handled: bool
    result: RerunResult | None = None
    error: str | None = None


class CommandDispatcher:
    """Turn command comments into targeted stage re-runs, at most once per comment."""

    def __init__(
        self,
        *,
        tracker: TrackerClient,
        notifier: TrackerNotifier,
        orchestrator: TaskOrchestrator,
        processed: ProcessedCommentRepository,
        bot_user_id: str = "",
    ) -> None:
        self.tracker = tracker
        self.notifier = notifier
        self.orchestrator = orchestrator
        self.processed = processed
        self.bot_user_id = bot_user_id

    def dispatch(self, task_id: str, comment: Comment) -> DispatchOutcome:
        """Act on one comment; re-run failures are reported, never raised."""

        command = parse_command(comment.text)
        if command == CommandType.NONE:
            return DispatchOutcome(comment_id=comment.comment_id, command=command, handled=False)
        if self.bot_user_id and comment.author_id == self.bot_user_id:
            return DispatchOutcome(comment_id=comment.comment_id, command=command, handled=False)
        if not self.processed.claim(comment.comment_id, task_id, command.value):
            return DispatchOutcome(comment_id=comment.comment_id, command=command, handled=False)

        logger.info("Command %s on %s (comment %s)", command.value, task_id, comment.comment_id)
        self.notifier.comment(task_id, command_ack_message(command.value))
        try:
            if command == CommandType.RERUN_REVIEW:
                result = self.orchestrator.rerun_review(task_id)
            else:
                result = self.orchestrator.rerun_fixes(task_id)
        except Exception as error:
            logger.exception("Command %s failed for %s", command.value, task_id)
            message = str(error) or type(error).__name__
            self.notifier.comment(task_id, command_failed_message(command.value, error=message))
            return DispatchOutcome(
                comment_id=comment.comment_id,
                command=command,
                handled=True,
                error=message,
            )
        return DispatchOutcome(
            comment_id=comment.comment_id,
            command=command,
            handled=True,
            result=result,
            error=result.error,
        )

    def poll(self, tasks: Iterable[Task]) -> list[DispatchOutcome]:
        """Walk every task's comments and dispatch the unprocessed commands."""

        outcomes: list[DispatchOutcome] = []
        for task in tasks:
            try:
                comments = self.tracker.list_comments(task.task_id)
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to list comments for %s: %s", task.task_id, error)
                continue
            for comment in comments:
                outcome = self.dispatch(task.task_id, comment)
                if outcome.handled:
                    outcomes.append(outcome)
        return outcomes


def _first_match(haystack: str, patterns: Iterable[str]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
