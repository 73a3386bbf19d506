from __future__ import annotations

import allure
import pytest
from conftest import Harness

from agent_relay.clients.base import Comment, Task
from agent_relay.commands import CommandDispatcher, CommandType, parse_command
from agent_relay.pipeline.models import StageName
from agent_relay.pipeline.notifications import command_ack_message
from agent_relay.pipeline.repository import ProcessedCommentRepository

pytestmark = [
    allure.epic("Task Pipeline"),
    allure.feature("Comment Commands"),
]


def _dispatcher(harness: Harness, *, bot_user_id: str = "bot") -> CommandDispatcher:
    return CommandDispatcher(
        tracker=harness.tracker,
        notifier=harness.notifier,
        orchestrator=harness.orchestrator,
        processed=ProcessedCommentRepository(harness.store),
        bot_user_id=bot_user_id,
    )


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Please re-run check", CommandType.RERUN_REVIEW),
        ("RERUN REVIEW now", CommandType.RERUN_REVIEW),
        ("re-run fixes please", CommandType.RERUN_FIXES),
        ("rerun fixes", CommandType.RERUN_FIXES),
        ("looks good to me", CommandType.NONE),
        ("", CommandType.NONE),
        (None, CommandType.NONE),
    ],
)
def test_parse_command(text: str | None, expected: CommandType) -> None:
    assert parse_command(text) == expected


def test_bot_acknowledgement_does_not_trigger_itself() -> None:
    assert parse_command(command_ack_message(CommandType.RERUN_REVIEW.value)) == CommandType.NONE
    assert parse_command(command_ack_message(CommandType.RERUN_FIXES.value)) == CommandType.NONE


def test_poll_reruns_review_once_per_comment(harness: Harness) -> None:
    harness.orchestrator.process_task(Task(task_id="T1", name="Task T1"))
    harness.tracker.posted.clear()
    harness.tracker.comments["T1"] = [
        Comment(comment_id="c1", text="nice work", author_id="u1"),
        Comment(comment_id="c2", text="please re-run check", author_id="u1"),
    ]
    dispatcher = _dispatcher(harness)
    tasks = [Task(task_id="T1", name="Task T1")]

    first = dispatcher.poll(tasks)
    second = dispatcher.poll(tasks)

    assert [(outcome.comment_id, outcome.command) for outcome in first] == [
        ("c2", CommandType.RERUN_REVIEW),
    ]
    assert first[0].result is not None
    assert first[0].result.success is True
    assert second == []
    assert len(harness.executors[StageName.REVIEW].calls) == 2
    comments = harness.tracker.comments_for("T1")
    assert "Command Received" in comments[0]
    assert "Code Review Re-run Complete" in comments[1]


def test_comments_from_bot_user_are_skipped(harness: Harness) -> None:
    dispatcher = _dispatcher(harness)

    comment = Comment(comment_id="c1", text="rerun fixes", author_id="bot")
    outcome = dispatcher.dispatch("T1", comment)

    assert outcome.handled is False
    assert harness.tracker.posted == []


def test_invariant_error_is_reported_as_failed_command(harness: Harness) -> None:
    dispatcher = _dispatcher(harness)

    comment = Comment(comment_id="c1", text="rerun fixes", author_id="u1")
    outcome = dispatcher.dispatch("T9", comment)

    assert outcome.handled is True
    assert outcome.result is None
    assert outcome.error == "Pipeline not found for task T9"
    comments = harness.tracker.comments_for("T9")
    assert "Command Failed" in comments[-1]
    assert ProcessedCommentRepository(harness.store).has("c1") is True


def test_rerun_fixes_failure_surfaces_in_outcome(harness: Harness) -> None:
    harness.orchestrator.process_task(Task(task_id="T1", name="Task T1"))
    harness.executors[StageName.FIXES].results = [RuntimeError("agent crashed")]
    dispatcher = _dispatcher(harness)

    comment = Comment(comment_id="c5", text="re-run fixes", author_id="u1")
    outcome = dispatcher.dispatch("T1", comment)

    assert outcome.handled is True
    assert outcome.result is not None
    assert outcome.result.success is False
    assert outcome.error == "agent crashed"


def test_comment_listing_failure_skips_task(harness: Harness) -> None:
    class BrokenTracker:
        def list_comments(self, task_id: str) -> list[Comment]:
            raise RuntimeError("tracker down")

    dispatcher = _dispatcher(harness)
    dispatcher.tracker = BrokenTracker()  # type: ignore[assignment]

    assert dispatcher.poll([Task(task_id="T1", name="t")]) == []
