"""Tracker comments posted at pipeline milestones."""

from __future__ import annotations

import logging

from agent_relay.clients.base import TrackerClient
from agent_relay.pipeline.models import StageName

logger = logging.getLogger(__name__)

_STAGE_TITLES: dict[StageName, str] = {
    StageName.ANALYSIS: "Analysis",
    StageName.IMPLEMENTATION: "Implementation",
    StageName.REVIEW: "Code Review",
    StageName.FIXES: "Fixes",
}


class TrackerNotifier:
    """Best-effort tracker side channel.

    Failures are logged as warnings and never propagate into the pipeline.
    """

    def __init__(self, tracker: TrackerClient, *, comments_enabled: bool = True) -> None:
        self.tracker = tracker
        self.comments_enabled = comments_enabled

    def comment(self, task_id: str, text: str) -> bool:
        if not self.comments_enabled:
            logger.debug("Comments disabled; skipping comment on %s", task_id)
            return False
        try:
            self.tracker.post_comment(task_id, text)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to post comment on %s: %s", task_id, error)
            return False
        return True

    def set_status(self, task_id: str, status: str) -> bool:
        try:
            self.tracker.update_status(task_id, status)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to move %s to %r: %s", task_id, status, error)
            return False
        return True


def workflow_complete_message(*, branch: str, failed_stages: list[str]) -> str:
    lines = ["**Workflow Complete**", "", f"**Branch:** `{branch}`"]
    if failed_stages:
        lines.append(f"**Degraded stages:** {', '.join(failed_stages)}")
    lines.append("**Status:** Ready for review")
    return "\n".join(lines)


def pipeline_failed_message(*, stage: str, error: str) -> str:
    return (
        "**Workflow Failed**\n\n"
        f"**Stage:** {stage}\n"
        f"**Error:** {error}\n\n"
        "The task was queued for manual processing."
    )


def rerun_complete_message(stage: StageName, *, branch: str) -> str:
    return (
        f"**{_STAGE_TITLES[stage]} Re-run Complete**\n\n"
        f"**Branch:** `{branch}`\n"
        "**Status:** Complete"
    )


def rerun_failed_message(stage: StageName, *, error: str) -> str:
    return f"**{_STAGE_TITLES[stage]} Re-run Failed**\n\nError: {error}"


def pr_found_message(*, pr_number: int | None, pr_url: str | None) -> str:
    return (
        "**Pull Request Created**\n\n"
        f"**PR #{pr_number}:** {pr_url}\n\n"
        "Implementation complete and ready for review."
    )


def pr_timeout_message(*, branch: str, timeout_minutes: int) -> str:
    return (
        "**Timeout Warning**\n\n"
        f"No pull request detected for `{branch}` after {timeout_minutes} minutes.\n\n"
        "Check the agent run for details."
    )


def review_commit_message(*, iteration: int, max_iterations: int) -> str:
    return (
        "**Code Review Complete**\n\n"
        "Review comments were committed as TODOs.\n\n"
        f"**Next:** fixes for iteration {iteration}/{max_iterations}."
    )


def fix_commit_message(*, iteration: int, max_iterations: int) -> str:
    return (
        "**TODO Comments Fixed**\n\n"
        "Review TODOs were addressed.\n\n"
        f"**Iteration:** {iteration}/{max_iterations}"
    )


def review_cycle_complete_message(*, iterations: int, pr_url: str) -> str:
    return (
        "**Review Cycle Complete**\n\n"
        "All review iterations finished. PR is ready for final review.\n\n"
        f"**Total Iterations:** {iterations}\n"
        f"**PR:** {pr_url}"
    )


def command_ack_message(command: str) -> str:
    return f"**Command Received**\n\nRunning `{command}`."


def command_failed_message(command: str, *, error: str) -> str:
    return f"**Command Failed**\n\n`{command}`: {error}"
