"""Collaborator contracts for the task tracker and the source-control host."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


def default_branch_name(task_id: str) -> str:
    return f"task-{task_id}"


@dataclass(slots=True)
class Task:
    """Tracker task as seen by the pipeline."""

    task_id: str
    name: str
    description: str = ""
    status: str = ""
    url: str | None = None
    tags: tuple[str, ...] = ()
    custom_fields: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class Comment:
    """Tracker comment on a task."""

    comment_id: str
    text: str
    author_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class PullRequestInfo:
    """Result of a pull-request lookup by branch."""

    found: bool
    number: int | None = None
    url: str | None = None
    state: str | None = None


@dataclass(slots=True)
class CommitInfo:
    """Head commit of a branch."""

    sha: str
    message: str


class TrackerClient(Protocol):
    """Task tracker operations the pipeline depends on."""

    def list_tasks(self) -> list[Task]:
        """Return tasks in the watched statuses."""

    def list_comments(self, task_id: str) -> list[Comment]:
        """Return comments for a task, oldest first."""

    def post_comment(self, task_id: str, text: str) -> None:
        """Append a comment to the task."""

    def update_status(self, task_id: str, status: str) -> None:
        """Move the task to a tracker status."""


class HostClient(Protocol):
    """Source-control host queries used by the completion watchers."""

    def find_pull_request(self, owner: str, repo: str, branch: str) -> PullRequestInfo:
        """Look up an open pull request whose head is ``branch``."""

    def latest_commit(self, owner: str, repo: str, branch: str) -> CommitInfo | None:
        """Return the head commit of ``branch`` or None when the branch is missing."""
