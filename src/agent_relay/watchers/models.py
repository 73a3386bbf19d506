"""Watch entries persisted by the completion watchers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ReviewStage(str, Enum):
    """What the review-cycle watcher is waiting for next."""

    WAITING_FOR_REVIEW = "waiting_for_review"
    WAITING_FOR_FIXES = "waiting_for_fixes"


class CommitKind(str, Enum):
    """Classification of a newly observed head commit."""

    REVIEW = "review"
    FIX = "fix"


@dataclass(slots=True)
class PrWatchEntry:
    """Branch waiting for a pull request to appear."""

    task_id: str
    task_name: str
    branch: str
    owner: str
    repo: str
    started_at: datetime


@dataclass(slots=True)
class ReviewWatchEntry:
    """Pull request going through bounded review/fix round trips."""

    task_id: str
    task_name: str
    branch: str
    owner: str
    repo: str
    pr_number: int
    pr_url: str
    stage: ReviewStage
    iteration: int
    max_iterations: int
    last_commit_sha: str | None
    started_at: datetime
    updated_at: datetime
