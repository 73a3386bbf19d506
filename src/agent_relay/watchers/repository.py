"""Persistence for PR and review-cycle watch entries."""

from __future__ import annotations

from sqlalchemy import delete as sa_delete
from sqlmodel import col, select

from agent_relay.pipeline.repository import PipelineStateStore
from agent_relay.storage.common import to_db_datetime, to_utc_aware_datetime
from agent_relay.storage.sqlmodel_models import PrWatchRow, ReviewWatchRow
from agent_relay.watchers.models import PrWatchEntry, ReviewStage, ReviewWatchEntry


class PrWatchRepository:
    """One row per branch still waiting for its pull request."""

    def __init__(self, store: PipelineStateStore) -> None:
        self.store = store

    def upsert(self, entry: PrWatchEntry) -> PrWatchEntry:
        """Insert the entry, restarting the clock if the task is already watched."""

        with self.store.transaction() as session:
            row = session.exec(
                select(PrWatchRow).where(PrWatchRow.task_id == entry.task_id),
            ).one_or_none()
            if row is None:
                row = PrWatchRow(
                    task_id=entry.task_id,
                    branch=entry.branch,
                    owner=entry.owner,
                    repo=entry.repo,
                    started_at=to_db_datetime(entry.started_at),
                )
            row.task_name = entry.task_name
            row.branch = entry.branch
            row.owner = entry.owner
            row.repo = entry.repo
            row.started_at = to_db_datetime(entry.started_at)
            session.add(row)
            session.flush()
            return _to_pr_entry(row)

    def get(self, task_id: str) -> PrWatchEntry | None:
        with self.store.transaction() as session:
            row = session.exec(
                select(PrWatchRow).where(PrWatchRow.task_id == task_id),
            ).one_or_none()
            return _to_pr_entry(row) if row is not None else None

    def list_newest_first(self) -> list[PrWatchEntry]:
        with self.store.transaction() as session:
            rows = session.exec(select(PrWatchRow).order_by(col(PrWatchRow.id).desc())).all()
            return [_to_pr_entry(row) for row in rows]

    def remove(self, task_id: str) -> bool:
        with self.store.transaction() as session:
            result = session.exec(
                sa_delete(PrWatchRow).where(col(PrWatchRow.task_id) == task_id),
            )
            return result.rowcount > 0


class ReviewWatchRepository:
    """One row per pull request in the review/fix cycle."""

    def __init__(self, store: PipelineStateStore) -> None:
        self.store = store

    def upsert(self, entry: ReviewWatchEntry) -> ReviewWatchEntry:
        with self.store.transaction() as session:
            row = session.exec(
                select(ReviewWatchRow).where(ReviewWatchRow.task_id == entry.task_id),
            ).one_or_none()
            if row is None:
                row = ReviewWatchRow(
                    task_id=entry.task_id,
                    branch=entry.branch,
                    owner=entry.owner,
                    repo=entry.repo,
                    pr_number=entry.pr_number,
                    stage=entry.stage.value,
                    started_at=to_db_datetime(entry.started_at),
                    updated_at=to_db_datetime(entry.updated_at),
                )
            row.task_name = entry.task_name
            row.branch = entry.branch
            row.owner = entry.owner
            row.repo = entry.repo
            row.pr_number = entry.pr_number
            row.pr_url = entry.pr_url
            row.stage = entry.stage.value
            row.iteration = entry.iteration
            row.max_iterations = entry.max_iterations
            row.last_commit_sha = entry.last_commit_sha
            row.updated_at = to_db_datetime(entry.updated_at)
            session.add(row)
            session.flush()
            return _to_review_entry(row)

    def get(self, task_id: str) -> ReviewWatchEntry | None:
        with self.store.transaction() as session:
            row = session.exec(
                select(ReviewWatchRow).where(ReviewWatchRow.task_id == task_id),
            ).one_or_none()
            return _to_review_entry(row) if row is not None else None

    def list_newest_first(self) -> list[ReviewWatchEntry]:
        with self.store.transaction() as session:
            rows = session.exec(
                select(ReviewWatchRow).order_by(col(ReviewWatchRow.id).desc()),
            ).all()
            return [_to_review_entry(row) for row in rows]

    def remove(self, task_id: str) -> bool:
        with self.store.transaction() as session:
            result = session.exec(
                sa_delete(ReviewWatchRow).where(col(ReviewWatchRow.task_id) == task_id),
            )
            return result.rowcount > 0


def _to_pr_entry(row: PrWatchRow) -> PrWatchEntry:
    return PrWatchEntry(
        task_id=row.task_id,
        task_name=row.task_name,
        branch=row.branch,
        owner=row.owner,
        repo=row.repo,
        started_at=to_utc_aware_datetime(row.started_at),
    )


def _to_review_entry(row: ReviewWatchRow) -> ReviewWatchEntry:
    return ReviewWatchEntry(
        task_id=row.task_id,
        task_name=row.task_name,
        branch=row.branch,
        owner=row.owner,
        repo=row.repo,
        pr_number=row.pr_number,
        pr_url=row.pr_url,
        stage=ReviewStage(row.stage),
        iteration=row.iteration,
        max_iterations=row.max_iterations,
        last_commit_sha=row.last_commit_sha,
        started_at=to_utc_aware_datetime(row.started_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
