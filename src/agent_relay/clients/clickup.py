"""ClickUp implementation of the tracker client."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import httpx

from agent_relay.clients.base import Comment, Task
from agent_relay.clients.http import JsonApiClient
from agent_relay.config import TrackerSettings
from agent_relay.retry import RetryPolicy


class ClickUpTrackerClient(JsonApiClient):
    """Workspace-wide task listing filtered by watched statuses."""

    def __init__(
        self,
        settings: TrackerSettings,
        *,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=settings.api_base_url,
            headers={"Authorization": settings.api_key, "Content-Type": "application/json"},
            timeout_seconds=settings.request_timeout_seconds,
            retry_policy=retry_policy,
            transport=transport,
        )
        self.settings = settings

    def list_tasks(self) -> list[Task]:
        params: list[tuple[str, str]] = [("include_closed", "false")]
        params.extend(("statuses[]", status) for status in self.settings.watch_statuses)
        if self.settings.bot_user_id:
            params.append(("assignees[]", self.settings.bot_user_id))
        payload = self.request_json(
            "GET",
            f"/team/{self.settings.workspace_id}/task",
            params=params,
        )
        return [_to_task(item) for item in (payload or {}).get("tasks", [])]

    def list_comments(self, task_id: str) -> list[Comment]:
        payload = self.request_json("GET", f"/task/{task_id}/comment")
        comments = [_to_comment(item) for item in (payload or {}).get("comments", [])]
        # The API returns newest first.
        comments.reverse()
        return comments

    def post_comment(self, task_id: str, text: str) -> None:
        self.request_json(
            "POST",
            f"/task/{task_id}/comment",
            json={"comment_text": text, "notify_all": False},
        )

    def update_status(self, task_id: str, status: str) -> None:
        self.request_json("PUT", f"/task/{task_id}", json={"status": status})


def _to_task(item: dict[str, Any]) -> Task:
    status = item.get("status")
    custom_fields: dict[str, str] = {}
    for field in item.get("custom_fields") or []:
        name = field.get("name")
        value = field.get("value")
        if name and value not in (None, ""):
            custom_fields[str(name)] = str(value)
    return Task(
        task_id=str(item["id"]),
        name=str(item.get("name") or ""),
        description=str(item.get("description") or item.get("text_content") or ""),
        status=str(status.get("status", "")) if isinstance(status, dict) else str(status or ""),
        url=item.get("url"),
        tags=tuple(str(tag["name"]) for tag in item.get("tags") or [] if tag.get("name")),
        custom_fields=custom_fields,
    )


def _to_comment(item: dict[str, Any]) -> Comment:
    user = item.get("user") or {}
    created_at = None
    raw_date = item.get("date")
    if raw_date:
        created_at = datetime.fromtimestamp(int(raw_date) / 1000, tz=UTC)
    return Comment(
        comment_id=str(item["id"]),
        text=str(item.get("comment_text") or ""),
        author_id=str(user["id"]) if user.get("id") is not None else None,
        created_at=created_at,
    )
