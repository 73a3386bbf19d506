from __future__ import annotations

import json
from collections.abc import Callable

import allure
import httpx
import pytest

from agent_relay.clients.clickup import ClickUpTrackerClient
from agent_relay.clients.github import GitHubHostClient
from agent_relay.config import RepositorySettings, TrackerSettings
from agent_relay.errors import ApiError, NetworkError, RateLimitError
from agent_relay.retry import RetryPolicy

pytestmark = [
    allure.epic("External Calls"),
    allure.feature("Tracker and Host Clients"),
]

Handler = Callable[[httpx.Request], httpx.Response]

_FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0)


def _tracker(handler: Handler, *, bot_user_id: str = "") -> ClickUpTrackerClient:
    return ClickUpTrackerClient(
        TrackerSettings(api_key="pk_test", workspace_id="9001", bot_user_id=bot_user_id),
        retry_policy=_FAST_RETRY,
        transport=httpx.MockTransport(handler),
    )


def _host(handler: Handler) -> GitHubHostClient:
    return GitHubHostClient(
        RepositorySettings(owner="acme", repo="widgets", token="ghp_test"),
        retry_policy=_FAST_RETRY,
        transport=httpx.MockTransport(handler),
    )


def test_list_tasks_filters_by_status_and_assignee() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "tasks": [
                    {
                        "id": "abc1",
                        "name": "Add login",
                        "description": "Login page [Repo: acme/widgets]",
                        "status": {"status": "bot in progress"},
                        "url": "https://app.clickup.com/t/abc1",
                        "tags": [{"name": "backend"}],
                        "custom_fields": [
                            {"name": "Repository", "value": "acme/widgets"},
                            {"name": "Empty", "value": None},
                        ],
                    },
                ],
            },
        )

    with _tracker(handler, bot_user_id="77") as client:
        tasks = client.list_tasks()

    request = seen[0]
    assert request.url.path == "/api/v2/team/9001/task"
    assert request.url.params.get_list("statuses[]") == ["bot in progress"]
    assert request.url.params.get_list("assignees[]") == ["77"]
    assert request.headers["Authorization"] == "pk_test"
    assert len(tasks) == 1
    task = tasks[0]
    assert (task.task_id, task.name, task.status) == ("abc1", "Add login", "bot in progress")
    assert task.tags == ("backend",)
    assert task.custom_fields == {"Repository": "acme/widgets"}


def test_list_comments_returns_oldest_first() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "comments": [
                    {
                        "id": "2",
                        "comment_text": "rerun fixes",
                        "user": {"id": 5},
                        "date": "1700000060000",
                    },
                    {"id": "1", "comment_text": "hi", "user": {"id": 5}, "date": "1700000000000"},
                ],
            },
        )

    with _tracker(handler) as client:
        comments = client.list_comments("abc1")

    assert [comment.comment_id for comment in comments] == ["1", "2"]
    assert comments[1].author_id == "5"
    assert comments[0].created_at is not None
    assert comments[0].created_at.year == 2023


def test_post_comment_and_update_status_payloads() -> None:
    seen: list[tuple[str, str, dict[str, object]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={})

    with _tracker(handler) as client:
        client.post_comment("abc1", "**Workflow Complete**")
        client.update_status("abc1", "can be checked")

    assert seen == [
        (
            "POST",
            "/api/v2/task/abc1/comment",
            {"comment_text": "**Workflow Complete**", "notify_all": False},
        ),
        ("PUT", "/api/v2/task/abc1", {"status": "can be checked"}),
    ]


def test_server_errors_are_retried_until_success() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json={"tasks": []})

    with _tracker(handler) as client:
        assert client.list_tasks() == []

    assert len(attempts) == 3


def test_client_errors_fail_fast_with_status_code() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(401, json={"err": "Token invalid"})

    with _tracker(handler) as client, pytest.raises(ApiError) as exc_info:
        client.list_tasks()

    assert exc_info.value.status_code == 401
    assert len(attempts) == 1


def test_rate_limit_carries_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "2"})

    with _tracker(handler) as client, pytest.raises(RateLimitError) as exc_info:
        client.post_comment("abc1", "hi")

    assert exc_info.value.retry_after == 2.0


def test_transport_failures_become_network_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _host(handler) as client, pytest.raises(NetworkError):
        client.find_pull_request("acme", "widgets", "task-T1")


def test_find_pull_request_by_head_branch() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {
                    "number": 42,
                    "html_url": "https://github.com/acme/widgets/pull/42",
                    "state": "open",
                },
            ],
        )

    with _host(handler) as client:
        pull_request = client.find_pull_request("acme", "widgets", "task-T1")

    assert pull_request.found is True
    assert pull_request.number == 42
    assert pull_request.url == "https://github.com/acme/widgets/pull/42"
    assert seen[0].url.path == "/repos/acme/widgets/pulls"
    assert seen[0].url.params["head"] == "acme:task-T1"
    assert seen[0].headers["Authorization"] == "Bearer ghp_test"


def test_find_pull_request_reports_not_found_on_empty_list() -> None:
    with _host(lambda request: httpx.Response(200, json=[])) as client:
        assert client.find_pull_request("acme", "widgets", "task-T1").found is False


def test_latest_commit_handles_missing_branch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["sha"] == "gone":
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(
            200,
            json=[{"sha": "abc123", "commit": {"message": "review: TODO tighten checks"}}],
        )

    with _host(handler) as client:
        commit = client.latest_commit("acme", "widgets", "task-T1")
        missing = client.latest_commit("acme", "widgets", "gone")

    assert commit is not None
    assert (commit.sha, commit.message) == ("abc123", "review: TODO tighten checks")
    assert missing is None
