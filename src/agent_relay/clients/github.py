"""GitHub implementation of the host client."""

from __future__ import annotations

import httpx

from agent_relay.clients.base import CommitInfo, PullRequestInfo
from agent_relay.clients.http import JsonApiClient
from agent_relay.config import RepositorySettings
from agent_relay.retry import RetryPolicy


class GitHubHostClient(JsonApiClient):
    """REST lookups for pull requests and branch heads."""

    def __init__(
        self,
        settings: RepositorySettings,
        *,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if settings.token:
            headers["Authorization"] = f"Bearer {settings.token}"
        super().__init__(
            base_url=settings.api_base_url,
            headers=headers,
            timeout_seconds=settings.request_timeout_seconds,
            retry_policy=retry_policy,
            transport=transport,
        )

    def find_pull_request(self, owner: str, repo: str, branch: str) -> PullRequestInfo:
        pulls = self.request_json(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"head": f"{owner}:{branch}", "state": "all", "per_page": "1"},
        )
        if not pulls:
            return PullRequestInfo(found=False)
        pull = pulls[0]
        return PullRequestInfo(
            found=True,
            number=int(pull["number"]),
            url=pull.get("html_url"),
            state=pull.get("state"),
        )

    def latest_commit(self, owner: str, repo: str, branch: str) -> CommitInfo | None:
        commits = self.request_json(
            "GET",
            f"/repos/{owner}/{repo}/commits",
            params={"sha": branch, "per_page": "1"},
            allow_not_found=True,
        )
        if not commits:
            return None
        head = commits[0]
        return CommitInfo(sha=str(head["sha"]), message=str(head["commit"]["message"]))
