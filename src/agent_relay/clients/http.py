"""Shared httpx plumbing for JSON APIs, wrapped in the retry engine."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agent_relay.errors import ApiError, NetworkError, RateLimitError
from agent_relay.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "agent-relay/0.1"


class JsonApiClient:
    """Synchronous JSON client mapping HTTP failures onto the error hierarchy."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        headers: dict[str, str],
        timeout_seconds: float,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds))
        self.retry_policy = retry_policy or RetryPolicy()
        base_headers = {"User-Agent": user_agent}
        base_headers.update(headers)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=self._timeout,
            headers=base_headers,
            transport=transport,
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> JsonApiClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, str]] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Issue a request with retries; returns decoded JSON (None on allowed 404)."""

        return with_retry(
            lambda: self._send(
                method,
                path,
                params=params,
                json=json,
                allow_not_found=allow_not_found,
            ),
            self.retry_policy,
            description=f"{method} {path}",
        )

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, str]] | None,
        json: dict[str, Any] | None,
        allow_not_found: bool,
    ) -> Any:
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as error:
            raise NetworkError(f"{method} {path} timed out: {error}") from error
        except httpx.TransportError as error:
            raise NetworkError(f"{method} {path} network error: {error}") from error

        logger.debug("%s %s -> HTTP %s", method, path, response.status_code)
        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code == 429:
            raise RateLimitError(
                f"{method} {path} rate limited",
                retry_after=_retry_after(response),
            )
        if not response.is_success:
            raise ApiError(
                f"{method} {path} failed with HTTP {response.status_code}: {_preview(response)}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _preview(response: httpx.Response, *, limit: int = 200) -> str:
    text = response.text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
