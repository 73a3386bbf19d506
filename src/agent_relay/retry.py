"""Bounded retry with exponential backoff for fallible external calls."""

from __future__ import annotations

import errno
import logging
import random
import socket
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import httpx

from agent_relay.config import RetrySettings
from agent_relay.errors import ApiError, NetworkError, OperationTimeoutError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.3

_TRANSIENT_ERROR_CODES: frozenset[str] = frozenset(
    {
        "ECONNREFUSED",
        "ETIMEDOUT",
        "ENOTFOUND",
        "ECONNRESET",
        "ENETUNREACH",
        "EAI_AGAIN",
    },
)
_TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "network",
    "econnrefused",
    "rate limit",
    "too many requests",
    "service unavailable",
)
_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429})


def is_retryable_error(error: BaseException) -> bool:
    """Return True when the failure looks transient and worth another attempt."""

    if isinstance(error, NetworkError | RateLimitError | OperationTimeoutError):
        return True
    if isinstance(error, httpx.TransportError):
        return True

    if _error_code(error) in _TRANSIENT_ERROR_CODES:
        return True

    status_code = _status_code(error)
    if status_code is not None:
        return status_code in _RETRYABLE_STATUS_CODES or status_code >= 500

    return _first_match(str(error).lower(), _TRANSIENT_MESSAGE_PATTERNS) is not None


@dataclass(slots=True)
class RetryPolicy:
    """Retry bounds, backoff shape and hooks for one class of calls."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_factor: float = 2.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_error)
    on_retry: Callable[[int, BaseException, float], None] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: RetrySettings,
        *,
        retryable: Callable[[BaseException], bool] | None = None,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            backoff_factor=settings.backoff_factor,
            retryable=retryable or is_retryable_error,
            on_retry=on_retry,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``, without jitter."""

        delay = self.base_delay_seconds * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


@dataclass(slots=True)
class SettledResult(Generic[T]):
    """Outcome of one operation in :func:`retry_all`."""

    ok: bool
    value: T | None = None
    error: BaseException | None = None


def with_retry(  # noqa: PLR0913
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    timeout_seconds: float | None = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation`` under ``policy``.

    The last error propagates once attempts run out or the policy declares it
    terminal. With ``timeout_seconds`` the whole loop races a deadline and
    :class:`OperationTimeoutError` is raised if the deadline wins; attempts
    already in flight are abandoned and no further attempts are started.
    """

    active_policy = policy or RetryPolicy()
    if timeout_seconds is None:
        return _retry_loop(
            operation,
            active_policy,
            description=description,
            sleep=sleep,
            rng=rng or random.Random(),
            cancelled=None,
        )

    cancelled = threading.Event()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retry-deadline")
    future = executor.submit(
        _retry_loop,
        operation,
        active_policy,
        description=description,
        sleep=sleep,
        rng=rng or random.Random(),
        cancelled=cancelled,
    )
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as error:
        cancelled.set()
        raise OperationTimeoutError(
            f"{description} timed out after {timeout_seconds:g}s",
        ) from error
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def with_retry_and_fallback(  # noqa: PLR0913
    operation: Callable[[], T],
    fallback: Callable[[BaseException], T],
    policy: RetryPolicy | None = None,
    *,
    timeout_seconds: float | None = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Like :func:`with_retry`, but produce ``fallback(error)`` instead of raising."""

    try:
        return with_retry(
            operation,
            policy,
            timeout_seconds=timeout_seconds,
            description=description,
            sleep=sleep,
            rng=rng,
        )
    except Exception as error:  # noqa: BLE001
        logger.warning("%s failed, using fallback: %s", description, error)
        return fallback(error)


def retry_all(
    operations: Sequence[Callable[[], T]],
    policy: RetryPolicy | None = None,
    *,
    max_workers: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[SettledResult[T]]:
    """Run independent operations concurrently; one failure never aborts the others.

    Results come back in input order.
    """

    if not operations:
        return []

    def _settle(operation: Callable[[], T]) -> SettledResult[T]:
        try:
            return SettledResult(ok=True, value=with_retry(operation, policy, sleep=sleep))
        except Exception as error:  # noqa: BLE001
            return SettledResult(ok=False, error=error)

    workers = max_workers or min(8, len(operations))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="retry-all") as executor:
        return list(executor.map(_settle, operations))


def _retry_loop(  # noqa: PLR0913
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str,
    sleep: Callable[[float], None],
    rng: random.Random,
    cancelled: threading.Event | None,
) -> T:
    max_attempts = max(1, policy.max_attempts)
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as error:
            if attempt >= max_attempts or not policy.retryable(error):
                raise
            if cancelled is not None and cancelled.is_set():
                raise

            delay = policy.backoff_delay(attempt)
            delay += delay * JITTER_RATIO * rng.random()
            logger.debug(
                "%s attempt %d/%d failed (%s); retrying in %.2fs",
                description,
                attempt,
                max_attempts,
                error,
                delay,
            )
            if policy.on_retry is not None:
                policy.on_retry(attempt, error, delay)
            sleep(delay)
            attempt += 1


def _error_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code.upper()
    if isinstance(error, socket.gaierror) and error.errno == socket.EAI_AGAIN:
        return "EAI_AGAIN"
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno)
    return None


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, ApiError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
