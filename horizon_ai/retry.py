"""Retry/backoff engine shared by every Claude call.

Built on tenacity's ``AsyncRetrying`` with a custom retry predicate and wait
strategy. Delay selection, in priority order:

1. ``retry-after`` header (seconds)
2. rate-limit reset timestamp header, capped at ``max_reset_wait``
3. exponential backoff ``base_delay * 2**attempt`` plus up to 1s of jitter

Non-retryable errors propagate on the first attempt without any delay; when
attempts are exhausted the last error is re-raised unchanged.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from horizon.config import AnthropicSettings, settings

from .errors import ClaudeAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESET_HEADERS = (
    "x-ratelimit-reset",
    "anthropic-ratelimit-requests-reset",
    "anthropic-ratelimit-tokens-reset",
)

TRANSIENT_NETWORK_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_reset_wait: float = 60.0

    @classmethod
    def from_settings(cls, config: AnthropicSettings | None = None) -> RetryPolicy:
        config = config or settings.anthropic
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_reset_wait=config.max_reset_wait_seconds,
        )


def is_retryable_error(error: BaseException) -> bool:
    """429, 5xx, transient network failures and ``overloaded_error`` are retryable."""
    if isinstance(error, ClaudeAPIError):
        if error.error_type == "overloaded_error":
            return True
        if error.status_code is None:
            return False
        return error.status_code == 429 or 500 <= error.status_code < 600
    return isinstance(error, TRANSIENT_NETWORK_ERRORS)


def _parse_reset_timestamp(value: str) -> datetime | None:
    value = value.strip()
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_retry_delay(
    error: BaseException | None,
    attempt: int,
    policy: RetryPolicy,
    *,
    now: datetime | None = None,
    jitter: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before the next attempt (``attempt`` is zero-based)."""
    headers = getattr(error, "headers", None) or {}

    retry_after = headers.get("retry-after")
    if retry_after is not None:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            logger.debug(f"Ignoring unparseable retry-after header: {retry_after!r}")

    now = now or datetime.now(timezone.utc)
    for header in RESET_HEADERS:
        raw = headers.get(header)
        if not raw:
            continue
        reset_at = _parse_reset_timestamp(raw)
        if reset_at is None:
            continue
        wait_seconds = (reset_at - now).total_seconds()
        if wait_seconds > 0:
            return min(wait_seconds, policy.max_reset_wait)

    return policy.base_delay * (2 ** attempt) + jitter()


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation: str = "Claude API call",
) -> T:
    """Await ``fn()`` under the retry policy and return its result."""
    policy = policy or RetryPolicy.from_settings()

    def _wait(retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return compute_retry_delay(error, retry_state.attempt_number - 1, policy)

    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Retrying {operation} (attempt {retry_state.attempt_number}/{policy.max_attempts}, "
            f"next in {delay:.2f}s): {error}"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait,
        retry=retry_if_exception(is_retryable_error),
        before_sleep=_log_retry,
        reraise=True,
        sleep=sleep,
    )
    try:
        return await retrying(fn)
    except Exception as e:
        if is_retryable_error(e):
            logger.error(f"{operation} failed after {policy.max_attempts} attempts: {e}")
        else:
            logger.error(f"Non-retryable error in {operation}: {e}")
        raise
