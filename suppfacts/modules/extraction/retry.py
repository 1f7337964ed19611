"""Classified, bounded, jittered exponential retry for provider calls."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

logger = structlog.get_logger()

T = TypeVar("T")


class ErrorKind(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    INVALID_INPUT = "INVALID_INPUT"
    VALIDATION = "VALIDATION"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    UNKNOWN = "UNKNOWN"


# Checked in order, first match wins
ERROR_MARKERS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMIT, ("rate limit", "ratelimit", "429")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
    (ErrorKind.NETWORK, ("network", "econnrefused", "enotfound", "connection")),
    (ErrorKind.INVALID_INPUT, ("invalid pdf", "corrupt", "malformed")),
    (ErrorKind.VALIDATION, ("validation", "parse")),
    (ErrorKind.PROVIDER_ERROR, ("api", "401", "403", "500", "502", "503")),
)

RETRYABLE_KINDS = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.NETWORK, ErrorKind.PROVIDER_ERROR}
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception to an ErrorKind from its type name and message."""
    text = f"{type(exc).__name__}: {exc}".lower()
    for kind, markers in ERROR_MARKERS:
        if any(marker in text for marker in markers):
            return kind
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) in RETRYABLE_KINDS


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    jitter: float = 1.0

    def backoff_delay(self, attempt_index: int, rand: Callable[[float, float], float] = random.uniform) -> float:
        """Delay before retry number ``attempt_index + 1`` (0-based index)."""
        exponential = min(self.base_delay * self.multiplier**attempt_index, self.max_delay)
        return exponential + rand(0.0, self.jitter)


class ProviderCallError(Exception):
    """A provider call failed for good: non-retryable, or out of attempts."""

    def __init__(self, kind: ErrorKind, attempts: int, elapsed: float, message: str) -> None:
        super().__init__(f"{kind.value} after {attempts} attempt(s): {message}")
        self.kind = kind
        self.attempts = attempts
        self.elapsed = elapsed

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


@dataclass(frozen=True)
class Retried(Generic[T]):
    value: T
    attempts: int
    elapsed: float

    @property
    def retry_count(self) -> int:
        return self.attempts - 1


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    context: str,
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rand: Callable[[float, float], float] = random.uniform,
) -> Retried[T]:
    """Run ``operation`` until it succeeds, fails non-retryably, or runs out.

    Raises:
        ProviderCallError: chained from the last underlying exception.
    """
    policy = policy or RetryPolicy()
    started = time.monotonic()
    attempts = 0

    def _wait(state: RetryCallState) -> float:
        return policy.backoff_delay(state.attempt_number - 1, rand)

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Retrying provider call",
            context=context,
            attempt=state.attempt_number,
            max_attempts=policy.max_attempts,
            error_kind=classify_error(exc).value if exc else None,
            delay_seconds=round(state.next_action.sleep, 2) if state.next_action else None,
            error=str(exc),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait,
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                value = await operation()
    except Exception as exc:
        kind = classify_error(exc)
        elapsed = time.monotonic() - started
        logger.error(
            "Provider call failed",
            context=context,
            error_kind=kind.value,
            attempts=attempts,
            error=str(exc),
        )
        raise ProviderCallError(kind, attempts, elapsed, str(exc)) from exc

    return Retried(value=value, attempts=attempts, elapsed=time.monotonic() - started)
