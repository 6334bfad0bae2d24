"""Bounded exponential backoff for LLM transport calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import RateLimitExceeded, TransportError, TransportErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]

_RATE_LIMIT_MARKERS = ("resource_exhausted", "rate limit", "rate_limit", "quota")
_OVERLOAD_MARKERS = ("overloaded", "unavailable")


def classify_failure(status: Optional[int], message: str = "") -> TransportErrorKind:
    """
    Map an HTTP status and error text onto a retry classification.

    Only used at the transport boundary; the retry loop itself switches on
    the resulting kind.
    """
    lowered = (message or "").lower()
    if status == 429 or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return TransportErrorKind.RATE_LIMITED
    if status == 503 or any(marker in lowered for marker in _OVERLOAD_MARKERS):
        return TransportErrorKind.OVERLOADED
    return TransportErrorKind.FATAL


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.retryable


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0
    backoff_factor: float = 2.0
    sleep: SleepFn = field(default=asyncio.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.base_delay * (self.backoff_factor ** (attempt - 1))

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        kind = exc.kind.value if isinstance(exc, TransportError) else "failure"
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "Transport %s on attempt %d/%d; retrying in %.1fs",
            kind,
            state.attempt_number,
            self.max_attempts,
            delay,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.backoff_factor),
            retry=retry_if_exception(_is_retryable),
            sleep=self.sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await `operation()`, retrying rate-limit/overload failures."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await operation()
        except TransportError as exc:
            # Rate-limit errors are always retried, so one here means the budget is spent.
            if exc.kind is TransportErrorKind.RATE_LIMITED:
                raise RateLimitExceeded(self.max_attempts, status=exc.status) from exc
            raise
