"""Error taxonomy shared by the briefing pipeline and the history store."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional


class BriefingError(Exception):
    """Base class for every failure surfaced to callers."""


class MalformedResponse(BriefingError):
    """The completion text could not be turned into JSON, even after repair."""

    def __init__(
        self,
        raw_text: str,
        message: str = "The AI response was not in the expected JSON format. Please try again.",
    ) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class SchemaViolation(BriefingError):
    """Parsed JSON failed the briefing contract; carries every `path: reason`."""

    def __init__(
        self, violations: Iterable[str], prefix: str = "Response validation failed"
    ) -> None:
        self.violations: List[str] = list(violations)
        self.prefix = prefix
        super().__init__(f"{prefix}: {'; '.join(self.violations)}")


class TransportErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self is not TransportErrorKind.FATAL


class TransportError(BriefingError):
    """Failure at the LLM/proxy boundary, tagged with a retry classification."""

    def __init__(
        self,
        message: str,
        kind: TransportErrorKind = TransportErrorKind.FATAL,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class TransientTransportError(TransportError):
    """429/503-class failure; retried by the retry policy."""


class FatalTransportError(TransportError):
    """Any other transport failure; never retried."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, kind=TransportErrorKind.FATAL, status=status)


class RateLimitExceeded(TransportError):
    """Raised once the retry budget is spent on rate-limit failures."""

    def __init__(self, attempts: int, status: Optional[int] = 429) -> None:
        super().__init__(
            f"Rate limit exceeded after {attempts} attempts. "
            "Please wait a minute and try again.",
            kind=TransportErrorKind.RATE_LIMITED,
            status=status,
        )
        self.attempts = attempts


def transport_error(
    message: str, kind: TransportErrorKind, status: Optional[int] = None
) -> TransportError:
    """Build the transport error subclass matching `kind`."""
    if kind.retryable:
        return TransientTransportError(message, kind=kind, status=status)
    return FatalTransportError(message, status=status)


class StorageFailure(BriefingError):
    """Neither the remote nor the local history backend completed an operation."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"History {operation} failed on every storage backend{detail}")
        self.operation = operation
