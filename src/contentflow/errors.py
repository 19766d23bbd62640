"""Custom exceptions for contentflow.

Every exception carries an :class:`ErrorKind` tag. Callers branch on the
kind (retry, re-queue, or fail) instead of inspecting messages.
"""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorKind(str, Enum):
    """How a failure should be handled."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED)


class ContentFlowError(Exception):
    """Base exception for contentflow."""

    kind: ErrorKind = ErrorKind.PERMANENT


class ValidationError(ContentFlowError):
    """Bad input. Never retried."""

    kind = ErrorKind.VALIDATION


class NotFoundError(ValidationError):
    """Referenced entity, job or scheduled post does not exist."""

    pass


class TransientError(ContentFlowError):
    """Network failure, timeout or upstream 5xx. Retried with backoff."""

    kind = ErrorKind.TRANSIENT


class RateLimitError(ContentFlowError):
    """Explicit throttling signal. Re-queued without consuming a retry."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after_ms: int = 0):
        super().__init__(message)
        self.retry_after_ms = max(int(retry_after_ms), 0)


class ClaimHeldError(RateLimitError):
    """Another publisher holds the row. Re-queued without consuming a retry."""


class PermanentFailure(ContentFlowError):
    """Attempts exhausted or a non-retryable failure after partial progress."""

    kind = ErrorKind.PERMANENT


class InvalidTransitionError(ContentFlowError):
    """A state machine rejected an event for the current state."""

    kind = ErrorKind.VALIDATION

    def __init__(self, from_state: str, event: str, allowed: list[str] | None = None):
        allowed_str = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Cannot apply {event} in state {from_state} (allowed: {allowed_str})"
        )
        self.from_state = from_state
        self.event = event


class LeaseLostError(ContentFlowError):
    """The caller no longer holds the lease on a job."""

    kind = ErrorKind.TRANSIENT


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception to an :class:`ErrorKind`.

    Unrecognised exceptions are treated as transient so they get the
    benefit of the retry budget.
    """
    if isinstance(exc, ContentFlowError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ErrorKind.RATE_LIMITED
        if 400 <= status < 500:
            return ErrorKind.VALIDATION
        return ErrorKind.TRANSIENT
    return ErrorKind.TRANSIENT
