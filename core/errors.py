# core/errors.py
"""Exception hierarchy for the generation pipeline."""

from __future__ import annotations

from enum import Enum


class TransportErrorKind(str, Enum):
    """Classification of provider and network level failures."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    CLIENT_ERROR = "client_error"


_RETRYABLE_KINDS = frozenset(
    {
        TransportErrorKind.TIMEOUT,
        TransportErrorKind.NETWORK,
        TransportErrorKind.RATE_LIMITED,
        TransportErrorKind.PROVIDER_ERROR,
    }
)


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class TransportError(PipelineError):
    """A single provider call failed before returning usable text."""

    def __init__(
        self,
        kind: TransportErrorKind,
        message: str = "",
        retryable: bool | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.retryable = kind in _RETRYABLE_KINDS if retryable is None else retryable
        self.status_code = status_code


class ModelUnavailableError(PipelineError):
    """The retry controller gave up on a logical model call."""

    def __init__(self, attempts: int, last_error: TransportError | None = None) -> None:
        super().__init__(
            f"Model unavailable after {attempts} attempt(s): {last_error}"
            if last_error
            else f"Model unavailable after {attempts} attempt(s)"
        )
        self.attempts = attempts
        self.last_error = last_error


class ThrottledError(PipelineError):
    """Too many callers are already queued on the rate limiter."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Throttled; retry after {retry_after:.2f}s")
        self.retry_after = retry_after


class StorageError(PipelineError):
    """A cache or audit backend could not complete an operation."""


class AuditUnavailableError(PipelineError):
    """An audit entry could not be durably recorded."""
