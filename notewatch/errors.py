"""Exception taxonomy shared by the gateway, the jobs and the queue runtime.

Every exception carries a ``retryable`` flag.  The queue runtime consults it
to decide between scheduling another attempt with backoff and failing the job
permanently.
"""

from __future__ import annotations

from typing import Optional


class NotewatchError(Exception):
    """Base class for all errors raised by the job system."""

    retryable = False


class AuthError(NotewatchError):
    """Raised when neither a token refresh nor a re-login produced a token."""


class PayloadError(NotewatchError):
    """Raised when a job payload does not match the queue it targets."""


class GatewayError(NotewatchError):
    """Classified failure of a remote EMR call."""

    def __init__(self, detail: str, *, status_code: Optional[int] = None, operation: str = "") -> None:
        self.detail = detail
        self.status_code = status_code
        self.operation = operation
        prefix = f"{operation}: " if operation else ""
        status = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{prefix}{detail}{status}")


class Unauthorized(GatewayError):
    """The upstream rejected the bearer token even after one refresh."""


class NotFound(GatewayError):
    """The requested upstream record does not exist."""


class Transient(GatewayError):
    """Timeouts, connection failures, throttling and 5xx responses."""

    retryable = True


class Fatal(GatewayError):
    """Malformed requests or responses that will not succeed on retry."""


class AnalysisError(NotewatchError):
    """Raised when the analysis collaborator fails."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` should be retried by the queue runtime.

    Unclassified exceptions are retried; they are usually infrastructure
    hiccups rather than permanent data problems.
    """

    if isinstance(exc, NotewatchError):
        return bool(exc.retryable)
    return True


__all__ = [
    "NotewatchError",
    "AuthError",
    "PayloadError",
    "GatewayError",
    "Unauthorized",
    "NotFound",
    "Transient",
    "Fatal",
    "AnalysisError",
    "is_retryable",
]
