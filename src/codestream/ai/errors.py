"""Error taxonomy for streaming sessions.

Every failure a caller can observe maps onto one of these classes so the
UI layer can choose a message without parsing strings. Transport failures are
retried by :class:`~codestream.ai.retry.RetryPolicy`; cancellation and
timeouts never are.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for machine-readable error codes."""

    MISSING_CREDENTIAL = "missing_credential"
    MISSING_CONTEXT = "missing_context"
    UNKNOWN_ACTION = "unknown_action"

    TRANSPORT = "transport_error"
    RATE_LIMITED = "rate_limited"
    EMPTY_BODY = "empty_body"

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    INVALID_TRANSITION = "invalid_transition"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class CodestreamError(Exception):
    """Base exception for all engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    # Whether a caller should surface the error as something needing attention
    user_facing: ClassVar[bool] = True

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logging or UI payloads."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Precondition Errors
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class PreconditionError(CodestreamError):
    """Raised before a session exists: missing credential, context, or action."""

    error_code: str = field(default=ErrorCode.MISSING_CONTEXT)
    message: str = field(default="The request cannot be started")
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def missing_credential(cls, model: str) -> "PreconditionError":
        return cls(
            error_code=ErrorCode.MISSING_CREDENTIAL,
            message=f"Model '{model}' requires an API key. Add your key in the settings panel.",
            details={"model": model},
        )

    @classmethod
    def missing_context(cls, what: str = "document") -> "PreconditionError":
        return cls(
            error_code=ErrorCode.MISSING_CONTEXT,
            message=f"No active {what} context is available",
            details={"missing": what},
        )

    @classmethod
    def unknown_action(cls, action: str) -> "PreconditionError":
        return cls(
            error_code=ErrorCode.UNKNOWN_ACTION,
            message=f"Unknown action requested: {action}",
            details={"action": action},
        )


# -----------------------------------------------------------------------------
# Transport Errors
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class TransportError(CodestreamError):
    """Non-success response, unreadable body, or a failed read."""

    error_code: str = field(default=ErrorCode.TRANSPORT)
    message: str = field(default="The completion request failed")
    details: dict[str, Any] = field(default_factory=dict)

    status: int | None = field(default=None)
    body: str = field(default="")

    @classmethod
    def from_response(cls, status: int, body: str) -> "TransportError":
        """Build the matching error for a non-success HTTP status."""

        text = (body or "").strip()
        if status == 429:
            return RateLimitError(status=status, body=text)
        return cls(
            message=f"API Error {status}: {text}" if text else f"API Error {status}",
            status=status,
            body=text,
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status is not None:
            result["status"] = self.status
        return result


@dataclass(eq=False)
class RateLimitError(TransportError):
    """The endpoint throttled the request (HTTP 429)."""

    error_code: str = field(default=ErrorCode.RATE_LIMITED)
    message: str = field(
        default="Rate limit exceeded. Please try again later or use your own API key for premium models."
    )
    details: dict[str, Any] = field(default_factory=dict)

    status: int | None = field(default=429)
    body: str = field(default="")
    retry_after: float | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result


# -----------------------------------------------------------------------------
# Timeout / Cancellation
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class StreamTimeoutError(CodestreamError):
    """The session exceeded its wall-clock budget."""

    error_code: str = field(default=ErrorCode.TIMEOUT)
    message: str = field(default="The request timed out")
    details: dict[str, Any] = field(default_factory=dict)

    timeout: float | None = field(default=None)


@dataclass(eq=False)
class StreamCancelledError(CodestreamError):
    """The session's cancellation token fired; the stream was aborted."""

    error_code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default="Request was cancelled")
    details: dict[str, Any] = field(default_factory=dict)

    reason: str = field(default="cancelled")

    user_facing: ClassVar[bool] = False


# -----------------------------------------------------------------------------
# Programming Errors
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class InvalidTransitionError(CodestreamError):
    """A session was asked to move along an edge the state machine forbids."""

    error_code: str = field(default=ErrorCode.INVALID_TRANSITION)
    message: str = field(default="Invalid session state transition")
    details: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ErrorCode",
    "CodestreamError",
    "PreconditionError",
    "TransportError",
    "RateLimitError",
    "StreamTimeoutError",
    "StreamCancelledError",
    "InvalidTransitionError",
]
