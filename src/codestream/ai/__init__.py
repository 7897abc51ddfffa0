"""Streaming engine, transports and the inline and code-action callers."""

from .actions import ActionRun, CodeActionsController
from .ai_types import StreamRequest, StreamResult
from .cancellation import CancellationToken
from .config import EngineConfig
from .engine import CallbackListener, SessionListener, StreamingEngine
from .errors import (
    CodestreamError,
    PreconditionError,
    RateLimitError,
    StreamCancelledError,
    StreamTimeoutError,
    TransportError,
)
from .inline import InlineCompletionController, Suggestion
from .session import Session, SessionKind, SessionOutcome, SessionState
from .transport import HttpStreamTransport, OpenAIStreamTransport

__all__ = [
    "ActionRun",
    "CallbackListener",
    "CancellationToken",
    "CodeActionsController",
    "CodestreamError",
    "EngineConfig",
    "HttpStreamTransport",
    "InlineCompletionController",
    "OpenAIStreamTransport",
    "PreconditionError",
    "RateLimitError",
    "Session",
    "SessionKind",
    "SessionListener",
    "SessionOutcome",
    "SessionState",
    "StreamCancelledError",
    "StreamRequest",
    "StreamResult",
    "StreamTimeoutError",
    "StreamingEngine",
    "Suggestion",
    "TransportError",
]
