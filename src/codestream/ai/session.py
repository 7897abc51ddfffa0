"""Session records, their state machine, and the registry of live sessions."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

from .ai_types import StreamRequest
from .cancellation import CancellationToken
from .errors import InvalidTransitionError, StreamTimeoutError

LOGGER = logging.getLogger(__name__)


class SessionKind(str, Enum):
    """Which caller created a session."""

    INLINE_COMPLETION = "inline_completion"
    EXPLAIN = "explain"
    REFACTOR = "refactor"
    TESTS = "tests"
    DOCUMENTATION = "documentation"
    FIX = "fix"

    @property
    def is_inline(self) -> bool:
        return self is SessionKind.INLINE_COMPLETION


class SessionState(str, Enum):
    """Lifecycle states of a session."""

    INITIALIZING = "initializing"
    THINKING = "thinking"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionState.COMPLETE, SessionState.ERROR, SessionState.CANCELLED})

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INITIALIZING: frozenset(
        {SessionState.THINKING, SessionState.ERROR, SessionState.CANCELLED}
    ),
    SessionState.THINKING: frozenset(
        {SessionState.STREAMING, SessionState.COMPLETE, SessionState.ERROR, SessionState.CANCELLED}
    ),
    SessionState.STREAMING: frozenset(
        {SessionState.COMPLETE, SessionState.ERROR, SessionState.CANCELLED}
    ),
    SessionState.COMPLETE: frozenset(),
    SessionState.ERROR: frozenset(),
    SessionState.CANCELLED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in _TRANSITIONS[current]


def format_duration(seconds: float) -> str:
    """Render a duration the way the editor status line shows it."""

    millis = int(round(seconds * 1000))
    if millis < 1000:
        return f"{millis}ms"
    if millis < 60_000:
        return f"{millis / 1000:.1f}s"
    return f"{millis / 60_000:.1f}m"


@dataclass(slots=True)
class Session:
    """One tracked streaming generation."""

    kind: SessionKind
    request: StreamRequest
    context: Any = None
    id: str = ""
    state: SessionState = SessionState.INITIALIZING
    accumulated: list[str] = field(default_factory=list)
    attempt: int = 1
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.monotonic)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: float | None = None
    timeout: float | None = None
    result: str | None = None
    error: BaseException | None = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"{self.kind.value}-{uuid.uuid4().hex[:12]}"

    @property
    def text(self) -> str:
        return "".join(self.accumulated)

    @property
    def is_terminal(self) -> bool:
        return self.state.terminal

    @property
    def has_content(self) -> bool:
        return bool(self.accumulated)

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    def format_duration(self) -> str:
        return format_duration(self.duration)

    def transition(self, target: SessionState) -> SessionState:
        """Move to ``target``; returns the previous state."""

        if not can_transition(self.state, target):
            raise InvalidTransitionError(
                message=f"Session {self.id} cannot move from {self.state.value} to {target.value}",
                details={"session_id": self.id, "from": self.state.value, "to": target.value},
            )
        previous, self.state = self.state, target
        if target.terminal:
            self.finished_at = time.monotonic()
        return previous

    def append(self, text: str) -> None:
        if self.state is not SessionState.STREAMING:
            raise InvalidTransitionError(
                message=f"Session {self.id} cannot accept content while {self.state.value}",
                details={"session_id": self.id, "state": self.state.value},
            )
        self.accumulated.append(text)


@dataclass(slots=True, frozen=True)
class SessionOutcome:
    """Final report handed to callers once a session is terminal."""

    session_id: str
    kind: SessionKind
    state: SessionState
    text: str = ""
    raw_text: str = ""
    error: BaseException | None = None
    attempts: int = 1
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is SessionState.COMPLETE

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, StreamTimeoutError)


class SessionRegistry:
    """Thread-safe map of live sessions keyed by id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def add(self, session: Session) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session {session.id} is already registered")
            self._sessions[session.id] = session
        LOGGER.debug("Registered session %s (%s)", session.id, session.kind.value)

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            LOGGER.debug("Removed session %s", session_id)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def snapshot(self, kind: SessionKind | None = None) -> list[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
        if kind is None:
            return sessions
        return [session for session in sessions if session.kind is kind]

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(self.snapshot())


__all__ = [
    "SessionKind",
    "SessionState",
    "TERMINAL_STATES",
    "Session",
    "SessionOutcome",
    "SessionRegistry",
    "can_transition",
    "format_duration",
]
