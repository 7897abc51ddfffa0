"""Event bus and the session events published by the streaming engine.

Rendering layers (chat bubbles, ghost-text widgets, status bars) subscribe
here instead of being called by the engine, so the engine has no UI
dependency.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events."""

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Session Events
# =============================================================================


@dataclass(slots=True)
class SessionStarted(Event):
    """Emitted when a session is registered and its task scheduled.

    Attributes:
        session_id: Identifier of the new session.
        kind: Caller kind (``inline_completion``, ``explain``, ...).
    """

    session_id: str
    kind: str


@dataclass(slots=True)
class SessionStateChanged(Event):
    """Emitted on every state-machine transition.

    Attributes:
        session_id: Identifier of the session.
        state: The new state value.
        previous: The state the session left.
    """

    session_id: str
    state: str
    previous: str


@dataclass(slots=True)
class SessionDelta(Event):
    """Emitted for each content fragment appended to a session."""

    session_id: str
    content: str


_QUIET_EVENT_TYPES.add(SessionDelta)


@dataclass(slots=True)
class SessionRetrying(Event):
    """Emitted before the retry policy waits for another attempt.

    Attributes:
        session_id: Identifier of the session.
        attempt: The attempt number about to start.
        delay: Seconds waited before that attempt.
        error: Message of the failure that caused the retry.
    """

    session_id: str
    attempt: int
    delay: float
    error: str


@dataclass(slots=True)
class SessionFinished(Event):
    """Emitted exactly once per session when it reaches a terminal state.

    Attributes:
        session_id: Identifier of the session.
        kind: Caller kind.
        state: ``complete``, ``error`` or ``cancelled``.
        text: Sanitized text (empty unless complete).
        error: Serialized error payload, if any.
        duration_ms: Wall-clock duration of the session.
    """

    session_id: str
    kind: str
    state: str
    text: str = ""
    error: dict[str, Any] | None = None
    duration_ms: float = 0.0


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers are stored as weak references where possible (bound methods),
    so a subscriber that goes away is dropped automatically.

    Example::

        bus = EventBus()
        bus.subscribe(SessionFinished, on_finished)
        bus.publish(SessionFinished(session_id="s1", kind="explain", state="complete"))

    Thread Safety:
        Not thread-safe; publish and subscribe from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed %s to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                return

    def publish(self, event: E) -> None:
        """Invoke every handler for ``event``'s type in registration order.

        A handler that raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        if event_type not in _QUIET_EVENT_TYPES:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
        for i in reversed(dead_indices):
            if i < len(handlers):
                handlers.pop(i)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: Any, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "SessionStarted",
    "SessionStateChanged",
    "SessionDelta",
    "SessionRetrying",
    "SessionFinished",
]
