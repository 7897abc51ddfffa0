"""Debounced trigger gate in front of inline-completion sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .context import Position, TriggerContext
from .errors import CodestreamError

LOGGER = logging.getLogger(__name__)

USER_INPUT_ORIGINS = frozenset({"+input"})
MIN_DEBOUNCE_DELAY = 0.1
DEFAULT_TRIGGER_KEY = "inline_completion"


@dataclass(slots=True, frozen=True)
class ContentChange:
    """A document edit reported by the editor widget.

    Attributes:
        context: Context built from the document after the edit.
        origin: Editor change origin; only typed input (``"+input"``) triggers.
    """

    context: TriggerContext
    origin: str = "+input"

    @property
    def user_initiated(self) -> bool:
        return self.origin in USER_INPUT_ORIGINS


class TriggerGate:
    """Decides when an inline completion may start.

    A qualifying user edit (cursor at end of line, line at least
    ``min_trigger_length`` characters) arms a debounce timer; every further
    edit re-arms it, so a burst of typing produces a single evaluation once
    the user pauses. Every edit also supersedes the session in flight. When
    the timer fires, the gate refuses to start while a session for its key is
    still live and skips contexts identical to the last one evaluated.
    """

    def __init__(
        self,
        start: Callable[[TriggerContext], Any],
        *,
        is_in_flight: Callable[[], bool],
        cancel_in_flight: Callable[[str], Any],
        debounce_delay: float = 2.0,
        min_trigger_length: int = 5,
        key: str = DEFAULT_TRIGGER_KEY,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._start = start
        self._is_in_flight = is_in_flight
        self._cancel_in_flight = cancel_in_flight
        self._debounce_delay = max(MIN_DEBOUNCE_DELAY, float(debounce_delay))
        self._min_trigger_length = max(1, int(min_trigger_length))
        self._key = key
        self._loop = loop
        self._timer: asyncio.TimerHandle | None = None
        self._pending: TriggerContext | None = None
        self._anchor: Position | None = None
        self._last_fingerprint: str | None = None
        self._enabled = True
        self._closed = False

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def key(self) -> str:
        return self._key

    @property
    def enabled(self) -> bool:
        return self._enabled and not self._closed

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = bool(value)
        if not self._enabled:
            self.cancel()

    @property
    def debounce_delay(self) -> float:
        return self._debounce_delay

    @debounce_delay.setter
    def debounce_delay(self, value: float) -> None:
        self._debounce_delay = max(MIN_DEBOUNCE_DELAY, float(value))

    @property
    def min_trigger_length(self) -> int:
        return self._min_trigger_length

    @min_trigger_length.setter
    def min_trigger_length(self, value: int) -> None:
        self._min_trigger_length = max(1, int(value))

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def anchor(self) -> Optional[Position]:
        return self._anchor

    # ------------------------------------------------------------------
    # Editor signals
    # ------------------------------------------------------------------

    def on_content_changed(self, change: ContentChange) -> bool:
        """Handle an edit; returns ``True`` when the debounce timer was armed."""

        if not self.enabled:
            return False
        if not change.user_initiated:
            LOGGER.debug("Ignoring %s change", change.origin)
            return False

        self._cancel_timer()
        self._supersede("superseded")

        if not self.qualifies(change.context):
            return False
        self._arm(change.context)
        return True

    def on_cursor_moved(self, position: Position) -> None:
        """Cursor activity never triggers; it only invalidates work anchored elsewhere."""

        if self._anchor is None or position == self._anchor:
            return
        LOGGER.debug("Cursor left %s; dropping pending completion", self._anchor)
        self._cancel_timer()
        self._supersede("cursor_moved")
        self._anchor = None

    def request_now(self, context: TriggerContext) -> bool:
        """Evaluate ``context`` immediately, skipping the debounce."""

        if not self.enabled:
            return False
        self._cancel_timer()
        return self._evaluate(context)

    def cancel(self) -> None:
        """Drop the pending timer and cancel the session in flight."""

        self._cancel_timer()
        self._supersede("cancelled")
        self._anchor = None

    def reset(self) -> None:
        self.cancel()
        self._last_fingerprint = None

    def close(self) -> None:
        self.cancel()
        self._closed = True

    def qualifies(self, context: TriggerContext) -> bool:
        if not context.at_line_end:
            LOGGER.debug("Cursor not at end of line")
            return False
        if len(context.current_line) < self._min_trigger_length:
            LOGGER.debug(
                "Line too short (%s < %s)", len(context.current_line), self._min_trigger_length
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _arm(self, context: TriggerContext) -> None:
        loop = self._loop or asyncio.get_running_loop()
        self._pending = context
        self._anchor = context.cursor
        self._timer = loop.call_later(self._debounce_delay, self._fire)

    def _fire(self) -> None:
        context, self._pending, self._timer = self._pending, None, None
        if context is None or not self.enabled:
            return
        try:
            self._evaluate(context)
        except CodestreamError as exc:
            LOGGER.warning("Inline completion not started: %s", exc)

    def _evaluate(self, context: TriggerContext) -> bool:
        if self._is_in_flight():
            LOGGER.debug("Session already in flight for %s; trigger refused", self._key)
            return False
        fingerprint = context.fingerprint
        if fingerprint == self._last_fingerprint:
            LOGGER.debug("Context unchanged; skipping trigger")
            return False
        self._last_fingerprint = fingerprint
        self._anchor = context.cursor
        self._start(context)
        return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None

    def _supersede(self, reason: str) -> None:
        if self._is_in_flight():
            self._cancel_in_flight(reason)


__all__ = ["TriggerGate", "ContentChange", "USER_INPUT_ORIGINS"]
