"""Inline (ghost-text) completion caller."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .ai_types import StreamRequest
from .config import EngineConfig
from .context import (
    DocumentSnapshot,
    Position,
    TriggerContext,
    build_trigger_context,
    calculate_end_position,
)
from .engine import CallbackListener, StreamingEngine
from .errors import CodestreamError
from .prompts import completion_messages
from .session import SessionKind, SessionOutcome, SessionState
from .trigger import ContentChange, TriggerGate

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Suggestion:
    """A completed, sanitized suggestion anchored at the cursor it was requested for."""

    text: str
    anchor: Position
    end: Position
    session_id: str


@dataclass(slots=True, frozen=True)
class AcceptedSuggestion:
    """Insertion the editor should apply after :meth:`InlineCompletionController.accept`."""

    text: str
    position: Position
    cursor: Position


class InlineCompletionController:
    """Wires the trigger gate, the engine and the visible suggestion together.

    At most one inline session is live at a time; an edit supersedes it and a
    timer firing while it is live is refused. The editor reports changes and
    cursor moves, and reads back :attr:`suggestion` (or subscribes through
    ``on_suggestion``) to render ghost text.
    """

    def __init__(
        self,
        engine: StreamingEngine,
        config: EngineConfig,
        *,
        on_suggestion: Callable[[Optional[Suggestion]], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._engine = engine
        self._config = config
        self._on_suggestion = on_suggestion
        self._on_error = on_error
        self._current_id: str | None = None
        self._request_started: float | None = None
        self._suggestion: Suggestion | None = None
        self.last_error: BaseException | None = None
        self._gate = TriggerGate(
            self._start,
            is_in_flight=self.is_generating,
            cancel_in_flight=self._cancel_current,
            debounce_delay=config.debounce_delay,
            min_trigger_length=config.min_trigger_length,
            key=SessionKind.INLINE_COMPLETION.value,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def engine(self) -> StreamingEngine:
        return self._engine

    @property
    def gate(self) -> TriggerGate:
        return self._gate

    @property
    def config(self) -> EngineConfig:
        return self._config

    @config.setter
    def config(self, value: EngineConfig) -> None:
        self._config = value
        self._gate.debounce_delay = value.debounce_delay
        self._gate.min_trigger_length = value.min_trigger_length

    @property
    def suggestion(self) -> Suggestion | None:
        return self._suggestion

    @property
    def enabled(self) -> bool:
        return self._gate.enabled

    @property
    def current_session_id(self) -> str | None:
        return self._current_id

    def is_generating(self) -> bool:
        if self._current_id is None:
            return False
        session = self._engine.get(self._current_id)
        return session is not None and not session.is_terminal

    # ------------------------------------------------------------------
    # Editor signals
    # ------------------------------------------------------------------

    def on_content_changed(self, snapshot: DocumentSnapshot, origin: str = "+input") -> bool:
        change = ContentChange(context=build_trigger_context(snapshot), origin=origin)
        if change.user_initiated:
            self.dismiss()
        return self._gate.on_content_changed(change)

    def on_cursor_moved(self, position: Position) -> None:
        self._gate.on_cursor_moved(position)
        suggestion = self._suggestion
        if suggestion is not None and position not in (suggestion.anchor, suggestion.end):
            self.dismiss()

    def request_now(self, snapshot: DocumentSnapshot) -> bool:
        """Ask for a completion at the snapshot's cursor without waiting for the debounce."""

        return self._gate.request_now(build_trigger_context(snapshot))

    # ------------------------------------------------------------------
    # Suggestion handling
    # ------------------------------------------------------------------

    def accept(self) -> AcceptedSuggestion | None:
        suggestion = self._suggestion
        if suggestion is None:
            return None
        self._set_suggestion(None)
        LOGGER.info("Accepted suggestion (%s chars)", len(suggestion.text))
        return AcceptedSuggestion(text=suggestion.text, position=suggestion.anchor, cursor=suggestion.end)

    def dismiss(self) -> None:
        if self._suggestion is not None:
            self._set_suggestion(None)

    # ------------------------------------------------------------------
    # Toggles and status
    # ------------------------------------------------------------------

    def enable(self) -> None:
        self._gate.enabled = True
        LOGGER.info("Inline suggestions enabled")

    def disable(self) -> None:
        self._gate.enabled = False
        self.dismiss()
        LOGGER.info("Inline suggestions disabled")

    def toggle(self) -> bool:
        if self.enabled:
            self.disable()
        else:
            self.enable()
        return self.enabled

    def set_debounce_delay(self, seconds: float) -> None:
        self._gate.debounce_delay = seconds

    def set_min_trigger_length(self, length: int) -> None:
        self._gate.min_trigger_length = length

    def status(self) -> Dict[str, Any]:
        age = None
        if self._request_started is not None and self.is_generating():
            age = time.monotonic() - self._request_started
        return {
            "enabled": self.enabled,
            "is_generating": self.is_generating(),
            "has_suggestion": self._suggestion is not None,
            "debounce_delay": self._gate.debounce_delay,
            "min_trigger_length": self._gate.min_trigger_length,
            "request_timeout": self._config.session_timeout,
            "request_age": age,
            "session_id": self._current_id,
        }

    def force_reset(self) -> None:
        """Cancel everything and forget the last evaluated context."""

        LOGGER.info("Force resetting inline completion state")
        self._gate.reset()
        self._cancel_current("reset")
        self._current_id = None
        self._request_started = None
        self.dismiss()

    async def aclose(self) -> None:
        self._gate.close()
        session_id = self._current_id
        self._cancel_current("shutdown")
        if session_id is not None:
            try:
                await self._engine.wait(session_id)
            except KeyError:
                pass

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start(self, context: TriggerContext) -> str:
        request = StreamRequest(messages=completion_messages(context))
        listener = CallbackListener(terminal=self._on_terminal)
        try:
            session_id = self._engine.start_session(
                SessionKind.INLINE_COMPLETION,
                request,
                context,
                config=self._config,
                listener=listener,
            )
        except CodestreamError as exc:
            self._report_error(exc)
            raise
        self.last_error = None
        self._current_id = session_id
        self._request_started = time.monotonic()
        LOGGER.debug("Inline completion %s started at %s", session_id, context.cursor)
        return session_id

    def _cancel_current(self, reason: str = "cancelled") -> bool:
        if self._current_id is None:
            return False
        return self._engine.cancel_session(self._current_id, reason)

    def _on_terminal(self, session_id: str, state: SessionState, outcome: SessionOutcome) -> None:
        if session_id != self._current_id:
            return
        self._current_id = None
        self._request_started = None
        if state is SessionState.ERROR and outcome.error is not None:
            self._report_error(outcome.error)
            return
        if state is not SessionState.COMPLETE or not outcome.text.strip():
            return
        session = self._engine.get(session_id)
        context = session.context if session is not None else None
        if not isinstance(context, TriggerContext):
            return
        self._set_suggestion(
            Suggestion(
                text=outcome.text,
                anchor=context.cursor,
                end=calculate_end_position(context.cursor, outcome.text),
                session_id=session_id,
            )
        )

    def _set_suggestion(self, suggestion: Suggestion | None) -> None:
        self._suggestion = suggestion
        if self._on_suggestion is not None:
            try:
                self._on_suggestion(suggestion)
            except Exception:
                LOGGER.exception("Suggestion callback failed")

    def _report_error(self, error: BaseException) -> None:
        self.last_error = error
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                LOGGER.exception("Error callback failed")


__all__ = ["InlineCompletionController", "Suggestion", "AcceptedSuggestion"]
