"""Streaming session engine shared by the inline-completion and code-action callers."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from ..events import (
    EventBus,
    SessionDelta,
    SessionFinished,
    SessionRetrying,
    SessionStarted,
    SessionStateChanged,
)
from .ai_types import StreamRequest, StreamResult, StreamTransport
from .config import EngineConfig
from .errors import CodestreamError, PreconditionError, StreamCancelledError, StreamTimeoutError, TransportError
from .retry import RetryPolicy
from .sanitizer import sanitize_completion
from .session import Session, SessionKind, SessionOutcome, SessionRegistry, SessionState

LOGGER = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
_OUTCOME_HISTORY = 256


class SessionListener(Protocol):
    """Per-session observer supplied by a caller."""

    def on_state_change(self, session_id: str, state: SessionState) -> None:
        ...

    def on_delta(self, session_id: str, text: str) -> None:
        ...

    def on_terminal(self, session_id: str, state: SessionState, outcome: SessionOutcome) -> None:
        ...


@dataclass(slots=True)
class CallbackListener:
    """:class:`SessionListener` assembled from optional plain callables."""

    state_change: Callable[[str, SessionState], None] | None = None
    delta: Callable[[str, str], None] | None = None
    terminal: Callable[[str, SessionState, SessionOutcome], None] | None = None

    def on_state_change(self, session_id: str, state: SessionState) -> None:
        if self.state_change is not None:
            self.state_change(session_id, state)

    def on_delta(self, session_id: str, text: str) -> None:
        if self.delta is not None:
            self.delta(session_id, text)

    def on_terminal(self, session_id: str, state: SessionState, outcome: SessionOutcome) -> None:
        if self.terminal is not None:
            self.terminal(session_id, state, outcome)


@dataclass(slots=True)
class _Runtime:
    session: Session
    config: EngineConfig
    future: asyncio.Future[SessionOutcome]
    listener: SessionListener | None = None
    task: asyncio.Task[None] | None = None
    timeout_handle: asyncio.TimerHandle | None = None
    result: StreamResult | None = None


class _SessionSink:
    """Bridges transport callbacks into one session's state machine."""

    __slots__ = ("_engine", "_runtime")

    def __init__(self, engine: "StreamingEngine", runtime: _Runtime) -> None:
        self._engine = engine
        self._runtime = runtime

    def on_dispatch(self) -> None:
        session = self._runtime.session
        if session.state is SessionState.INITIALIZING and not session.token.is_cancelled:
            self._engine._set_state(self._runtime, SessionState.THINKING)

    def on_delta(self, text: str) -> None:
        session = self._runtime.session
        if not text or session.token.is_cancelled or session.is_terminal:
            return
        if session.state is SessionState.INITIALIZING:
            self._engine._set_state(self._runtime, SessionState.THINKING)
        if session.state is SessionState.THINKING:
            self._engine._set_state(self._runtime, SessionState.STREAMING)
        session.append(text)
        self._engine._notify_delta(self._runtime, text)


class StreamingEngine:
    """Runs streaming sessions and tracks them until they are terminal.

    ``start_session`` validates preconditions synchronously, registers a
    :class:`Session`, and schedules its task on the running loop. The task
    drives the transport through the retry policy, and the sanitizer runs once
    before completion is reported. Each session ends with exactly one
    terminal notification; cancellation takes priority over completion and
    error.
    """

    def __init__(
        self,
        transport: StreamTransport,
        *,
        registry: SessionRegistry | None = None,
        event_bus: EventBus | None = None,
        sanitizer: Callable[..., str] = sanitize_completion,
    ) -> None:
        self._transport = transport
        self._registry = registry or SessionRegistry()
        self._bus = event_bus
        self._sanitizer = sanitizer
        self._runtimes: dict[str, _Runtime] = {}
        self._outcomes: OrderedDict[str, SessionOutcome] = OrderedDict()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def event_bus(self) -> EventBus | None:
        return self._bus

    # ------------------------------------------------------------------
    # Inbound API
    # ------------------------------------------------------------------

    def start_session(
        self,
        kind: SessionKind | str,
        request: StreamRequest | Mapping[str, Any],
        context: Any = None,
        *,
        config: EngineConfig,
        listener: SessionListener | None = None,
    ) -> str:
        """Register and schedule a new session; returns its id.

        Raises:
            PreconditionError: missing credential for a gated model, or an
                inline completion without a document context.
        """

        kind = SessionKind(kind)
        stream_request = _coerce_request(request)
        if kind.is_inline and context is None:
            raise PreconditionError.missing_context("document")
        config.check_preconditions(stream_request.model)

        loop = asyncio.get_running_loop()
        session = Session(
            kind=kind,
            request=config.resolve(stream_request),
            context=context,
            timeout=config.session_timeout if config.session_timeout > 0 else None,
        )
        runtime = _Runtime(
            session=session,
            config=config,
            future=loop.create_future(),
            listener=listener,
        )
        self._registry.add(session)
        self._runtimes[session.id] = runtime

        task = loop.create_task(self._run(runtime), name=f"codestream:{session.id}")
        runtime.task = task
        task.add_done_callback(lambda _task, rt=runtime: self._on_task_done(rt))
        session.token.add_callback(lambda _reason, rt=runtime: self._interrupt(rt))
        if session.timeout is not None:
            runtime.timeout_handle = loop.call_later(session.timeout, self._expire, session.id)

        LOGGER.info("Started %s session %s (model=%s)", kind.value, session.id, session.request.model)
        self._publish(SessionStarted(session_id=session.id, kind=kind.value))
        return session.id

    def cancel_session(self, session_id: str, reason: str = "cancelled") -> bool:
        """Cancel a session's token; a no-op for unknown or finished sessions."""

        session = self._registry.get(session_id)
        if session is None or session.is_terminal:
            return False
        cancelled = session.token.cancel(reason)
        if cancelled:
            LOGGER.info("Cancelling session %s (%s)", session_id, reason)
        return cancelled

    def cancel_all(self, kind: SessionKind | str | None = None, reason: str = "cancelled") -> int:
        target = SessionKind(kind) if kind is not None else None
        count = 0
        for session in self._registry.snapshot(target):
            if self.cancel_session(session.id, reason):
                count += 1
        return count

    async def wait(self, session_id: str) -> SessionOutcome:
        """Wait for ``session_id`` to become terminal and return its outcome."""

        outcome = self._outcomes.get(session_id)
        if outcome is not None:
            return outcome
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            raise KeyError(session_id)
        return await asyncio.shield(runtime.future)

    async def run(
        self,
        kind: SessionKind | str,
        request: StreamRequest | Mapping[str, Any],
        context: Any = None,
        *,
        config: EngineConfig,
        listener: SessionListener | None = None,
    ) -> SessionOutcome:
        session_id = self.start_session(kind, request, context, config=config, listener=listener)
        return await self.wait(session_id)

    def get(self, session_id: str) -> Session | None:
        return self._registry.get(session_id)

    def outcome(self, session_id: str) -> SessionOutcome | None:
        return self._outcomes.get(session_id)

    def active_sessions(self, kind: SessionKind | str | None = None) -> list[Session]:
        target = SessionKind(kind) if kind is not None else None
        return [session for session in self._registry.snapshot(target) if not session.is_terminal]

    def has_active(self, kind: SessionKind | str) -> bool:
        return bool(self.active_sessions(kind))

    async def aclose(self) -> None:
        """Cancel every session, wait for their tasks, and close the transport."""

        self.cancel_all(reason="shutdown")
        tasks = [rt.task for rt in list(self._runtimes.values()) if rt.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Session task
    # ------------------------------------------------------------------

    async def _run(self, runtime: _Runtime) -> None:
        session = runtime.session
        policy = RetryPolicy(
            max_attempts=runtime.config.retry_attempts,
            base_delay=runtime.config.retry_base_delay,
        )
        sink = _SessionSink(self, runtime)

        async def _attempt(attempt: int) -> StreamResult:
            session.attempt = attempt
            if attempt > 1:
                LOGGER.info("Session %s attempt %s/%s", session.id, attempt, policy.max_attempts)
            return await self._transport.stream(session.request, session.token, sink)

        def _on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            self._publish(
                SessionRetrying(session_id=session.id, attempt=attempt, delay=delay, error=str(exc))
            )

        try:
            runtime.result = await policy.run(
                _attempt,
                session.token,
                # Text already shown to the caller cannot be taken back.
                should_retry=lambda _exc: not session.has_content,
                on_retry=_on_retry,
            )
        except asyncio.CancelledError:
            token_driven = session.token.is_cancelled
            self._finish(runtime, SessionState.CANCELLED)
            if not token_driven:
                raise
            current = asyncio.current_task()
            if current is not None and hasattr(current, "uncancel"):
                current.uncancel()
            return
        except StreamCancelledError:
            self._finish(runtime, SessionState.CANCELLED)
            return
        except TransportError as exc:
            LOGGER.error("Session %s failed after %s attempt(s): %s", session.id, session.attempt, exc)
            self._finish(runtime, SessionState.ERROR, error=exc)
            return
        except CodestreamError as exc:
            LOGGER.error("Session %s failed: %s", session.id, exc)
            self._finish(runtime, SessionState.ERROR, error=exc)
            return
        except Exception as exc:
            LOGGER.exception("Session %s crashed", session.id)
            self._finish(runtime, SessionState.ERROR, error=exc)
            return
        self._finish(runtime, SessionState.COMPLETE)

    def _interrupt(self, runtime: _Runtime) -> None:
        task = runtime.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _expire(self, session_id: str) -> None:
        session = self._registry.get(session_id)
        if session is None or session.is_terminal:
            return
        LOGGER.warning("Session %s exceeded its %.1fs budget", session_id, session.timeout or 0.0)
        session.token.cancel(TIMEOUT_REASON)

    def _on_task_done(self, runtime: _Runtime) -> None:
        # Covers tasks cancelled before their first step.
        if runtime.session.is_terminal:
            return
        task = runtime.task
        if task is not None and not task.cancelled() and task.exception() is not None:
            self._finish(runtime, SessionState.ERROR, error=task.exception())
        else:
            self._finish(runtime, SessionState.CANCELLED)

    # ------------------------------------------------------------------
    # State and notification
    # ------------------------------------------------------------------

    def _finish(
        self,
        runtime: _Runtime,
        state: SessionState,
        *,
        error: BaseException | None = None,
    ) -> None:
        session = runtime.session
        if session.is_terminal:
            return
        if state is not SessionState.CANCELLED and session.token.is_cancelled:
            state, error = SessionState.CANCELLED, None

        raw = session.text
        text = ""
        if state is SessionState.CANCELLED:
            error = self._cancellation_error(session)
        elif state is SessionState.COMPLETE:
            if session.state is SessionState.INITIALIZING:
                self._set_state(runtime, SessionState.THINKING)
            text = self._sanitize(runtime, raw)
            session.result = text
        session.error = error

        if runtime.timeout_handle is not None:
            runtime.timeout_handle.cancel()
            runtime.timeout_handle = None
        self._set_state(runtime, state)

        outcome = SessionOutcome(
            session_id=session.id,
            kind=session.kind,
            state=state,
            text=text,
            raw_text=raw,
            error=error,
            attempts=session.attempt,
            duration=session.duration,
        )
        LOGGER.info(
            "Session %s %s in %s after %s attempt(s)",
            session.id,
            state.value,
            session.format_duration(),
            session.attempt,
        )
        if runtime.listener is not None:
            try:
                runtime.listener.on_terminal(session.id, state, outcome)
            except Exception:
                LOGGER.exception("Terminal listener failed for session %s", session.id)
        self._publish(
            SessionFinished(
                session_id=session.id,
                kind=session.kind.value,
                state=state.value,
                text=text,
                error=_error_payload(error),
                duration_ms=session.duration * 1000.0,
            )
        )

        self._registry.remove(session.id)
        self._runtimes.pop(session.id, None)
        self._outcomes[session.id] = outcome
        while len(self._outcomes) > _OUTCOME_HISTORY:
            self._outcomes.popitem(last=False)
        if not runtime.future.done():
            runtime.future.set_result(outcome)

    def _set_state(self, runtime: _Runtime, target: SessionState) -> None:
        session = runtime.session
        previous = session.transition(target)
        LOGGER.debug("Session %s: %s -> %s", session.id, previous.value, target.value)
        if runtime.listener is not None:
            try:
                runtime.listener.on_state_change(session.id, target)
            except Exception:
                LOGGER.exception("State listener failed for session %s", session.id)
        self._publish(
            SessionStateChanged(session_id=session.id, state=target.value, previous=previous.value)
        )

    def _notify_delta(self, runtime: _Runtime, text: str) -> None:
        session = runtime.session
        if runtime.listener is not None:
            try:
                runtime.listener.on_delta(session.id, text)
            except Exception:
                LOGGER.exception("Delta listener failed for session %s", session.id)
        self._publish(SessionDelta(session_id=session.id, content=text))

    def _sanitize(self, runtime: _Runtime, raw: str) -> str:
        session = runtime.session
        config = runtime.config
        if session.kind.is_inline:
            tail = getattr(session.context, "tail_after_cursor", "") or ""
            return self._sanitizer(raw, tail, max_length=config.max_suggestion_length)
        return self._sanitizer(raw, "", max_length=config.max_content_length, strip_fences=False)

    def _cancellation_error(self, session: Session) -> CodestreamError:
        reason = session.token.reason or "cancelled"
        if reason == TIMEOUT_REASON:
            return StreamTimeoutError(
                message=f"Request timed out after {session.timeout or 0:.1f}s",
                timeout=session.timeout,
            )
        return StreamCancelledError(reason=reason)

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)


def _coerce_request(request: StreamRequest | Mapping[str, Any]) -> StreamRequest:
    if isinstance(request, StreamRequest):
        return request
    if not isinstance(request, Mapping) or "messages" not in request:
        raise PreconditionError.missing_context("request")
    payload = dict(request)
    messages = payload.pop("messages")
    model = payload.pop("model", None)
    payload.pop("stream", None)
    params = dict(payload.pop("params", {}) or {})
    params.update(payload)
    return StreamRequest(messages=messages, model=model, params=params)


def _error_payload(error: BaseException | None) -> dict[str, Any] | None:
    if error is None:
        return None
    if isinstance(error, CodestreamError):
        return error.to_dict()
    return {"error": type(error).__name__, "message": str(error)}


__all__ = ["StreamingEngine", "SessionListener", "CallbackListener", "TIMEOUT_REASON"]
