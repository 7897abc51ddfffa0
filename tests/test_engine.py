"""Tests for :mod:`codestream.ai.engine`."""

from __future__ import annotations

import asyncio

import pytest

from codestream.ai.ai_types import StreamRequest, StreamResult
from codestream.ai.config import EngineConfig
from codestream.ai.engine import CallbackListener, StreamingEngine
from codestream.ai.errors import (
    ErrorCode,
    PreconditionError,
    StreamCancelledError,
    StreamTimeoutError,
    TransportError,
)
from codestream.ai.session import SessionKind, SessionState
from codestream.events import EventBus, SessionFinished, SessionRetrying, SessionStarted

from tests.helpers import RecordingListener, ScriptedTransport, make_context


class _LateDeltaTransport:
    """Emits one delta, blocks, and tries to emit another while being cancelled."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def stream(self, request, token, sink) -> StreamResult:
        sink.on_dispatch()
        sink.on_delta("a")
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            sink.on_delta("b")
            raise
        return StreamResult()


@pytest.mark.asyncio
async def test_inline_session_completes_with_sanitized_text(config, request_payload) -> None:
    transport = ScriptedTransport(["```python\n", "'hi')", "\n```"])
    engine = StreamingEngine(transport)
    listener = RecordingListener()
    context = make_context("print(\n)", line=0)

    session_id = engine.start_session(
        SessionKind.INLINE_COMPLETION, request_payload, context, config=config, listener=listener
    )
    outcome = await engine.wait(session_id)

    assert outcome.state is SessionState.COMPLETE
    assert outcome.raw_text == "```python\n'hi')\n```"
    assert outcome.text == "'hi'"
    assert listener.deltas == ["```python\n", "'hi')", "\n```"]
    assert [state for _, state in listener.states] == [
        SessionState.THINKING,
        SessionState.STREAMING,
        SessionState.COMPLETE,
    ]
    assert len(listener.terminals) == 1
    assert engine.get(session_id) is None
    assert engine.outcome(session_id) is outcome


@pytest.mark.asyncio
async def test_action_session_keeps_fences_and_uses_content_limit(request_payload) -> None:
    config = EngineConfig(max_content_length=12)
    engine = StreamingEngine(ScriptedTransport(["```js\n", "let x = 1;\n```"]))

    outcome = await engine.run(SessionKind.EXPLAIN, request_payload, config=config)

    assert outcome.ok
    assert outcome.text == "```js\nlet x"


@pytest.mark.asyncio
async def test_resolved_request_carries_config_and_mapping_params(config) -> None:
    transport = ScriptedTransport(["ok"])
    engine = StreamingEngine(transport)

    await engine.run(
        "refactor",
        {"messages": [{"role": "user", "content": "x"}], "temperature": 0.2},
        config=config,
    )

    sent = transport.calls[0]
    assert sent.model == config.model
    assert sent.params == {"temperature": 0.2}
    assert sent.headers["X-Title"] == config.app_title
    assert sent.headers["HTTP-Referer"] == config.referer
    assert sent.api_key is None


@pytest.mark.asyncio
async def test_inline_session_without_context_is_rejected(config, request_payload) -> None:
    engine = StreamingEngine(ScriptedTransport(["x"]))

    with pytest.raises(PreconditionError) as excinfo:
        engine.start_session(SessionKind.INLINE_COMPLETION, request_payload, None, config=config)

    assert excinfo.value.error_code == ErrorCode.MISSING_CONTEXT
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_gated_model_without_credential_is_rejected(request_payload) -> None:
    transport = ScriptedTransport(["x"])
    engine = StreamingEngine(transport)
    config = EngineConfig(model="anthropic/claude-sonnet", api_key="")

    with pytest.raises(PreconditionError) as excinfo:
        engine.start_session(SessionKind.FIX, request_payload, config=config)

    assert excinfo.value.error_code == ErrorCode.MISSING_CREDENTIAL
    assert transport.calls == []


@pytest.mark.asyncio
async def test_cancellation_wins_over_late_delta(config, request_payload) -> None:
    transport = _LateDeltaTransport()
    engine = StreamingEngine(transport)
    listener = RecordingListener()

    session_id = engine.start_session(SessionKind.EXPLAIN, request_payload, config=config, listener=listener)
    await transport.started.wait()

    assert engine.cancel_session(session_id) is True
    outcome = await engine.wait(session_id)

    assert outcome.state is SessionState.CANCELLED
    assert listener.deltas == ["a"]
    assert outcome.raw_text == "a"
    assert outcome.text == ""
    assert isinstance(outcome.error, StreamCancelledError)
    assert [state for _, state, _ in listener.terminals] == [SessionState.CANCELLED]
    assert engine.cancel_session(session_id) is False


@pytest.mark.asyncio
async def test_cancel_before_first_step_still_reports_once(config, request_payload) -> None:
    transport = ScriptedTransport(["never"])
    engine = StreamingEngine(transport)
    listener = RecordingListener()

    session_id = engine.start_session(SessionKind.TESTS, request_payload, config=config, listener=listener)
    engine.cancel_session(session_id)
    outcome = await engine.wait(session_id)

    assert outcome.state is SessionState.CANCELLED
    assert transport.calls == []
    assert len(listener.terminals) == 1


@pytest.mark.asyncio
async def test_transport_errors_are_retried_with_linear_backoff(request_payload) -> None:
    bus: EventBus = EventBus()
    retries: list[SessionRetrying] = []
    bus.subscribe(SessionRetrying, retries.append)
    transport = ScriptedTransport([TransportError(message="boom", status=500)])
    engine = StreamingEngine(transport, event_bus=bus)
    config = EngineConfig(retry_attempts=3, retry_base_delay=0.05)

    outcome = await engine.run(SessionKind.EXPLAIN, request_payload, config=config)

    assert outcome.state is SessionState.ERROR
    assert isinstance(outcome.error, TransportError)
    assert outcome.attempts == 3
    assert len(transport.calls) == 3
    assert [event.attempt for event in retries] == [2, 3]
    assert [event.delay for event in retries] == pytest.approx([0.05, 0.1])


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failure(config, request_payload) -> None:
    transport = ScriptedTransport([TransportError(message="flaky")], ["ok"])
    engine = StreamingEngine(transport)

    outcome = await engine.run(SessionKind.DOCUMENTATION, request_payload, config=config)

    assert outcome.ok
    assert outcome.text == "ok"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_no_retry_once_content_was_streamed(config, request_payload) -> None:
    transport = ScriptedTransport(["partial", TransportError(message="dropped")])
    engine = StreamingEngine(transport)

    outcome = await engine.run(SessionKind.EXPLAIN, request_payload, config=config)

    assert outcome.state is SessionState.ERROR
    assert outcome.raw_text == "partial"
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_errors_are_not_retried(config, request_payload) -> None:
    transport = ScriptedTransport([ValueError("bad payload")])
    engine = StreamingEngine(transport)

    outcome = await engine.run(SessionKind.EXPLAIN, request_payload, config=config)

    assert outcome.state is SessionState.ERROR
    assert isinstance(outcome.error, ValueError)
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_cancel_during_retry_wait_stops_further_attempts(request_payload) -> None:
    bus: EventBus = EventBus()
    waiting = asyncio.Event()
    bus.subscribe(SessionRetrying, lambda _event: waiting.set())
    transport = ScriptedTransport([TransportError(message="boom")])
    engine = StreamingEngine(transport, event_bus=bus)
    config = EngineConfig(retry_attempts=3, retry_base_delay=1.0)

    session_id = engine.start_session(SessionKind.EXPLAIN, request_payload, config=config)
    await waiting.wait()
    engine.cancel_session(session_id)
    outcome = await asyncio.wait_for(engine.wait(session_id), 0.5)

    assert outcome.state is SessionState.CANCELLED
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_session_timeout_cancels_with_timeout_error(request_payload) -> None:
    transport = ScriptedTransport([asyncio.Event()])
    engine = StreamingEngine(transport)
    config = EngineConfig(session_timeout=0.05)

    outcome = await asyncio.wait_for(engine.run(SessionKind.EXPLAIN, request_payload, config=config), 1.0)

    assert outcome.state is SessionState.CANCELLED
    assert outcome.timed_out
    assert isinstance(outcome.error, StreamTimeoutError)


@pytest.mark.asyncio
async def test_cancel_all_filters_by_kind(config, request_payload) -> None:
    gate = asyncio.Event()
    engine = StreamingEngine(ScriptedTransport([gate]))

    first = engine.start_session(SessionKind.EXPLAIN, request_payload, config=config)
    second = engine.start_session(SessionKind.EXPLAIN, request_payload, config=config)
    other = engine.start_session(SessionKind.FIX, request_payload, config=config)

    assert {s.id for s in engine.active_sessions(SessionKind.EXPLAIN)} == {first, second}
    assert engine.cancel_all(SessionKind.EXPLAIN) == 2
    assert engine.cancel_all(SessionKind.EXPLAIN) == 0

    gate.set()
    assert (await engine.wait(first)).state is SessionState.CANCELLED
    assert (await engine.wait(other)).state is SessionState.COMPLETE


@pytest.mark.asyncio
async def test_event_bus_receives_one_finish_per_session(config, request_payload) -> None:
    bus: EventBus = EventBus()
    started: list[SessionStarted] = []
    finished: list[SessionFinished] = []
    bus.subscribe(SessionStarted, started.append)
    bus.subscribe(SessionFinished, finished.append)
    engine = StreamingEngine(ScriptedTransport(["a", "b"]), event_bus=bus)

    session_id = engine.start_session(SessionKind.EXPLAIN, request_payload, config=config)
    await engine.wait(session_id)

    assert [event.session_id for event in started] == [session_id]
    assert len(finished) == 1
    assert finished[0].state == "complete"
    assert finished[0].text == "ab"
    assert finished[0].error is None


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_session(config, request_payload) -> None:
    def explode(_session_id: str, _text: str) -> None:
        raise RuntimeError("render failed")

    engine = StreamingEngine(ScriptedTransport(["a", "b"]))

    outcome = await engine.run(
        SessionKind.EXPLAIN, request_payload, config=config, listener=CallbackListener(delta=explode)
    )

    assert outcome.ok
    assert outcome.text == "ab"


@pytest.mark.asyncio
async def test_aclose_cancels_live_sessions_and_closes_transport(config, request_payload) -> None:
    transport = ScriptedTransport([asyncio.Event()])
    engine = StreamingEngine(transport)
    session_id = engine.start_session(SessionKind.EXPLAIN, request_payload, config=config)
    await asyncio.sleep(0)

    await engine.aclose()

    assert (await engine.wait(session_id)).state is SessionState.CANCELLED
    assert transport.closed is True


@pytest.mark.asyncio
async def test_wait_on_unknown_session_raises_key_error() -> None:
    engine = StreamingEngine(ScriptedTransport())

    with pytest.raises(KeyError):
        await engine.wait("missing")


def test_request_requires_messages() -> None:
    with pytest.raises(ValueError):
        StreamRequest(messages=[])
