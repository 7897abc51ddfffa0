"""Tests for :mod:`codestream.ai.actions`."""

from __future__ import annotations

import asyncio

import pytest

from codestream.ai.actions import CodeActionsController
from codestream.ai.context import DocumentSnapshot, Position, SelectionRange
from codestream.ai.engine import StreamingEngine
from codestream.ai.errors import ErrorCode, PreconditionError
from codestream.ai.session import SessionKind, SessionState

from tests.helpers import RecordingListener, ScriptedTransport

_SOURCE = "\n".join(f"line {index}" for index in range(20))


def _snapshot(start: int = 8, end: int = 9) -> DocumentSnapshot:
    return DocumentSnapshot(
        text=_SOURCE,
        cursor=Position(end, 6),
        file_name="worker.py",
        selection=SelectionRange(start=Position(start, 0), end=Position(end, 6)),
    )


@pytest.mark.asyncio
async def test_run_action_streams_and_records_outcome(config) -> None:
    finished: list = []
    transport = ScriptedTransport(["This ", "explains."])
    controller = CodeActionsController(StreamingEngine(transport), config, on_finished=finished.append)
    listener = RecordingListener()

    session_id = controller.run_action("explain", _snapshot(), listener=listener)
    outcome = await controller.wait(session_id)

    assert outcome.state is SessionState.COMPLETE
    assert outcome.text == "This explains."
    assert outcome.kind is SessionKind.EXPLAIN
    assert listener.deltas == ["This ", "explains."]

    run = controller.get_run(session_id)
    assert run is not None
    assert run.title == "Code Explanation"
    assert run.outcome is outcome
    assert finished == [run]

    sent = transport.calls[0]
    assert sent.messages[0]["role"] == "system"
    assert "Selected Code:" in sent.messages[1]["content"]
    assert "Lines: 9-10" in sent.messages[1]["content"]
    assert sent.params["max_tokens"] == config.max_content_length
    assert sent.params["top_p"] == 0.9


@pytest.mark.asyncio
async def test_actions_run_concurrently(config) -> None:
    gate = asyncio.Event()
    controller = CodeActionsController(StreamingEngine(ScriptedTransport([gate, "done"])), config)

    ids = [controller.run_action(action, _snapshot()) for action in ("refactor", "tests", "fix")]
    await asyncio.sleep(0)

    assert len(controller.runs(active_only=True)) == 3
    gate.set()
    outcomes = [await controller.wait(session_id) for session_id in ids]
    assert all(outcome.ok for outcome in outcomes)
    assert controller.runs(active_only=True) == []


@pytest.mark.asyncio
async def test_unknown_action_is_rejected(config) -> None:
    controller = CodeActionsController(StreamingEngine(ScriptedTransport()), config)

    with pytest.raises(PreconditionError) as excinfo:
        controller.run_action("summarize", _snapshot())

    assert excinfo.value.error_code == ErrorCode.UNKNOWN_ACTION


@pytest.mark.asyncio
async def test_empty_selection_is_rejected(config) -> None:
    controller = CodeActionsController(StreamingEngine(ScriptedTransport()), config)
    snapshot = DocumentSnapshot(text=_SOURCE, file_name="worker.py")

    with pytest.raises(PreconditionError) as excinfo:
        controller.run_action("explain", snapshot)

    assert excinfo.value.error_code == ErrorCode.MISSING_CONTEXT


@pytest.mark.asyncio
async def test_retry_starts_fresh_session_with_same_action(config) -> None:
    transport = ScriptedTransport(["first"], ["second"])
    controller = CodeActionsController(StreamingEngine(transport), config)

    first = controller.run_action("documentation", _snapshot())
    await controller.wait(first)
    second = controller.retry(first)
    outcome = await controller.wait(second)

    assert second != first
    assert outcome.text == "second"
    run = controller.get_run(second)
    assert run.action == "documentation"
    assert run.retry_of == first
    assert transport.calls[0].messages == transport.calls[1].messages


@pytest.mark.asyncio
async def test_retry_of_running_action_cancels_it(config) -> None:
    controller = CodeActionsController(StreamingEngine(ScriptedTransport([asyncio.Event()])), config)

    first = controller.run_action("fix", _snapshot())
    await asyncio.sleep(0)
    second = controller.retry(first, _snapshot(2, 3))

    assert (await controller.wait(first)).state is SessionState.CANCELLED
    assert controller.get_run(second).context.start_line == 3
    controller.cancel(second)
    assert (await controller.wait(second)).state is SessionState.CANCELLED


@pytest.mark.asyncio
async def test_cancel_all_only_counts_live_runs(config) -> None:
    controller = CodeActionsController(StreamingEngine(ScriptedTransport([asyncio.Event()])), config)
    ids = [controller.run_action("explain", _snapshot()) for _ in range(2)]

    assert controller.cancel_all() == 2
    for session_id in ids:
        await controller.wait(session_id)
    assert controller.cancel_all() == 0


def test_titles_cover_every_action() -> None:
    assert CodeActionsController.title("fix") == "Code Analysis & Fixes"
    assert CodeActionsController.title("tests") == "Test Generation"
    with pytest.raises(PreconditionError):
        CodeActionsController.title("deploy")
