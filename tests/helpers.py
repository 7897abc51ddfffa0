"""Fakes shared by the streaming engine tests."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from codestream.ai.ai_types import DeltaSink, StreamRequest, StreamResult
from codestream.ai.cancellation import CancellationToken
from codestream.ai.context import DocumentSnapshot, Position, build_trigger_context


class ScriptedTransport:
    """Transport double that replays one script per attempt.

    Script steps: ``str`` is delivered as a delta, an exception instance is
    raised, an :class:`asyncio.Event` is awaited, and a number is slept.
    The last script is reused once the list runs out.
    """

    def __init__(self, *attempts: Iterable[Any]) -> None:
        self._attempts = [list(script) for script in attempts] or [[]]
        self.calls: list[StreamRequest] = []
        self.closed = False

    async def stream(
        self,
        request: StreamRequest,
        token: CancellationToken,
        sink: DeltaSink,
    ) -> StreamResult:
        self.calls.append(request)
        script = self._attempts[min(len(self.calls), len(self._attempts)) - 1]
        token.raise_if_cancelled()
        sink.on_dispatch()
        result = StreamResult()
        for step in script:
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, asyncio.Event):
                await step.wait()
                continue
            if isinstance(step, (int, float)):
                await asyncio.sleep(step)
                continue
            token.raise_if_cancelled()
            result.deltas += 1
            sink.on_delta(step)
        result.saw_sentinel = True
        return result

    async def aclose(self) -> None:
        self.closed = True


class RecordingListener:
    """Session listener that records every notification in order."""

    def __init__(self) -> None:
        self.states: list[tuple[str, Any]] = []
        self.deltas: list[str] = []
        self.terminals: list[tuple[str, Any, Any]] = []

    def on_state_change(self, session_id: str, state: Any) -> None:
        self.states.append((session_id, state))

    def on_delta(self, session_id: str, text: str) -> None:
        self.deltas.append(text)

    def on_terminal(self, session_id: str, state: Any, outcome: Any) -> None:
        self.terminals.append((session_id, state, outcome))


def make_snapshot(text: str, line: int | None = None, ch: int | None = None, file_name: str = "app.js") -> DocumentSnapshot:
    lines = text.split("\n")
    row = len(lines) - 1 if line is None else line
    col = len(lines[row]) if ch is None else ch
    return DocumentSnapshot(text=text, cursor=Position(row, col), file_name=file_name)


def make_context(text: str, line: int | None = None, ch: int | None = None, file_name: str = "app.js"):
    return build_trigger_context(make_snapshot(text, line, ch, file_name))

