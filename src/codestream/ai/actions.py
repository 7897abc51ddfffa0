"""Code-action caller: explain, refactor, tests, documentation and fix on a selection."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from .ai_types import StreamRequest
from .config import EngineConfig
from .context import DocumentSnapshot, SelectionContext, build_selection_context
from .engine import SessionListener, StreamingEngine
from .errors import PreconditionError
from .prompts import VALID_ACTIONS, action_messages, action_params, action_title
from .session import SessionKind, SessionOutcome, SessionState

LOGGER = logging.getLogger(__name__)

ActionSource = Union[DocumentSnapshot, SelectionContext]


@dataclass(slots=True)
class ActionRun:
    """Bookkeeping for one action invocation."""

    session_id: str
    action: str
    title: str
    context: SelectionContext
    request: StreamRequest
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_of: str | None = None
    outcome: SessionOutcome | None = None

    @property
    def finished(self) -> bool:
        return self.outcome is not None


class _RunListener:
    """Forwards engine notifications to the caller's listener and records the outcome."""

    __slots__ = ("_controller", "_inner")

    def __init__(self, controller: "CodeActionsController", inner: SessionListener | None) -> None:
        self._controller = controller
        self._inner = inner

    def on_state_change(self, session_id: str, state: SessionState) -> None:
        if self._inner is not None:
            self._inner.on_state_change(session_id, state)

    def on_delta(self, session_id: str, text: str) -> None:
        if self._inner is not None:
            self._inner.on_delta(session_id, text)

    def on_terminal(self, session_id: str, state: SessionState, outcome: SessionOutcome) -> None:
        self._controller._record(outcome)
        if self._inner is not None:
            self._inner.on_terminal(session_id, state, outcome)


class CodeActionsController:
    """Starts one engine session per action; any number may run concurrently."""

    def __init__(
        self,
        engine: StreamingEngine,
        config: EngineConfig,
        *,
        on_finished: Callable[[ActionRun], None] | None = None,
        history_limit: int = 50,
    ) -> None:
        self._engine = engine
        self.config = config
        self._on_finished = on_finished
        self._history_limit = max(1, history_limit)
        self._runs: OrderedDict[str, ActionRun] = OrderedDict()

    @staticmethod
    def title(action: str) -> str:
        return action_title(action)

    @property
    def valid_actions(self) -> tuple[str, ...]:
        return VALID_ACTIONS

    def run_action(
        self,
        action: str,
        source: ActionSource,
        *,
        listener: SessionListener | None = None,
    ) -> str:
        """Start ``action`` over the selection in ``source``; returns the session id.

        Raises:
            PreconditionError: unknown action, empty selection, or a missing
                credential for the configured model.
        """

        if action not in VALID_ACTIONS:
            raise PreconditionError.unknown_action(action)
        context = self._selection(source)
        return self._launch(action, context, listener=listener)

    def retry(
        self,
        session_id: str,
        source: ActionSource | None = None,
        *,
        listener: SessionListener | None = None,
    ) -> str:
        """Re-run a previous action as a fresh session.

        The selection is rebuilt from ``source`` when given, otherwise the
        original selection is reused. A run still in flight is cancelled first.
        """

        previous = self._runs.get(session_id)
        if previous is None:
            raise KeyError(session_id)
        if not previous.finished:
            self._engine.cancel_session(session_id, "retry")
        context = self._selection(source) if source is not None else previous.context
        LOGGER.info("Retrying %s action from session %s", previous.action, session_id)
        return self._launch(previous.action, context, listener=listener, retry_of=session_id)

    def cancel(self, session_id: str) -> bool:
        return self._engine.cancel_session(session_id)

    def cancel_all(self) -> int:
        count = 0
        for run in list(self._runs.values()):
            if not run.finished and self._engine.cancel_session(run.session_id):
                count += 1
        return count

    async def wait(self, session_id: str) -> SessionOutcome:
        return await self._engine.wait(session_id)

    def get_run(self, session_id: str) -> ActionRun | None:
        return self._runs.get(session_id)

    def runs(self, *, active_only: bool = False) -> list[ActionRun]:
        runs = list(self._runs.values())
        if active_only:
            return [run for run in runs if not run.finished]
        return runs

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _selection(self, source: ActionSource) -> SelectionContext:
        if isinstance(source, SelectionContext):
            context: Optional[SelectionContext] = source
        else:
            context = build_selection_context(source)
        if context is None or not context.selected_code.strip():
            raise PreconditionError.missing_context("selection")
        return context

    def _launch(
        self,
        action: str,
        context: SelectionContext,
        *,
        listener: SessionListener | None,
        retry_of: str | None = None,
    ) -> str:
        request = StreamRequest(
            messages=action_messages(action, context),
            params=action_params(self.config.max_content_length),
        )
        session_id = self._engine.start_session(
            SessionKind(action),
            request,
            context,
            config=self.config,
            listener=_RunListener(self, listener),
        )
        self._runs[session_id] = ActionRun(
            session_id=session_id,
            action=action,
            title=action_title(action),
            context=context,
            request=request,
            retry_of=retry_of,
        )
        self._trim_history()
        LOGGER.info("Started %s action for %s", action, context.describe())
        return session_id

    def _record(self, outcome: SessionOutcome) -> None:
        run = self._runs.get(outcome.session_id)
        if run is None:
            return
        run.outcome = outcome
        if self._on_finished is not None:
            try:
                self._on_finished(run)
            except Exception:
                LOGGER.exception("Action completion callback failed for %s", run.session_id)

    def _trim_history(self) -> None:
        while len(self._runs) > self._history_limit:
            oldest_id = next(iter(self._runs))
            if not self._runs[oldest_id].finished:
                break
            self._runs.popitem(last=False)


__all__ = ["CodeActionsController", "ActionRun", "ActionSource"]
