"""Cooperative cancellation shared between a caller and an in-flight session."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .errors import StreamCancelledError

LOGGER = logging.getLogger(__name__)

CancelCallback = Callable[[str], None]


class CancellationToken:
    """One-shot cancel flag owned by a single session.

    The token starts live. :meth:`cancel` flips it exactly once; later calls
    are no-ops and the first reason is kept. Callbacks registered with
    :meth:`add_callback` run once, at the moment of cancellation (or
    immediately when registered on an already-cancelled token). Tokens are
    never reset, so a fresh one must be created for every session.
    """

    __slots__ = ("_cancelled", "_reason", "_callbacks", "_event")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[CancelCallback] = []
        self._event: asyncio.Event | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        """Reason passed to the first :meth:`cancel` call, if any."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the token; returns ``False`` when it was already cancelled."""

        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason or "cancelled"
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception:
                LOGGER.exception("Cancellation callback %r failed", callback)
        return True

    def add_callback(self, callback: CancelCallback) -> None:
        if self._cancelled:
            callback(self._reason or "cancelled")
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: CancelCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise StreamCancelledError(reason=self._reason or "cancelled")

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for cancellation, up to ``timeout`` seconds.

        Returns ``True`` when the token was cancelled, ``False`` on timeout.
        """

        if self._cancelled:
            return True
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        state = f"cancelled:{self._reason}" if self._cancelled else "live"
        return f"<CancellationToken {state}>"


__all__ = ["CancellationToken", "CancelCallback"]
