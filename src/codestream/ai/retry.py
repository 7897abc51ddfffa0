"""Bounded linear-backoff retry loop around one transport attempt."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from .cancellation import CancellationToken
from .errors import TransportError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RetryListener = Callable[[int, float, BaseException], None]


@dataclass(slots=True)
class RetryPolicy:
    """Retry configuration: ``max_attempts`` tries, waiting ``base_delay × n`` after attempt ``n``."""

    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        self.max_attempts = max(1, int(self.max_attempts))
        self.base_delay = max(0.0, float(self.base_delay))

    def delay_for(self, attempt: int) -> float:
        """Return the wait applied after ``attempt`` failed."""
        return self.base_delay * max(1, attempt)

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        token: CancellationToken,
        *,
        should_retry: Callable[[BaseException], bool] | None = None,
        on_retry: RetryListener | None = None,
    ) -> T:
        """Run ``operation(attempt)`` until it succeeds or retries run out.

        Only :class:`TransportError` is retried, and only while
        ``should_retry`` (if given) agrees. Cancellation is checked before
        every attempt, including right after an inter-attempt wait, and is
        never retried. The last error is re-raised when attempts run out.
        """

        def _retryable(exc: BaseException) -> bool:
            if token.is_cancelled or not isinstance(exc, TransportError):
                return False
            return should_retry(exc) if should_retry is not None else True

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome is not None else None
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            LOGGER.warning(
                "Streaming attempt %s/%s failed (%s); retrying in %.2fs",
                state.attempt_number,
                self.max_attempts,
                exc,
                delay,
            )
            if on_retry is not None and exc is not None:
                on_retry(state.attempt_number + 1, delay, exc)

        async def _sleep(seconds: float) -> None:
            # Returns early when cancelled; the next attempt re-checks the token.
            await token.wait(seconds)

        retrying = AsyncRetrying(
            sleep=_sleep,
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception(_retryable),
            before_sleep=_before_sleep,
        )
        async for attempt in retrying:
            with attempt:
                token.raise_if_cancelled()
                return await operation(attempt.retry_state.attempt_number)
        raise AssertionError("unreachable: tenacity re-raises the last error")  # pragma: no cover


__all__ = ["RetryPolicy", "RetryListener"]
