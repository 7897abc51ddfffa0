"""Shared typing contracts for the streaming engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Protocol

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .cancellation import CancellationToken

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
COMPLETIONS_PATH = "/chat/completions"


@dataclass(slots=True)
class StreamRequest:
    """Chat-completion request payload plus the endpoint it targets.

    ``model``, ``base_url``, ``api_key`` and ``headers`` are normally left
    empty by callers and filled in from an explicit
    :class:`~codestream.ai.config.EngineConfig` when a session starts.
    """

    messages: list[dict[str, Any]]
    model: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    base_url: str | None = None
    api_key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.messages = coerce_messages(self.messages)

    @property
    def endpoint_url(self) -> str:
        base = (self.base_url or DEFAULT_BASE_URL).rstrip("/")
        return f"{base}{COMPLETIONS_PATH}"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [dict(message) for message in self.messages],
        }
        payload.update(self.params)
        payload["stream"] = True
        return payload

    def request_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        headers.update(self.headers)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def with_updates(self, **changes: Any) -> "StreamRequest":
        return replace(self, **changes)


@dataclass(slots=True)
class StreamResult:
    """Summary of one transport attempt that ended normally."""

    finish_reason: str | None = None
    saw_sentinel: bool = False
    deltas: int = 0
    bytes_read: int = 0

    @property
    def graceful(self) -> bool:
        """True when the body ended without an explicit end marker."""
        return not self.saw_sentinel and self.finish_reason is None


class DeltaSink(Protocol):
    """Receiver for transport progress."""

    def on_dispatch(self) -> None:
        """Called once the request has been handed to the network."""
        ...

    def on_delta(self, text: str) -> None:
        """Called for each non-empty content delta, in order."""
        ...


class StreamTransport(Protocol):
    """Performs one streamed completion attempt."""

    async def stream(
        self,
        request: StreamRequest,
        token: "CancellationToken",
        sink: DeltaSink,
    ) -> StreamResult:
        ...


def coerce_messages(messages: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    normalized: list[dict[str, Any]] = []
    for message in messages:
        try:
            normalized.append(dict(message))
        except (TypeError, ValueError) as exc:
            raise TypeError("Messages must be mapping-like objects") from exc
    if not normalized:
        raise ValueError("At least one message is required to start a completion")
    return normalized


__all__ = [
    "DEFAULT_BASE_URL",
    "StreamRequest",
    "StreamResult",
    "DeltaSink",
    "StreamTransport",
    "coerce_messages",
]
