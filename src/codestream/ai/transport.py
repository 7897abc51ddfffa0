"""Streaming transports for OpenAI-compatible chat-completion endpoints."""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from .ai_types import DEFAULT_BASE_URL, DeltaSink, StreamRequest, StreamResult
from .cancellation import CancellationToken
from .errors import ErrorCode, RateLimitError, TransportError

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


# -----------------------------------------------------------------------------
# Event stream decoding
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """One decoded item from the event stream.

    ``type`` is ``"delta"`` (``content`` set), ``"finish"`` (the model reported
    a finish reason) or ``"done"`` (the literal end-of-stream sentinel).
    """

    type: str
    content: str | None = None
    finish_reason: str | None = None

    @property
    def terminal(self) -> bool:
        return self.type in ("finish", "done")


class EventStreamDecoder:
    """Incremental decoder for ``data:``-prefixed server-sent event bodies.

    Bytes are decoded as UTF-8 without splitting multi-byte sequences, split on
    newlines, and only complete lines are processed; the trailing partial line
    stays buffered until more input arrives or :meth:`finish` is called.
    Frames whose payload is not valid JSON are skipped.
    """

    def __init__(self, *, prefix: str = DATA_PREFIX, sentinel: str = DONE_SENTINEL) -> None:
        self._prefix = prefix
        self._sentinel = sentinel
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped_frames = 0

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if isinstance(chunk, bytes):
            self._buffer += self._decoder.decode(chunk)
        else:
            self._buffer += chunk
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._parse_line(line))
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush the decoder and process a final unterminated line."""

        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return self._parse_line(remainder)

    def _parse_line(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line.startswith(self._prefix):
            return []
        data = line[len(self._prefix):].strip()
        if not data:
            return []
        if data == self._sentinel:
            return [StreamEvent(type="done")]
        try:
            payload = json.loads(data)
        except ValueError:
            self.skipped_frames += 1
            LOGGER.debug("Skipping malformed stream frame: %.80s", data)
            return []
        if not isinstance(payload, Mapping):
            self.skipped_frames += 1
            return []

        events: list[StreamEvent] = []
        content = extract_delta(payload)
        if content:
            events.append(StreamEvent(type="delta", content=content))
        finish_reason = extract_finish_reason(payload)
        if finish_reason:
            events.append(StreamEvent(type="finish", finish_reason=finish_reason))
        return events


def extract_delta(payload: Mapping[str, Any]) -> str | None:
    """Return the content delta carried by a decoded frame, if any."""

    choice = _first_choice(payload)
    if choice is not None:
        delta = choice.get("delta")
        if isinstance(delta, Mapping):
            content = delta.get("content")
            if isinstance(content, str):
                return content
        text = choice.get("text")
        if isinstance(text, str):
            return text
    for key in ("delta", "content"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return None


def extract_finish_reason(payload: Mapping[str, Any]) -> str | None:
    choice = _first_choice(payload)
    if choice is not None:
        reason = choice.get("finish_reason")
        if isinstance(reason, str) and reason:
            return reason
    reason = payload.get("finish_reason")
    if isinstance(reason, str) and reason:
        return reason
    return None


def _first_choice(payload: Mapping[str, Any]) -> Mapping[str, Any] | None:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        return choices[0]
    return None


def _apply_event(event: StreamEvent, sink: DeltaSink, result: StreamResult) -> bool:
    """Route ``event`` to ``sink``; returns ``True`` when the stream is over."""

    if event.type == "delta" and event.content:
        result.deltas += 1
        sink.on_delta(event.content)
        return False
    if event.type == "done":
        result.saw_sentinel = True
        LOGGER.debug("Received %s sentinel", DONE_SENTINEL)
        return True
    if event.type == "finish":
        result.finish_reason = event.finish_reason
        LOGGER.debug("Stream finished with reason: %s", event.finish_reason)
        return True
    return False


# -----------------------------------------------------------------------------
# httpx transport
# -----------------------------------------------------------------------------


class HttpStreamTransport:
    """Raw httpx transport that decodes the event stream itself."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | httpx.Timeout | None = 60.0,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def stream(
        self,
        request: StreamRequest,
        token: CancellationToken,
        sink: DeltaSink,
    ) -> StreamResult:
        token.raise_if_cancelled()
        client = self._get_client()
        LOGGER.debug("POST %s (model=%s)", request.endpoint_url, request.model)
        sink.on_dispatch()
        try:
            async with client.stream(
                "POST",
                request.endpoint_url,
                json=request.to_payload(),
                headers=request.request_headers(),
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise self._status_error(response, body.decode("utf-8", errors="replace"))
                return await self._consume(response, token, sink)
        except httpx.HTTPError as exc:
            raise TransportError(
                message=f"Network error: {exc}" if str(exc) else f"Network error: {type(exc).__name__}",
                details={"exception": type(exc).__name__},
            ) from exc

    async def _consume(
        self,
        response: httpx.Response,
        token: CancellationToken,
        sink: DeltaSink,
    ) -> StreamResult:
        decoder = EventStreamDecoder()
        result = StreamResult()
        async for chunk in response.aiter_bytes():
            token.raise_if_cancelled()
            if not chunk:
                continue
            result.bytes_read += len(chunk)
            for event in decoder.feed(chunk):
                if _apply_event(event, sink, result):
                    return result
        token.raise_if_cancelled()
        if result.bytes_read == 0:
            raise TransportError(
                error_code=ErrorCode.EMPTY_BODY,
                message="Response body is empty",
                status=response.status_code,
            )
        for event in decoder.finish():
            if _apply_event(event, sink, result):
                return result
        LOGGER.debug("Stream ended without an end marker after %s delta(s)", result.deltas)
        return result

    def _status_error(self, response: httpx.Response, body: str) -> TransportError:
        error = TransportError.from_response(response.status_code, body)
        if isinstance(error, RateLimitError):
            error.retry_after = _parse_retry_after(response.headers.get("Retry-After"))
        return error

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


# -----------------------------------------------------------------------------
# OpenAI SDK transport
# -----------------------------------------------------------------------------


class OpenAIStreamTransport:
    """Transport backed by the ``openai`` SDK's streaming chat completions.

    SDK errors are translated into the engine's own taxonomy so the retry
    policy treats both transports the same way.
    """

    def __init__(self, client: AsyncOpenAI | None = None, *, timeout: float | None = 60.0) -> None:
        self._client = client
        self._timeout = timeout
        self._clients: dict[tuple[str, str], AsyncOpenAI] = {}

    async def stream(
        self,
        request: StreamRequest,
        token: CancellationToken,
        sink: DeltaSink,
    ) -> StreamResult:
        token.raise_if_cancelled()
        client = self._client_for(request)
        result = StreamResult()
        sink.on_dispatch()
        try:
            stream = await client.chat.completions.create(
                model=request.model,
                messages=request.messages,
                stream=True,
                extra_headers=dict(request.headers) or None,
                **request.params,
            )
            async with stream:
                async for chunk in stream:
                    token.raise_if_cancelled()
                    choices = getattr(chunk, "choices", None) or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = getattr(choice, "delta", None)
                    content = getattr(delta, "content", None) if delta is not None else None
                    if content:
                        result.deltas += 1
                        sink.on_delta(content)
                    finish_reason = getattr(choice, "finish_reason", None)
                    if finish_reason:
                        result.finish_reason = str(finish_reason)
                        return result
        except APIStatusError as exc:
            error = TransportError.from_response(exc.status_code, _status_message(exc))
            if isinstance(error, RateLimitError):
                error.retry_after = _parse_retry_after(exc.response.headers.get("Retry-After"))
            raise error from exc
        except APIConnectionError as exc:
            raise TransportError(
                message=f"Network error: {exc}",
                details={"exception": type(exc).__name__},
            ) from exc
        token.raise_if_cancelled()
        return result

    def _client_for(self, request: StreamRequest) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        base_url = (request.base_url or DEFAULT_BASE_URL).rstrip("/")
        key = (base_url, request.api_key or "")
        client = self._clients.get(key)
        if client is None:
            client = AsyncOpenAI(
                api_key=request.api_key or "anonymous",
                base_url=base_url,
                timeout=self._timeout,
            )
            self._clients[key] = client
        return client

    async def aclose(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.close()


def _status_message(exc: APIStatusError) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return str(getattr(exc, "message", "") or exc)


__all__ = [
    "DATA_PREFIX",
    "DONE_SENTINEL",
    "StreamEvent",
    "EventStreamDecoder",
    "HttpStreamTransport",
    "OpenAIStreamTransport",
    "extract_delta",
    "extract_finish_reason",
]
