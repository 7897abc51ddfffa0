"""Explicit per-request engine configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .ai_types import DEFAULT_BASE_URL, StreamRequest
from .errors import PreconditionError

DEFAULT_MODEL = "deepseek/deepseek-chat-v3-0324:free"
DEFAULT_FREE_MODELS: tuple[str, ...] = (
    "deepseek/deepseek-r1-0528:free",
    "deepseek/deepseek-chat-v3-0324:free",
    "google/gemma-3-27b-it:free",
)
DEFAULT_REFERER = "http://localhost"
DEFAULT_APP_TITLE = "codestream"


@dataclass(slots=True)
class EngineConfig:
    """Configuration resolved by the caller and passed into every session.

    Models listed in ``free_models`` run without a credential; every other
    model needs ``api_key`` and is rejected up front when it is missing.
    """

    model: str = DEFAULT_MODEL
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    free_models: tuple[str, ...] = DEFAULT_FREE_MODELS
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    session_timeout: float = 30.0
    debounce_delay: float = 2.0
    min_trigger_length: int = 5
    max_suggestion_length: int = 500
    max_content_length: int = 8192
    temperature: float | None = None
    referer: str = DEFAULT_REFERER
    app_title: str = DEFAULT_APP_TITLE
    extra_headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.free_models = tuple(self.free_models)
        self.retry_attempts = max(1, int(self.retry_attempts))
        self.retry_base_delay = max(0.0, float(self.retry_base_delay))
        self.debounce_delay = max(0.1, float(self.debounce_delay))
        self.min_trigger_length = max(1, int(self.min_trigger_length))

    def requires_credential(self, model: str | None = None) -> bool:
        return (model or self.model) not in self.free_models

    def check_preconditions(self, model: str | None = None) -> None:
        """Raise :class:`PreconditionError` when the selected model tier needs a missing key."""

        target = model or self.model
        if self.requires_credential(target) and not (self.api_key or "").strip():
            raise PreconditionError.missing_credential(target)

    def resolve(self, request: StreamRequest) -> StreamRequest:
        """Return ``request`` with endpoint, credential and model filled in."""

        headers: dict[str, str] = {"HTTP-Referer": self.referer, "X-Title": self.app_title}
        headers.update(self.extra_headers)
        headers.update(request.headers)
        params: dict[str, Any] = dict(request.params)
        if self.temperature is not None:
            params.setdefault("temperature", self.temperature)
        return request.with_updates(
            model=request.model or self.model,
            base_url=request.base_url or self.base_url,
            api_key=request.api_key or (self.api_key.strip() or None),
            headers=headers,
            params=params,
        )


__all__ = ["EngineConfig", "DEFAULT_MODEL", "DEFAULT_FREE_MODELS", "DEFAULT_REFERER", "DEFAULT_APP_TITLE"]
