"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from codestream.ai.ai_types import StreamRequest
from codestream.ai.config import EngineConfig


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(retry_base_delay=0.01, session_timeout=5.0, debounce_delay=0.1)


@pytest.fixture
def request_payload() -> StreamRequest:
    return StreamRequest(messages=[{"role": "user", "content": "hi"}])
