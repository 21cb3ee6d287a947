"""Shared fixtures: isolated settings and mock vendor transports."""

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from chatgateway.config import Settings
from chatgateway.retry import RetryPolicy

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def test_settings(mocker) -> Settings:
    """Replace the global settings so no real credentials or .env leak in."""
    settings = Settings(
        _env_file=None,
        openai_api_key=None,
        anthropic_api_key=None,
        cohere_api_key=None,
        groq_api_key=None,
        together_api_key=None,
        openrouter_api_key=None,
        openrouter_site_url=None,
        openrouter_site_name=None,
        xai_api_key=None,
        ollama_host="http://localhost:11434",
        default_provider="openai",
        openai_family_provider="openai",
        fast_inference_provider="groq",
        llm_max_attempts=3,
    )
    mocker.patch("chatgateway.config.settings", settings)
    return settings


@pytest.fixture
def mock_client() -> Callable[[Handler], httpx.AsyncClient]:
    """Factory for an ``httpx.AsyncClient`` served by *handler*."""

    def _make(handler: Handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def retry_policy(no_sleep: AsyncMock) -> Callable[..., RetryPolicy]:
    """Factory for a retry policy that never actually waits."""

    def _make(max_attempts: int = 3) -> RetryPolicy:
        return RetryPolicy(max_attempts=max_attempts, sleep=no_sleep)

    return _make


def sse_response(*frames: Any, event_names: list[str | None] | None = None) -> httpx.Response:
    """Build a ``text/event-stream`` response from JSON-able frames or raw strings."""
    parts = []
    for i, frame in enumerate(frames):
        data = frame if isinstance(frame, str) else json.dumps(frame)
        name = event_names[i] if event_names else None
        prefix = f"event: {name}\n" if name else ""
        parts.append(f"{prefix}data: {data}\n\n")
    return httpx.Response(
        200, content="".join(parts).encode(), headers={"content-type": "text/event-stream"}
    )


def ndjson_response(*frames: Any) -> httpx.Response:
    lines = [frame if isinstance(frame, str) else json.dumps(frame) for frame in frames]
    return httpx.Response(
        200,
        content=("\n".join(lines) + "\n").encode(),
        headers={"content-type": "application/x-ndjson"},
    )


@pytest.fixture
def sse() -> Callable[..., httpx.Response]:
    return sse_response


@pytest.fixture
def ndjson() -> Callable[..., httpx.Response]:
    return ndjson_response
