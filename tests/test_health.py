"""Tests for /health endpoints."""

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

from chatgateway.main import app


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _ollama_down() -> AsyncMock:
    return AsyncMock(side_effect=httpx.ConnectError("connection refused"))


# ---------------------------------------------------------------------------
# /health
# ---------------------------------------------------------------------------
class TestHealthEndpoint:
    async def test_returns_200(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200

    async def test_response_structure(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        body = response.json()
        assert body["status"] == "healthy"
        assert "timestamp" in body
        assert "version" in body

    async def test_version_matches_settings(self, client: AsyncClient, test_settings) -> None:
        response = await client.get("/health")
        assert response.json()["version"] == test_settings.app_version


# ---------------------------------------------------------------------------
# /health/live
# ---------------------------------------------------------------------------
class TestLivenessEndpoint:
    async def test_returns_200(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.status_code == 200

    async def test_response_body(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.json()["status"] == "alive"


# ---------------------------------------------------------------------------
# /health/ready
# ---------------------------------------------------------------------------
class TestReadinessEndpoint:
    async def test_no_usable_provider_returns_503(self, client: AsyncClient) -> None:
        with patch("chatgateway.api.health._ping_ollama", _ollama_down()):
            response = await client.get("/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unavailable"
        assert body["errors"]["openai"] == "missing credentials"
        assert "ollama" in body["errors"]

    async def test_configured_key_is_ready(self, client: AsyncClient, test_settings) -> None:
        test_settings.anthropic_api_key = SecretStr("sk-ant-test")
        with patch("chatgateway.api.health._ping_ollama", _ollama_down()):
            response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["providers"] == ["anthropic"]
        assert body["checks"]["anthropic"] == "configured"
        assert "openai" in body["errors"]

    async def test_local_ollama_is_enough(self, client: AsyncClient) -> None:
        with patch("chatgateway.api.health._ping_ollama", AsyncMock(return_value=None)):
            response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["providers"] == ["ollama"]
        assert body["checks"]["ollama"] == "ok"

    async def test_all_providers(self, client: AsyncClient, test_settings) -> None:
        for key in ("openai", "anthropic", "cohere", "groq", "together", "openrouter", "xai"):
            setattr(test_settings, f"{key}_api_key", SecretStr(f"{key}-key"))
        with patch("chatgateway.api.health._ping_ollama", AsyncMock(return_value=None)):
            response = await client.get("/health/ready")

        body = response.json()
        assert response.status_code == 200
        assert len(body["providers"]) == 8
        assert body["errors"] == {}

    async def test_ollama_http_error_reported(self, client: AsyncClient) -> None:
        error = httpx.HTTPStatusError(
            "500 Internal Server Error",
            request=httpx.Request("GET", "http://localhost:11434/api/tags"),
            response=httpx.Response(500),
        )
        with patch("chatgateway.api.health._ping_ollama", AsyncMock(side_effect=error)):
            response = await client.get("/health/ready")

        assert response.status_code == 503
        assert "500" in response.json()["errors"]["ollama"]
