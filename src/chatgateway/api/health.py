from datetime import UTC, datetime

import httpx
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from opentelemetry import trace

from chatgateway import config

router = APIRouter(prefix="/health", tags=["health"])
log = structlog.get_logger()
tracer = trace.get_tracer(__name__)

_CREDENTIALED_PROVIDERS = (
    "openai",
    "anthropic",
    "cohere",
    "groq",
    "together",
    "openrouter",
    "xai",
)


async def _ping_ollama() -> None:
    """Raise if the local Ollama server does not answer."""
    async with httpx.AsyncClient(timeout=2.0) as client:
        response = await client.get(f"{config.settings.ollama_host.rstrip('/')}/api/tags")
        response.raise_for_status()


@router.get("")
async def health() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": config.settings.app_version,
        }
    )


@router.get("/live")
async def liveness() -> JSONResponse:
    """Kubernetes liveness check: always returns 200 if the process is running."""
    return JSONResponse(content={"status": "alive"})


@router.get("/ready")
async def readiness() -> JSONResponse:
    """Kubernetes readiness check: at least one provider must be usable.

    Hosted providers count as usable when a credential is configured; Ollama
    when the local server answers.
    """
    checks: dict[str, str] = {}
    errors: dict[str, str] = {}

    with tracer.start_as_current_span("health.readiness"):
        for key in _CREDENTIALED_PROVIDERS:
            if config.settings.api_key_for(key):
                checks[key] = "configured"
            else:
                errors[key] = "missing credentials"

        with tracer.start_as_current_span("health.check.ollama"):
            try:
                await _ping_ollama()
                checks["ollama"] = "ok"
                log.debug("Ollama ping succeeded")
            except httpx.HTTPError as exc:
                errors["ollama"] = str(exc) or type(exc).__name__
                log.debug("Ollama ping failed", error=str(exc))

    if not checks:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "checks": checks, "errors": errors},
        )

    return JSONResponse(
        content={"status": "ready", "providers": sorted(checks), "checks": checks, "errors": errors}
    )
