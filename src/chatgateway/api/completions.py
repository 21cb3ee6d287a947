"""OpenAI-compatible POST /v1/chat/completions endpoint.

Translates the OpenAI wire format into a :class:`~chatgateway.gateway.Gateway`
call, streams Server-Sent Events for streaming requests, and maps gateway
errors to HTTP status codes.
"""

import json
import time
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from chatgateway.errors import (
    AuthenticationError,
    GatewayError,
    ModelNotSupportedError,
    NetworkError,
    ProviderNotFoundError,
    RateLimitError,
    ServerError,
    StreamParseError,
    TimeoutError,
    ValidationError,
)
from chatgateway.gateway import CompletionStream, Gateway
from chatgateway.models import (
    ContentDelta,
    Finish,
    ResponseStart,
    StreamEvent,
    ToolCallDelta,
)

router = APIRouter(prefix="/v1", tags=["completions"])

_log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# HTTP status codes for each gateway error type (most specific first)
# ---------------------------------------------------------------------------
_ERROR_STATUS: dict[type[GatewayError], int] = {
    AuthenticationError: 401,
    RateLimitError: 429,
    ModelNotSupportedError: 404,
    ProviderNotFoundError: 400,
    ValidationError: 400,
    ServerError: 502,
    StreamParseError: 502,
    TimeoutError: 504,
    NetworkError: 503,
}


def status_for(exc: GatewayError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 500


# ---------------------------------------------------------------------------
# Request models (OpenAI wire format)
# ---------------------------------------------------------------------------


class _Message(BaseModel):
    role: str
    content: str | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None


class ChatCompletionRequest(BaseModel):
    """OpenAI-compatible chat completion request body.

    ``provider`` is a gateway extension that pins the call to one provider.
    Unrecognised fields are forwarded to the adapter as vendor extras.
    """

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[_Message]
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = None
    top_k: int | None = None
    seed: int | None = None
    stop: str | list[str] | None = None
    response_format: dict[str, Any] | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    user: str | None = None
    stream: bool = False
    provider: str | None = None

    def gateway_params(self) -> dict[str, Any]:
        """Sampling parameters and extras, without the routing fields."""
        skip = {"model", "messages", "tools", "stream", "provider"}
        params = {k: v for k, v in self.model_dump(exclude_none=True).items() if k not in skip}
        # OpenAI clients send this; the gateway always asks for usage itself.
        params.pop("stream_options", None)
        return params


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def get_gateway(request: Request) -> Gateway:
    """Return the shared :class:`Gateway` from ``app.state``."""
    gateway: Gateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialised")
    return gateway


def _http_error(exc: GatewayError, headers: dict[str, str]) -> HTTPException:
    error_headers = dict(headers)
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        error_headers["Retry-After"] = str(int(exc.retry_after))
    return HTTPException(
        status_code=status_for(exc),
        detail={"message": str(exc), "type": type(exc).__name__, "provider": exc.provider},
        headers=error_headers,
    )


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@router.post("/chat/completions", response_model=None)
async def chat_completions(
    body: ChatCompletionRequest,
    gateway: Gateway = Depends(get_gateway),
) -> StreamingResponse | JSONResponse:
    """Generate a chat completion.

    Wire-compatible with the OpenAI ``/v1/chat/completions`` API so any
    OpenAI SDK can point at this gateway, whichever vendor serves the model.

    Returns:
        A ``text/event-stream`` :class:`StreamingResponse` when
        ``body.stream`` is ``True``, otherwise a :class:`JSONResponse`
        containing the full completion.
    """
    request_id = str(uuid.uuid4())
    base_headers = {"X-Request-ID": request_id}
    log = _log.bind(request_id=request_id, model=body.model, stream=body.stream)

    messages = [m.model_dump(exclude_none=True) for m in body.messages]
    params = body.gateway_params()

    if body.stream:
        try:
            stream = gateway.stream_completion(
                messages,
                body.model,
                body.tools,
                provider=body.provider,
                trace_context={"request_id": request_id},
                **params,
            )
        except GatewayError as exc:
            log.warning("completion_request_rejected", error_type=type(exc).__name__)
            raise _http_error(exc, base_headers) from exc

        return StreamingResponse(
            _stream_sse(stream, request_id, body.model, log),
            media_type="text/event-stream",
            headers={
                **base_headers,
                "X-Provider": stream.record.provider,
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    try:
        response = await gateway.chat_completion(
            messages,
            body.model,
            body.tools,
            provider=body.provider,
            trace_context={"request_id": request_id},
            **params,
        )
    except GatewayError as exc:
        log.error(
            "completion_request_error",
            error_type=type(exc).__name__,
            error=exc.message,
            provider=exc.provider,
        )
        raise _http_error(exc, base_headers) from exc

    headers = {**base_headers, "X-Provider": response.provider or ""}
    return JSONResponse(content=response.to_dict(), headers=headers)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


async def _stream_sse(
    stream: CompletionStream,
    request_id: str,
    model: str,
    log: Any,
) -> AsyncGenerator[str, None]:
    """Yield Server-Sent Event lines for each stream event.

    Errors during streaming are surfaced as a final SSE ``error`` event so the
    client can detect them even though the HTTP 200 header has already been
    sent.
    """
    created = int(time.time())
    try:
        async for event in stream:
            payload = format_event(event, request_id, created, model)
            if payload is not None:
                yield f"data: {json.dumps(payload)}\n\n"

        if stream.response is not None:
            usage_chunk = _chunk(request_id, created, stream.response.model, [])
            usage_chunk["usage"] = stream.response.usage.to_dict()
            yield f"data: {json.dumps(usage_chunk)}\n\n"
        yield "data: [DONE]\n\n"

    except GatewayError as exc:
        log.error("completion_stream_error", error_type=type(exc).__name__, error=exc.message)
        error_payload = {"error": {"message": str(exc), "type": type(exc).__name__}}
        yield f"data: {json.dumps(error_payload)}\n\n"
        yield "data: [DONE]\n\n"


def _chunk(
    request_id: str, created: int, model: str, choices: list[dict[str, Any]]
) -> dict[str, Any]:
    return {
        "id": f"chatcmpl-{request_id}",
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": choices,
    }


def format_event(
    event: StreamEvent,
    request_id: str,
    created: int,
    model: str,
) -> dict[str, Any] | None:
    """Render one stream event as an OpenAI ``chat.completion.chunk`` dict.

    Events with no client-visible payload (usage updates, ``Done``) return
    ``None``; usage is sent once, after the stream, instead.
    """
    delta: dict[str, Any]
    finish_reason = None
    if isinstance(event, ResponseStart):
        delta = {"role": "assistant"}
        model = event.model or model
    elif isinstance(event, ContentDelta):
        delta = {"content": event.text}
    elif isinstance(event, ToolCallDelta):
        call: dict[str, Any] = {"index": event.index}
        if event.id:
            call["id"] = event.id
            call["type"] = "function"
        function: dict[str, str] = {}
        if event.name:
            function["name"] = event.name
        if event.arguments:
            function["arguments"] = event.arguments
        if function:
            call["function"] = function
        delta = {"tool_calls": [call]}
    elif isinstance(event, Finish):
        delta = {}
        finish_reason = event.reason.value
    else:
        return None

    return _chunk(
        request_id,
        created,
        model,
        [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    )
