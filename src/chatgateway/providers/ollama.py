"""Ollama adapter for locally served models (``/api/chat``, NDJSON streaming)."""

import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any

import httpx
import structlog

from chatgateway import config
from chatgateway.errors import (
    ConnectionError,
    GatewayError,
    ModelNotSupportedError,
    NetworkError,
    ServerError,
)
from chatgateway.models import (
    CompletionRequest,
    CompletionResponse,
    ContentDelta,
    Done,
    Finish,
    FinishReason,
    ResponseStart,
    StreamEvent,
    Usage,
    UsageUpdate,
    make_choice,
    new_response_id,
)
from chatgateway.providers.base import ProviderAdapter
from chatgateway.retry import extract_error_message
from chatgateway.streaming.framing import iter_ndjson, parse_json_frame

_log = structlog.get_logger(__name__)


def _requested_model(response: httpx.Response) -> str | None:
    """The model named in the request body that produced *response*."""
    try:
        body = json.loads(response.request.content)
    except (RuntimeError, ValueError):
        return None
    model = body.get("model") if isinstance(body, dict) else None
    return model if isinstance(model, str) else None


class OllamaAdapter(ProviderAdapter):
    """Adapter for a local Ollama server.

    No credential is needed and any pulled model is accepted, so the
    supported-model set is empty unless one is passed explicitly.  Tools are
    not forwarded.
    """

    name = "ollama"
    DEFAULT_BASE_URL = "http://localhost:11434"
    requires_api_key = False
    FINISH_REASONS = {
        "stop": FinishReason.STOP,
        "length": FinishReason.LENGTH,
        "load": FinishReason.STOP,
        "unload": FinishReason.STOP,
    }

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        host: str | None = None,
        keep_alive: str | int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, base_url or host, **kwargs)
        self.keep_alive = keep_alive

    def _default_base_url(self) -> str:
        return config.settings.ollama_host

    def _default_timeout(self) -> float:
        return config.settings.ollama_timeout

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _frames(self, lines: AsyncIterable[str]) -> AsyncIterator[str]:
        return iter_ndjson(lines)

    def _http_error(self, response: httpx.Response) -> GatewayError:
        if response.status_code == 404:
            model = _requested_model(response)
            hint = f"ollama pull {model}" if model else "ollama pull <model>"
            return ModelNotSupportedError(
                f"{extract_error_message(response)}; pull it with: {hint}",
                model=model,
                provider=self.name,
            )
        return super()._http_error(response)

    def _transport_error(self, exc: httpx.TransportError) -> NetworkError:
        if isinstance(exc, httpx.ConnectError):
            return ConnectionError(
                f"Ollama not running at {self.base_url}. Start with: ollama serve",
                provider=self.name,
                original_error=exc,
            )
        return super()._transport_error(exc)

    def _build_payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        if request.tools:
            _log.warning("tools_not_supported", provider=self.name, model=request.model)

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": m.role.value, "content": m.content or ""} for m in request.messages
            ],
            "stream": stream,
        }

        options = {
            "temperature": request.temperature,
            "top_p": request.top_p,
            "top_k": request.top_k,
            "num_predict": request.max_tokens,
            "stop": request.stop_sequences,
            "seed": request.seed,
        }
        options = {k: v for k, v in options.items() if v is not None}
        if options:
            payload["options"] = options

        if request.response_format and request.response_format.get("type") == "json_object":
            payload["format"] = "json"

        keep_alive = request.extra.get("keep_alive", self.keep_alive)
        if keep_alive is not None:
            payload["keep_alive"] = keep_alive
        return payload

    def _parse_response(
        self, data: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        message = data.get("message") or {}
        reason, raw_reason = self._finish(data.get("done_reason"))
        return CompletionResponse(
            id=new_response_id(),
            model=data.get("model") or request.model,
            choices=(
                make_choice(
                    content=message.get("content") or "",
                    tool_calls=None,
                    finish_reason=reason,
                    raw_finish_reason=raw_reason,
                ),
            ),
            usage=Usage(data.get("prompt_eval_count", 0), data.get("eval_count", 0)),
            provider=self.name,
        )

    def _decode_frame(self, frame: str, state: dict[str, Any]) -> Iterable[StreamEvent]:
        data = parse_json_frame(frame)
        if data.get("error"):
            raise ServerError(f"stream error: {data['error']}", provider=self.name)

        events: list[StreamEvent] = []
        if not state.get("started"):
            state["started"] = True
            events.append(ResponseStart(model=data.get("model")))

        content = (data.get("message") or {}).get("content")
        if content:
            events.append(ContentDelta(content))

        if data.get("done"):
            events.append(
                UsageUpdate(
                    prompt_tokens=data.get("prompt_eval_count"),
                    completion_tokens=data.get("eval_count"),
                )
            )
            reason, raw_reason = self._finish(data.get("done_reason"))
            events.append(Finish(reason or FinishReason.STOP, raw_reason))
            events.append(Done())
        return events
