"""OpenAI Chat Completions adapter and the base for wire-compatible vendors.

Groq, Together and OpenRouter all speak this protocol (SSE ``data:`` lines
terminated by ``[DONE]``) and only differ in endpoint, headers, model set and
a few extra request parameters.
"""

import time
from collections.abc import Iterable
from typing import Any, ClassVar

import structlog

from chatgateway.errors import ServerError
from chatgateway.models import (
    CompletionRequest,
    CompletionResponse,
    ContentDelta,
    Done,
    Finish,
    FinishReason,
    ResponseStart,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolDefinition,
    Usage,
    UsageUpdate,
    function_tools,
    make_choice,
    new_response_id,
    normalize_arguments,
)
from chatgateway.providers.base import ProviderAdapter
from chatgateway.streaming.framing import DONE_SENTINEL, SSEMessage, parse_json_frame

_log = structlog.get_logger(__name__)

_OPENAI_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}

# Id given to calls made through the deprecated single ``function_call`` field.
_LEGACY_CALL_ID = "function_call"


class OpenAICompatibleAdapter(ProviderAdapter):
    """Shared request/response handling for OpenAI-compatible endpoints."""

    FINISH_REASONS = _OPENAI_FINISH_REASONS

    # request.extra keys forwarded verbatim
    EXTRA_PARAMS: ClassVar[frozenset[str]] = frozenset()
    include_stream_usage: ClassVar[bool] = False

    def _build_payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [m.to_dict() for m in request.messages],
            "stream": stream,
        }
        optional = {
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
            "seed": request.seed,
            "stop": request.stop_sequences,
            "response_format": dict(request.response_format) if request.response_format else None,
            "presence_penalty": request.presence_penalty,
            "frequency_penalty": request.frequency_penalty,
            "user": request.user,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})

        tools = self._tools_for(request)
        if tools:
            payload["tools"] = [t.to_openai() for t in tools]
            if request.tool_choice is not None:
                payload["tool_choice"] = request.tool_choice

        if stream and self.include_stream_usage:
            payload["stream_options"] = {"include_usage": True}

        for key, value in request.extra.items():
            if key in self.EXTRA_PARAMS:
                payload[key] = value
            else:
                _log.debug("extra_param_ignored", provider=self.name, param=key)
        return payload

    def _tools_for(self, request: CompletionRequest) -> list[ToolDefinition]:
        return function_tools(request.tools)

    # ------------------------------------------------------------------
    # Complete responses
    # ------------------------------------------------------------------

    def _parse_response(
        self, data: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        if data.get("error"):
            error = data["error"]
            detail = error.get("message") if isinstance(error, dict) else str(error)
            raise ServerError(f"vendor returned an error: {detail}", provider=self.name)

        choices = []
        for position, raw in enumerate(data.get("choices") or []):
            message = raw.get("message") or {}
            reason, raw_reason = self._finish(raw.get("finish_reason"))
            choices.append(
                make_choice(
                    content=message.get("content"),
                    tool_calls=self._parse_tool_calls(message),
                    finish_reason=reason,
                    raw_finish_reason=raw_reason,
                    index=raw.get("index", position),
                )
            )
        if not choices:
            raise ServerError("response contained no choices", provider=self.name)

        usage = data.get("usage") or {}
        return CompletionResponse(
            id=data.get("id") or new_response_id(),
            model=data.get("model") or request.model,
            choices=tuple(choices),
            usage=Usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)),
            created=int(data.get("created") or time.time()),
            provider=self.name,
        )

    @staticmethod
    def _parse_tool_calls(message: dict[str, Any]) -> list[ToolCall]:
        calls = []
        for raw in message.get("tool_calls") or []:
            fn = raw.get("function") or {}
            name = fn.get("name", "")
            calls.append(
                ToolCall(
                    id=raw.get("id", ""),
                    function_name=name,
                    arguments_json=normalize_arguments(fn.get("arguments"), name),
                )
            )
        legacy = message.get("function_call")
        if not calls and legacy:
            name = legacy.get("name", "")
            calls.append(
                ToolCall(
                    id=_LEGACY_CALL_ID,
                    function_name=name,
                    arguments_json=normalize_arguments(legacy.get("arguments"), name),
                )
            )
        return calls

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _decode_frame(self, frame: SSEMessage, state: dict[str, Any]) -> Iterable[StreamEvent]:
        if frame.data.strip() == DONE_SENTINEL:
            return [Done()]

        chunk = parse_json_frame(frame.data)
        if chunk.get("error"):
            error = chunk["error"]
            detail = error.get("message") if isinstance(error, dict) else str(error)
            raise ServerError(f"stream error: {detail}", provider=self.name)

        events: list[StreamEvent] = []
        if not state.get("started"):
            state["started"] = True
            events.append(ResponseStart(id=chunk.get("id"), model=chunk.get("model")))

        for choice in chunk.get("choices") or []:
            # Only the first choice is reassembled.
            if choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}
            if delta.get("content"):
                events.append(ContentDelta(delta["content"]))
            for call in delta.get("tool_calls") or []:
                fn = call.get("function") or {}
                events.append(
                    ToolCallDelta(
                        index=call.get("index", 0),
                        id=call.get("id"),
                        name=fn.get("name"),
                        arguments=fn.get("arguments"),
                    )
                )
            legacy = delta.get("function_call")
            if legacy:
                events.append(
                    ToolCallDelta(
                        index=0,
                        id=None if state.get("legacy_call") else _LEGACY_CALL_ID,
                        name=legacy.get("name"),
                        arguments=legacy.get("arguments"),
                    )
                )
                state["legacy_call"] = True
            if choice.get("finish_reason"):
                reason, raw_reason = self._finish(choice["finish_reason"])
                events.append(Finish(reason, raw_reason))

        usage = chunk.get("usage")
        if usage:
            events.append(
                UsageUpdate(
                    prompt_tokens=usage.get("prompt_tokens"),
                    completion_tokens=usage.get("completion_tokens"),
                )
            )
        return events


class OpenAIAdapter(OpenAICompatibleAdapter):
    name = "openai"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    SUPPORTED_MODELS = frozenset(
        {
            "gpt-4o",
            "gpt-4o-mini",
            "gpt-4o-2024-08-06",
            "gpt-4o-2024-11-20",
            "gpt-4-turbo",
            "gpt-4",
            "gpt-4.1",
            "gpt-4.1-mini",
            "gpt-4.1-nano",
            "gpt-3.5-turbo",
            "chatgpt-4o-latest",
            "o1",
            "o1-mini",
            "o1-preview",
            "o3",
            "o3-mini",
            "o4-mini",
        }
    )
    EXTRA_PARAMS = frozenset(
        {"logit_bias", "logprobs", "top_logprobs", "n", "parallel_tool_calls", "service_tier"}
    )
    include_stream_usage = True
