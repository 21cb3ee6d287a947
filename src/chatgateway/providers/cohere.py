"""Cohere v2 Chat adapter."""

from collections.abc import Iterable
from typing import Any

from chatgateway.models import (
    CompletionRequest,
    CompletionResponse,
    ContentDelta,
    Done,
    Finish,
    FinishReason,
    ResponseStart,
    Role,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    Usage,
    UsageUpdate,
    function_tools,
    make_choice,
    new_response_id,
    normalize_arguments,
    split_system,
)
from chatgateway.providers.base import ProviderAdapter
from chatgateway.streaming.framing import SSEMessage, parse_json_frame


def _text_of(content: Any) -> str:
    """Cohere sends content as a string or as a list of ``{"type": "text"}`` blocks."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return content.get("text", "")
    return "".join(
        block.get("text", "") for block in content if block.get("type", "text") == "text"
    )


def _usage_of(container: dict[str, Any]) -> dict[str, Any] | None:
    usage = container.get("usage")
    if not usage:
        return None
    return usage.get("billed_units") or usage.get("tokens") or {}


class CohereAdapter(ProviderAdapter):
    name = "cohere"
    DEFAULT_BASE_URL = "https://api.cohere.com/v2"
    SUPPORTED_MODELS = frozenset(
        {
            "command-a-03-2025",
            "command-r-plus-08-2024",
            "command-r-plus",
            "command-r-08-2024",
            "command-r",
            "command-r7b-12-2024",
        }
    )
    FINISH_REASONS = {
        "complete": FinishReason.STOP,
        "stop_sequence": FinishReason.STOP,
        "max_tokens": FinishReason.LENGTH,
        "tool_call": FinishReason.TOOL_CALLS,
        "error": FinishReason.ERROR,
        "error_toxic": FinishReason.CONTENT_FILTER,
    }

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Accept"] = "application/json"
        return headers

    def _build_payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        system, rest = split_system(request.messages)
        messages: list[dict[str, Any]] = []
        for message in rest:
            if message.role is Role.TOOL:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id or "",
                        "content": message.content or "",
                    }
                )
            elif message.role is Role.ASSISTANT and message.tool_calls:
                entry: dict[str, Any] = {
                    "role": "assistant",
                    "tool_calls": [call.to_openai() for call in message.tool_calls],
                }
                if message.content:
                    entry["tool_plan"] = message.content
                messages.append(entry)
            else:
                messages.append({"role": message.role.value, "content": message.content or ""})

        payload: dict[str, Any] = {"model": request.model, "messages": messages, "stream": stream}
        if system:
            payload["system"] = system

        tools = function_tools(request.tools)
        if tools:
            payload["tools"] = [tool.to_openai() for tool in tools]

        optional = {
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "p": request.top_p,
            "k": request.top_k,
            "seed": request.seed,
            "stop_sequences": request.stop_sequences,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
            "response_format": dict(request.response_format) if request.response_format else None,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload

    def _parse_response(
        self, data: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        message = data.get("message") or {}
        calls = []
        for raw in message.get("tool_calls") or []:
            fn = raw.get("function") or {}
            calls.append(
                ToolCall(
                    id=raw.get("id", ""),
                    function_name=fn.get("name", ""),
                    arguments_json=normalize_arguments(fn.get("arguments"), fn.get("name", "")),
                )
            )

        reason, raw_reason = self._finish(data.get("finish_reason"))
        usage = _usage_of(data) or {}
        content = _text_of(message.get("content"))
        return CompletionResponse(
            id=data.get("id") or new_response_id(),
            model=data.get("model") or request.model,
            choices=(
                make_choice(
                    content=content or (None if calls else ""),
                    tool_calls=calls,
                    finish_reason=reason,
                    raw_finish_reason=raw_reason,
                ),
            ),
            usage=Usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
            provider=self.name,
        )

    def _decode_frame(self, frame: SSEMessage, state: dict[str, Any]) -> Iterable[StreamEvent]:
        data = parse_json_frame(frame.data)
        kind = data.get("type") or frame.event
        message = (data.get("delta") or {}).get("message") or {}

        if kind == "message-start":
            return [ResponseStart(id=data.get("id"), model=data.get("model"))]

        if kind == "content-delta":
            text = _text_of(message.get("content"))
            return [ContentDelta(text)] if text else []

        if kind in ("tool-call-start", "tool-call-delta"):
            call = message.get("tool_calls") or {}
            fn = call.get("function") or {}
            return [
                ToolCallDelta(
                    index=data.get("index", 0),
                    id=call.get("id"),
                    name=fn.get("name"),
                    arguments=fn.get("arguments"),
                )
            ]

        if kind == "message-end":
            delta = data.get("delta") or {}
            events: list[StreamEvent] = []
            usage = _usage_of(delta) or _usage_of(data)
            if usage:
                events.append(
                    UsageUpdate(
                        prompt_tokens=usage.get("input_tokens"),
                        completion_tokens=usage.get("output_tokens"),
                    )
                )
            raw = delta.get("finish_reason") or data.get("finish_reason")
            reason, raw_reason = self._finish(raw)
            events.append(Finish(reason or FinishReason.STOP, raw_reason))
            events.append(Done())
            return events

        # content-start/end, tool-plan-delta, tool-call-end, citations
        return []
