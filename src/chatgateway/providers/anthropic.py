"""Anthropic Messages API adapter.

The Messages API differs from the OpenAI shape in three ways that matter here:
system prompts live in a top-level ``system`` field, tool calls and tool
results are content blocks inside ordinary turns, and streams are typed SSE
events (``message_start``, ``content_block_delta`` ...) rather than deltas
with a ``[DONE]`` sentinel.
"""

import json
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from chatgateway.errors import ServerError
from chatgateway.models import (
    CompletionRequest,
    CompletionResponse,
    ContentDelta,
    Done,
    Finish,
    FinishReason,
    HostedTool,
    Message,
    ResponseStart,
    Role,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolDefinition,
    Usage,
    UsageUpdate,
    make_choice,
    new_response_id,
    split_system,
)
from chatgateway.providers.base import ProviderAdapter
from chatgateway.streaming.framing import SSEMessage, parse_json_frame

_log = structlog.get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_TOOL_CHOICE = {
    "auto": {"type": "auto"},
    "required": {"type": "any"},
    "any": {"type": "any"},
    "none": {"type": "none"},
}


def _to_blocks(message: Message) -> list[dict[str, Any]]:
    if message.role is Role.TOOL:
        return [
            {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.content or "",
            }
        ]

    blocks: list[dict[str, Any]] = []
    if message.content:
        blocks.append({"type": "text", "text": message.content})
    for call in message.tool_calls or ():
        blocks.append(
            {
                "type": "tool_use",
                "id": call.id,
                "name": call.function_name,
                "input": call.arguments,
            }
        )
    return blocks


def convert_messages(messages: Iterable[Message]) -> tuple[str | None, list[dict[str, Any]]]:
    """Split out the system prompt and convert the rest to Anthropic turns.

    Tool results become ``user`` turns, and consecutive turns with the same
    role are merged because the API requires strict user/assistant alternation.
    """
    system, rest = split_system(messages)
    turns: list[dict[str, Any]] = []
    for message in rest:
        role = "assistant" if message.role is Role.ASSISTANT else "user"
        blocks = _to_blocks(message)
        if not blocks:
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": blocks})
    return system, turns


def convert_tool_choice(choice: str | Mapping[str, Any] | None) -> dict[str, Any] | None:
    if choice is None:
        return None
    if isinstance(choice, str):
        return _TOOL_CHOICE.get(choice)
    if choice.get("type") == "function":
        return {"type": "tool", "name": choice.get("function", {}).get("name", "")}
    return dict(choice)


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"
    DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
    SUPPORTED_MODELS = frozenset(
        {
            "claude-opus-4-20250514",
            "claude-sonnet-4-20250514",
            "claude-3-7-sonnet-20250219",
            "claude-3-7-sonnet-latest",
            "claude-3-5-sonnet-20241022",
            "claude-3-5-sonnet-20240620",
            "claude-3-5-sonnet-latest",
            "claude-3-5-haiku-20241022",
            "claude-3-5-haiku-latest",
            "claude-3-opus-20240229",
            "claude-3-opus-latest",
            "claude-3-sonnet-20240229",
            "claude-3-haiku-20240307",
        }
    )
    FINISH_REASONS = {
        "end_turn": FinishReason.STOP,
        "stop_sequence": FinishReason.STOP,
        "pause_turn": FinishReason.STOP,
        "max_tokens": FinishReason.LENGTH,
        "tool_use": FinishReason.TOOL_CALLS,
        "refusal": FinishReason.CONTENT_FILTER,
    }

    def _endpoint(self) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _build_payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        system, turns = convert_messages(request.messages)
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": turns,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            # Anthropic caps temperature at 1.0.
            payload["temperature"] = min(request.temperature, 1.0)
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.top_k is not None:
            payload["top_k"] = request.top_k
        if request.stop_sequences:
            payload["stop_sequences"] = request.stop_sequences
        if request.user:
            payload["metadata"] = {"user_id": request.user}

        tools = []
        for tool in request.tools or ():
            if isinstance(tool, ToolDefinition):
                tools.append(
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "input_schema": dict(tool.parameters),
                    }
                )
            elif isinstance(tool, HostedTool):
                tools.append({"type": tool.type, **tool.config})
        if tools:
            payload["tools"] = tools
            tool_choice = convert_tool_choice(request.tool_choice)
            if tool_choice:
                payload["tool_choice"] = tool_choice
        return payload

    def _parse_response(
        self, data: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        texts: list[str] = []
        calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                calls.append(
                    ToolCall(
                        id=block.get("id", ""),
                        function_name=block.get("name", ""),
                        arguments_json=json.dumps(block.get("input") or {}),
                    )
                )

        reason, raw_reason = self._finish(data.get("stop_reason"))
        usage = data.get("usage") or {}
        return CompletionResponse(
            id=data.get("id") or new_response_id(),
            model=data.get("model") or request.model,
            choices=(
                make_choice(
                    content="".join(texts) if texts else None,
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
        kind = frame.event or data.get("type")

        if kind == "message_start":
            message = data.get("message") or {}
            usage = message.get("usage") or {}
            return [
                ResponseStart(id=message.get("id"), model=message.get("model")),
                UsageUpdate(
                    prompt_tokens=usage.get("input_tokens"),
                    completion_tokens=usage.get("output_tokens"),
                ),
            ]

        if kind == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                return [
                    ToolCallDelta(
                        index=data.get("index", 0), id=block.get("id"), name=block.get("name")
                    )
                ]
            if block.get("type") == "text" and block.get("text"):
                return [ContentDelta(block["text"])]
            return []

        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [ContentDelta(delta.get("text", ""))]
            if delta.get("type") == "input_json_delta":
                return [
                    ToolCallDelta(index=data.get("index", 0), arguments=delta.get("partial_json"))
                ]
            return []

        if kind == "message_delta":
            events: list[StreamEvent] = []
            usage = data.get("usage") or {}
            if usage.get("output_tokens") is not None:
                events.append(UsageUpdate(completion_tokens=usage["output_tokens"]))
            stop_reason = (data.get("delta") or {}).get("stop_reason")
            if stop_reason:
                reason, raw_reason = self._finish(stop_reason)
                events.append(Finish(reason, raw_reason))
            return events

        if kind == "message_stop":
            return [Done()]

        if kind == "error":
            error = data.get("error") or {}
            raise ServerError(
                f"stream error ({error.get('type', 'unknown')}): {error.get('message', '')}",
                provider=self.name,
            )

        # ping, content_block_stop and future event types carry nothing to reassemble
        return []
