"""Canonical request, response and stream-event types.

These types form the vendor-neutral contract between callers, the gateway
facade and every provider adapter.  All of them are immutable
(``frozen=True``) and validated at construction time so callers get a fast,
explicit :class:`~chatgateway.errors.ValidationError` rather than a cryptic
vendor-side failure.
"""

import json
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

import structlog

from chatgateway.errors import ValidationError

_log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(str, Enum):
    """Closed set of reasons a completion can stop for."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


def map_finish_reason(
    raw: str | None,
    table: Mapping[str, FinishReason],
    default: FinishReason | None = FinishReason.STOP,
) -> tuple[FinishReason | None, str | None]:
    """Translate a vendor finish reason through *table*.

    Lookups are case-insensitive.  ``None`` maps to *default*.  A value missing
    from the table becomes :attr:`FinishReason.ERROR` and the original string
    is returned alongside so it can be preserved on the response.

    Returns:
        ``(reason, raw_if_unmapped)``.
    """
    if raw is None:
        return default, None
    mapped = table.get(str(raw).lower())
    if mapped is None:
        _log.warning("unmapped_finish_reason", finish_reason=raw)
        return FinishReason.ERROR, str(raw)
    return mapped, None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    """A function the model may call.  Used only for request encoding."""

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("tool name must be a non-empty string")

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


FunctionTool = ToolDefinition


@dataclass(frozen=True)
class HostedTool:
    """A vendor-hosted tool marker such as ``web_search`` or ``code_interpreter``.

    The gateway never executes tools; hosted tools are only forwarded to
    vendors that understand them and skipped (with a warning) elsewhere.
    """

    type: str
    config: Mapping[str, Any] = field(default_factory=dict)


Tool = Union[FunctionTool, HostedTool]


def coerce_tool(value: Any) -> Tool:
    """Resolve a heterogeneous tool value into the closed :data:`Tool` union.

    Accepts a :class:`ToolDefinition`, a :class:`HostedTool`, an OpenAI-style
    ``{"type": "function", "function": {...}}`` dict, a flat
    ``{"name", "description", "parameters"}`` dict, or ``{"type": "<hosted>"}``.
    Anything else raises :class:`~chatgateway.errors.ValidationError`.
    """
    if isinstance(value, (ToolDefinition, HostedTool)):
        return value
    if isinstance(value, Mapping):
        if value.get("type") == "function" and isinstance(value.get("function"), Mapping):
            fn = value["function"]
            return ToolDefinition(
                name=fn.get("name", ""),
                description=fn.get("description") or "",
                parameters=fn.get("parameters") or {"type": "object", "properties": {}},
            )
        if "name" in value:
            return ToolDefinition(
                name=value["name"],
                description=value.get("description") or "",
                parameters=value.get("parameters") or {"type": "object", "properties": {}},
            )
        if isinstance(value.get("type"), str):
            config = {k: v for k, v in value.items() if k != "type"}
            return HostedTool(type=value["type"], config=config)
    raise ValidationError(f"unsupported tool value: {value!r}")


def function_tools(tools: Iterable[Tool] | None) -> list[ToolDefinition]:
    """Return only the function tools, warning once per skipped hosted tool."""
    result: list[ToolDefinition] = []
    for tool in tools or ():
        if isinstance(tool, ToolDefinition):
            result.append(tool)
        else:
            _log.warning("hosted_tool_skipped", tool_type=tool.type)
    return result


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    """A model-issued request to invoke a function."""

    id: str
    function_name: str
    arguments_json: str = "{}"

    @property
    def arguments(self) -> dict[str, Any]:
        """The decoded arguments; ``{}`` when they are not a JSON object."""
        try:
            decoded = json.loads(self.arguments_json)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function_name, "arguments": self.arguments_json},
        }


def normalize_arguments(raw: str | None, tool_name: str = "") -> str:
    """Return *raw* if it is complete JSON, otherwise the safe default ``"{}"``."""
    if raw is None or not raw.strip():
        return "{}"
    try:
        json.loads(raw)
    except json.JSONDecodeError:
        _log.warning("tool_arguments_malformed", tool=tool_name, arguments=raw[:200])
        return "{}"
    return raw


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    Args:
        role: Speaker; plain strings are coerced to :class:`Role`.
        content: Text content, or ``None`` (e.g. an assistant turn that only
            carries tool calls).
        tool_call_id: Id of the call this message answers (``role="tool"``).
        tool_calls: Calls requested by the model (``role="assistant"``).
        name: Optional participant name, forwarded where vendors accept it.
    """

    role: Role
    content: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "role", Role(self.role))
        except ValueError:
            raise ValidationError(
                f"invalid role '{self.role}'; must be one of {[r.value for r in Role]}"
            ) from None
        if self.tool_calls is not None:
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """Build a message from an OpenAI-style dict."""
        if "role" not in data:
            raise ValidationError("message must contain a 'role' key")
        raw_calls = data.get("tool_calls")
        tool_calls = None
        if raw_calls:
            tool_calls = tuple(
                ToolCall(
                    id=call.get("id", ""),
                    function_name=call.get("function", {}).get("name", ""),
                    arguments_json=normalize_arguments(call.get("function", {}).get("arguments")),
                )
                for call in raw_calls
            )
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tool_calls,
            name=data.get("name"),
        )

    def to_dict(self) -> dict[str, Any]:
        """OpenAI-style rendering; ``tool_calls`` only when present."""
        out: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            out["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            out["name"] = self.name
        return out


def coerce_message(value: Message | Mapping[str, Any]) -> Message:
    if isinstance(value, Message):
        return value
    if isinstance(value, Mapping):
        return Message.from_dict(value)
    raise ValidationError(f"unsupported message value: {value!r}")


def split_system(messages: Iterable[Message]) -> tuple[str | None, list[Message]]:
    """Separate system messages for vendors that take them as a top-level field.

    Multiple system messages are merged with a blank line between them.
    """
    system_parts: list[str] = []
    rest: list[Message] = []
    for msg in messages:
        if msg.role is Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
        else:
            rest.append(msg)
    return ("\n\n".join(system_parts) if system_parts else None), rest


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompletionRequest:
    """Parameters for a single completion call.

    Sampling parameters are optional; each adapter honors the subset its vendor
    supports and silently ignores the rest.  Vendor-specific knobs that have no
    canonical name (``repetition_penalty``, ``safety_model``, ``transforms`` ...)
    go in *extra*.

    Raises:
        ValidationError: If any field fails validation.
    """

    messages: tuple[Message, ...]
    model: str
    tools: tuple[Tool, ...] | None = None
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    seed: int | None = None
    stop: str | tuple[str, ...] | None = None
    response_format: Mapping[str, Any] | None = None
    tool_choice: str | Mapping[str, Any] | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    user: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.model, str) or not self.model.strip():
            raise ValidationError("model must be a non-empty string")

        messages = tuple(coerce_message(m) for m in self.messages)
        if not messages:
            raise ValidationError("messages must not be empty")
        object.__setattr__(self, "messages", messages)

        if self.tools is not None:
            object.__setattr__(self, "tools", tuple(coerce_tool(t) for t in self.tools))

        if isinstance(self.stop, list):
            object.__setattr__(self, "stop", tuple(self.stop))

        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ValidationError(f"temperature must be in [0.0, 2.0], got {self.temperature}")

        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValidationError(
                f"max_tokens must be a positive integer, got {self.max_tokens}"
            )

    @property
    def stop_sequences(self) -> list[str] | None:
        if self.stop is None:
            return None
        return [self.stop] if isinstance(self.stop, str) else list(self.stop)


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Usage:
    """Token counts.  ``total_tokens`` is always ``prompt + completion``."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "prompt_tokens", int(self.prompt_tokens or 0))
        object.__setattr__(self, "completion_tokens", int(self.completion_tokens or 0))
        object.__setattr__(self, "total_tokens", self.prompt_tokens + self.completion_tokens)

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class TraceContext:
    """Caller-supplied trace data, passed explicitly with each gateway call."""

    trace_id: str | None = None
    parent_span_id: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Choice:
    index: int
    message: Message
    finish_reason: FinishReason = FinishReason.STOP
    raw_finish_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.message.role.value, "content": self.message.content}
        if self.message.tool_calls:
            message["tool_calls"] = [tc.to_openai() for tc in self.message.tool_calls]
        return {
            "index": self.index,
            "message": message,
            "finish_reason": self.finish_reason.value,
        }


def make_choice(
    content: str | None,
    tool_calls: Iterable[ToolCall] | None,
    finish_reason: FinishReason | None,
    raw_finish_reason: str | None = None,
    index: int = 0,
) -> Choice:
    """Build an assistant choice that honors the tool-call invariant.

    Tool calls only survive alongside ``tool_calls``; a plain ``stop`` that
    carries calls is promoted (several vendors report ``stop`` there), any other
    reason drops them with a warning.
    """
    calls = tuple(tool_calls or ())
    reason = finish_reason or FinishReason.STOP
    if calls and reason is FinishReason.STOP:
        reason = FinishReason.TOOL_CALLS
    elif calls and reason is not FinishReason.TOOL_CALLS:
        _log.warning(
            "tool_calls_dropped",
            finish_reason=reason.value,
            tool_call_count=len(calls),
        )
        calls = ()
    message = Message(role=Role.ASSISTANT, content=content, tool_calls=calls or None)
    return Choice(
        index=index,
        message=message,
        finish_reason=reason,
        raw_finish_reason=raw_finish_reason,
    )


def new_response_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class CompletionResponse:
    """A complete chat completion in canonical form.

    Attributes:
        id: Vendor response id, or a generated ``chatcmpl-*`` id.
        model: Model name as reported by the vendor (may differ from the
            requested alias).
        choices: Completion choices; adapters always produce at least one.
        usage: Token counts; all zero when the vendor omitted usage.
        created: Unix timestamp.
        provider: Key of the adapter that produced the response.
        trace_context: The trace context the caller passed in, forwarded back.
    """

    id: str
    model: str
    choices: tuple[Choice, ...]
    usage: Usage = field(default_factory=Usage)
    created: int = field(default_factory=lambda: int(time.time()))
    provider: str | None = None
    trace_context: TraceContext | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", tuple(self.choices))

    @property
    def message(self) -> Message:
        return self.choices[0].message

    @property
    def content(self) -> str | None:
        return self.choices[0].message.content if self.choices else None

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        if self.choices and self.choices[0].message.tool_calls:
            return self.choices[0].message.tool_calls
        return ()

    @property
    def finish_reason(self) -> FinishReason | None:
        return self.choices[0].finish_reason if self.choices else None

    def to_dict(self) -> dict[str, Any]:
        """Render the canonical OpenAI-style ``chat.completion`` JSON object."""
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [c.to_dict() for c in self.choices],
            "usage": self.usage.to_dict(),
        }


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """A fragment of one tool call.  Any of the fragments may be ``None``."""

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True)
class ResponseStart:
    id: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class UsageUpdate:
    """Partial usage; ``None`` fields leave the running value untouched."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass(frozen=True)
class Finish:
    reason: FinishReason = FinishReason.STOP
    raw_reason: str | None = None


@dataclass(frozen=True)
class Done:
    pass


StreamEvent = Union[ContentDelta, ToolCallDelta, ResponseStart, UsageUpdate, Finish, Done]
