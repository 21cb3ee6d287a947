"""Vendor-agnostic reassembly of a stream of events into one response."""

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from chatgateway.models import (
    CompletionResponse,
    ContentDelta,
    Done,
    Finish,
    FinishReason,
    ResponseStart,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    Usage,
    UsageUpdate,
    make_choice,
    new_response_id,
    normalize_arguments,
)

_log = structlog.get_logger(__name__)


@dataclass
class ToolCallSlot:
    """Append-only fragments for one tool call, keyed by its stream index."""

    index: int
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)

    def to_tool_call(self) -> ToolCall:
        return ToolCall(
            id=self.id,
            function_name=self.name,
            arguments_json=normalize_arguments("".join(self.arguments), self.name),
        )


class StreamAccumulator:
    """Fold :data:`~chatgateway.models.StreamEvent` values into a response.

    Content is appended to a buffer; tool-call fragments go into an explicit
    slot map keyed by the delta index, so fragments of parallel calls can
    interleave freely.  The first :class:`Finish` or :class:`Done` makes the
    accumulator terminal.  After that only :class:`UsageUpdate` is accepted,
    since several vendors send usage after the finish reason.

    Args:
        model: Requested model, used until the stream reports its own.
        provider: Provider key stamped onto the final response.
        on_content: Optional sink notified with each text fragment.
    """

    def __init__(
        self,
        model: str = "",
        provider: str | None = None,
        on_content: Callable[[str], None] | None = None,
    ) -> None:
        self.response_id: str | None = None
        self.model = model
        self.provider = provider
        self.content_buffer: list[str] = []
        self.tool_call_slots: dict[int, ToolCallSlot] = {}
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.finish_reason: FinishReason | None = None
        self.raw_finish_reason: str | None = None
        self.terminal = False
        self._on_content = on_content

    @property
    def content(self) -> str:
        return "".join(self.content_buffer)

    def add(self, event: StreamEvent) -> None:
        if isinstance(event, UsageUpdate):
            if event.prompt_tokens is not None:
                self.prompt_tokens = event.prompt_tokens
            if event.completion_tokens is not None:
                self.completion_tokens = event.completion_tokens
            return

        if isinstance(event, ResponseStart):
            if event.id:
                self.response_id = event.id
            if event.model:
                self.model = event.model
            return

        if isinstance(event, Done):
            if not self.terminal:
                self.finish_reason = FinishReason.STOP
                self.terminal = True
            return

        if self.terminal:
            _log.warning("stream_event_after_terminal", event_type=type(event).__name__)
            return

        if isinstance(event, ContentDelta):
            if event.text:
                self.content_buffer.append(event.text)
                if self._on_content is not None:
                    self._on_content(event.text)
        elif isinstance(event, ToolCallDelta):
            slot = self.tool_call_slots.get(event.index)
            if slot is None:
                slot = self.tool_call_slots[event.index] = ToolCallSlot(index=event.index)
            if event.id:
                slot.id += event.id
            if event.name:
                slot.name += event.name
            if event.arguments:
                slot.arguments.append(event.arguments)
        elif isinstance(event, Finish):
            self.finish_reason = event.reason
            self.raw_finish_reason = event.raw_reason
            self.terminal = True
        else:
            raise TypeError(f"unknown stream event: {event!r}")

    def tool_calls(self) -> list[ToolCall]:
        return [self.tool_call_slots[i].to_tool_call() for i in sorted(self.tool_call_slots)]

    def build_response(self) -> CompletionResponse:
        """Freeze the accumulated state into a :class:`CompletionResponse`."""
        if not self.terminal:
            _log.warning("stream_incomplete", provider=self.provider, model=self.model)
        content = self.content
        choice = make_choice(
            content=content if content or not self.tool_call_slots else None,
            tool_calls=self.tool_calls() or None,
            finish_reason=self.finish_reason,
            raw_finish_reason=self.raw_finish_reason,
        )
        return CompletionResponse(
            id=self.response_id or new_response_id(),
            model=self.model,
            choices=(choice,),
            usage=Usage(self.prompt_tokens, self.completion_tokens),
            provider=self.provider,
        )
