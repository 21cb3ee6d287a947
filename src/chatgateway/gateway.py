"""Gateway facade: the single entry point consumers depend on.

The gateway resolves a provider for each call, builds the canonical request,
delegates to the adapter (which applies its retry policy) and, for streams,
folds events through a fresh :class:`~chatgateway.streaming.StreamAccumulator`.
Every call is wrapped in an OpenTelemetry span, logged with structlog, counted
in Prometheus and reported to the registered :class:`CallHook` objects.

Example::

    async with Gateway() as gateway:
        response = await gateway.chat_completion(
            [{"role": "user", "content": "Hello"}],
            model="gpt-4o",
        )
        print(response.content)

        stream = gateway.stream_completion(
            [{"role": "user", "content": "Tell me a story"}],
            model="claude-3-5-sonnet-20241022",
        )
        async for event in stream:
            ...
        print(stream.response.usage)
"""

import asyncio
import dataclasses
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from opentelemetry import trace
from opentelemetry.trace import Span, StatusCode

from chatgateway import metrics
from chatgateway.models import (
    CompletionRequest,
    CompletionResponse,
    Message,
    StreamEvent,
    Tool,
    TraceContext,
    Usage,
)
from chatgateway.providers.base import ProviderAdapter
from chatgateway.registry import ProviderRegistry
from chatgateway.streaming.accumulator import StreamAccumulator

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

_REQUEST_FIELDS = frozenset(
    f.name for f in dataclasses.fields(CompletionRequest)
) - {"messages", "model", "tools", "stream", "extra"}

EventSink = Callable[[StreamEvent], None]


@dataclass
class CallRecord:
    """What the observability layer sees of one gateway call."""

    provider: str
    model: str
    stream: bool = False
    trace_context: TraceContext | None = None
    usage: Usage | None = None
    error: BaseException | None = None
    cancelled: bool = False
    duration_ms: float | None = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class CallHook(Protocol):
    def on_start(self, record: CallRecord) -> None: ...

    def on_end(self, record: CallRecord) -> None: ...


def _coerce_trace_context(value: TraceContext | Mapping[str, Any] | None) -> TraceContext | None:
    if value is None or isinstance(value, TraceContext):
        return value
    known = {"trace_id", "parent_span_id"}
    return TraceContext(
        trace_id=value.get("trace_id"),
        parent_span_id=value.get("parent_span_id"),
        attributes={
            **{k: v for k, v in value.items() if k not in known and k != "attributes"},
            **dict(value.get("attributes") or {}),
        },
    )


def _span_attributes(
    adapter: ProviderAdapter, request: CompletionRequest, record: CallRecord
) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        "gen_ai.system": adapter.name,
        "gen_ai.request.model": request.model,
        "llm.stream": request.stream,
        "gateway.request_id": record.request_id,
    }
    if request.temperature is not None:
        attributes["gen_ai.request.temperature"] = request.temperature
    if request.max_tokens is not None:
        attributes["gen_ai.request.max_tokens"] = request.max_tokens
    ctx = record.trace_context
    if ctx is not None:
        if ctx.trace_id:
            attributes["gateway.trace_id"] = ctx.trace_id
        if ctx.parent_span_id:
            attributes["gateway.parent_span_id"] = ctx.parent_span_id
        for key, value in ctx.attributes.items():
            if isinstance(value, (str, bool, int, float)):
                attributes[f"gateway.trace.{key}"] = value
    return attributes


class Gateway:
    """Multi-vendor chat completion facade.

    Args:
        registry: Provider registry used for routing; a default one with the
            built-in adapters is created when omitted.
        hooks: Observability hooks called before and after every call.
        provider_options: Per-provider constructor options, e.g.
            ``{"anthropic": {"api_key": "...", "max_attempts": 5}}``.
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        *,
        hooks: Iterable[CallHook] = (),
        provider_options: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self.registry = registry or ProviderRegistry()
        self._hooks: list[CallHook] = list(hooks)
        self._provider_options = {k: dict(v) for k, v in (provider_options or {}).items()}
        self._adapters: dict[str, ProviderAdapter] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_hook(self, hook: CallHook) -> None:
        self._hooks.append(hook)

    def get_adapter(self, key: str) -> ProviderAdapter:
        """Return the cached adapter for *key*, creating it on first use."""
        adapter = self._adapters.get(key)
        if adapter is None:
            adapter = self.registry.create_provider(key, **self._provider_options.get(key, {}))
            self._adapters[key] = adapter
        return adapter

    async def chat_completion(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str,
        tools: Sequence[Tool | Mapping[str, Any]] | None = None,
        stream: bool = False,
        *,
        provider: str | None = None,
        on_event: EventSink | None = None,
        trace_context: TraceContext | Mapping[str, Any] | None = None,
        **params: Any,
    ) -> CompletionResponse:
        """Run one completion and return the full response.

        With ``stream=True`` the call streams under the hood: every event is
        delivered to *on_event* as it arrives and the accumulated response is
        returned once the stream terminates.

        Args:
            messages: Conversation turns as :class:`Message` objects or
                OpenAI-style dicts.
            model: Model name; also drives provider routing.
            tools: Function or hosted tools, in any form
                :func:`~chatgateway.models.coerce_tool` accepts.
            stream: Stream from the vendor and accumulate.
            provider: Explicit provider key; overrides routing.
            on_event: Sink for stream events (``stream=True`` only).
            trace_context: Caller trace data, echoed on the response.
            **params: Sampling parameters (``temperature``, ``max_tokens``,
                ...); unknown keys are forwarded as vendor extras.

        Raises:
            GatewayError: Any subclass from :mod:`chatgateway.errors`.
        """
        if stream:
            completion = self.stream_completion(
                messages,
                model,
                tools,
                provider=provider,
                on_event=on_event,
                trace_context=trace_context,
                **params,
            )
            return await completion.collect()

        key = self.registry.resolve_key(model, provider)
        request = self.build_request(messages, model, tools, stream=False, params=params)
        adapter = self.get_adapter(key)
        record = CallRecord(
            provider=key,
            model=model,
            trace_context=_coerce_trace_context(trace_context),
        )

        log = _log.bind(request_id=record.request_id, provider=key, model=model, stream=False)
        with _tracer.start_as_current_span(
            "gateway.chat_completion", attributes=_span_attributes(adapter, request, record)
        ) as span:
            self._start(record, log)
            start_time = time.monotonic()
            try:
                response = await adapter.chat_completion(request)
            except Exception as exc:
                self._end(record, log, span, start_time, error=exc)
                raise
            response = dataclasses.replace(response, trace_context=record.trace_context)
            self._end(record, log, span, start_time, response=response)
            return response

    def stream_completion(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        model: str,
        tools: Sequence[Tool | Mapping[str, Any]] | None = None,
        *,
        provider: str | None = None,
        on_event: EventSink | None = None,
        trace_context: TraceContext | Mapping[str, Any] | None = None,
        **params: Any,
    ) -> "CompletionStream":
        """Start a streaming completion.

        Routing and request validation happen immediately; the vendor is only
        contacted once the returned stream is iterated.
        """
        key = self.registry.resolve_key(model, provider)
        request = self.build_request(messages, model, tools, stream=True, params=params)
        adapter = self.get_adapter(key)
        record = CallRecord(
            provider=key,
            model=model,
            stream=True,
            trace_context=_coerce_trace_context(trace_context),
        )
        return CompletionStream(self, adapter, request, record, on_event)

    @staticmethod
    def build_request(
        messages: Sequence[Message | Mapping[str, Any]],
        model: str,
        tools: Sequence[Tool | Mapping[str, Any]] | None,
        stream: bool,
        params: Mapping[str, Any],
    ) -> CompletionRequest:
        """Coerce loosely typed caller input into a validated request."""
        fields = {k: v for k, v in params.items() if k in _REQUEST_FIELDS}
        extra = dict(params.get("extra") or {})
        extra.update({k: v for k, v in params.items() if k not in _REQUEST_FIELDS and k != "extra"})
        return CompletionRequest(
            messages=tuple(messages),
            model=model,
            tools=tuple(tools) if tools else None,
            stream=stream,
            extra=extra,
            **fields,
        )

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()

    async def __aenter__(self) -> "Gateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _start(self, record: CallRecord, log: Any) -> None:
        log.info("llm_request_start")
        for hook in self._hooks:
            try:
                hook.on_start(record)
            except Exception:
                log.exception("call_hook_failed", hook=type(hook).__name__, phase="start")

    def _end(
        self,
        record: CallRecord,
        log: Any,
        span: Span,
        start_time: float,
        response: CompletionResponse | None = None,
        error: BaseException | None = None,
        cancelled: bool = False,
    ) -> None:
        duration = time.monotonic() - start_time
        record.duration_ms = round(duration * 1000, 2)
        record.error = error
        record.cancelled = cancelled

        if cancelled:
            span.set_attribute("gateway.cancelled", True)
            log.info("llm_request_cancelled", duration_ms=record.duration_ms)

        if response is not None:
            record.usage = response.usage
            span.set_attribute("gen_ai.response.model", response.model)
            span.set_attribute("gen_ai.usage.input_tokens", response.usage.prompt_tokens)
            span.set_attribute("gen_ai.usage.output_tokens", response.usage.completion_tokens)
            if response.finish_reason is not None:
                span.set_attribute("gen_ai.response.finish_reasons", [response.finish_reason.value])
            log.info(
                "llm_request_complete",
                duration_ms=record.duration_ms,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                finish_reason=response.finish_reason.value if response.finish_reason else None,
            )
        if error is not None:
            span.record_exception(error)
            span.set_status(StatusCode.ERROR, str(error))
            log.error(
                "llm_request_error",
                duration_ms=record.duration_ms,
                error_type=type(error).__name__,
                error=str(error),
            )

        metrics.record_call(
            provider=record.provider,
            model=record.model,
            stream=record.stream,
            duration_seconds=duration,
            error=error,
            cancelled=cancelled,
            prompt_tokens=record.usage.prompt_tokens if record.usage else 0,
            completion_tokens=record.usage.completion_tokens if record.usage else 0,
        )

        for hook in self._hooks:
            try:
                hook.on_end(record)
            except Exception:
                log.exception("call_hook_failed", hook=type(hook).__name__, phase="end")


class CompletionStream:
    """A single-use async iterator over the events of one streaming call.

    After the iterator is exhausted, :attr:`response` holds the accumulated
    :class:`~chatgateway.models.CompletionResponse`.

    Stopping early should go through :meth:`aclose` (or ``async with``) so the
    vendor connection is released and hooks see the call end as cancelled.
    """

    def __init__(
        self,
        gateway: Gateway,
        adapter: ProviderAdapter,
        request: CompletionRequest,
        record: CallRecord,
        on_event: EventSink | None = None,
    ) -> None:
        self._gateway = gateway
        self._adapter = adapter
        self._request = request
        self._on_event = on_event
        self.record = record
        self.accumulator = StreamAccumulator(model=request.model, provider=record.provider)
        self.response: CompletionResponse | None = None
        self._iterator: AsyncGenerator[StreamEvent, None] | None = None

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._iterator is not None:
            raise RuntimeError("a CompletionStream can only be iterated once")
        self._iterator = self._run()
        return self._iterator

    async def aclose(self) -> None:
        """Stop the stream early; a no-op once it has finished."""
        if self._iterator is not None:
            await self._iterator.aclose()

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def collect(self) -> CompletionResponse:
        """Drain the stream and return the final response."""
        async for _ in self:
            pass
        assert self.response is not None
        return self.response

    async def _run(self) -> AsyncGenerator[StreamEvent, None]:
        record = self.record
        log = _log.bind(
            request_id=record.request_id, provider=record.provider, model=record.model, stream=True
        )
        # Not made current: the span outlives individual iteration steps.
        span = _tracer.start_span(
            "gateway.stream_completion",
            attributes=_span_attributes(self._adapter, self._request, record),
        )
        self._gateway._start(record, log)
        start_time = time.monotonic()
        try:
            async with aclosing(self._adapter.stream_completion(self._request)) as events:
                async for event in events:
                    self.accumulator.add(event)
                    if self._on_event is not None:
                        self._on_event(event)
                    yield event
        except (GeneratorExit, asyncio.CancelledError):
            # Caller stopped iterating or the task was cancelled.
            self._gateway._end(record, log, span, start_time, cancelled=True)
            raise
        except Exception as exc:
            self._gateway._end(record, log, span, start_time, error=exc)
            raise
        else:
            response = self.accumulator.build_response()
            self.response = dataclasses.replace(response, trace_context=record.trace_context)
            self._gateway._end(record, log, span, start_time, response=self.response)
        finally:
            span.end()
