"""Abstract provider adapter: HTTP plumbing shared by every vendor.

Concrete adapters only describe their vendor: how to encode a
:class:`~chatgateway.models.CompletionRequest`, how to decode a full response,
how the stream is framed and how each frame maps onto
:data:`~chatgateway.models.StreamEvent` values.  Transport, error
classification, retries and stream termination live here.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Mapping
from typing import Any, ClassVar

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from chatgateway import config
from chatgateway.errors import (
    AuthenticationError,
    GatewayError,
    ModelNotSupportedError,
    NetworkError,
    ServerError,
    StreamParseError,
)
from chatgateway.models import (
    CompletionRequest,
    CompletionResponse,
    Done,
    Finish,
    FinishReason,
    StreamEvent,
    map_finish_reason,
)
from chatgateway.retry import RetryPolicy, classify_http_error, classify_transport_error
from chatgateway.streaming.framing import iter_sse

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)


class ProviderAdapter(ABC):
    """Base class for vendor adapters.

    Args:
        api_key: Vendor credential.  Falls back to the matching
            ``*_API_KEY`` setting; a missing required key raises
            :class:`~chatgateway.errors.AuthenticationError` immediately.
        base_url: Override for the vendor endpoint.
        timeout: Non-streaming request timeout in seconds.
        stream_timeout: Streaming request timeout in seconds.
        max_attempts: Attempts per call for the default retry policy.
        retry_policy: A fully configured policy; wins over *max_attempts*.
        client: A pre-built ``httpx.AsyncClient`` (e.g. with a mock
            transport).  The adapter only closes clients it created.
        models: Replaces the adapter's supported-model set.
    """

    name: ClassVar[str]
    DEFAULT_BASE_URL: ClassVar[str]
    SUPPORTED_MODELS: ClassVar[frozenset[str]] = frozenset()
    FINISH_REASONS: ClassVar[Mapping[str, FinishReason]] = {}
    requires_api_key: ClassVar[bool] = True

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        stream_timeout: float | None = None,
        max_attempts: int | None = None,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        models: Iterable[str] | None = None,
    ) -> None:
        settings = config.settings
        self.api_key = api_key or settings.api_key_for(self.name)
        if self.requires_api_key and not self.api_key:
            raise AuthenticationError(
                f"missing API key; pass api_key or set {self.name.upper()}_API_KEY",
                provider=self.name,
            )

        self.base_url = (base_url or self._default_base_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else self._default_timeout()
        self.stream_timeout = (
            stream_timeout if stream_timeout is not None else settings.llm_stream_timeout
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=max_attempts if max_attempts is not None else settings.llm_max_attempts
        )
        self._models = frozenset(models) if models is not None else self.SUPPORTED_MODELS
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def supported_models(self) -> frozenset[str]:
        return self._models

    def validate(self, model: str) -> None:
        """Raise :class:`ModelNotSupportedError` if *model* is not served here.

        An empty supported set means any model is accepted.
        """
        if not self._models or self._accepts_any(model):
            return
        if model not in self._models:
            raise ModelNotSupportedError(
                f"model '{model}' is not supported; available: {sorted(self._models)}",
                model=model,
                provider=self.name,
            )

    async def chat_completion(self, request: CompletionRequest) -> CompletionResponse:
        """Send *request* and return the complete response (retried on transient errors)."""
        self.validate(request.model)
        payload = self._build_payload(request, stream=False)

        with _tracer.start_as_current_span("llm.api_call") as span:
            span.set_attribute("gen_ai.system", self.name)
            span.set_attribute("gen_ai.request.model", request.model)
            span.set_attribute("call_type", "non_streaming")
            try:
                data = await self.retry_policy.call(self._post_json, payload)
                response = self._parse_response(data, request)
            except GatewayError as exc:
                span.record_exception(exc)
                span.set_status(StatusCode.ERROR, exc.message)
                raise
            span.set_attribute("gen_ai.usage.input_tokens", response.usage.prompt_tokens)
            span.set_attribute("gen_ai.usage.output_tokens", response.usage.completion_tokens)
            return response

    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        """Yield canonical stream events for *request*.

        Opening the stream and receiving the first event is retried; once an
        event has been delivered any failure propagates to the caller.  The
        stream always ends with :class:`~chatgateway.models.Done`.
        """
        self.validate(request.model)

        events: AsyncIterator[StreamEvent] | None = None
        first: StreamEvent | None = None
        async for attempt in self.retry_policy.retrying():
            with attempt:
                events = self._stream_once(request)
                try:
                    first = await events.__anext__()
                except BaseException:
                    await events.aclose()
                    raise

        assert events is not None
        try:
            yield first
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ProviderAdapter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Vendor hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _build_payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        """Encode *request* into the vendor's JSON body."""

    @abstractmethod
    def _parse_response(
        self, data: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        """Decode a complete vendor response."""

    @abstractmethod
    def _decode_frame(self, frame: Any, state: dict[str, Any]) -> Iterable[StreamEvent]:
        """Decode one stream frame.  May raise :class:`StreamParseError`."""

    def _frames(self, lines: AsyncIterable[str]) -> AsyncIterator[Any]:
        return iter_sse(lines)

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _default_base_url(self) -> str:
        return self.DEFAULT_BASE_URL

    def _default_timeout(self) -> float:
        return config.settings.llm_timeout

    def _accepts_any(self, model: str) -> bool:
        return False

    def _finish(self, raw: str | None) -> tuple[FinishReason | None, str | None]:
        return map_finish_reason(raw, self.FINISH_REASONS)

    def _http_error(self, response: httpx.Response) -> GatewayError:
        return classify_http_error(response, self.name)

    def _transport_error(self, exc: httpx.TransportError) -> NetworkError:
        return classify_transport_error(exc, self.name)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._endpoint(), json=payload, headers=self._headers(), timeout=self.timeout
            )
        except httpx.TransportError as exc:
            raise self._transport_error(exc) from exc

        if response.is_error:
            raise self._http_error(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ServerError(
                "response body is not valid JSON",
                status_code=response.status_code,
                provider=self.name,
                original_error=exc,
            ) from exc
        if not isinstance(data, dict):
            raise ServerError("response body is not a JSON object", provider=self.name)
        return data

    async def _stream_once(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(request, stream=True)
        state: dict[str, Any] = {}
        saw_finish = saw_done = False

        try:
            async with self._client.stream(
                "POST",
                self._endpoint(),
                json=payload,
                headers=self._headers(),
                timeout=self.stream_timeout,
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise self._http_error(response)

                async for frame in self._frames(response.aiter_lines()):
                    try:
                        events = list(self._decode_frame(frame, state))
                    except StreamParseError as exc:
                        _log.warning("stream_frame_skipped", provider=self.name, error=exc.message)
                        continue
                    for event in events:
                        if isinstance(event, Finish):
                            saw_finish = True
                        elif isinstance(event, Done):
                            saw_done = True
                        yield event
                    if saw_done:
                        return
        except httpx.TransportError as exc:
            raise self._transport_error(exc) from exc

        if not saw_finish:
            _log.warning("stream_ended_without_terminal", provider=self.name, model=request.model)
        yield Done()
