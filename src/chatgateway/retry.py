"""Error classification and the bounded retry policy used by every adapter.

Adapters never retry on their own; they classify each failure into the
:mod:`chatgateway.errors` taxonomy and let :class:`RetryPolicy` decide.  Only
:data:`~chatgateway.errors.RETRYABLE_ERRORS` are retried, with exponential
backoff and jitter, and a vendor's ``Retry-After`` hint acts as the minimum wait.
"""

import json
import random
import re
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from chatgateway.errors import (
    RETRYABLE_ERRORS,
    AuthenticationError,
    ConnectionError,
    GatewayError,
    NetworkError,
    RateLimitError,
    ServerError,
    TimeoutError,
    ValidationError,
)

_log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY = 60.0
DEFAULT_JITTER = 0.1

# Headers consulted for a rate-limit wait hint, in priority order.
_RETRY_AFTER_HEADERS = (
    "retry-after-ms",
    "retry-after",
    "x-ratelimit-reset-requests",
    "x-ratelimit-reset-tokens",
    "x-ratelimit-reset",
)

_GO_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|h|m|s)")
_GO_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}

# Anything larger than this is an epoch timestamp rather than a delay.
_EPOCH_THRESHOLD = 1_000_000_000


# ---------------------------------------------------------------------------
# Retry-After parsing
# ---------------------------------------------------------------------------


def _parse_go_duration(value: str) -> float | None:
    parts = _GO_DURATION_PART.findall(value)
    if not parts or "".join(n + u for n, u in parts) != value:
        return None
    return sum(float(n) * _GO_DURATION_UNITS[u] for n, u in parts)


def _parse_reset_value(value: str, now: float) -> float | None:
    value = value.strip()
    if not value:
        return None

    try:
        number = float(value)
    except ValueError:
        pass
    else:
        if number > _EPOCH_THRESHOLD:
            return max(0.0, number - now)
        return max(0.0, number)

    duration = _parse_go_duration(value)
    if duration is not None:
        return duration

    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        moment = None
    if moment is None:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return max(0.0, moment.timestamp() - now)


def parse_retry_after(headers: Mapping[str, str], now: float | None = None) -> float | None:
    """Extract the vendor's requested wait, in seconds, from response headers.

    Understands plain seconds, milliseconds (``retry-after-ms``), HTTP dates,
    ISO-8601 timestamps, Go-style durations (``2m59.5s``, ``6ms``) and epoch
    timestamps.  Returns ``None`` when no header yields a usable value.
    """
    now = time.time() if now is None else now
    lowered = {k.lower(): v for k, v in headers.items()}

    for header in _RETRY_AFTER_HEADERS:
        raw = lowered.get(header)
        if raw is None:
            continue
        if header == "retry-after-ms":
            try:
                return max(0.0, float(raw) / 1000.0)
            except ValueError:
                continue
        parsed = _parse_reset_value(raw, now)
        if parsed is not None:
            return parsed
    return None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def extract_error_message(response: httpx.Response) -> str:
    """Pull the vendor's human-readable message out of an error body.

    Handles ``{"error": {"message": ...}}`` (OpenAI-compatible, Anthropic),
    ``{"error": "..."}`` (Ollama) and ``{"message": ...}`` (Cohere); falls back
    to the raw body text.
    """
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError, httpx.ResponseNotRead):
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
        if body.get("detail"):
            return str(body["detail"])

    try:
        text = response.text
    except httpx.ResponseNotRead:
        text = ""
    return text.strip()[:500] or f"HTTP {response.status_code}"


def classify_http_error(response: httpx.Response, provider: str) -> GatewayError:
    """Map a non-2xx vendor response onto the error taxonomy.

    ======  ==========================================
    Status  Error
    ======  ==========================================
    401     :class:`AuthenticationError`
    403     :class:`AuthenticationError`
    429     :class:`RateLimitError` (with ``retry_after``)
    5xx     :class:`ServerError`
    4xx     :class:`ValidationError`
    ======  ==========================================
    """
    status = response.status_code
    detail = extract_error_message(response)

    if status in (401, 403):
        return AuthenticationError(
            f"authentication failed (HTTP {status}): {detail}", provider=provider
        )
    if status == 429:
        return RateLimitError(
            f"rate limit exceeded: {detail}",
            retry_after=parse_retry_after(response.headers),
            provider=provider,
        )
    if status >= 500:
        return ServerError(
            f"server error (HTTP {status}): {detail}", status_code=status, provider=provider
        )
    return ValidationError(f"request rejected (HTTP {status}): {detail}", provider=provider)


def classify_transport_error(exc: httpx.TransportError, provider: str) -> NetworkError:
    """Map an ``httpx`` transport failure onto the :class:`NetworkError` family."""
    if isinstance(exc, httpx.TimeoutException):
        return TimeoutError(f"request timed out: {exc!r}", provider=provider, original_error=exc)
    if isinstance(exc, httpx.ConnectError):
        return ConnectionError(
            f"could not connect: {exc!r}", provider=provider, original_error=exc
        )
    return NetworkError(f"network failure: {exc!r}", provider=provider, original_error=exc)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def _before_sleep(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` hook that emits a structured warning."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    next_action = retry_state.next_action
    wait_seconds = next_action.sleep if next_action is not None else 0.0
    _log.warning(
        "llm_request_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=round(wait_seconds, 2),
        provider=getattr(exc, "provider", None),
        error_type=type(exc).__name__ if exc else None,
        error=str(exc) if exc else None,
    )


class RetryPolicy:
    """Bounded exponential backoff over the retryable error classes.

    Each adapter instance owns one policy; there is no budget shared between
    calls.  On exhaustion the last classified error is re-raised unchanged.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Wait before the first retry, in seconds.
        multiplier: Growth factor between consecutive waits.
        max_delay: Upper bound for the computed backoff.  A vendor's
            ``Retry-After`` hint is always honored in full, even above it.
        jitter: Fractional +/- jitter applied to the backoff.
        sleep: Coroutine function used to wait; defaults to tenacity's
            ``asyncio.sleep``.  Tests inject a no-op.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        multiplier: float = DEFAULT_MULTIPLIER,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter: float = DEFAULT_JITTER,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep

    def backoff(self, attempt_number: int) -> float:
        """Jittered exponential delay after the given (1-based) failed attempt."""
        delay = min(self.base_delay * self.multiplier ** (attempt_number - 1), self.max_delay)
        spread = delay * self.jitter
        return max(0.0, delay + random.uniform(-spread, spread))

    def compute_wait(self, attempt_number: int, error: BaseException | None) -> float:
        wait = self.backoff(attempt_number)
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            wait = max(wait, error.retry_after)
        return wait

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return self.compute_wait(retry_state.attempt_number, exc)

    def retrying(self) -> AsyncRetrying:
        """A fresh tenacity controller for one logical call."""
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            wait=self._wait,
            before_sleep=_before_sleep,
            reraise=True,
            **kwargs,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``fn(*args, **kwargs)``, retrying retryable failures."""
        async for attempt in self.retrying():
            with attempt:
                return await fn(*args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover
