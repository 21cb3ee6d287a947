"""Exception taxonomy shared by every provider adapter and the gateway facade.

Every vendor failure is classified into one of these typed exceptions so callers
never have to inspect raw ``httpx`` objects or vendor error bodies.  The retry
policy keys off the same classes: :data:`RETRYABLE_ERRORS` are retried with
backoff, everything else propagates immediately.
"""


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        message: Human-readable error description, including the vendor's own
            error message when one was returned.
        provider: Provider key (e.g. ``"openai"``, ``"anthropic"``).  ``None``
            when the failure happened before a provider was selected.
        original_error: The upstream exception that caused this error, if any.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.message = message
        self.provider = provider
        self.original_error = original_error
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message


class AuthenticationError(GatewayError):
    """Missing, invalid or forbidden credentials (HTTP 401 / 403).  Never retried."""


class RateLimitError(GatewayError):
    """The provider returned HTTP 429.

    Attributes:
        retry_after: Seconds the vendor asked us to wait, parsed from its
            ``Retry-After`` / rate-limit reset headers.  ``None`` if absent.
    """

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider, original_error=original_error)
        self.retry_after = retry_after


class ServerError(GatewayError):
    """The provider failed on its side (HTTP 5xx, or an error event mid-stream)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider, original_error=original_error)
        self.status_code = status_code


class ValidationError(GatewayError):
    """The request was rejected as malformed (any other HTTP 4xx), or failed
    local validation before it was sent.  Never retried."""


APIError = ValidationError


class ModelNotSupportedError(GatewayError):
    """The requested model is not served by the selected provider."""

    def __init__(
        self,
        message: str,
        model: str | None = None,
        provider: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider, original_error=original_error)
        self.model = model


class NetworkError(GatewayError):
    """A failure below the HTTP layer: DNS, connect, read or protocol errors."""


class ConnectionError(NetworkError):  # noqa: A001
    """The provider could not be reached, or the connection dropped mid-stream."""


class TimeoutError(NetworkError):  # noqa: A001
    """A provider request exceeded the configured connect or read timeout."""


class StreamParseError(GatewayError):
    """A single streamed frame could not be decoded.

    Adapters log and skip these; one malformed frame never aborts a stream.
    """


class ProviderNotFoundError(GatewayError):
    """No adapter is registered under the requested provider key."""


RETRYABLE_ERRORS: tuple[type[GatewayError], ...] = (RateLimitError, ServerError, NetworkError)
