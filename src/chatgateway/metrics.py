"""Prometheus metrics for gateway calls.

Exposed by the service at ``/metrics`` through ``prometheus_client``'s default
registry.
"""

from prometheus_client import Counter, Histogram

REQUESTS = Counter(
    "chatgateway_requests_total",
    "Completion calls handled by the gateway.",
    ["provider", "model", "stream", "outcome"],
)

TOKENS = Counter(
    "chatgateway_tokens_total",
    "Tokens reported by providers.",
    ["provider", "model", "kind"],
)

DURATION = Histogram(
    "chatgateway_request_duration_seconds",
    "Wall-clock duration of completion calls, including retries.",
    ["provider", "stream"],
    buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)


def record_call(
    provider: str,
    model: str,
    stream: bool,
    duration_seconds: float,
    error: BaseException | None = None,
    cancelled: bool = False,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
) -> None:
    if cancelled:
        outcome = "cancelled"
    elif error is not None:
        outcome = type(error).__name__
    else:
        outcome = "success"
    stream_label = "true" if stream else "false"
    REQUESTS.labels(provider=provider, model=model, stream=stream_label, outcome=outcome).inc()
    DURATION.labels(provider=provider, stream=stream_label).observe(duration_seconds)
    if prompt_tokens:
        TOKENS.labels(provider=provider, model=model, kind="prompt").inc(prompt_tokens)
    if completion_tokens:
        TOKENS.labels(provider=provider, model=model, kind="completion").inc(completion_tokens)
