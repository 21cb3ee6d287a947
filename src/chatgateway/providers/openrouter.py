"""OpenRouter aggregator adapter.

OpenRouter fronts many vendors behind ``vendor/model`` names.  Bare names from
well-known families (``gpt-4o``, ``claude-3-5-sonnet-...``) are qualified with
their vendor prefix so OpenRouter can stand in for the direct adapters.
"""

from typing import Any

from chatgateway import config
from chatgateway.models import CompletionRequest
from chatgateway.providers.openai_compat import OpenAICompatibleAdapter

_FAMILY_PREFIXES = (
    (("gpt-", "o1", "o3", "o4", "chatgpt-"), "openai"),
    (("claude-",), "anthropic"),
    (("command",), "cohere"),
    (("gemini",), "google"),
    (("mistral", "mixtral"), "mistralai"),
)


def qualify_model(model: str) -> str:
    """Return *model* as an OpenRouter ``vendor/model`` name."""
    if "/" in model:
        return model
    for prefixes, vendor in _FAMILY_PREFIXES:
        if model.startswith(prefixes):
            return f"{vendor}/{model}"
    return model


class OpenRouterAdapter(OpenAICompatibleAdapter):
    name = "openrouter"
    DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
    SUPPORTED_MODELS = frozenset(
        {
            "openai/gpt-4o",
            "openai/gpt-4o-mini",
            "openai/gpt-4-turbo",
            "openai/gpt-3.5-turbo",
            "anthropic/claude-3.5-sonnet",
            "anthropic/claude-3-opus",
            "anthropic/claude-3-haiku",
            "google/gemini-pro-1.5",
            "google/gemini-flash-1.5",
            "meta-llama/llama-3.1-405b-instruct",
            "meta-llama/llama-3.1-70b-instruct",
            "meta-llama/llama-3.1-8b-instruct",
            "mistralai/mixtral-8x7b-instruct",
            "cohere/command-r-plus",
            "qwen/qwen-2-72b-instruct",
            "deepseek/deepseek-chat",
        }
    )
    EXTRA_PARAMS = frozenset({"transforms", "models", "route", "provider", "repetition_penalty"})

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        site_url: str | None = None,
        site_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, base_url, **kwargs)
        self.site_url = site_url or config.settings.openrouter_site_url
        self.site_name = site_name or config.settings.openrouter_site_name

    def validate(self, model: str) -> None:
        super().validate(qualify_model(model))

    def _accepts_any(self, model: str) -> bool:
        return "/" in model

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.site_name:
            headers["X-Title"] = self.site_name
        return headers

    def _build_payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        payload = super()._build_payload(request, stream)
        payload["model"] = qualify_model(request.model)
        if request.top_k is not None:
            payload["top_k"] = request.top_k
        return payload
