"""Vendor adapters.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    from chatgateway.models import CompletionRequest
    from chatgateway.providers import AnthropicAdapter

    async with AnthropicAdapter(api_key="sk-ant-...") as adapter:
        request = CompletionRequest(
            model="claude-3-5-sonnet-20241022",
            messages=[{"role": "user", "content": "Hello"}],
        )
        async for event in adapter.stream_completion(request):
            print(event)
"""

from chatgateway.providers.anthropic import AnthropicAdapter
from chatgateway.providers.base import ProviderAdapter
from chatgateway.providers.cohere import CohereAdapter
from chatgateway.providers.groq import GroqAdapter
from chatgateway.providers.ollama import OllamaAdapter
from chatgateway.providers.openai_compat import OpenAIAdapter, OpenAICompatibleAdapter
from chatgateway.providers.openrouter import OpenRouterAdapter
from chatgateway.providers.together import TogetherAdapter
from chatgateway.providers.xai import XAIAdapter

BUILTIN_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    adapter.name: adapter
    for adapter in (
        OpenAIAdapter,
        AnthropicAdapter,
        CohereAdapter,
        OllamaAdapter,
        GroqAdapter,
        TogetherAdapter,
        OpenRouterAdapter,
        XAIAdapter,
    )
}

__all__ = [
    "BUILTIN_ADAPTERS",
    # Base
    "ProviderAdapter",
    "OpenAICompatibleAdapter",
    # Vendors
    "AnthropicAdapter",
    "CohereAdapter",
    "GroqAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "TogetherAdapter",
    "XAIAdapter",
]
