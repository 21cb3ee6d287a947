"""xAI (Grok) adapter.

The xAI API is OpenAI-compatible at ``api.x.ai``; every Grok model supports
function calling, including parallel calls.
"""

from chatgateway.providers.openai_compat import OpenAICompatibleAdapter


class XAIAdapter(OpenAICompatibleAdapter):
    name = "xai"
    DEFAULT_BASE_URL = "https://api.x.ai/v1"
    SUPPORTED_MODELS = frozenset(
        {
            "grok-4",
            "grok-3",
            "grok-3-mini",
            "grok-code-fast-1",
            "grok-2-1212",
            "grok-beta",
        }
    )
    EXTRA_PARAMS = frozenset({"parallel_tool_calls"})
    include_stream_usage = True
