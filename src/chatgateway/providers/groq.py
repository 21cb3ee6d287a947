"""Groq adapter: OpenAI-compatible, with tools only on tool-capable models."""

import structlog

from chatgateway.models import CompletionRequest, ToolDefinition
from chatgateway.providers.openai_compat import OpenAICompatibleAdapter

_log = structlog.get_logger(__name__)

# Production models with native function calling.
_TOOL_MODELS = frozenset(
    {
        "llama-3.3-70b-versatile",
        "llama-3.1-70b-versatile",
        "llama-3.1-8b-instant",
    }
)


class GroqAdapter(OpenAICompatibleAdapter):
    name = "groq"
    DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
    SUPPORTED_MODELS = frozenset(
        {
            "llama-3.3-70b-versatile",
            "llama-3.1-405b-reasoning",
            "llama-3.1-70b-versatile",
            "llama-3.1-8b-instant",
            "llama3-groq-70b-8192-tool-use-preview",
            "llama3-groq-8b-8192-tool-use-preview",
            "llama-3.2-1b-preview",
            "llama-3.2-3b-preview",
            "llama-3.2-11b-vision-preview",
            "llama-3.2-90b-vision-preview",
            "mixtral-8x7b-32768",
            "gemma-7b-it",
            "gemma2-9b-it",
        }
    )
    include_stream_usage = True

    @staticmethod
    def supports_tools(model: str) -> bool:
        return "tool-use" in model or model in _TOOL_MODELS

    def _tools_for(self, request: CompletionRequest) -> list[ToolDefinition]:
        tools = super()._tools_for(request)
        if tools and not self.supports_tools(request.model):
            _log.warning(
                "tools_not_supported",
                provider=self.name,
                model=request.model,
                hint="use a tool-use model",
            )
            return []
        return tools
