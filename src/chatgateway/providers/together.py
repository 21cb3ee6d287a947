"""Together AI adapter."""

from typing import Any

from chatgateway.models import CompletionRequest, FinishReason
from chatgateway.providers.openai_compat import _OPENAI_FINISH_REASONS, OpenAICompatibleAdapter


class TogetherAdapter(OpenAICompatibleAdapter):
    """OpenAI-compatible endpoint that also honors ``top_k``,
    ``repetition_penalty`` and ``safety_model``.

    Together serves far more models than it is practical to list, so any
    fully qualified ``org/model`` path is accepted without validation.
    """

    name = "together"
    DEFAULT_BASE_URL = "https://api.together.xyz/v1"
    SUPPORTED_MODELS = frozenset(
        {
            "meta-llama/Llama-3-70b-chat-hf",
            "meta-llama/Llama-3-8b-chat-hf",
            "meta-llama/Llama-2-70b-chat-hf",
            "meta-llama/Llama-2-13b-chat-hf",
            "meta-llama/Llama-2-7b-chat-hf",
            "mistralai/Mixtral-8x7B-Instruct-v0.1",
            "mistralai/Mistral-7B-Instruct-v0.2",
            "NousResearch/Nous-Hermes-2-Mixtral-8x7B-DPO",
            "NousResearch/Nous-Hermes-2-Yi-34B",
            "togethercomputer/llama-2-70b-chat",
            "Qwen/Qwen1.5-72B-Chat",
            "deepseek-ai/deepseek-coder-33b-instruct",
            "codellama/CodeLlama-70b-Instruct-hf",
        }
    )
    FINISH_REASONS = {**_OPENAI_FINISH_REASONS, "eos": FinishReason.STOP}
    EXTRA_PARAMS = frozenset({"repetition_penalty", "safety_model", "min_p"})

    def _accepts_any(self, model: str) -> bool:
        return "/" in model

    def _build_payload(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        payload = super()._build_payload(request, stream)
        if request.top_k is not None:
            payload["top_k"] = request.top_k
        return payload
