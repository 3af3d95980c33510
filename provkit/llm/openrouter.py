from typing import Any

from provkit.errors import RateLimitError
from provkit.llm.openai import OpenAIProvider
from provkit.types import GenerateOptions, ModelInfo

DEFAULT_SITE_URL = "https://github.com/provkit/provkit"
DEFAULT_SITE_NAME = "provkit"

STATIC_MODELS = [
    ("qwen/qwen3-coder", "Qwen3 Coder", 262144),
    ("anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5", 200000),
    ("openai/gpt-4o", "GPT-4o", 128000),
    ("deepseek/deepseek-chat-v3.1:free", "DeepSeek V3.1 (Free)", 128000),
]


class OpenRouterProvider(OpenAIProvider):
    """
    OpenRouter aggregator.

    ``provider_config`` keys: ``site_url`` / ``site_name`` (attribution
    headers), ``free_only`` (append ``:free`` to model ids) and ``models``
    (first entry becomes the default model).
    """

    provider_type = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
    default_model = "qwen/qwen3-coder"

    @property
    def description(self) -> str:
        return "OpenRouter model aggregator"

    def supports_responses_api(self) -> bool:
        return False

    def default_headers(self) -> dict[str, str]:
        extra = self.config.provider_config
        return {
            "HTTP-Referer": extra.get("site_url") or DEFAULT_SITE_URL,
            "X-Title": extra.get("site_name") or DEFAULT_SITE_NAME,
        }

    def get_default_model(self) -> str:
        models = self.config.provider_config.get("models") or []
        return self.config.default_model or (models[0] if models else self.default_model)

    def resolve_model(self, model: str) -> str:
        if self.config.provider_config.get("free_only") and not model.endswith(":free"):
            return f"{model}:free"
        return model

    def ensure_request_allowed(self, model: str, estimated_tokens: int = 0) -> None:
        info = self.rate_limits.get(model)
        if info is not None and info.is_free_tier and info.credits_remaining is not None:
            if info.credits_remaining <= 0:
                raise RateLimitError(
                    "free tier limit reached",
                    provider=self.name,
                    operation="generate_chat_completion",
                    retry_after=self.rate_limits.wait_time(model),
                )
        super().ensure_request_allowed(model, estimated_tokens)

    def build_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        return super().build_request(options, self.resolve_model(model))

    def model_info(self, item: dict[str, Any]) -> ModelInfo:
        info = super().model_info(item)
        info.metadata = {"pricing": item.get("pricing") or {}, "free": info.id.endswith(":free")}
        params = item.get("supported_parameters") or []
        info.supports_tool_calling = not params or "tools" in params
        return info

    def static_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                id=model_id,
                name=name,
                provider=self.name,
                max_tokens=context,
                supports_tool_calling=True,
                metadata={"free": model_id.endswith(":free")},
            )
            for model_id, name, context in STATIC_MODELS
        ]


__all__ = ["OpenRouterProvider"]
