from typing import Any

from provkit.llm.openai import OpenAIProvider
from provkit.types import GenerateOptions, ModelInfo

# name, context window, description, capabilities
MODEL_METADATA: dict[str, tuple[str, int, str, list[str]]] = {
    "zai-glm-4.6": (
        "ZAI GLM-4.6",
        131072,
        "Ultra-fast ZAI GLM-4.6 model",
        ["chat", "completion", "code-generation"],
    ),
    "llama3.1-8b": ("Llama 3.1 8B", 8192, "Llama 3.1 8B parameter model", ["chat", "completion"]),
    "llama3.1-70b": (
        "Llama 3.1 70B",
        8192,
        "Llama 3.1 70B parameter model",
        ["chat", "completion", "analysis"],
    ),
}


class CerebrasProvider(OpenAIProvider):
    provider_type = "cerebras"
    default_base_url = "https://api.cerebras.ai/v1"
    default_model = "zai-glm-4.6"

    @property
    def description(self) -> str:
        return "Cerebras inference API"

    def supports_responses_api(self) -> bool:
        return False

    def build_request(self, options: GenerateOptions, model: str) -> dict[str, Any]:
        body = super().build_request(options, model)
        if "max_tokens" not in body:
            configured = self.config.provider_config.get("max_tokens")
            if isinstance(configured, int) and configured > 0:
                body["max_tokens"] = configured
        return body

    def model_info(self, item: dict[str, Any]) -> ModelInfo:
        model_id = item["id"]
        name, max_tokens, description, capabilities = MODEL_METADATA.get(
            model_id, (model_id, 8192, "Cerebras model", [])
        )
        return ModelInfo(
            id=model_id,
            name=name,
            provider=self.name,
            description=description,
            max_tokens=max_tokens,
            capabilities=list(capabilities),
            supports_tool_calling=True,
        )

    def static_models(self) -> list[ModelInfo]:
        return [self.model_info({"id": model_id}) for model_id in MODEL_METADATA]


__all__ = ["CerebrasProvider", "MODEL_METADATA"]
