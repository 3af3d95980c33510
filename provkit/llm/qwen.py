from typing import Any

from provkit.auth.oauth import OAuthEndpoints
from provkit.config.settings import settings
from provkit.llm.openai import OpenAIProvider
from provkit.types import AuthMode, ModelInfo
from provkit.utils.abort_signal import AbortSignal

QWEN_OAUTH_BASE_URL = "https://portal.qwen.ai/v1"
DASHSCOPE_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
QWEN_TOKEN_URL = "https://chat.qwen.ai/api/v1/oauth2/token"
QWEN_DEVICE_CODE_URL = "https://chat.qwen.ai/api/v1/oauth2/device/code"
QWEN_SCOPES = ["openid", "profile", "email", "model.completion"]

STATIC_MODELS = [
    (
        "qwen3-coder-flash",
        "Qwen3 Coder Flash",
        8192,
        "Qwen's fast model specialized for code generation",
    ),
    ("qwen3-coder-plus", "Qwen3 Coder Plus", 32768, "Qwen's balanced code generation model"),
]


def qwen_oauth_endpoints() -> OAuthEndpoints:
    return OAuthEndpoints(
        token_url=QWEN_TOKEN_URL,
        device_code_url=QWEN_DEVICE_CODE_URL,
        client_id=settings.qwen_oauth_client_id,
        scopes=list(QWEN_SCOPES),
    )


class QwenProvider(OpenAIProvider):
    """
    Qwen through its OpenAI-compatible surface.

    OAuth credentials (device flow) talk to the Qwen portal; API keys talk
    to DashScope's compatible mode.
    """

    provider_type = "qwen"
    default_model = "qwen3-coder-flash"

    def __init__(self, config, **kwargs) -> None:
        self.oauth_endpoints = qwen_oauth_endpoints()
        if not config.base_url:
            oauth = config.resolved_auth_mode() == AuthMode.OAUTH
            config = config.model_copy(
                update={"base_url": QWEN_OAUTH_BASE_URL if oauth else DASHSCOPE_BASE_URL}
            )
        super().__init__(config, **kwargs)

    @property
    def description(self) -> str:
        return "Qwen (Alibaba) OpenAI-compatible API"

    def supports_responses_api(self) -> bool:
        return False

    async def fetch_models(self, signal: AbortSignal | None = None) -> list[ModelInfo]:
        return self.static_models()

    def static_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                id=model_id,
                name=name,
                provider=self.name,
                description=description,
                max_tokens=max_tokens,
                supports_tool_calling=True,
            )
            for model_id, name, max_tokens, description in STATIC_MODELS
        ]

    async def test_connectivity(self, signal: AbortSignal | None = None) -> None:
        # The portal has no model listing; a one-token completion proves the credential.
        body: dict[str, Any] = {
            "model": self.get_default_model(),
            "messages": [{"role": "user", "content": "ping"}],
            "max_tokens": 1,
            "stream": False,
        }
        response = await self.request(
            "POST",
            self.chat_url(body["model"]),
            json=body,
            model=body["model"],
            operation="health_check",
            signal=signal,
        )
        await response.aclose()


__all__ = ["QwenProvider", "qwen_oauth_endpoints", "DASHSCOPE_BASE_URL", "QWEN_OAUTH_BASE_URL"]
