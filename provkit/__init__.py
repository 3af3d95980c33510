"""
provkit - one streaming chat-completion client for many model back-ends

Usage:
    from provkit import ChatMessage, GenerateOptions, ProviderConfig, ProviderFacade

    facade = ProviderFacade()
    facade.add_provider(ProviderConfig(type="ollama", name="local"))

    stream = await facade.generate_chat_completion(
        "local",
        GenerateOptions(messages=[ChatMessage(role="user", content="Hello!")]),
    )
    async for chunk in stream:
        print(chunk.content, end="")
"""

from provkit.errors import (
    AuthenticationError,
    ErrorCode,
    ProviderError,
    RateLimitError,
    ValidationError,
)
from provkit.factory import ProviderFacade, ProviderFactory, default_factory
from provkit.llm import (
    AnthropicProvider,
    BaseProvider,
    CerebrasProvider,
    ChatCompletionStream,
    GeminiProvider,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    QwenProvider,
)
from provkit.types import (
    ChatCompletionChunk,
    ChatMessage,
    ContentPart,
    GenerateOptions,
    ModelInfo,
    ProviderConfig,
    ProviderType,
    Tool,
    ToolCall,
    ToolChoice,
    Usage,
)
from provkit.utils.abort_signal import AbortSignal

__all__ = [
    "AbortSignal",
    "AnthropicProvider",
    "AuthenticationError",
    "BaseProvider",
    "CerebrasProvider",
    "ChatCompletionChunk",
    "ChatCompletionStream",
    "ChatMessage",
    "ContentPart",
    "ErrorCode",
    "GeminiProvider",
    "GenerateOptions",
    "ModelInfo",
    "OllamaProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "ProviderConfig",
    "ProviderError",
    "ProviderFacade",
    "ProviderFactory",
    "ProviderType",
    "QwenProvider",
    "RateLimitError",
    "Tool",
    "ToolCall",
    "ToolChoice",
    "Usage",
    "ValidationError",
    "default_factory",
]
