from provkit.llm.base import BaseProvider
from provkit.llm.stream import ChatCompletionStream, StreamTranslator, ToolCallAccumulator
from provkit.llm.openai import OpenAIProvider
from provkit.llm.anthropic import AnthropicProvider
from provkit.llm.gemini import GeminiProvider
from provkit.llm.qwen import QwenProvider
from provkit.llm.cerebras import CerebrasProvider
from provkit.llm.openrouter import OpenRouterProvider
from provkit.llm.ollama import OllamaProvider

__all__ = [
    "BaseProvider",
    "ChatCompletionStream",
    "StreamTranslator",
    "ToolCallAccumulator",
    "OpenAIProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "QwenProvider",
    "CerebrasProvider",
    "OpenRouterProvider",
    "OllamaProvider",
]
