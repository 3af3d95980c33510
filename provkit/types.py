"""
Provider-agnostic data model.

Requests are described with ChatMessage / Tool / GenerateOptions, streamed
responses with ChatCompletionChunk. Provider configuration is a pydantic
model so YAML config sections can be validated on load.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from provkit.errors import ValidationError


class ProviderType(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    QWEN = "qwen"
    CEREBRAS = "cerebras"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"


class AuthMode(str, Enum):
    API_KEY = "api_key"
    API_KEY_LIST = "api_key_list"
    OAUTH = "oauth"
    NONE = "none"


class ToolFormat(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


class ContentPartType(str, Enum):
    TEXT = "text"
    IMAGE_BASE64 = "image_base64"
    IMAGE_URL = "image_url"


class FinishReason(str, Enum):
    NONE = ""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"


@dataclass
class ContentPart:
    type: ContentPartType
    text: str = ""
    data: str = ""  # base64 payload for IMAGE_BASE64
    media_type: str = ""
    url: str = ""

    @classmethod
    def from_text(cls, text: str) -> "ContentPart":
        return cls(type=ContentPartType.TEXT, text=text)

    @classmethod
    def from_base64(cls, data: str, media_type: str = "image/png") -> "ContentPart":
        return cls(type=ContentPartType.IMAGE_BASE64, data=data, media_type=media_type)

    @classmethod
    def from_url(cls, url: str) -> "ContentPart":
        return cls(type=ContentPartType.IMAGE_URL, url=url)


@dataclass
class ToolCall:
    """A model-emitted function invocation; arguments is serialized JSON."""

    id: str
    name: str
    arguments: str = ""
    type: str = "function"
    index: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str = ""
    parts: tuple[ContentPart, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    reasoning_content: str | None = None

    def text(self) -> str:
        """Message text, falling back to the text parts joined by newlines."""
        if self.content:
            return self.content
        return "\n".join(
            p.text for p in self.parts if p.type == ContentPartType.TEXT and p.text
        )


@dataclass
class Tool:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("tool name must not be empty")
        if self.parameters.get("type", "object") != "object":
            raise ValueError("tool parameters schema must have type 'object'")
        self.parameters.setdefault("type", "object")


@dataclass(frozen=True)
class ToolChoice:
    """auto | required | none | a specific function name."""

    mode: str = "auto"
    name: str | None = None

    @classmethod
    def specific(cls, name: str) -> "ToolChoice":
        return cls(mode="function", name=name)


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if not self.total_tokens:
            self.total_tokens = self.prompt_tokens + self.completion_tokens


@dataclass
class GenerateOptions:
    messages: list[ChatMessage] = field(default_factory=list)
    model: str = ""
    tools: list[Tool] = field(default_factory=list)
    tool_choice: ToolChoice | None = None
    temperature: float = 0.0
    max_tokens: int = 0
    stop: list[str] = field(default_factory=list)
    # None, the literal "json", or a serialized JSON-schema object
    response_format: str | None = None
    stream: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.messages:
            raise ValidationError("at least one message is required", operation="validate")
        if not (0.0 <= self.temperature <= 2.0):
            raise ValidationError(
                "temperature must be between 0.0 and 2.0", operation="validate"
            )
        if self.max_tokens < 0:
            raise ValidationError("max_tokens must be non-negative", operation="validate")

        names = [t.name for t in self.tools]
        if len(names) != len(set(names)):
            raise ValidationError("tool names must be unique", operation="validate")
        if self.tool_choice is not None and self.tool_choice.mode in ("required", "function"):
            if not self.tools:
                raise ValidationError(
                    "tool_choice requires tools to be provided", operation="validate"
                )
            if self.tool_choice.mode == "function" and self.tool_choice.name not in names:
                raise ValidationError(
                    f"tool_choice names unknown tool {self.tool_choice.name!r}",
                    operation="validate",
                )

        seen_call_ids: set[str] = set()
        for message in self.messages:
            for call in message.tool_calls:
                seen_call_ids.add(call.id)
            if message.role == "tool":
                if not message.tool_call_id:
                    raise ValidationError(
                        "tool message requires tool_call_id", operation="validate"
                    )
                if message.tool_call_id not in seen_call_ids:
                    raise ValidationError(
                        f"tool message references unknown tool call {message.tool_call_id!r}",
                        operation="validate",
                    )


@dataclass
class ChatCompletionChunk:
    """Uniform streaming unit emitted to the caller."""

    id: str = ""
    model: str = ""
    created: int = field(default_factory=lambda: int(time.time()))
    content: str = ""
    reasoning_content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    usage: Usage | None = None
    done: bool = False


@dataclass
class ModelInfo:
    id: str
    name: str = ""
    provider: str = ""
    description: str = ""
    max_tokens: int = 0
    capabilities: list[str] = field(default_factory=list)
    supports_streaming: bool = True
    supports_tool_calling: bool = False
    supports_vision: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunningModel:
    name: str
    model: str = ""
    size: int = 0
    size_vram: int = 0
    digest: str = ""
    expires_at: str = ""


class OAuthCredentialSet(BaseModel):
    id: str = "default"
    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""
    expires_at: str | None = None  # RFC 3339
    scopes: list[str] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    type: ProviderType
    name: str = ""
    base_url: str = ""
    auth_mode: AuthMode | None = None
    api_key: str | None = None
    api_keys: list[str] = Field(default_factory=list)
    api_key_env: str | None = None
    oauth_credentials: list[OAuthCredentialSet] = Field(default_factory=list)
    default_model: str = ""
    provider_config: dict[str, Any] = Field(default_factory=dict)

    def resolved_auth_mode(self) -> AuthMode:
        if self.auth_mode is not None:
            return self.auth_mode
        if self.oauth_credentials:
            return AuthMode.OAUTH
        if self.api_keys:
            return AuthMode.API_KEY_LIST
        if self.api_key or self.api_key_env:
            return AuthMode.API_KEY
        return AuthMode.NONE

    @classmethod
    def from_mapping(cls, provider_type: str, section: dict[str, Any]) -> "ProviderConfig":
        """Build from a ``providers.<name>`` section of config.yaml."""
        data = dict(section or {})
        data.setdefault("type", data.pop("provider_type", provider_type))
        data.setdefault("name", provider_type)
        return cls.model_validate(data)


__all__ = [
    "ProviderType",
    "AuthMode",
    "ToolFormat",
    "ContentPartType",
    "FinishReason",
    "ContentPart",
    "ToolCall",
    "ChatMessage",
    "Tool",
    "ToolChoice",
    "Usage",
    "GenerateOptions",
    "ChatCompletionChunk",
    "ModelInfo",
    "RunningModel",
    "OAuthCredentialSet",
    "ProviderConfig",
]
