"""
Global settings from environment variables.
"""

from typing import Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProvkitSettings(BaseSettings):
    """
    Global configuration loaded from environment variables.

    Library knobs are prefixed with PROVKIT_ (PROVKIT_HTTP_MAX_RETRIES=5).
    Provider keys use the conventional variable names (OPENAI_API_KEY, ...).
    """

    model_config = SettingsConfigDict(
        env_prefix="PROVKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
        populate_by_name=True,
    )

    # Core settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    config_path: str = "~/.provkit/config.yaml"

    # HTTP transport
    http_timeout: float = 60.0
    http_max_retries: int = 3
    http_base_delay: float = 1.0
    http_max_delay: float = 60.0
    http_backoff_multiplier: float = 2.0
    user_agent: str = "provkit/1.0"

    # Caches
    health_check_ttl: float = 30.0
    model_cache_ttl: float = 300.0

    # OAuth
    token_refresh_skew: float = 60.0

    # Provider keys
    openai_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("OPENAI_API_KEY", "PROVKIT_OPENAI_API_KEY")
    )
    anthropic_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "PROVKIT_ANTHROPIC_API_KEY"),
    )
    gemini_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("GEMINI_API_KEY", "PROVKIT_GEMINI_API_KEY")
    )
    qwen_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("QWEN_API_KEY", "PROVKIT_QWEN_API_KEY")
    )
    cerebras_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("CEREBRAS_API_KEY", "PROVKIT_CEREBRAS_API_KEY"),
    )
    openrouter_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "PROVKIT_OPENROUTER_API_KEY"),
    )
    ollama_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("OLLAMA_API_KEY", "PROVKIT_OLLAMA_API_KEY")
    )

    # OAuth clients for the CLI flows
    gemini_oauth_client_id: str | None = None
    gemini_oauth_client_secret: SecretStr | None = None
    qwen_oauth_client_id: str = "f0304373b74a44d2b584a3fb70ca9e56"

    def api_key_for(self, provider: str) -> str | None:
        """Environment-provided key for a provider type, if any."""
        value = getattr(self, f"{provider}_api_key", None)
        if value is None:
            return None
        return value.get_secret_value() or None


# Global settings instance (singleton)
settings = ProvkitSettings()


__all__ = ["ProvkitSettings", "settings"]
