"""
Configuration management for PaperChat

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["anthropic", "openai", "openrouter"]


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: ProviderName = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "PaperChat"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")

    # Default model settings
    default_provider: ProviderName = "anthropic"
    default_model: str = Field(default="", description="Model override for the default provider")
    max_tokens: int = 4096
    temperature: float = 0.7

    # Fallback
    fallback_providers: str = Field(
        default="",
        description="Comma-separated provider order to try after the default one (empty = all ready providers)",
    )
    fallback_max_retries: int = Field(default=3, description="Max providers tried per request")

    # Context window
    context_max_recent_pairs: int = Field(default=10, description="Recent user/assistant pairs sent verbatim")
    context_enable_summary: bool = Field(default=False, description="Summarize older history in the background")
    context_summary_threshold: int = Field(default=20, description="Conversation size that triggers a summary")
    summary_max_input_chars: int = Field(default=30_000, description="Character budget for summarizer input")

    # Agent loop
    max_tool_iterations: int = Field(default=10, description="Max model round-trips per message")
    upload_raw_pdf_on_failure: bool = Field(
        default=False,
        description="Send the raw PDF when text extraction fails and the provider accepts PDFs",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/paperchat.db",
        description="Database connection URL"
    )
    max_sessions: int = Field(default=1000, description="Oldest sessions beyond this count are evicted")

    @field_validator("fallback_providers", mode="before")
    @classmethod
    def parse_fallback_providers(cls, v: str) -> str:
        return v.strip() if v else ""

    @property
    def fallback_providers_list(self) -> list[str]:
        """Get the configured fallback order."""
        if not self.fallback_providers:
            return []
        return [p.strip() for p in self.fallback_providers.split(",") if p.strip()]

    @property
    def configured_providers(self) -> list[str]:
        """Providers that have an API key set."""
        keys = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }
        return [name for name, key in keys.items() if key]

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "openrouter": "anthropic/claude-sonnet-4",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        model = model_map.get(provider, "")
        if provider == self.default_provider and self.default_model:
            model = self.default_model

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
