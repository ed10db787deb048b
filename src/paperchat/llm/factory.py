"""
LLM factory for creating provider instances.

Supports: Anthropic Claude, OpenAI GPT, OpenRouter.
"""

from ..config import LLMConfig, Settings
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .fallback import ProviderManager
from .openai import OpenAILLM


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create an LLM instance based on configuration.

    Provider routing:
    - anthropic -> AnthropicLLM (native Anthropic SDK)
    - openai -> OpenAILLM (native OpenAI SDK)
    - openrouter -> OpenAILLM (OpenAI-compatible endpoint)
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    provider = config.provider

    if provider == "anthropic":
        return AnthropicLLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "openai":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "openrouter":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url or "https://openrouter.ai/api/v1",
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            name="openrouter",
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")


def create_provider_manager(settings: Settings | None = None) -> ProviderManager:
    """Build a ProviderManager with every provider that has an API key.

    The default provider is always registered (even without a key) so the
    chat engine can report it as not ready instead of silently switching.
    """
    if settings is None:
        from ..config import get_settings
        settings = get_settings()

    manager = ProviderManager(
        active_provider_id=settings.default_provider,
        fallback_provider_ids=settings.fallback_providers_list,
        max_retries=settings.fallback_max_retries,
    )

    provider_ids = [settings.default_provider] + [
        p for p in settings.configured_providers if p != settings.default_provider
    ]
    for provider_id in provider_ids:
        manager.register(provider_id, create_llm(settings.get_llm_config(provider_id)))

    return manager
