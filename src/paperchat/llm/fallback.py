"""
Provider registry with ordered fallback.

The active provider is tried first, then either the configured fallback order
or every other ready provider. A unit of work is re-run against the next
provider whenever it raises.
"""

import inspect
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from ..errors import AllProvidersFailedError, NoProvidersError
from .base import BaseLLM

logger = structlog.get_logger()

T = TypeVar("T")

FallbackCallback = Callable[[str, str, Exception], Any]

DEFAULT_MAX_RETRIES = 3


class ProviderManager:
    """Holds the configured providers and runs work with fallback."""

    def __init__(
        self,
        providers: dict[str, BaseLLM] | None = None,
        active_provider_id: str | None = None,
        fallback_provider_ids: list[str] | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        on_fallback: FallbackCallback | None = None,
    ):
        self._providers: dict[str, BaseLLM] = dict(providers or {})
        self.active_provider_id = active_provider_id or next(iter(self._providers), None)
        self.fallback_provider_ids = list(fallback_provider_ids or [])
        self.max_retries = max_retries
        self.on_fallback = on_fallback

    def register(self, provider_id: str, provider: BaseLLM) -> None:
        """Register a provider under an id."""
        self._providers[provider_id] = provider
        if self.active_provider_id is None:
            self.active_provider_id = provider_id
        logger.info("Provider registered", provider_id=provider_id, provider=provider.provider_name)

    def get(self, provider_id: str) -> BaseLLM | None:
        return self._providers.get(provider_id)

    def list_providers(self) -> list[str]:
        return list(self._providers.keys())

    def set_active_provider(self, provider_id: str) -> None:
        if provider_id not in self._providers:
            raise KeyError(f"Unknown provider: {provider_id}")
        self.active_provider_id = provider_id

    def get_active_provider(self) -> BaseLLM | None:
        if self.active_provider_id is None:
            return None
        return self._providers.get(self.active_provider_id)

    def get_fallback_chain(self) -> list[BaseLLM]:
        """Active provider first, then the fallback order (or all other ready providers)."""
        chain: list[BaseLLM] = []

        active = self.get_active_provider()
        if active is not None and active.is_ready():
            chain.append(active)

        if self.fallback_provider_ids:
            candidates = self.fallback_provider_ids
        else:
            candidates = list(self._providers.keys())

        for provider_id in candidates:
            if provider_id == self.active_provider_id:
                continue
            provider = self._providers.get(provider_id)
            if provider is not None and provider.is_ready() and provider not in chain:
                chain.append(provider)

        return chain

    async def execute_with_fallback(
        self,
        work: Callable[[BaseLLM], Awaitable[T]],
        on_fallback: FallbackCallback | None = None,
    ) -> T:
        """Run ``work`` against each provider in the chain until one succeeds.

        ``on_fallback`` (or the manager-level callback) is called with
        ``(from_name, to_name, error)`` before every switch; it may be a
        coroutine function, in which case it is awaited so the switch is
        recorded before the next attempt starts.

        Raises:
            NoProvidersError: no provider is ready.
            AllProvidersFailedError: every attempted provider raised.
        """
        chain = self.get_fallback_chain()
        if not chain:
            raise NoProvidersError()

        chain = chain[: max(1, self.max_retries)]
        notify = on_fallback or self.on_fallback
        errors: list[tuple[str, Exception]] = []

        for index, provider in enumerate(chain):
            try:
                logger.info(
                    "Attempting provider",
                    provider=provider.provider_name,
                    attempt=index + 1,
                )
                return await work(provider)
            except Exception as e:
                errors.append((provider.provider_name, e))
                logger.warning(
                    "Provider failed",
                    provider=provider.provider_name,
                    error=str(e),
                )

                if index + 1 < len(chain):
                    next_provider = chain[index + 1]
                    logger.info(
                        "Falling back to next provider",
                        from_provider=provider.provider_name,
                        to_provider=next_provider.provider_name,
                    )
                    if notify is not None:
                        result = notify(provider.provider_name, next_provider.provider_name, e)
                        if inspect.isawaitable(result):
                            await result

        raise AllProvidersFailedError(errors) from errors[-1][1]
