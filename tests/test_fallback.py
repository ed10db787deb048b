"""
Tests for the provider manager and its fallback chain.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import FakeLLM
from paperchat.errors import AllProvidersFailedError, NoProvidersError
from paperchat.llm.fallback import ProviderManager


def test_chain_starts_with_active_provider():
    """Test that the active provider leads and unready providers are skipped."""
    alpha = FakeLLM(name="alpha")
    beta = FakeLLM(name="beta", ready=False)
    gamma = FakeLLM(name="gamma")
    manager = ProviderManager({"alpha": alpha, "beta": beta, "gamma": gamma}, active_provider_id="gamma")

    assert manager.get_fallback_chain() == [gamma, alpha]


def test_chain_follows_configured_order():
    """Test that an explicit fallback order is respected."""
    alpha, beta, gamma = FakeLLM(name="alpha"), FakeLLM(name="beta"), FakeLLM(name="gamma")
    manager = ProviderManager(
        {"alpha": alpha, "beta": beta, "gamma": gamma},
        fallback_provider_ids=["gamma", "unknown", "alpha"],
    )

    assert manager.get_fallback_chain() == [alpha, gamma]


def test_set_active_provider_unknown():
    """Test that selecting an unregistered provider fails."""
    manager = ProviderManager({"alpha": FakeLLM(name="alpha")})

    with pytest.raises(KeyError):
        manager.set_active_provider("missing")


@pytest.mark.asyncio
async def test_execute_falls_back_and_notifies():
    """Test that a failure moves to the next provider and awaits the callback."""
    alpha = FakeLLM(name="alpha")
    beta = FakeLLM(name="beta")
    manager = ProviderManager({"alpha": alpha, "beta": beta})
    error = RuntimeError("alpha is down")
    on_fallback = AsyncMock()

    async def work(provider):
        if provider is alpha:
            raise error
        return f"answered by {provider.provider_name}"

    result = await manager.execute_with_fallback(work, on_fallback=on_fallback)

    assert result == "answered by beta"
    on_fallback.assert_awaited_once_with("alpha", "beta", error)


@pytest.mark.asyncio
async def test_execute_all_fail():
    """Test that exhausting the chain raises with the last error."""
    manager = ProviderManager({"alpha": FakeLLM(name="alpha"), "beta": FakeLLM(name="beta")})
    switches = []

    async def work(provider):
        raise RuntimeError(f"{provider.provider_name} failed hard")

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await manager.execute_with_fallback(work, on_fallback=lambda *args: switches.append(args))

    assert str(exc_info.value) == "beta failed hard"
    assert [name for name, _ in exc_info.value.errors] == ["alpha", "beta"]
    assert exc_info.value.__cause__ is exc_info.value.last_error
    assert len(switches) == 1


@pytest.mark.asyncio
async def test_execute_without_providers():
    """Test that an empty chain is reported."""
    manager = ProviderManager({"alpha": FakeLLM(name="alpha", ready=False)})

    with pytest.raises(NoProvidersError):
        await manager.execute_with_fallback(AsyncMock())


@pytest.mark.asyncio
async def test_execute_respects_max_retries():
    """Test that only ``max_retries`` providers are attempted."""
    providers = {name: FakeLLM(name=name) for name in ("a", "b", "c")}
    manager = ProviderManager(providers, max_retries=2)
    attempted = []

    async def work(provider):
        attempted.append(provider.provider_name)
        raise RuntimeError("nope")

    with pytest.raises(AllProvidersFailedError):
        await manager.execute_with_fallback(work)

    assert attempted == ["a", "b"]
