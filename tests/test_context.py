"""
Tests for context window management.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeLLM
from paperchat.chat.context import SUMMARY_MESSAGE_ID, ContextConfig, ContextWindowManager
from paperchat.chat.types import ContextState, ContextSummary, Message, MessageRole, Session
from paperchat.llm.base import LLMResponse
from paperchat.llm.fallback import ProviderManager


def make_session(count: int) -> Session:
    """Session with ``count`` alternating user/assistant messages."""
    session = Session()
    for i in range(count):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
        session.messages.append(Message(role=role, content=f"message {i}"))
    return session


def make_manager(provider=None, **config) -> ContextWindowManager:
    manager = ProviderManager({provider.provider_name: provider}) if provider else None
    return ContextWindowManager(manager, ContextConfig(**config))


def test_filter_keeps_recent_window_and_system_messages():
    """Test that only the last pairs and durable system messages are kept."""
    session = make_session(6)
    system = Message(role=MessageRole.SYSTEM, content="You are helpful.")
    session.messages.insert(0, system)
    question = Message(role=MessageRole.USER, content="new question")
    placeholder = Message(role=MessageRole.ASSISTANT, content="")
    session.messages.extend([question, placeholder])

    result = make_manager(max_recent_pairs=2).filter_messages(session)

    assert result.messages == [system, session.messages[5], session.messages[6], question, placeholder]
    assert all(m.id != SUMMARY_MESSAGE_ID for m in result.messages)
    assert result.summary_triggered is False


def test_filter_excludes_error_messages():
    """Test that error messages never reach the model."""
    session = make_session(2)
    session.messages.append(Message(role=MessageRole.ERROR, content="boom"))

    result = make_manager().filter_messages(session)

    assert [m.role for m in result.messages] == [MessageRole.USER, MessageRole.ASSISTANT]


def test_filter_counts_notices_in_window():
    """Test that system notices ride in the conversational window."""
    session = make_session(4)
    notice = Message(role=MessageRole.SYSTEM, content="--- No paper selected ---", is_system_notice=True)
    session.messages.append(notice)

    result = make_manager(max_recent_pairs=1).filter_messages(session)

    assert result.messages == [session.messages[3], notice]


def test_summary_precedes_recent_window():
    """Test that the summary message sits between system messages and the window."""
    session = make_session(10)
    system = Message(role=MessageRole.SYSTEM, content="Rules")
    session.messages.insert(0, system)
    session.context_summary = ContextSummary(content="Earlier we talked.")

    result = make_manager(max_recent_pairs=1).filter_messages(session)

    assert result.messages[0] is system
    assert result.messages[1].id == SUMMARY_MESSAGE_ID
    assert result.messages[1].role == MessageRole.SYSTEM
    assert result.messages[1].content == "[Previous conversation summary]: Earlier we talked."
    assert [m.content for m in result.messages[2:]] == ["message 8", "message 9"]


def test_summary_trigger_hysteresis():
    """Test the threshold and half-threshold growth requirement."""
    manager = make_manager(enable_summary=True, summary_threshold=20)

    session = make_session(19)
    assert manager.filter_messages(session).summary_triggered is False

    session = make_session(20)
    assert manager.filter_messages(session).summary_triggered is True

    session.context_state = ContextState(last_summary_message_count=15)
    assert manager.filter_messages(session).summary_triggered is False

    session.context_state = ContextState(last_summary_message_count=10)
    assert manager.filter_messages(session).summary_triggered is True


def test_summary_disabled_never_triggers():
    """Test that the trigger is off unless summaries are enabled."""
    manager = make_manager(summary_threshold=2)
    assert manager.filter_messages(make_session(30)).summary_triggered is False


@pytest.mark.asyncio
async def test_generate_summary_covers_older_messages():
    """Test that only messages outside the recent window are summarized."""
    provider = FakeLLM(responses=[LLMResponse(content="  The summary.  ")])
    manager = make_manager(provider, max_recent_pairs=2)
    session = make_session(10)
    on_persist = AsyncMock()

    await manager.generate_summary(session, on_persist=on_persist)

    assert session.context_summary.content == "The summary."
    assert session.context_summary.covered_message_ids == [m.id for m in session.messages[:6]]
    assert session.context_summary.message_count_at_creation == 10
    assert session.context_state.last_summary_message_count == 10
    assert session.context_state.summary_in_progress is False
    on_persist.assert_awaited_once()

    prompt = provider.calls[0][0].content
    assert "USER: message 0" in prompt
    assert "ASSISTANT: message 5" in prompt
    assert "message 6" not in prompt
    assert provider.system_prompts[0]


@pytest.mark.asyncio
async def test_generate_summary_skips_short_history():
    """Test that fewer than four candidates are left alone, but persist still runs."""
    provider = FakeLLM(responses=[LLMResponse(content="unused")])
    manager = make_manager(provider, max_recent_pairs=2)
    session = make_session(7)
    on_persist = AsyncMock()

    await manager.generate_summary(session, on_persist=on_persist)

    assert session.context_summary is None
    assert provider.calls == []
    on_persist.assert_awaited_once()


@pytest.mark.asyncio
async def test_generate_summary_failure_keeps_previous():
    """Test that a failing summarizer keeps the old summary."""
    provider = FakeLLM(error=RuntimeError("rate limited"))
    manager = make_manager(provider, max_recent_pairs=1)
    session = make_session(10)
    previous = ContextSummary(content="old")
    session.context_summary = previous
    on_persist = AsyncMock()

    await manager.generate_summary(session, on_persist=on_persist)

    assert session.context_summary is previous
    assert session.context_state.summary_in_progress is False
    assert manager.is_summary_in_progress(session) is False
    on_persist.assert_awaited_once()


@pytest.mark.asyncio
async def test_generate_summary_not_concurrent():
    """Test that a second request for the same session is ignored while one runs."""
    provider = FakeLLM(responses=[LLMResponse(content="summary")])
    release = asyncio.Event()
    original_generate = provider.generate

    async def slow_generate(*args, **kwargs):
        await release.wait()
        return await original_generate(*args, **kwargs)

    provider.generate = slow_generate
    manager = make_manager(provider, max_recent_pairs=1)
    session = make_session(10)

    first = asyncio.create_task(manager.generate_summary(session))
    await asyncio.sleep(0)
    assert manager.is_summary_in_progress(session)

    await manager.generate_summary(session)
    release.set()
    await first

    assert len(provider.calls) == 1
    assert session.context_summary.content == "summary"


@pytest.mark.asyncio
async def test_generate_summary_respects_stale_flag():
    """Test that a persisted in-progress flag also blocks summarization."""
    provider = FakeLLM(responses=[LLMResponse(content="summary")])
    manager = make_manager(provider, max_recent_pairs=1)
    session = make_session(10)
    session.context_state = ContextState(summary_in_progress=True)

    await manager.generate_summary(session)

    assert provider.calls == []
    assert session.context_summary is None


@pytest.mark.asyncio
async def test_generate_summary_stops_at_budget():
    """Test that the transcript keeps the oldest messages that fit the budget."""
    provider = FakeLLM(responses=[LLMResponse(content="summary")])
    # The first four entries take 78 characters
    manager = make_manager(provider, max_recent_pairs=1, max_summary_input_chars=80)
    session = make_session(12)

    await manager.generate_summary(session)

    assert session.context_summary.covered_message_ids == [m.id for m in session.messages[:4]]
    assert "message 4" not in provider.calls[0][0].content


def test_clear_summary():
    """Test that clearing drops the summary and resets the watermark."""
    manager = make_manager()
    session = make_session(4)
    session.context_summary = ContextSummary(content="old")
    session.context_state = ContextState(last_summary_message_count=4)

    manager.clear_summary(session)

    assert session.context_summary is None
    assert session.context_state.last_summary_message_count == 0


def test_config_from_settings():
    """Test building the context config from settings."""
    from paperchat.config import Settings

    settings = Settings(
        _env_file=None,
        context_max_recent_pairs=3,
        context_enable_summary=True,
        context_summary_threshold=8,
    )
    config = ContextConfig.from_settings(settings)

    assert config.max_recent_pairs == 3
    assert config.recent_message_count == 6
    assert config.enable_summary is True
    assert config.summary_threshold == 8
