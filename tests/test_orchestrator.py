"""
Tests for the chat orchestrator send flow.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import PAPER_TEXT, FakeLLM
from paperchat.chat import ChatCallbacks, ContextConfig, format_tool_call_card, get_string
from paperchat.chat.types import FileAttachment, Message, MessageRole, SendOptions
from paperchat.llm import OpenAILLM
from paperchat.llm.base import (
    Capability,
    LLMResponse,
    PdfAttachment,
    StreamComplete,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
)

TOOLS = [Capability.TOOL_CALLING]
STREAMING_TOOLS = [Capability.TOOL_CALLING, Capability.STREAMING_TOOL_CALLING]


def roles(session):
    return [m.role for m in session.messages]


@pytest.mark.asyncio
async def test_send_without_ready_provider(make_orchestrator):
    """Test that a missing provider yields one configuration message and no request."""
    provider = FakeLLM(ready=False)
    orchestrator = make_orchestrator(provider)

    await orchestrator.send_message("Hello")

    session = orchestrator.active_session
    assert roles(session) == [MessageRole.ASSISTANT]
    assert session.messages[0].content == get_string("chat-error-no-provider")
    assert provider.calls == []


@pytest.mark.asyncio
async def test_send_with_keyless_openai_provider(make_orchestrator):
    """Test that an OpenAI provider without an API key reports the configuration message."""
    orchestrator = make_orchestrator(OpenAILLM(api_key=""))

    await orchestrator.send_message("Hello")

    messages = orchestrator.active_session.messages
    assert [(m.role, m.content) for m in messages] == [
        (MessageRole.ASSISTANT, get_string("chat-error-no-provider")),
    ]


@pytest.mark.asyncio
async def test_plain_streaming_reply(make_orchestrator):
    """Test a plain streamed answer is broadcast, persisted and completed."""
    provider = FakeLLM(chunks=["Hel", "lo"])
    orchestrator = make_orchestrator(provider)
    updates = []
    complete = MagicMock()
    orchestrator.set_callbacks(ChatCallbacks(
        on_streaming_update=updates.append,
        on_message_complete=complete,
    ))

    await orchestrator.send_message("Hi")

    session = orchestrator.active_session
    assert [(m.role, m.content) for m in session.messages] == [
        (MessageRole.USER, "Hi"),
        (MessageRole.ASSISTANT, "Hello"),
    ]
    assert updates == ["Hel", "Hello"]
    complete.assert_called_once()
    assert not orchestrator.is_streaming(session.id)

    # The placeholder is not part of the history sent to the model
    assert [(m.role, m.content) for m in provider.calls[0]] == [("user", "Hi")]

    stored = await orchestrator.store.load_session(session.id)
    assert [m.content for m in stored.messages] == ["Hi", "Hello"]


@pytest.mark.asyncio
async def test_fallback_inserts_single_notice(make_orchestrator):
    """Test that a failing provider falls back with exactly one notice."""
    failing = FakeLLM(name="alpha", error=RuntimeError("alpha is down"))
    backup = FakeLLM(name="beta", chunks=["From ", "beta"])
    orchestrator = make_orchestrator(failing, backup)
    switches = []
    orchestrator.set_callbacks(ChatCallbacks(on_fallback_notice=lambda a, b: switches.append((a, b))))

    await orchestrator.send_message("Hi")

    session = orchestrator.active_session
    notices = [m for m in session.messages if m.role == MessageRole.SYSTEM]
    assert len(notices) == 1
    assert notices[0].is_system_notice is True
    assert notices[0].content == "⚠️ alpha unavailable, switching to beta..."
    assert switches == [("alpha", "beta")]

    answers = [m for m in session.messages if m.role == MessageRole.ASSISTANT]
    assert [m.content for m in answers] == ["From beta"]
    assert MessageRole.ERROR not in roles(session)
    # The notice lands after the placeholder that becomes the answer
    assert roles(session) == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.SYSTEM]


@pytest.mark.asyncio
async def test_all_providers_fail(make_orchestrator):
    """Test that total failure replaces the placeholder with one error message."""
    first = FakeLLM(name="alpha", error=RuntimeError("alpha is down"))
    second = FakeLLM(name="beta", error=RuntimeError("beta is down"))
    orchestrator = make_orchestrator(first, second)
    on_error = MagicMock()
    orchestrator.set_callbacks(ChatCallbacks(on_error=on_error))

    await orchestrator.send_message("Hi")

    session = orchestrator.active_session
    assert roles(session) == [MessageRole.USER, MessageRole.SYSTEM, MessageRole.ERROR]
    assert session.messages[-1].content == "beta is down"
    on_error.assert_called_once()

    stored = await orchestrator.store.load_session(session.id)
    assert roles(stored) == [MessageRole.USER, MessageRole.SYSTEM, MessageRole.ERROR]


@pytest.mark.asyncio
async def test_tool_loop_persists_cards_and_answer(make_orchestrator):
    """Test one tool round followed by a final answer."""
    call = ToolCall.from_json("call_1", "search_paper_content", '{"query": "attention"}')
    provider = FakeLLM(
        capabilities=TOOLS,
        responses=[
            LLMResponse(content="", tool_calls=[call]),
            LLMResponse(content="Final answer"),
        ],
    )
    orchestrator = make_orchestrator(provider)

    await orchestrator.send_message("What is attention?", SendOptions(item_key="P1"))

    assert len(provider.calls) == 2
    first, second = provider.calls
    tool_output = second[-1].content
    assert tool_output.startswith('Found ')
    assert "attention" in tool_output

    assert first[0].role == "system"
    assert second[: len(first)] == first
    assert len(second) == len(first) + 2
    assert second[-2].role == "assistant"
    assert second[-2].tool_calls == [call]
    assert second[-1].role == "tool"
    assert second[-1].tool_call_id == "call_1"

    raw = '{"query": "attention"}'
    expected = (
        format_tool_call_card("search_paper_content", raw, "calling")
        + format_tool_call_card("search_paper_content", raw, "completed", tool_output)
        + "Final answer"
    )
    session = orchestrator.active_session
    assert session.messages[-1].content == expected

    stored = await orchestrator.store.load_session(session.id)
    assert stored.messages[-1].content == expected


@pytest.mark.asyncio
async def test_streaming_tool_loop(make_orchestrator):
    """Test the streamed agent loop keeps round text, cards and the answer in order."""
    provider = FakeLLM(
        capabilities=STREAMING_TOOLS,
        turns=[
            [
                TextDelta(text="Let me check. "),
                ToolCallStart(index=0, id="call_1", name="get_page_count"),
                ToolCallDelta(index=0, arguments_delta="{"),
                ToolCallDelta(index=0, arguments_delta="}"),
                StreamComplete(stop_reason="tool_use"),
            ],
            [
                TextDelta(text="The paper has "),
                TextDelta(text="1 page."),
                StreamComplete(),
            ],
        ],
    )
    orchestrator = make_orchestrator(provider)
    updates = []
    orchestrator.set_callbacks(ChatCallbacks(on_streaming_update=updates.append))

    await orchestrator.send_message("How long is it?", SendOptions(item_key="P1"))

    tool_output = provider.calls[1][-1].content
    assert tool_output.startswith("Page count: 1")

    expected = (
        "Let me check. "
        + format_tool_call_card("get_page_count", "{}", "calling")
        + format_tool_call_card("get_page_count", "{}", "completed", tool_output)
        + "The paper has 1 page."
    )
    assert orchestrator.active_session.messages[-1].content == expected
    assert updates[0] == "Let me check. "
    assert updates[-1] == expected


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result(make_orchestrator):
    """Test that a raising tool feeds an error string back instead of aborting."""
    call = ToolCall.from_json("call_1", "get_page_count", "{}")
    provider = FakeLLM(
        capabilities=TOOLS,
        responses=[
            LLMResponse(content="", tool_calls=[call]),
            LLMResponse(content="Sorry, I could not read it."),
        ],
    )
    orchestrator = make_orchestrator(provider)
    orchestrator.tool_executor.execute_tool_call = AsyncMock(side_effect=RuntimeError("kaput"))

    await orchestrator.send_message("Pages?", SendOptions(item_key="P1"))

    assert provider.calls[1][-1].content == "Error: Tool execution failed: kaput"
    session = orchestrator.active_session
    assert session.messages[-1].content.endswith("Sorry, I could not read it.")
    assert MessageRole.ERROR not in roles(session)


@pytest.mark.asyncio
async def test_agent_loop_exhaustion_apologizes(make_orchestrator):
    """Test that hitting the iteration cap ends with the apology, not an error."""
    call = ToolCall.from_json("call_1", "get_page_count", "{}")
    provider = FakeLLM(capabilities=TOOLS, responses=[LLMResponse(content="", tool_calls=[call])])
    orchestrator = make_orchestrator(provider, max_tool_iterations=3)

    await orchestrator.send_message("Loop forever", SendOptions(item_key="P1"))

    assert len(provider.calls) == 3
    session = orchestrator.active_session
    assert session.messages[-1].role == MessageRole.ASSISTANT
    assert session.messages[-1].content.endswith("\n\n" + get_string("loop-exhausted"))
    assert MessageRole.ERROR not in roles(session)


@pytest.mark.asyncio
async def test_fallback_to_provider_without_tools(make_orchestrator):
    """Test that a tool-calling attempt on a provider without tools fails over to an error."""
    first = FakeLLM(name="alpha", capabilities=TOOLS, error=RuntimeError("alpha is down"))
    second = FakeLLM(name="beta", chunks=["never used"])
    orchestrator = make_orchestrator(first, second)

    await orchestrator.send_message("Hi", SendOptions(item_key="P1"))

    session = orchestrator.active_session
    assert session.messages[-1].role == MessageRole.ERROR
    assert session.messages[-1].content == "Provider beta does not support tool calling"
    assert second.calls == []


@pytest.mark.asyncio
async def test_switch_back_while_streaming_reuses_session(make_orchestrator):
    """Test the streaming registry and UI gating across session switches."""
    provider = FakeLLM(chunks=["one ", "two"])
    provider.gate = asyncio.Event()
    orchestrator = make_orchestrator(provider)
    await orchestrator.init()
    sending = orchestrator.active_session

    updates = []
    complete = MagicMock()
    orchestrator.set_callbacks(ChatCallbacks(
        on_streaming_update=updates.append,
        on_message_complete=complete,
    ))

    task = asyncio.create_task(orchestrator.send_message("Hi"))
    await provider.paused.wait()
    assert orchestrator.is_streaming(sending.id)

    other = await orchestrator.create_new_session()
    assert orchestrator.active_session is other

    back = await orchestrator.switch_session(sending.id)
    assert back is sending

    await orchestrator.create_new_session()
    provider.gate.set()
    await task

    # The second chunk and completion arrived while another session was on screen
    assert updates == ["one "]
    complete.assert_not_called()
    assert not orchestrator.is_streaming(sending.id)
    assert sending.messages[-1].content == "one two"

    reloaded = await orchestrator.switch_session(sending.id)
    assert reloaded is not sending
    assert reloaded.messages[-1].content == "one two"


@pytest.mark.asyncio
async def test_paper_switch_notices(make_orchestrator):
    """Test that changing the paper inserts a notice before the user message."""
    provider = FakeLLM(chunks=["ok"])
    orchestrator = make_orchestrator(provider)

    await orchestrator.send_message("First", SendOptions(item_key="P1"))
    await orchestrator.send_message("Second")
    orchestrator.set_current_item_key(None)
    await orchestrator.send_message("Third")

    session = orchestrator.active_session
    notices = [m.content for m in session.messages if m.is_system_notice]
    assert notices == [
        '--- Switched to paper: "Attention Is All You Need" ---',
        "--- No paper selected ---",
    ]
    assert session.messages[0].is_system_notice
    assert session.messages[1].role == MessageRole.USER
    assert session.last_active_item_key is None

    # Notices are conversational and reach the model
    assert provider.calls[0][0].content == notices[0]


@pytest.mark.asyncio
async def test_plain_mode_inlines_paper_and_context(make_orchestrator):
    """Test user content assembly with paper text, files and selected text."""
    provider = FakeLLM(chunks=["ok"])
    orchestrator = make_orchestrator(provider)
    pdf_attached = MagicMock()
    orchestrator.set_callbacks(ChatCallbacks(on_pdf_attached=pdf_attached))

    await orchestrator.send_message(
        "Explain this",
        SendOptions(
            item_key="P1",
            selected_text="multi-head",
            files=[FileAttachment(name="notes.txt", content="my notes")],
        ),
    )

    user = [m for m in orchestrator.active_session.messages if m.role == MessageRole.USER][0]
    assert user.content == (
        f"[PDF Content]:\n{PAPER_TEXT}\n\n"
        "[File: notes.txt]\nmy notes\n\n"
        '[Selected text from PDF]:\n"multi-head"\n\n'
        "[Question]:\nExplain this"
    )
    assert user.pdf_context is True
    pdf_attached.assert_called_once()


@pytest.mark.asyncio
async def test_selected_text_without_paper(make_orchestrator):
    """Test the selected-text prefix when no paper is open."""
    provider = FakeLLM(chunks=["ok"])
    orchestrator = make_orchestrator(provider)

    await orchestrator.send_message("Why?", SendOptions(selected_text="a quote"))

    user = orchestrator.active_session.messages[0]
    assert user.content == '[Selected text]:\n"a quote"\n\n[Question]:\nWhy?'
    assert user.pdf_context is False


@pytest.mark.asyncio
async def test_raw_pdf_upload_when_text_missing(make_orchestrator):
    """Test the raw PDF fallback for providers that accept documents."""
    provider = FakeLLM(capabilities=[Capability.PDF_UPLOAD], chunks=["ok"])
    orchestrator = make_orchestrator(provider, upload_raw_pdf_on_failure=True)

    await orchestrator.send_message("Summarize", SendOptions(item_key="P2"))

    attachment = provider.attachments[0]
    assert isinstance(attachment, PdfAttachment)
    assert attachment.data == "JVBERi0xLjQK"
    user = [m for m in orchestrator.active_session.messages if m.role == MessageRole.USER][0]
    assert user.content == "Summarize"
    assert user.pdf_context is True


@pytest.mark.asyncio
async def test_concurrent_sends_are_serialized(make_orchestrator):
    """Test that a double submit runs one send after the other."""
    provider = FakeLLM(chunks=["reply"])
    orchestrator = make_orchestrator(provider)
    await orchestrator.init()

    await asyncio.gather(
        orchestrator.send_message("one"),
        orchestrator.send_message("two"),
    )

    contents = [m.content for m in orchestrator.active_session.messages]
    assert contents == ["one", "reply", "two", "reply"]
    assert [m.content for m in provider.calls[1]] == ["one", "reply", "two"]
    assert orchestrator._send_locks == {}
    assert orchestrator._send_waiters == {}


@pytest.mark.asyncio
async def test_summary_scheduled_after_answer(make_orchestrator):
    """Test that a triggered summary runs in the background and is persisted."""
    provider = FakeLLM(chunks=["answer"], responses=[LLMResponse(content="A summary")])
    config = ContextConfig(max_recent_pairs=1, enable_summary=True, summary_threshold=4)
    orchestrator = make_orchestrator(provider, context_config=config)

    session = await orchestrator.store.create_session()
    session.messages = [
        Message(role=MessageRole.USER, content="q1"),
        Message(role=MessageRole.ASSISTANT, content="a1"),
        Message(role=MessageRole.USER, content="q2"),
        Message(role=MessageRole.ASSISTANT, content="a2"),
    ]
    older_ids = [m.id for m in session.messages]
    await orchestrator.store.save_session(session)

    await orchestrator.init()
    await orchestrator.send_message("q3")
    current = orchestrator.active_session

    # The window is one pair: the new question plus its placeholder
    assert [m.content for m in provider.calls[0]] == ["q3"]

    await orchestrator.close()

    assert current.context_summary.content == "A summary"
    assert current.context_summary.covered_message_ids == older_ids
    assert current.context_state.last_summary_message_count == 6
    assert current.context_state.summary_in_progress is False

    stored = await orchestrator.store.load_session(current.id)
    assert stored.context_summary.content == "A summary"


@pytest.mark.asyncio
async def test_auth_failure_refreshes_credentials(make_orchestrator):
    """Test one forced token refresh on an auth error before the error surfaces."""
    provider = FakeLLM(
        capabilities=[Capability.CREDENTIAL_REFRESH],
        error=RuntimeError("API Error: 401 Unauthorized"),
    )
    credentials = MagicMock()
    credentials.ensure_token = AsyncMock(return_value="token")
    orchestrator = make_orchestrator(provider, credential_manager=credentials)

    await orchestrator.send_message("Hi")

    credentials.ensure_token.assert_awaited_once_with(force_refresh=True)
    assert orchestrator.active_session.messages[-1].role == MessageRole.ERROR


@pytest.mark.asyncio
async def test_clear_and_delete_session(make_orchestrator):
    """Test clearing the current session and deleting it."""
    provider = FakeLLM(chunks=["ok"])
    orchestrator = make_orchestrator(provider)
    await orchestrator.send_message("Hi")
    session = orchestrator.active_session

    await orchestrator.clear_current_session()
    assert session.messages == []
    stored = await orchestrator.store.load_session(session.id)
    assert stored.messages == []

    await orchestrator.delete_session(session.id)
    assert await orchestrator.store.load_session(session.id) is None
    assert orchestrator.active_session is not None
    assert orchestrator.active_session.id != session.id


@pytest.mark.asyncio
async def test_show_error_message(make_orchestrator):
    """Test that error text is shown as an assistant message."""
    orchestrator = make_orchestrator(FakeLLM())

    await orchestrator.show_error_message("Something went wrong")

    message = orchestrator.active_session.messages[-1]
    assert message.role == MessageRole.ASSISTANT
    assert message.content == "Something went wrong"


@pytest.mark.asyncio
async def test_item_selection(make_orchestrator):
    """Test multi-paper selection updates the session and notifies the UI."""
    orchestrator = make_orchestrator(FakeLLM())
    changes = []
    orchestrator.set_callbacks(ChatCallbacks(on_selected_items_change=changes.append))
    await orchestrator.init()

    orchestrator.add_item_to_selection("P1")
    orchestrator.add_item_to_selection("P2")
    orchestrator.add_item_to_selection("P1")

    assert orchestrator.current_item_keys == ["P1", "P2"]
    assert orchestrator.current_item_key == "P1"
    assert orchestrator.tool_executor.current_item_key == "P1"
    assert orchestrator.tool_executor.current_item_keys == ["P1", "P2"]
    assert orchestrator.active_session.last_active_item_keys == ["P1", "P2"]

    orchestrator.remove_item_from_selection("P1")
    assert orchestrator.current_item_key == "P2"

    orchestrator.clear_item_selection()
    assert orchestrator.current_item_keys == []
    assert changes == [["P1"], ["P1", "P2"], ["P2"], []]


@pytest.mark.asyncio
async def test_paper_switch_resets_selection(make_orchestrator):
    """Test that sending with another paper replaces the stored multi-paper selection."""
    provider = FakeLLM(chunks=["ok"])
    orchestrator = make_orchestrator(provider)
    await orchestrator.init()
    session_id = orchestrator.active_session.id

    orchestrator.set_current_item_keys(["P1", "P2"])
    await orchestrator.send_message("Compare them")
    assert orchestrator.active_session.last_active_item_keys == ["P1", "P2"]

    await orchestrator.send_message("Only the second", SendOptions(item_key="P2"))
    assert orchestrator.active_session.last_active_item_keys == ["P2"]

    await orchestrator.create_new_session()
    await orchestrator.switch_session(session_id)

    assert orchestrator.current_item_key == "P2"
    assert orchestrator.current_item_keys == ["P2"]
