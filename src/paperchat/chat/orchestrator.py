"""
Chat orchestrator: drives one ``send_message`` call end to end.

For every send it:
1. Resolves the target session and pins a reference to it
2. Records paper switches as notices in the history
3. Assembles the user turn (selected text, files, inline paper text)
4. Runs either the tool-calling agent loop or a plain stream, with provider fallback
5. Persists the outcome and notifies the UI, but only while that session is on screen
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from ..auth import CredentialManager
from ..config import Settings, get_settings
from ..documents import DocumentSource
from ..errors import ToolCallingUnsupportedError, error_message, is_auth_error
from ..llm.base import (
    BaseLLM,
    Capability,
    LLMMessage,
    PdfAttachment,
    StreamComplete,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolDefinition,
)
from ..llm.fallback import ProviderManager
from ..tools.parser import PaperStructure
from ..tools.prompts import generate_paper_context_prompt
from ..tools.registry import ToolExecutor
from .cards import format_tool_call_card
from .context import ContextWindowManager
from .store import SessionStore
from .strings import get_string
from .types import Message, MessageRole, SendOptions, Session, SessionMeta, now_ms

logger = structlog.get_logger()

MAX_INLINE_PDF_CHARS = 50_000


@dataclass
class ChatCallbacks:
    """UI hooks. All optional; each fires only for the session on screen."""

    on_message_update: Callable[[list[Message]], Any] | None = None
    on_streaming_update: Callable[[str], Any] | None = None
    on_error: Callable[[Exception], Any] | None = None
    on_pdf_attached: Callable[[], Any] | None = None
    on_message_complete: Callable[[], Any] | None = None
    on_selected_items_change: Callable[[list[str]], Any] | None = None
    on_fallback_notice: Callable[[str, str], Any] | None = None


@dataclass
class _SendContext:
    """Per-call state shared by the execution modes."""

    session: Session
    assistant: Message
    history: list[LLMMessage]
    item_key: str | None
    paper: PaperStructure | None
    pdf_attached: bool
    summary_triggered: bool
    attachment: PdfAttachment | None = None


class ChatOrchestrator:
    """Owns the current session, the streaming registry and the send flow."""

    def __init__(
        self,
        store: SessionStore,
        provider_manager: ProviderManager,
        tool_executor: ToolExecutor,
        context_manager: ContextWindowManager,
        document_source: DocumentSource | None = None,
        credential_manager: CredentialManager | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.provider_manager = provider_manager
        self.tool_executor = tool_executor
        self.context_manager = context_manager
        self.document_source = document_source
        self.credential_manager = credential_manager
        self.max_tool_iterations = self.settings.max_tool_iterations

        self.callbacks = ChatCallbacks()
        self._current_session: Session | None = None
        self._current_item_key: str | None = None
        self._current_item_keys: list[str] = []

        # Sessions with a send in flight. Only the send that owns an id writes its entry.
        self._streaming_sessions: dict[str, Session] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}
        # Sends holding or waiting on each lock; the lock is dropped at zero.
        self._send_waiters: dict[str, int] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        if self._initialized:
            return

        await self.store.init()
        self._current_session = await self.store.get_or_create_active_session()
        self._restore_item_keys(self._current_session)
        self._initialized = True

        logger.info("Chat orchestrator initialized", session_id=self._current_session.id)

    async def close(self) -> None:
        """Wait for background summaries, then flush the current session."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        if self._current_session is not None:
            await self.store.update_session_meta(self._current_session)

        self.context_manager.close()
        self._streaming_sessions.clear()
        self._current_session = None
        self._current_item_key = None
        self._current_item_keys = []
        self._initialized = False

    def set_callbacks(self, callbacks: ChatCallbacks) -> None:
        self.callbacks = callbacks

    # ------------------------------------------------------------------
    # UI gating
    # ------------------------------------------------------------------

    def _is_visible(self, session: Session) -> bool:
        return self._current_session is session

    def _notify(self, session: Session, name: str, *args: Any) -> None:
        """Invoke a UI callback if ``session`` is the one on screen."""
        if not self._is_visible(session):
            return
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("UI callback failed", callback=name, error=str(e))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @property
    def active_session(self) -> Session | None:
        return self._current_session

    def is_streaming(self, session_id: str) -> bool:
        return session_id in self._streaming_sessions

    async def create_new_session(self) -> Session:
        await self.init()
        self._current_session = await self.store.create_session()
        self._restore_item_keys(self._current_session)
        return self._current_session

    async def switch_session(self, session_id: str) -> Session | None:
        """Make ``session_id`` current.

        A session with a send in flight is reused as the exact in-memory
        object so live updates resume; otherwise it is loaded from the store.
        """
        await self.init()

        session = self._streaming_sessions.get(session_id)
        if session is None:
            session = await self.store.load_session(session_id)
        if session is None:
            logger.warning("Session not found", session_id=session_id)
            return None

        self._current_session = session
        await self.store.set_active_session(session_id)
        self._restore_item_keys(session)
        return session

    async def delete_session(self, session_id: str) -> None:
        await self.init()
        await self.store.delete_session(session_id)

        self.context_manager.on_session_deleted(session_id)
        self._streaming_sessions.pop(session_id, None)
        self._send_locks.pop(session_id, None)
        self._send_waiters.pop(session_id, None)

        if self._current_session is not None and self._current_session.id == session_id:
            self._current_session = await self.store.get_or_create_active_session()
            self._restore_item_keys(self._current_session)

    async def list_sessions(self) -> list[SessionMeta]:
        await self.init()
        return await self.store.list_sessions()

    async def clear_current_session(self) -> None:
        """Drop all messages and summary state of the current session."""
        session = self._current_session
        if session is None:
            return

        session.messages = []
        session.context_summary = None
        session.context_state = None
        session.last_active_item_key = None
        session.last_active_item_keys = []
        session.updated_at = now_ms()

        await self.store.delete_all_messages(session.id)
        await self.store.update_session_meta(session)
        self._notify(session, "on_message_update", session.messages)

    async def show_error_message(self, content: str) -> None:
        """Append an assistant-role message with ``content`` to the current session."""
        await self.init()
        session = self._current_session
        message = Message(role=MessageRole.ASSISTANT, content=content)
        session.messages.append(message)
        await self.store.insert_message(session.id, message)
        self._notify(session, "on_message_update", session.messages)

    # ------------------------------------------------------------------
    # Document selection
    # ------------------------------------------------------------------

    @property
    def current_item_key(self) -> str | None:
        return self._current_item_key

    @property
    def current_item_keys(self) -> list[str]:
        return list(self._current_item_keys)

    def _restore_item_keys(self, session: Session) -> None:
        self._current_item_key = session.last_active_item_key
        if session.last_active_item_keys:
            self._current_item_keys = list(session.last_active_item_keys)
        else:
            self._current_item_keys = [self._current_item_key] if self._current_item_key else []
        self.tool_executor.current_item_key = self._current_item_key
        self.tool_executor.current_item_keys = list(self._current_item_keys)

    def set_current_item_key(self, item_key: str | None) -> None:
        """Select a single paper."""
        self._current_item_key = item_key
        self._current_item_keys = [item_key] if item_key else []
        self.tool_executor.current_item_key = item_key
        self.tool_executor.current_item_keys = list(self._current_item_keys)

    def set_current_item_keys(self, item_keys: list[str]) -> None:
        """Select several papers; the first one is the primary paper."""
        self._current_item_keys = list(item_keys)
        self._current_item_key = item_keys[0] if item_keys else None
        self.tool_executor.current_item_key = self._current_item_key
        self.tool_executor.current_item_keys = list(item_keys)

        if self._current_session is not None:
            self._current_session.last_active_item_keys = list(item_keys)
            self._current_session.last_active_item_key = self._current_item_key

        if self.callbacks.on_selected_items_change is not None:
            self.callbacks.on_selected_items_change(list(item_keys))

    def add_item_to_selection(self, item_key: str) -> None:
        if item_key not in self._current_item_keys:
            self.set_current_item_keys([*self._current_item_keys, item_key])

    def remove_item_from_selection(self, item_key: str) -> None:
        self.set_current_item_keys([k for k in self._current_item_keys if k != item_key])

    def clear_item_selection(self) -> None:
        self.set_current_item_keys([])

    # ------------------------------------------------------------------
    # Send flow
    # ------------------------------------------------------------------

    async def send_message(self, text: str, options: SendOptions | None = None) -> None:
        """Send a user message in the current session and drive the reply to completion.

        Exactly one of these ends the call: a configuration message, the final
        answer, the loop-exhausted apology, or a ``role=error`` message.
        """
        await self.init()
        options = options or SendOptions()

        if self._current_session is None:
            self._current_session = await self.store.get_or_create_active_session()
        session = self._current_session

        lock = self._send_locks.setdefault(session.id, asyncio.Lock())
        self._send_waiters[session.id] = self._send_waiters.get(session.id, 0) + 1
        try:
            async with lock:
                await self._send(session, text, options)
        finally:
            remaining = self._send_waiters.get(session.id, 1) - 1
            if remaining > 0:
                self._send_waiters[session.id] = remaining
            else:
                self._send_waiters.pop(session.id, None)
                self._send_locks.pop(session.id, None)

    async def _send(self, session: Session, text: str, options: SendOptions) -> None:
        item_key = options.item_key if options.item_key is not None else self._current_item_key
        logger.info("Sending message", session_id=session.id, item_key=item_key)

        await self._record_item_switch(session, item_key)
        if item_key != self._current_item_key:
            self.set_current_item_key(item_key)

        provider = self.provider_manager.get_active_provider()
        if provider is None or not provider.is_ready():
            logger.warning("No ready provider", session_id=session.id)
            message = Message(role=MessageRole.ASSISTANT, content=get_string("chat-error-no-provider"))
            session.messages.append(message)
            await self.store.insert_message(session.id, message)
            self._notify(session, "on_message_update", session.messages)
            return

        use_tools = provider.supports(Capability.TOOL_CALLING)
        content, paper, attachment, pdf_attached = await self._assemble_content(
            provider, text, options, item_key, use_tools
        )

        user_message = Message(
            role=MessageRole.USER,
            content=content,
            images=options.images,
            files=options.files,
            selected_text=options.selected_text,
            pdf_context=pdf_attached,
        )
        session.messages.append(user_message)
        await self.store.insert_message(session.id, user_message)
        session.updated_at = now_ms()
        self._notify(session, "on_message_update", session.messages)

        assistant = Message(role=MessageRole.ASSISTANT, content="")
        session.messages.append(assistant)
        await self.store.insert_message(session.id, assistant)
        self._notify(session, "on_message_update", session.messages)

        filtered = self.context_manager.filter_messages(session)
        history = [
            m.to_llm_message()
            for m in filtered.messages
            if m.id != assistant.id
        ]

        ctx = _SendContext(
            session=session,
            assistant=assistant,
            history=history,
            item_key=item_key,
            paper=paper,
            pdf_attached=pdf_attached,
            summary_triggered=filtered.summary_triggered,
            attachment=attachment,
        )

        async def on_fallback(from_name: str, to_name: str, error: Exception) -> None:
            await self._insert_fallback_notice(session, from_name, to_name)

        self._streaming_sessions[session.id] = session
        try:
            if use_tools:
                work = await self._tool_calling_work(ctx)
            else:
                work = self._plain_stream_work(ctx)
            await self.provider_manager.execute_with_fallback(work, on_fallback=on_fallback)
        except Exception as e:
            logger.error("All providers failed", session_id=session.id, error=str(e))
            await self._replace_placeholder_with_error(session, assistant, e)
        finally:
            self._streaming_sessions.pop(session.id, None)

    async def _record_item_switch(self, session: Session, item_key: str | None) -> None:
        """Insert a notice when the paper differs from the one last used in this session."""
        if item_key == session.last_active_item_key:
            return

        if item_key:
            content = get_string("notice-switched-paper", title=await self._get_title(item_key))
        else:
            content = get_string("notice-no-paper")

        notice = Message(role=MessageRole.SYSTEM, content=content, is_system_notice=True)
        session.messages.append(notice)
        await self.store.insert_message(session.id, notice)
        session.last_active_item_key = item_key
        session.last_active_item_keys = [item_key] if item_key else []
        await self.store.update_session_meta(session)

    async def _get_title(self, item_key: str) -> str:
        title = None
        if self.document_source is not None:
            title = await self.document_source.get_title(item_key)
        return title or get_string("untitled")

    async def _assemble_content(
        self,
        provider: BaseLLM,
        text: str,
        options: SendOptions,
        item_key: str | None,
        use_tools: bool,
    ) -> tuple[str, PaperStructure | None, PdfAttachment | None, bool]:
        """Build the final user message text.

        Returns the content, the parsed paper (tool mode), a raw PDF
        attachment (plain mode) and whether paper content was attached.
        """
        parts: list[str] = []
        paper = None
        attachment = None
        pdf_attached = False

        if item_key and use_tools:
            paper = await self.tool_executor.extract_paper(item_key)
            pdf_attached = paper is not None
        elif item_key and self.document_source is not None:
            pdf_text = await self.document_source.get_text(item_key)
            if pdf_text:
                parts.append(f"[PDF Content]:\n{pdf_text[:MAX_INLINE_PDF_CHARS]}")
                pdf_attached = True
            elif (
                provider.supports(Capability.PDF_UPLOAD)
                and self.settings.upload_raw_pdf_on_failure
            ):
                data = await self.document_source.get_pdf_base64(item_key)
                if data:
                    attachment = PdfAttachment(data=data, name=f"{item_key}.pdf")
                    pdf_attached = True
                    logger.info("Using raw PDF upload", item_key=item_key)

        if options.files:
            parts.append("\n\n".join(f"[File: {f.name}]\n{f.content}" for f in options.files))

        if options.selected_text:
            prefix = "[Selected text from PDF]" if item_key else "[Selected text]"
            parts.append(f'{prefix}:\n"{options.selected_text}"')

        if not parts:
            return text, paper, attachment, pdf_attached

        parts.append(f"[Question]:\n{text}")
        return "\n\n".join(parts), paper, attachment, pdf_attached

    async def _insert_fallback_notice(self, session: Session, from_name: str, to_name: str) -> None:
        notice = Message(
            role=MessageRole.SYSTEM,
            content=get_string("notice-fallback", from_provider=from_name, to_provider=to_name),
            is_system_notice=True,
        )
        session.messages.append(notice)
        await self.store.insert_message(session.id, notice)
        self._notify(session, "on_message_update", session.messages)
        self._notify(session, "on_fallback_notice", from_name, to_name)

    async def _replace_placeholder_with_error(
        self,
        session: Session,
        assistant: Message,
        error: Exception,
    ) -> None:
        # By id: fallback notices may sit after the placeholder.
        if session.remove_message(assistant.id):
            await self.store.delete_message(session.id, assistant.id)

        message = Message(role=MessageRole.ERROR, content=error_message(error))
        session.messages.append(message)
        await self.store.insert_message(session.id, message)

        self._notify(session, "on_error", error)
        self._notify(session, "on_message_update", session.messages)

    async def _finish(self, ctx: _SendContext, content: str, final_answer: bool = True) -> None:
        """Persist the terminal assistant content and notify the UI."""
        session = ctx.session
        ctx.assistant.content = content
        ctx.assistant.timestamp = now_ms()
        session.updated_at = now_ms()

        await self.store.update_message_content(session.id, ctx.assistant.id, content)
        await self.store.update_session_meta(session)

        self._notify(session, "on_message_update", session.messages)
        if final_answer and ctx.pdf_attached:
            self._notify(session, "on_pdf_attached")
        self._notify(session, "on_message_complete")

        if final_answer and ctx.summary_triggered:
            self._schedule_summary(session)

    def _schedule_summary(self, session: Session) -> None:
        async def persist() -> None:
            await self.store.update_session_meta(session)

        task = asyncio.create_task(self.context_manager.generate_summary(session, on_persist=persist))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ------------------------------------------------------------------
    # Plain streaming
    # ------------------------------------------------------------------

    def _plain_stream_work(self, ctx: _SendContext):
        async def work(provider: BaseLLM) -> None:
            ctx.assistant.content = ""
            logger.info("Streaming reply", provider=provider.provider_name, session_id=ctx.session.id)

            try:
                async for chunk in provider.stream(ctx.history, attachment=ctx.attachment):
                    ctx.assistant.content += chunk
                    self._notify(ctx.session, "on_streaming_update", ctx.assistant.content)
            except Exception as e:
                logger.error("Stream failed", provider=provider.provider_name, error=str(e))
                await self._maybe_refresh_credentials(provider, e)
                raise

            await self._finish(ctx, ctx.assistant.content)

        return work

    async def _maybe_refresh_credentials(self, provider: BaseLLM, error: Exception) -> None:
        """One token refresh for auth failures; the original error still propagates."""
        if not is_auth_error(error):
            return
        if self.credential_manager is None or not provider.supports(Capability.CREDENTIAL_REFRESH):
            return
        try:
            await self.credential_manager.ensure_token(force_refresh=True)
            logger.info("Credentials refreshed", provider=provider.provider_name)
        except Exception as e:
            logger.warning("Failed to refresh credentials", provider=provider.provider_name, error=str(e))

    # ------------------------------------------------------------------
    # Tool-calling agent loop
    # ------------------------------------------------------------------

    async def _tool_calling_work(self, ctx: _SendContext):
        has_item = ctx.item_key is not None
        tools = self.tool_executor.get_definitions(has_document=has_item)

        selected_titles = None
        if len(self._current_item_keys) > 1:
            selected_titles = {key: await self._get_title(key) for key in self._current_item_keys}

        prompt = generate_paper_context_prompt(
            paper=ctx.paper,
            item_key=ctx.item_key,
            title=await self._get_title(ctx.item_key) if has_item else None,
            has_current_item=has_item,
            selected_titles=selected_titles,
        )
        seed = [LLMMessage(role="system", content=prompt), *ctx.history]

        async def work(provider: BaseLLM) -> None:
            if not provider.supports(Capability.TOOL_CALLING):
                raise ToolCallingUnsupportedError(provider.provider_name)

            ctx.assistant.content = ""
            streaming = provider.supports(Capability.STREAMING_TOOL_CALLING)
            logger.info(
                "Running agent loop",
                provider=provider.provider_name,
                streaming=streaming,
                session_id=ctx.session.id,
            )
            await self._run_agent_loop(provider, ctx, list(seed), tools, streaming)

        return work

    async def _run_agent_loop(
        self,
        provider: BaseLLM,
        ctx: _SendContext,
        current_messages: list[LLMMessage],
        tools: list[ToolDefinition],
        streaming: bool,
    ) -> None:
        display = ""

        for iteration in range(1, self.max_tool_iterations + 1):
            logger.debug("Agent iteration", iteration=iteration, messages=len(current_messages))

            if streaming:
                content, tool_calls = await self._stream_turn(provider, ctx, current_messages, tools, display)
            else:
                response = await provider.generate(current_messages, tools=tools)
                content, tool_calls = response.content, response.tool_calls

            if not tool_calls:
                await self._finish(ctx, display + (content or ""))
                return

            current_messages.append(LLMMessage(
                role="assistant",
                content=content or "",
                tool_calls=tool_calls,
            ))
            display += content or ""

            for call in tool_calls:
                raw_arguments = call.arguments_json
                display += format_tool_call_card(call.name, raw_arguments, "calling")
                ctx.assistant.content = display
                self._notify(ctx.session, "on_streaming_update", display)

                result = await self._execute_tool(call, ctx.paper)
                current_messages.append(LLMMessage(
                    role="tool",
                    content=result,
                    tool_call_id=call.id,
                    name=call.name,
                ))

                display += format_tool_call_card(call.name, raw_arguments, "completed", result)
                ctx.assistant.content = display
                self._notify(ctx.session, "on_streaming_update", display)

        logger.warning("Agent loop exhausted", session_id=ctx.session.id, iterations=self.max_tool_iterations)
        await self._finish(ctx, display + "\n\n" + get_string("loop-exhausted"), final_answer=False)

    async def _stream_turn(
        self,
        provider: BaseLLM,
        ctx: _SendContext,
        current_messages: list[LLMMessage],
        tools: list[ToolDefinition],
        display: str,
    ) -> tuple[str, list[ToolCall]]:
        """Consume one streamed model turn. Text is shown live; tool calls are buffered per index."""
        round_content = ""
        pending: dict[int, dict[str, str]] = {}

        async for event in provider.stream_with_tools(current_messages, tools):
            if isinstance(event, TextDelta):
                round_content += event.text
                ctx.assistant.content = display + round_content
                self._notify(ctx.session, "on_streaming_update", ctx.assistant.content)
            elif isinstance(event, ToolCallStart):
                pending[event.index] = {"id": event.id, "name": event.name, "arguments": ""}
            elif isinstance(event, ToolCallDelta):
                if event.index in pending:
                    pending[event.index]["arguments"] += event.arguments_delta
            elif isinstance(event, StreamComplete):
                logger.debug("Turn complete", stop_reason=event.stop_reason, tool_calls=len(pending))

        tool_calls = [
            ToolCall.from_json(tc["id"], tc["name"], tc["arguments"])
            for tc in pending.values()
        ]
        return round_content, tool_calls

    async def _execute_tool(self, call: ToolCall, paper: PaperStructure | None) -> str:
        try:
            return await self.tool_executor.execute_tool_call(call, paper)
        except Exception as e:
            logger.error("Tool execution failed", tool_name=call.name, error=str(e))
            return f"Error: Tool execution failed: {error_message(e)}"
