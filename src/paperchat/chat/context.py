"""
Context window management - what history the model sees.

Strategy: [durable system messages] + [rolling summary, if any] + [last N
conversational messages]. Older turns are condensed in the background into a
single summary that replaces the previous one; the most recent window is
always sent verbatim and never summarized.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from ..config import Settings
from ..llm.base import LLMMessage
from ..llm.fallback import ProviderManager
from .types import ContextState, ContextSummary, Message, MessageRole, Session

logger = structlog.get_logger()

DEFAULT_MAX_RECENT_PAIRS = 10
DEFAULT_SUMMARY_THRESHOLD = 20
DEFAULT_MAX_SUMMARY_INPUT_CHARS = 30_000
MIN_MESSAGES_TO_SUMMARIZE = 4

SUMMARY_MESSAGE_ID = "context-summary"

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Summarize the following conversation concisely, capturing the key points, questions asked, and answers provided. Focus on:
1. The main topics discussed
2. Important facts or information shared
3. Any decisions or conclusions reached
Keep the summary under 500 words."""


@dataclass
class ContextConfig:
    """Configuration for context filtering and summarization."""

    max_recent_pairs: int = DEFAULT_MAX_RECENT_PAIRS
    enable_summary: bool = False
    summary_threshold: int = DEFAULT_SUMMARY_THRESHOLD
    max_summary_input_chars: int = DEFAULT_MAX_SUMMARY_INPUT_CHARS

    @property
    def recent_message_count(self) -> int:
        # A pair is one user + one assistant turn; tool messages count too.
        return self.max_recent_pairs * 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextConfig":
        return cls(
            max_recent_pairs=settings.context_max_recent_pairs,
            enable_summary=settings.context_enable_summary,
            summary_threshold=settings.context_summary_threshold,
            max_summary_input_chars=settings.summary_max_input_chars,
        )


@dataclass
class FilteredMessages:
    """Result of filtering a session for a model call."""

    messages: list[Message]
    summary_triggered: bool


def _summary_message(summary: ContextSummary) -> Message:
    return Message(
        id=SUMMARY_MESSAGE_ID,
        role=MessageRole.SYSTEM,
        content=f"[Previous conversation summary]: {summary.content}",
        timestamp=summary.created_at,
    )


class ContextWindowManager:
    """Selects history for model calls and maintains the rolling summary."""

    def __init__(
        self,
        provider_manager: ProviderManager | None = None,
        config: ContextConfig | None = None,
    ):
        self.provider_manager = provider_manager
        self.config = config or ContextConfig()
        self._in_progress: set[str] = set()

    def filter_messages(
        self,
        session: Session,
        config: ContextConfig | None = None,
    ) -> FilteredMessages:
        """Pick the messages to send for ``session``.

        Error messages are never included. The summary message, when present,
        always sits between the durable system messages and the recent window.
        """
        config = config or self.config

        system_messages = [m for m in session.messages if m.is_durable_system]
        conversation = [m for m in session.messages if m.is_conversational]
        recent = conversation[-config.recent_message_count:] if config.recent_message_count > 0 else []

        result: list[Message] = list(system_messages)
        if session.context_summary and session.context_summary.content:
            result.append(_summary_message(session.context_summary))
        result.extend(recent)

        summary_triggered = False
        if config.enable_summary:
            total = len(conversation)
            last_count = session.context_state.last_summary_message_count if session.context_state else 0
            if (
                total >= config.summary_threshold
                and total - last_count >= config.summary_threshold / 2
            ):
                summary_triggered = True

        return FilteredMessages(messages=result, summary_triggered=summary_triggered)

    def is_summary_in_progress(self, session: Session) -> bool:
        if session.id in self._in_progress:
            return True
        return bool(session.context_state and session.context_state.summary_in_progress)

    async def generate_summary(
        self,
        session: Session,
        on_persist: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Condense older history into ``session.context_summary``.

        Best-effort: failures are logged and the previous summary is kept.
        ``on_persist`` runs after the in-progress flags are cleared, whether or
        not a new summary was produced.
        """
        if self.is_summary_in_progress(session):
            logger.info("Summary already in progress", session_id=session.id)
            return

        self._in_progress.add(session.id)
        if session.context_state is None:
            session.context_state = ContextState()
        session.context_state.summary_in_progress = True

        try:
            await self._summarize(session)
        except Exception as e:
            logger.error("Failed to generate summary", session_id=session.id, error=str(e))
        finally:
            self._in_progress.discard(session.id)
            session.context_state.summary_in_progress = False

            if on_persist is not None:
                try:
                    await on_persist()
                except Exception as e:
                    logger.error("Failed to persist summary", session_id=session.id, error=str(e))

    async def _summarize(self, session: Session) -> None:
        provider = self.provider_manager.get_active_provider() if self.provider_manager else None
        if provider is None or not provider.is_ready():
            logger.info("Provider not ready, skipping summary", session_id=session.id)
            return

        conversation = session.conversation_messages()
        recent_count = self.config.recent_message_count
        candidates = conversation[:-recent_count] if recent_count > 0 else list(conversation)

        if len(candidates) < MIN_MESSAGES_TO_SUMMARIZE:
            logger.info(
                "Not enough messages to summarize",
                session_id=session.id,
                candidates=len(candidates),
            )
            return

        transcript, covered = self._build_transcript(candidates)
        if not transcript.strip() or len(covered) < 2:
            logger.info("No valid content for summary", session_id=session.id)
            return

        response = await provider.generate(
            messages=[
                LLMMessage(role="user", content=f"Please summarize this conversation:\n\n{transcript}"),
            ],
            system_prompt=SUMMARY_SYSTEM_PROMPT,
        )
        content = response.content.strip()
        if not content:
            logger.warning("Summarizer returned empty content", session_id=session.id)
            return

        session.context_summary = ContextSummary(
            content=content,
            covered_message_ids=[m.id for m in covered],
            message_count_at_creation=len(conversation),
        )
        session.context_state.last_summary_message_count = len(conversation)

        logger.info(
            "Summary generated",
            session_id=session.id,
            covered=len(covered),
            summary_chars=len(content),
        )

    def _build_transcript(self, messages: list[Message]) -> tuple[str, list[Message]]:
        """Role-tagged transcript, oldest first, stopping at the character budget."""
        budget = self.config.max_summary_input_chars
        parts: list[str] = []
        covered: list[Message] = []
        length = 0

        for message in messages:
            if not message.content or not message.content.strip():
                continue
            text = f"{message.role.value.upper()}: {message.content}\n\n"
            if length + len(text) > budget:
                logger.info("Conversation truncated for summary due to length limit")
                break
            parts.append(text)
            covered.append(message)
            length += len(text)

        return "".join(parts), covered

    def clear_summary(self, session: Session) -> None:
        """Drop the summary and reset the watermark."""
        session.context_summary = None
        if session.context_state is not None:
            session.context_state.last_summary_message_count = 0

    def on_session_deleted(self, session_id: str) -> None:
        self._in_progress.discard(session_id)

    def close(self) -> None:
        self._in_progress.clear()
