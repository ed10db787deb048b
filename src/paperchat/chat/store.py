"""
Session persistence.

``SessionStore`` is the contract the orchestrator depends on;
``SqlSessionStore`` implements it on SQLAlchemy's async ORM.
"""

from dataclasses import asdict
from typing import Any, Protocol

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..llm.base import ToolCall
from ..models import MessageRecord, SessionRecord, SettingRecord, init_database
from .types import (
    ContextState,
    ContextSummary,
    FileAttachment,
    ImageAttachment,
    Message,
    MessageRole,
    Session,
    SessionMeta,
    build_session_meta,
    filter_valid_messages,
    now_ms,
)

logger = structlog.get_logger()

DEFAULT_MAX_SESSIONS = 1000
ACTIVE_SESSION_KEY = "active_session_id"


class SessionStore(Protocol):
    """Persistence contract used by the chat orchestrator."""

    async def init(self) -> None: ...

    async def create_session(self) -> Session: ...

    async def load_session(self, session_id: str) -> Session | None: ...

    async def save_session(self, session: Session) -> None: ...

    async def insert_message(self, session_id: str, message: Message) -> None: ...

    async def update_message_content(self, session_id: str, message_id: str, content: str) -> None: ...

    async def delete_message(self, session_id: str, message_id: str) -> None: ...

    async def delete_all_messages(self, session_id: str) -> None: ...

    async def update_session_meta(self, session: Session) -> None: ...

    async def set_active_session(self, session_id: str | None) -> None: ...

    def get_active_session_id(self) -> str | None: ...

    async def get_or_create_active_session(self) -> Session: ...

    async def list_sessions(self) -> list[SessionMeta]: ...

    async def delete_session(self, session_id: str) -> None: ...

    async def cleanup_empty_sessions(self) -> int: ...


def _tool_calls_to_json(tool_calls: list[ToolCall] | None) -> list[dict[str, Any]] | None:
    if not tool_calls:
        return None
    return [
        {"id": tc.id, "name": tc.name, "arguments": tc.arguments_json}
        for tc in tool_calls
    ]


def _tool_calls_from_json(data: list[dict[str, Any]] | None) -> list[ToolCall] | None:
    if not data:
        return None
    return [ToolCall.from_json(d["id"], d["name"], d.get("arguments") or "") for d in data]


def message_to_record(session_id: str, message: Message, position: int) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        session_id=session_id,
        position=position,
        role=message.role.value,
        content=message.content,
        timestamp=message.timestamp,
        tool_calls=_tool_calls_to_json(message.tool_calls),
        tool_call_id=message.tool_call_id,
        images=[asdict(img) for img in message.images] if message.images else None,
        files=[asdict(f) for f in message.files] if message.files else None,
        selected_text=message.selected_text,
        pdf_context=message.pdf_context,
        is_system_notice=message.is_system_notice,
    )


def record_to_message(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        role=MessageRole(record.role),
        content=record.content or "",
        timestamp=record.timestamp,
        tool_calls=_tool_calls_from_json(record.tool_calls),
        tool_call_id=record.tool_call_id,
        images=[ImageAttachment(**img) for img in record.images] if record.images else None,
        files=[FileAttachment(**f) for f in record.files] if record.files else None,
        selected_text=record.selected_text,
        pdf_context=bool(record.pdf_context),
        is_system_notice=bool(record.is_system_notice),
    )


def _apply_meta(record: SessionRecord, session: Session) -> None:
    meta = build_session_meta(session)
    record.last_active_item_key = session.last_active_item_key
    record.last_active_item_keys = session.last_active_item_keys
    record.context_summary = asdict(session.context_summary) if session.context_summary else None
    record.context_state = asdict(session.context_state) if session.context_state else None
    record.created_at = session.created_at
    record.updated_at = session.updated_at
    record.message_count = meta.message_count
    record.last_message_preview = meta.last_message_preview
    record.last_message_time = meta.last_message_time


class SqlSessionStore:
    """SQLAlchemy-backed session store."""

    def __init__(
        self,
        database_url: str | None = None,
        session_maker: async_sessionmaker | None = None,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ):
        if database_url is None and session_maker is None:
            raise ValueError("Either database_url or session_maker is required")
        self.database_url = database_url
        self._session_maker = session_maker
        self.max_sessions = max_sessions
        self._active_session_id: str | None = None
        self._initialized = False

    async def init(self) -> None:
        if self._initialized:
            return

        if self._session_maker is None:
            self._session_maker = await init_database(self.database_url)

        async with self._session_maker() as db:
            row = await db.get(SettingRecord, ACTIVE_SESSION_KEY)
            self._active_session_id = row.value if row else None

        self._initialized = True
        logger.info("Session store initialized", active_session_id=self._active_session_id)

    async def _db(self):
        await self.init()
        return self._session_maker()

    async def create_session(self) -> Session:
        session = Session()
        await self.save_session(session)
        await self.set_active_session(session.id)
        logger.info("Created new session", session_id=session.id)
        return session

    async def save_session(self, session: Session) -> None:
        """Write the whole session, replacing any stored messages."""
        session.updated_at = now_ms()

        async with await self._db() as db:
            record = await db.get(SessionRecord, session.id)
            if record is None:
                record = SessionRecord(id=session.id)
                db.add(record)
            _apply_meta(record, session)

            await db.execute(delete(MessageRecord).where(MessageRecord.session_id == session.id))
            for position, message in enumerate(session.messages):
                db.add(message_to_record(session.id, message, position))

            await db.commit()

        await self._enforce_max_sessions()

    async def load_session(self, session_id: str) -> Session | None:
        async with await self._db() as db:
            record = await db.get(SessionRecord, session_id)
            if record is None:
                return None

            result = await db.execute(
                select(MessageRecord)
                .where(MessageRecord.session_id == session_id)
                .order_by(MessageRecord.position, MessageRecord.pk)
            )
            messages = [record_to_message(r) for r in result.scalars().all()]

        return Session(
            id=record.id,
            created_at=record.created_at,
            updated_at=record.updated_at,
            last_active_item_key=record.last_active_item_key,
            last_active_item_keys=record.last_active_item_keys,
            messages=filter_valid_messages(messages),
            context_summary=ContextSummary(**record.context_summary) if record.context_summary else None,
            context_state=ContextState(**record.context_state) if record.context_state else None,
        )

    async def insert_message(self, session_id: str, message: Message) -> None:
        """Append one message without touching the rest of the history."""
        async with await self._db() as db:
            result = await db.execute(
                select(func.max(MessageRecord.position)).where(MessageRecord.session_id == session_id)
            )
            last_position = result.scalar()
            position = 0 if last_position is None else last_position + 1
            db.add(message_to_record(session_id, message, position))

            values: dict[str, Any] = {
                "message_count": SessionRecord.message_count + 1,
                "updated_at": now_ms(),
            }
            if message.content and message.role != MessageRole.TOOL:
                content = message.content
                values["last_message_preview"] = content[:50] + ("..." if len(content) > 50 else "")
                values["last_message_time"] = message.timestamp
            await db.execute(update(SessionRecord).where(SessionRecord.id == session_id).values(**values))
            await db.commit()

    async def update_message_content(self, session_id: str, message_id: str, content: str) -> None:
        async with await self._db() as db:
            await db.execute(
                update(MessageRecord)
                .where(MessageRecord.session_id == session_id, MessageRecord.id == message_id)
                .values(content=content, timestamp=now_ms())
            )
            await db.commit()

    async def delete_message(self, session_id: str, message_id: str) -> None:
        async with await self._db() as db:
            await db.execute(
                delete(MessageRecord)
                .where(MessageRecord.session_id == session_id, MessageRecord.id == message_id)
            )
            await db.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id, SessionRecord.message_count > 0)
                .values(message_count=SessionRecord.message_count - 1)
            )
            await db.commit()

    async def delete_all_messages(self, session_id: str) -> None:
        async with await self._db() as db:
            await db.execute(delete(MessageRecord).where(MessageRecord.session_id == session_id))
            await db.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session_id)
                .values(message_count=0, last_message_preview="")
            )
            await db.commit()

    async def update_session_meta(self, session: Session) -> None:
        """Persist session-level fields (item keys, summary, listing info)."""
        async with await self._db() as db:
            record = await db.get(SessionRecord, session.id)
            if record is None:
                logger.warning("Session missing while updating metadata", session_id=session.id)
                return
            _apply_meta(record, session)
            await db.commit()

    async def set_active_session(self, session_id: str | None) -> None:
        async with await self._db() as db:
            row = await db.get(SettingRecord, ACTIVE_SESSION_KEY)
            if session_id is None:
                if row is not None:
                    await db.delete(row)
            elif row is None:
                db.add(SettingRecord(key=ACTIVE_SESSION_KEY, value=session_id))
            else:
                row.value = session_id
            await db.commit()

        self._active_session_id = session_id

    def get_active_session_id(self) -> str | None:
        return self._active_session_id

    async def get_or_create_active_session(self) -> Session:
        await self.init()
        session = None
        if self._active_session_id:
            session = await self.load_session(self._active_session_id)
        if session is None:
            session = await self.create_session()
        return session

    async def list_sessions(self) -> list[SessionMeta]:
        async with await self._db() as db:
            result = await db.execute(select(SessionRecord).order_by(SessionRecord.updated_at.desc()))
            return [
                SessionMeta(
                    id=r.id,
                    created_at=r.created_at,
                    updated_at=r.updated_at,
                    message_count=r.message_count,
                    last_message_preview=r.last_message_preview or "",
                    last_message_time=r.last_message_time or r.updated_at,
                )
                for r in result.scalars().all()
            ]

    async def _delete_rows(self, db, session_ids: list[str]) -> None:
        if not session_ids:
            return
        await db.execute(delete(MessageRecord).where(MessageRecord.session_id.in_(session_ids)))
        await db.execute(delete(SessionRecord).where(SessionRecord.id.in_(session_ids)))

    async def delete_session(self, session_id: str) -> None:
        async with await self._db() as db:
            await self._delete_rows(db, [session_id])
            await db.commit()

        if self._active_session_id == session_id:
            async with await self._db() as db:
                result = await db.execute(
                    select(SessionRecord.id).order_by(SessionRecord.updated_at.desc()).limit(1)
                )
                await self.set_active_session(result.scalar())

        logger.info("Session deleted", session_id=session_id)

    async def cleanup_empty_sessions(self) -> int:
        """Delete sessions without messages, except the active one."""
        async with await self._db() as db:
            query = select(SessionRecord.id).where(SessionRecord.message_count == 0)
            if self._active_session_id:
                query = query.where(SessionRecord.id != self._active_session_id)
            ids = list((await db.execute(query)).scalars().all())
            await self._delete_rows(db, ids)
            await db.commit()

        if ids:
            logger.info("Cleaned up empty sessions", count=len(ids))
        return len(ids)

    async def _enforce_max_sessions(self) -> None:
        """Evict the oldest sessions (by update time) beyond the limit, never the active one."""
        async with await self._db() as db:
            total = (await db.execute(select(func.count()).select_from(SessionRecord))).scalar() or 0
            if total <= self.max_sessions:
                return

            query = select(SessionRecord.id).order_by(SessionRecord.updated_at.desc())
            if self._active_session_id:
                query = query.where(SessionRecord.id != self._active_session_id)
                keep = self.max_sessions - 1
            else:
                keep = self.max_sessions
            ids = list((await db.execute(query.offset(keep))).scalars().all())
            await self._delete_rows(db, ids)
            await db.commit()

        logger.info("Enforced max sessions limit", deleted=len(ids))
