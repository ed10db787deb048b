"""
Database models for PaperChat

Uses SQLAlchemy 2.0 async ORM for database operations. Messages are stored one
row per message so appending to a long session never rewrites its history.
"""

from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class SessionRecord(Base):
    """A chat session."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    last_active_item_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_active_item_keys: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # Summary state
    context_summary: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    context_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Listing metadata
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    last_message_preview: Mapped[str] = mapped_column(Text, default="")
    last_message_time: Mapped[int] = mapped_column(BigInteger, default=0)

    # Timestamps (epoch ms)
    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger, index=True)

    # Relationships
    messages: Mapped[list["MessageRecord"]] = relationship(
        "MessageRecord",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="MessageRecord.position",
    )


class MessageRecord(Base):
    """A message within a session."""

    __tablename__ = "messages"

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), index=True)
    session_id: Mapped[str] = mapped_column(String(64), ForeignKey("sessions.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer)

    # Message content
    role: Mapped[str] = mapped_column(String(20))
    content: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[int] = mapped_column(BigInteger)

    # Extra data
    tool_calls: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    tool_call_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    images: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    files: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    selected_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    pdf_context: Mapped[bool] = mapped_column(Boolean, default=False)
    is_system_notice: Mapped[bool] = mapped_column(Boolean, default=False)

    # Relationships
    session: Mapped["SessionRecord"] = relationship("SessionRecord", back_populates="messages")


class SettingRecord(Base):
    """Key/value store for engine state such as the active session."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text)


async def init_database(database_url: str) -> async_sessionmaker:
    """Initialize the database and return session maker."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
