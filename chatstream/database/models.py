"""SQLAlchemy ORM models for database persistence."""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from chatstream.models.domain import FinishReason, MessageRole


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ThreadDB(Base):
    """Database model for conversation threads."""

    __tablename__ = "threads"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    active_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    # Relationships
    messages: Mapped[list["MessageDB"]] = relationship(
        back_populates="thread", cascade="all, delete-orphan", order_by="MessageDB.sequence"
    )


class MessageDB(Base):
    """Database model for reconstructed messages within threads."""

    __tablename__ = "stream_messages"

    thread_id: Mapped[str] = mapped_column(
        ForeignKey("threads.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Position within the thread, fixed at first insert
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    role: Mapped[MessageRole] = mapped_column(Enum(MessageRole), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_streaming: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    finish_reason: Mapped[FinishReason] = mapped_column(
        Enum(FinishReason), nullable=False, default=FinishReason.NONE
    )

    # Structured parts, stored as serialized domain models
    tool_calls: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    options: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    message_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    # Relationships
    thread: Mapped[ThreadDB] = relationship(back_populates="messages")

    __table_args__ = (Index("ix_stream_messages_thread_sequence", "thread_id", "sequence"),)
