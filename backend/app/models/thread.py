"""
Conversation thread and message database models.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.models.types import JSONType


class MessageRole(str, Enum):
    """Roles a stored message can have."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class Thread(Base):
    """
    A conversation bound to one provider and one model for its lifetime.
    Only title and status change after creation.
    """

    __tablename__ = "threads"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str] = mapped_column(String(200), nullable=False)
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # {"temperature": float, "maxTokens": int}
    settings: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ThreadStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": str(self.id),
            "provider": self.provider,
            "model": self.model,
            "systemPrompt": self.system_prompt,
            "settings": self.settings or {},
            "title": self.title,
            "status": self.status,
            "createdAt": _ms(self.created_at),
            "updatedAt": _ms(self.updated_at),
        }


class Message(Base):
    """A persisted chat turn. Content is immutable once written."""

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    thread_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    client_request_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    extra_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        index=True
    )

    # At most one assistant reply per client request id within a thread
    __table_args__ = (
        Index(
            "uq_messages_thread_request_assistant",
            "thread_id",
            "client_request_id",
            unique=True,
            postgresql_where=text("role = 'assistant'"),
            sqlite_where=text("role = 'assistant'"),
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "id": str(self.id),
            "threadId": str(self.thread_id),
            "role": self.role,
            "content": self.content,
            "clientRequestId": self.client_request_id,
            "metadata": self.extra_metadata,
            "createdAt": _ms(self.created_at),
        }
