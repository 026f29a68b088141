"""
Conversation Store - threads, messages and the idempotent append.

Stores:
- Threads (one provider + model each, user-owned)
- Messages (append-only, ordered by creation time)

Assistant replies are deduplicated per (thread, client request id) by a
partial unique index; the insert path resolves races against that index
instead of erroring.
"""
import uuid
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.models.thread import Message, MessageRole, Thread, ThreadStatus

logger = get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class ConversationStore:
    """
    Database-backed conversation storage.

    The caller owns the session and decides when to commit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================
    # Threads
    # ========================================

    async def create_thread(
        self,
        user_id: str,
        provider: str,
        model: str,
        system_prompt: Optional[str] = None,
        settings: Optional[dict[str, Any]] = None,
    ) -> Thread:
        thread = Thread(
            user_id=user_id,
            provider=provider,
            model=model,
            system_prompt=system_prompt,
            settings=settings or {},
            status=ThreadStatus.ACTIVE.value,
        )
        self.db.add(thread)
        await self.db.flush()
        await self.db.refresh(thread)

        logger.info("Thread created", thread_id=str(thread.id), provider=provider, model=model)
        return thread

    async def get_thread(
        self,
        thread_id: uuid.UUID,
        user_id: Optional[str] = None,
    ) -> Optional[Thread]:
        """Load a thread; with user_id, only if that user owns it."""
        stmt = select(Thread).where(Thread.id == thread_id)
        if user_id is not None:
            stmt = stmt.where(Thread.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_threads(self, user_id: str) -> List[Thread]:
        result = await self.db.execute(
            select(Thread)
            .where(Thread.user_id == user_id)
            .order_by(Thread.updated_at.desc())
        )
        return list(result.scalars().all())

    async def update_thread(
        self,
        thread: Thread,
        title: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Thread:
        """Only title and status are mutable."""
        if title is not None:
            thread.title = title
        if status is not None:
            thread.status = status
        thread.updated_at = datetime.utcnow()
        await self.db.flush()
        return thread

    async def touch_thread(self, thread: Thread) -> None:
        thread.updated_at = datetime.utcnow()
        await self.db.flush()

    async def delete_thread(self, thread: Thread) -> None:
        """Delete a thread and all of its messages."""
        result = await self.db.execute(
            delete(Message).where(Message.thread_id == thread.id)
        )
        await self.db.delete(thread)
        await self.db.flush()

        logger.info(
            "Thread deleted",
            thread_id=str(thread.id),
            messages_deleted=result.rowcount,
        )

    # ========================================
    # Messages
    # ========================================

    async def list_messages(self, thread_id: uuid.UUID) -> List[Message]:
        result = await self.db.execute(
            select(Message)
            .where(Message.thread_id == thread_id)
            .order_by(Message.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_message_by_request_id(
        self,
        thread_id: uuid.UUID,
        request_id: str,
        role: str = MessageRole.ASSISTANT.value,
    ) -> Optional[Message]:
        result = await self.db.execute(
            select(Message)
            .where(
                Message.thread_id == thread_id,
                Message.client_request_id == request_id,
                Message.role == role,
            )
            .order_by(Message.created_at.asc())
            .limit(1)
        )
        return result.scalars().first()

    async def append_message(
        self,
        thread_id: uuid.UUID,
        role: str,
        content: str,
        request_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Message:
        """
        Append a message.

        An assistant message with a request id is written at most once per
        thread: if one exists it is returned unchanged, and a concurrent
        insert that loses the race returns the winner's row.
        """
        if role != MessageRole.ASSISTANT.value or not request_id:
            message = Message(
                thread_id=thread_id,
                role=role,
                content=content,
                client_request_id=request_id,
                extra_metadata=metadata,
            )
            self.db.add(message)
            await self.db.flush()
            return message

        existing = await self.find_message_by_request_id(thread_id, request_id)
        if existing is not None:
            logger.info(
                "Duplicate append suppressed",
                thread_id=str(thread_id),
                request_id=request_id,
                message_id=str(existing.id),
            )
            return existing

        inserted = await self._insert_assistant_once(
            thread_id, content, request_id, metadata
        )

        winner = await self.find_message_by_request_id(thread_id, request_id)
        if winner is None:
            raise RuntimeError(
                f"assistant message for request {request_id!r} vanished after insert"
            )
        if not inserted:
            logger.info(
                "Concurrent append lost the race",
                thread_id=str(thread_id),
                request_id=request_id,
                message_id=str(winner.id),
            )
        return winner

    async def _insert_assistant_once(
        self,
        thread_id: uuid.UUID,
        content: str,
        request_id: str,
        metadata: Optional[dict[str, Any]],
    ) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING. Returns False when a row already won."""
        dialect = self.db.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Unsupported database dialect for idempotent append: {dialect}")

        stmt = insert(Message).values({
            Message.id: uuid.uuid4(),
            Message.thread_id: thread_id,
            Message.role: MessageRole.ASSISTANT.value,
            Message.content: content,
            Message.client_request_id: request_id,
            Message.extra_metadata: metadata,
            Message.created_at: datetime.utcnow(),
        })
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["thread_id", "client_request_id"],
            index_where=text("role = 'assistant'"),
        )

        result = await self.db.execute(stmt)
        return bool(result.rowcount)

    async def last_messages(self, thread_ids: List[uuid.UUID]) -> dict[uuid.UUID, Message]:
        """Newest message of each thread, in one query."""
        if not thread_ids:
            return {}
        ranked = (
            select(
                Message.id,
                func.row_number().over(
                    partition_by=Message.thread_id,
                    order_by=Message.created_at.desc(),
                ).label("rank"),
            )
            .where(Message.thread_id.in_(thread_ids))
            .subquery()
        )
        result = await self.db.execute(
            select(Message)
            .join(ranked, Message.id == ranked.c.id)
            .where(ranked.c.rank == 1)
        )
        return {msg.thread_id: msg for msg in result.scalars().all()}
