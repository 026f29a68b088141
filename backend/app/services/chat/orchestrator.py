"""
Chat Orchestrator - drives one exchange between a thread and its vendor.

Flow:
1. Hold the thread's lock (one exchange per thread at a time)
2. Load thread + history, resolve the key, append the user message
3. Call the adapter (streaming through a DeltaChannel, or single-shot)
4. Forward each delta as it arrives, accumulating the full text
5. On natural completion, persist the reply via the idempotent append

A cancelled or failed exchange persists no assistant message. A retry with
the same request id after that starts a fresh exchange; a retry after a
completed one gets the stored reply back without any upstream call.
"""
import asyncio
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings as app_settings
from app.core.errors import AppError, CredentialMissingError, NotFoundError, UpstreamNetworkError
from app.core.logging import get_logger
from app.models.thread import Message, MessageRole, Thread
from app.services.adapter import (
    ChatMessage,
    ChatSettings,
    Provider,
    ProviderAdapter,
    StreamChunk,
    StreamResult,
    get_provider_adapter,
)
from app.services.catalog.service import ModelCatalogService
from app.services.chat.channel import DeltaChannel
from app.services.chat.locks import ConversationLocks
from app.services.chat.relay import SSERelay
from app.services.conversation.store import ConversationStore
from app.services.credentials.service import AdapterFactory, CredentialService, SecretSealer

logger = get_logger(__name__)

TITLE_WORD_LIMIT = 4

DeltaCallback = Callable[[str], Awaitable[None]]


def build_thread_title(content: str) -> Optional[str]:
    """First few words of a message, with an ellipsis when cut."""
    cleaned = re.sub(r"\s+", " ", content).strip()
    if not cleaned:
        return None
    words = cleaned.split(" ")
    snippet = " ".join(words[:TITLE_WORD_LIMIT])
    return f"{snippet}..." if len(words) > TITLE_WORD_LIMIT else snippet


def build_chat_messages(system_prompt: Optional[str], history: List[Message]) -> List[ChatMessage]:
    """Thread system prompt first, then stored turns. Stored system rows are skipped."""
    messages = []
    if system_prompt:
        messages.append(ChatMessage(role=MessageRole.SYSTEM.value, content=system_prompt))
    for msg in history:
        if msg.role == MessageRole.SYSTEM.value:
            continue
        messages.append(ChatMessage(role=msg.role, content=msg.content))
    return messages


# ========================================
# Exchange state machine
# ========================================

class ExchangeState(str, Enum):
    IDLE = "idle"
    AWAITING_UPSTREAM = "awaiting_upstream"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[ExchangeState, frozenset[ExchangeState]] = {
    ExchangeState.IDLE: frozenset({
        ExchangeState.AWAITING_UPSTREAM,
        ExchangeState.FAILED,
        ExchangeState.CANCELLED,
    }),
    ExchangeState.AWAITING_UPSTREAM: frozenset({
        ExchangeState.STREAMING,
        ExchangeState.FINALIZING,
        ExchangeState.FAILED,
        ExchangeState.CANCELLED,
    }),
    ExchangeState.STREAMING: frozenset({
        ExchangeState.FINALIZING,
        ExchangeState.FAILED,
        ExchangeState.CANCELLED,
    }),
    ExchangeState.FINALIZING: frozenset({
        ExchangeState.COMPLETED,
        ExchangeState.FAILED,
    }),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class Exchange:
    """One request/response cycle and the text accumulated so far."""
    thread_id: uuid.UUID
    request_id: Optional[str] = None
    state: ExchangeState = ExchangeState.IDLE
    usage: dict[str, Any] = field(default_factory=dict)
    chunks: int = 0
    _parts: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def terminal(self) -> bool:
        return self.state in (
            ExchangeState.COMPLETED,
            ExchangeState.FAILED,
            ExchangeState.CANCELLED,
        )

    def transition(self, new_state: ExchangeState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransitionError(f"{self.state.value} -> {new_state.value}")
        logger.debug("Exchange state", old=self.state.value, new=new_state.value)
        self.state = new_state

    def accumulate(self, delta: str) -> None:
        self._parts.append(delta)
        self.chunks += 1

    def discard(self) -> None:
        self._parts.clear()


@dataclass
class PreparedExchange:
    """Everything the upstream call needs, loaded under the thread lock."""
    thread_id: uuid.UUID
    provider: Provider
    model: str
    settings: ChatSettings
    messages: List[ChatMessage] = field(default_factory=list)
    secret: str = field(default="", repr=False)
    streaming: bool = True
    existing: Optional[Message] = None


# ========================================
# Orchestrator
# ========================================

class ChatOrchestrator:
    """
    Runs exchanges on its own short-lived sessions, so nothing depends on
    the lifetime of the HTTP request that started the exchange.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sealer: SecretSealer,
        adapter_factory: AdapterFactory = get_provider_adapter,
        locks: Optional[ConversationLocks] = None,
        queue_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.sealer = sealer
        self.adapter_factory = adapter_factory
        self.locks = locks if locks is not None else ConversationLocks()
        self.queue_size = queue_size or app_settings.STREAM_QUEUE_SIZE

    def _credentials(self, db: AsyncSession) -> CredentialService:
        return CredentialService(db, self.sealer, self.adapter_factory)

    async def precheck(
        self,
        user_id: str,
        thread_id: uuid.UUID,
        request_id: Optional[str] = None,
    ) -> Optional[Message]:
        """
        Checks that must fail before a response starts.

        Returns the stored reply when the request id was already answered,
        otherwise None. Raises NotFoundError or CredentialMissingError.
        """
        async with self.session_factory() as db:
            store = ConversationStore(db)
            thread = await store.get_thread(thread_id, user_id)
            if thread is None:
                raise NotFoundError("Thread not found")

            if request_id:
                existing = await store.find_message_by_request_id(thread.id, request_id)
                if existing is not None:
                    logger.info(
                        "Request already answered",
                        thread_id=str(thread.id),
                        request_id=request_id,
                    )
                    return existing

            key = await self._credentials(db).get_active_key(user_id, Provider(thread.provider))
            if key is None:
                raise CredentialMissingError()
        return None

    async def _prepare(
        self,
        user_id: str,
        thread_id: uuid.UUID,
        content: str,
        request_id: Optional[str],
    ) -> PreparedExchange:
        async with self.session_factory() as db:
            store = ConversationStore(db)
            credentials = self._credentials(db)

            thread = await store.get_thread(thread_id, user_id)
            if thread is None:
                raise NotFoundError("Thread not found")

            provider = Provider(thread.provider)
            prepared = PreparedExchange(
                thread_id=thread.id,
                provider=provider,
                model=thread.model,
                settings=ChatSettings.from_dict(thread.settings),
            )

            # Re-check under the lock: a concurrent duplicate may have finished
            if request_id:
                existing = await store.find_message_by_request_id(thread.id, request_id)
                if existing is not None:
                    prepared.existing = existing
                    return prepared

            key = await credentials.get_active_key(user_id, provider)
            if key is None:
                raise CredentialMissingError()
            prepared.secret = credentials.get_secret(key)
            await credentials.touch(key)

            # A retry after a failed or cancelled exchange reuses its user turn
            user_message = None
            if request_id:
                user_message = await store.find_message_by_request_id(
                    thread.id, request_id, role=MessageRole.USER.value
                )
            if user_message is None:
                await store.append_message(thread.id, MessageRole.USER.value, content, request_id)

            history = await store.list_messages(thread.id)
            await self._set_title(store, thread, history)

            prepared.messages = build_chat_messages(thread.system_prompt, history)
            prepared.streaming = await ModelCatalogService(
                db, credentials, self.adapter_factory
            ).supports_streaming(user_id, provider, thread.model)

            await db.commit()
        return prepared

    @staticmethod
    async def _set_title(store: ConversationStore, thread: Thread, history: List[Message]) -> None:
        if thread.title and thread.title.strip():
            await store.touch_thread(thread)
            return
        for msg in history:
            if msg.role == MessageRole.USER.value and msg.content.strip():
                await store.update_thread(thread, title=build_thread_title(msg.content))
                return
        await store.touch_thread(thread)

    async def _drive_stream(
        self,
        exchange: Exchange,
        adapter: ProviderAdapter,
        prepared: PreparedExchange,
        on_delta: Optional[DeltaCallback],
    ) -> None:
        result: Optional[StreamResult] = None
        source = adapter.stream_chat(
            prepared.secret, prepared.model, prepared.messages, prepared.settings
        )

        async with DeltaChannel(source, self.queue_size) as channel:
            async for event in channel:
                if isinstance(event, StreamChunk):
                    if exchange.state is ExchangeState.AWAITING_UPSTREAM:
                        exchange.transition(ExchangeState.STREAMING)
                    exchange.accumulate(event.delta)
                    if on_delta is not None:
                        await on_delta(event.delta)
                else:
                    result = event

        if result is None:
            raise UpstreamNetworkError(
                "Upstream stream ended without completing",
                provider=prepared.provider.value,
            )
        exchange.usage = result.usage

    async def _finalize(self, exchange: Exchange, prepared: PreparedExchange) -> Message:
        async with self.session_factory() as db:
            store = ConversationStore(db)
            thread = await store.get_thread(prepared.thread_id)
            if thread is None:
                raise NotFoundError("Thread was deleted during the exchange")

            message = await store.append_message(
                prepared.thread_id,
                MessageRole.ASSISTANT.value,
                exchange.text,
                exchange.request_id,
                metadata={
                    "provider": prepared.provider.value,
                    "model": prepared.model,
                    "usage": exchange.usage or None,
                },
            )
            await store.touch_thread(thread)
            await db.commit()

        exchange.transition(ExchangeState.COMPLETED)
        logger.info(
            "Exchange completed",
            message_id=str(message.id),
            chunks=exchange.chunks,
            chars=len(exchange.text),
        )
        return message

    async def _run(
        self,
        exchange: Exchange,
        user_id: str,
        content: str,
        stream: bool,
        on_delta: Optional[DeltaCallback] = None,
    ) -> Message:
        async with self.locks.hold(exchange.thread_id):
            prepared = await self._prepare(user_id, exchange.thread_id, content, exchange.request_id)
            if prepared.existing is not None:
                logger.info("Duplicate request, returning stored reply")
                return prepared.existing

            adapter = self.adapter_factory(prepared.provider)
            exchange.transition(ExchangeState.AWAITING_UPSTREAM)

            if stream and prepared.streaming:
                await self._drive_stream(exchange, adapter, prepared, on_delta)
            else:
                result = await adapter.chat(
                    prepared.secret, prepared.model, prepared.messages, prepared.settings
                )
                exchange.usage = result.usage
                if on_delta is not None and result.full_text:
                    exchange.transition(ExchangeState.STREAMING)
                    exchange.accumulate(result.full_text)
                    await on_delta(result.full_text)
                else:
                    exchange.accumulate(result.full_text)

            exchange.transition(ExchangeState.FINALIZING)
            # The write completes even if the caller goes away now, and the
            # thread stays locked until it has landed
            finalize = asyncio.ensure_future(self._finalize(exchange, prepared))
            try:
                return await asyncio.shield(finalize)
            except asyncio.CancelledError:
                await asyncio.wait([finalize])
                raise

    def _fail(self, exchange: Exchange, error: Exception) -> None:
        exchange.discard()
        if not exchange.terminal:
            exchange.transition(ExchangeState.FAILED)
        logger.warning(
            "Exchange failed",
            error_code=getattr(error, "code", type(error).__name__),
            error_message=str(error)[:500],
        )

    def _cancel(self, exchange: Exchange) -> None:
        if exchange.state in (ExchangeState.FINALIZING, ExchangeState.COMPLETED):
            logger.info("Exchange cancelled after finalizing began, reply kept")
            return
        exchange.discard()
        if not exchange.terminal:
            exchange.transition(ExchangeState.CANCELLED)
        logger.info("Exchange cancelled", chunks=exchange.chunks)

    async def complete(
        self,
        user_id: str,
        thread_id: uuid.UUID,
        content: str,
        request_id: Optional[str] = None,
    ) -> Message:
        """Single-shot exchange; returns the persisted reply."""
        exchange = Exchange(thread_id=thread_id, request_id=request_id)
        with structlog.contextvars.bound_contextvars(
            thread_id=str(thread_id),
            request_id=request_id,
        ):
            try:
                return await self._run(exchange, user_id, content, stream=False)
            except asyncio.CancelledError:
                self._cancel(exchange)
                raise
            except Exception as e:
                self._fail(exchange, e)
                raise

    async def stream(
        self,
        user_id: str,
        thread_id: uuid.UUID,
        content: str,
        request_id: Optional[str],
        relay: SSERelay,
    ) -> None:
        """
        Streaming exchange. Sends `delta` per fragment, then exactly one of
        `done` (with the persisted message) or `error`.
        """
        exchange = Exchange(thread_id=thread_id, request_id=request_id)

        async def forward(delta: str) -> None:
            await relay.send("delta", {"delta": delta})

        with structlog.contextvars.bound_contextvars(
            thread_id=str(thread_id),
            request_id=request_id,
        ):
            try:
                message = await self._run(exchange, user_id, content, stream=True, on_delta=forward)
            except asyncio.CancelledError:
                self._cancel(exchange)
                raise
            except AppError as e:
                self._fail(exchange, e)
                await relay.send("error", {"message": e.message, "code": e.code})
                return
            except Exception as e:
                self._fail(exchange, e)
                raise

            await relay.send("done", {"message": message.to_dict()})
