"""
Threads API endpoints.

Sending a message streams the reply as server-sent events:

    event: delta
    data: {"delta": "<text fragment>"}

    event: done
    data: {"message": <persisted message>}

    event: error
    data: {"message": "<failure>", "code": "<error code>"}
"""
from functools import partial
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    enforce_rate_limit,
    get_credential_service,
    get_current_user_id,
    get_orchestrator,
)
from app.core.database import get_db
from app.core.errors import CredentialMissingError, NotFoundError
from app.core.logging import get_logger
from app.models.thread import ThreadStatus
from app.services.adapter import Provider
from app.services.chat import ChatOrchestrator, SSERelay
from app.services.conversation import ConversationStore
from app.services.credentials import CredentialService

logger = get_logger(__name__)
router = APIRouter()


# ========================================
# Request Schemas
# ========================================

class ThreadSettings(BaseModel):
    """Generation settings applied to every exchange in the thread."""
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    maxTokens: Optional[int] = Field(default=None, ge=1, le=8192)


class CreateThreadRequest(BaseModel):
    provider: Provider
    model: str = Field(..., min_length=1)
    systemPrompt: Optional[str] = None
    settings: Optional[ThreadSettings] = None


class UpdateThreadRequest(BaseModel):
    """Only title and status can change after creation."""
    title: Optional[str] = Field(default=None, max_length=200)
    status: Optional[Literal["active", "archived"]] = None


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)
    requestId: Optional[str] = Field(default=None, min_length=1, max_length=200)
    stream: bool = True


# ========================================
# API Endpoints
# ========================================

async def _get_owned_thread(store: ConversationStore, thread_id: UUID, user_id: str):
    thread = await store.get_thread(thread_id, user_id)
    if thread is None:
        raise NotFoundError("Thread not found")
    return thread


@router.post("", status_code=201)
async def create_thread(
    request: CreateThreadRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    credentials: CredentialService = Depends(get_credential_service),
):
    """Create a thread bound to one provider and model. Needs an active key."""
    if await credentials.get_active_key(user_id, request.provider) is None:
        raise CredentialMissingError()

    thread = await ConversationStore(db).create_thread(
        user_id=user_id,
        provider=request.provider.value,
        model=request.model,
        system_prompt=request.systemPrompt,
        settings=request.settings.model_dump(exclude_none=True) if request.settings else {},
    )
    return {"thread": thread.to_dict()}


@router.get("")
async def list_threads(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    store = ConversationStore(db)
    threads = await store.list_threads(user_id)
    last = await store.last_messages([t.id for t in threads])
    return {
        "threads": [
            {
                **thread.to_dict(),
                "lastMessage": last[thread.id].content if thread.id in last else None,
            }
            for thread in threads
        ]
    }


@router.get("/{thread_id}")
async def get_thread(
    thread_id: UUID,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Thread with its full message history."""
    store = ConversationStore(db)
    thread = await _get_owned_thread(store, thread_id, user_id)
    messages = await store.list_messages(thread.id)
    return {
        "thread": {
            **thread.to_dict(),
            "messages": [m.to_dict() for m in messages],
        }
    }


@router.patch("/{thread_id}")
async def update_thread(
    thread_id: UUID,
    request: UpdateThreadRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    store = ConversationStore(db)
    thread = await _get_owned_thread(store, thread_id, user_id)
    thread = await store.update_thread(
        thread,
        title=request.title,
        status=ThreadStatus(request.status).value if request.status else None,
    )
    return {"thread": thread.to_dict()}


@router.delete("/{thread_id}")
async def delete_thread(
    thread_id: UUID,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    store = ConversationStore(db)
    thread = await _get_owned_thread(store, thread_id, user_id)
    await store.delete_thread(thread)
    return {"ok": True}


@router.post("/{thread_id}/messages")
async def send_message(
    thread_id: UUID,
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    _: None = Depends(enforce_rate_limit),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """
    Send a user message and get the assistant reply.

    A request id that was already answered returns the stored reply as JSON
    without contacting the vendor. With stream=false the reply is returned
    as JSON once complete; otherwise it is streamed as SSE.
    """
    existing = await orchestrator.precheck(user_id, thread_id, request.requestId)
    if existing is not None:
        return {"message": existing.to_dict()}

    if not request.stream:
        message = await orchestrator.complete(
            user_id, thread_id, request.content, request.requestId
        )
        return {"message": message.to_dict()}

    logger.info("Streaming exchange requested", thread_id=str(thread_id))
    relay = SSERelay()
    producer = partial(
        orchestrator.stream,
        user_id,
        thread_id,
        request.content,
        request.requestId,
    )
    return StreamingResponse(
        relay.stream(producer),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
