"""
Shared fixtures: a throwaway SQLite database per test, a scripted vendor
behind httpx.MockTransport, and the FastAPI app wired to both.
"""
import json
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Union

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import app.models  # noqa: F401  registers tables on Base.metadata
from app.api.deps import get_adapter_factory
from app.core.database import Base, get_session_factory
from app.core.rate_limit import RateLimiter
from app.main import create_app
from app.models.provider_key import KeyStatus, ProviderKey
from app.models.thread import Message, Thread
from app.services.adapter import get_provider_adapter
from app.services.credentials import PassthroughSealer, mask_key

USER_ID = "user-1"


# ========================================
# Wire helpers
# ========================================

def sse(*frames: Union[tuple[Optional[str], Any], Any]) -> bytes:
    """Encode frames; a frame is a payload or an (event, payload) pair."""
    out = []
    for frame in frames:
        event, payload = frame if isinstance(frame, tuple) else (None, frame)
        data = payload if isinstance(payload, str) else json.dumps(payload)
        block = f"event: {event}\n" if event else ""
        out.append(f"{block}data: {data}\n\n")
    return "".join(out).encode("utf-8")


def openai_stream(*deltas: str, done: bool = True) -> bytes:
    frames: list[Any] = [{"choices": [{"delta": {"content": d}}]} for d in deltas]
    if done:
        frames.append("[DONE]")
    return sse(*frames)


def anthropic_stream(*deltas: str, stop: bool = True) -> bytes:
    frames: list[Any] = [
        ("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 5}}}),
    ]
    frames += [
        ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": d}})
        for d in deltas
    ]
    frames.append(("message_delta", {"type": "message_delta", "usage": {"output_tokens": len(deltas)}}))
    if stop:
        frames.append(("message_stop", {"type": "message_stop"}))
    return sse(*frames)


def gemini_chunk(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def event_stream(body: Union[bytes, Iterable[bytes]], status_code: int = 200) -> httpx.Response:
    """SSE response; an iterable body is delivered chunk by chunk."""
    if isinstance(body, bytes):
        body = [body]
    chunks = list(body)

    async def stream() -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk

    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=stream(),
    )


def parse_sse_frames(raw: Union[bytes, str]) -> list[tuple[str, Any]]:
    """Decode relay output into (event, payload) pairs."""
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    frames = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        event, data = None, ""
        for line in block.split("\n"):
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data += line[len("data: "):]
        frames.append((event, json.loads(data)))
    return frames


# ========================================
# Scripted vendor
# ========================================

Responder = Callable[[httpx.Request], httpx.Response]


class FakeVendor:
    """
    Routes requests by method and path suffix to scripted responders and
    records everything it receives.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._routes: list[tuple[str, str, Responder]] = []

    def on(self, method: str, path_suffix: str, responder: Union[Responder, httpx.Response]) -> None:
        if isinstance(responder, httpx.Response):
            fixed = responder

            def responder(request: httpx.Request) -> httpx.Response:
                # fresh object per call; a Response can only be sent once
                return httpx.Response(
                    fixed.status_code,
                    headers=fixed.headers,
                    content=fixed.content,
                )
        # newest route wins, so tests can re-script an endpoint
        self._routes.insert(0, (method.upper(), path_suffix, responder))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, suffix, responder in self._routes:
            if request.method == method and request.url.path.endswith(suffix):
                return responder(request)
        return httpx.Response(404, text=f"no route for {request.method} {request.url.path}")

    def calls(self, path_suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(path_suffix))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def adapter_factory(self, provider):
        return get_provider_adapter(provider, transport=self.transport())


# ========================================
# Database
# ========================================

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def vendor():
    return FakeVendor()


@pytest.fixture
def sealer():
    return PassthroughSealer()


async def seed_key(session_factory, provider: str = "openai", raw_key: str = "sk-test-1234abcd",
                   user_id: str = USER_ID) -> ProviderKey:
    async with session_factory() as session:
        key = ProviderKey(
            user_id=user_id,
            provider=provider,
            key_ciphertext=raw_key,
            key_mask=mask_key(raw_key),
            status=KeyStatus.ACTIVE.value,
            last_validated_at=datetime.utcnow(),
        )
        session.add(key)
        await session.commit()
        return key


async def seed_thread(session_factory, provider: str = "openai", model: str = "gpt-4o",
                      user_id: str = USER_ID, system_prompt: Optional[str] = None,
                      with_key: bool = True) -> Thread:
    if with_key:
        await seed_key(session_factory, provider=provider, user_id=user_id)
    async with session_factory() as session:
        thread = Thread(
            user_id=user_id,
            provider=provider,
            model=model,
            system_prompt=system_prompt,
            settings={},
        )
        session.add(thread)
        await session.commit()
        return thread


async def stored_messages(session_factory, thread_id, role: Optional[str] = None) -> list[Message]:
    async with session_factory() as session:
        stmt = select(Message).where(Message.thread_id == thread_id)
        if role:
            stmt = stmt.where(Message.role == role)
        result = await session.execute(stmt.order_by(Message.created_at))
        return list(result.scalars().all())


# ========================================
# Application
# ========================================

@pytest.fixture
def rate_limiter():
    return RateLimiter(limit=1000, interval_seconds=60.0)


@pytest.fixture
def app(session_factory, vendor, rate_limiter):
    application = create_app(rate_limiter=rate_limiter, use_lifespan=False)
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_adapter_factory] = lambda: vendor.adapter_factory
    return application


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
        headers={"X-User-Id": USER_ID},
    ) as client:
        yield client
