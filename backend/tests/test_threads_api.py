import httpx

from app.core.rate_limit import RateLimiter
from app.services.conversation import ConversationStore
from conftest import USER_ID, openai_stream, parse_sse_frames, seed_key, seed_thread, stored_messages

COMPLETIONS = "/chat/completions"


def stream_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


async def test_create_thread_requires_key(client):
    response = await client.post("/api/threads", json={"provider": "openai", "model": "gpt-4o"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "key_missing"


async def test_thread_lifecycle(client, session_factory):
    await seed_key(session_factory)

    created = await client.post("/api/threads", json={
        "provider": "openai",
        "model": "gpt-4o",
        "systemPrompt": "Be brief.",
        "settings": {"temperature": 0.3},
    })
    assert created.status_code == 201
    thread = created.json()["thread"]
    assert thread["settings"] == {"temperature": 0.3}
    assert thread["status"] == "active"
    assert thread["title"] is None

    listed = (await client.get("/api/threads")).json()["threads"]
    assert [t["id"] for t in listed] == [thread["id"]]
    assert listed[0]["lastMessage"] is None

    patched = await client.patch(f"/api/threads/{thread['id']}", json={"title": "Renamed", "status": "archived"})
    assert patched.json()["thread"]["title"] == "Renamed"
    assert patched.json()["thread"]["status"] == "archived"

    fetched = (await client.get(f"/api/threads/{thread['id']}")).json()["thread"]
    assert fetched["messages"] == []
    assert fetched["systemPrompt"] == "Be brief."

    deleted = await client.delete(f"/api/threads/{thread['id']}")
    assert deleted.json() == {"ok": True}
    missing = await client.get(f"/api/threads/{thread['id']}")
    assert missing.status_code == 404


async def test_invalid_thread_input(client, session_factory):
    await seed_key(session_factory)

    bad_provider = await client.post("/api/threads", json={"provider": "mistral", "model": "x"})
    bad_settings = await client.post("/api/threads", json={
        "provider": "openai", "model": "gpt-4o", "settings": {"temperature": 3},
    })

    assert bad_provider.status_code == 400
    assert bad_settings.status_code == 400
    assert bad_settings.json()["error"]["code"] == "invalid_request"


async def test_threads_are_private(client, session_factory):
    thread = await seed_thread(session_factory, user_id="someone-else")

    response = await client.get(f"/api/threads/{thread.id}")
    send = await client.post(f"/api/threads/{thread.id}/messages", json={"content": "hi"})

    assert response.status_code == 404
    assert send.status_code == 404
    assert (await client.get("/api/threads")).json() == {"threads": []}


async def test_send_message_streams_sse(client, session_factory, vendor):
    thread = await seed_thread(session_factory)
    vendor.on("POST", COMPLETIONS, stream_response(openai_stream("Hel", "lo")))

    response = await client.post(
        f"/api/threads/{thread.id}/messages",
        json={"content": "Say hello", "requestId": "req-1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = parse_sse_frames(response.content)
    assert [event for event, _ in frames] == ["delta", "delta", "done"]
    assert frames[-1][1]["message"]["content"] == "Hello"

    listed = (await client.get("/api/threads")).json()["threads"]
    assert listed[0]["lastMessage"] == "Hello"
    assert listed[0]["title"] == "Say hello"


async def test_answered_request_id_returns_json(client, session_factory, vendor):
    thread = await seed_thread(session_factory)
    vendor.on("POST", COMPLETIONS, stream_response(openai_stream("Once")))
    await client.post(f"/api/threads/{thread.id}/messages", json={"content": "hi", "requestId": "abc"})

    again = await client.post(f"/api/threads/{thread.id}/messages", json={"content": "hi", "requestId": "abc"})

    assert again.headers["content-type"].startswith("application/json")
    assert again.json()["message"]["content"] == "Once"
    assert vendor.calls(COMPLETIONS) == 1
    assert len(await stored_messages(session_factory, thread.id)) == 2


async def test_send_message_without_streaming(client, session_factory, vendor):
    thread = await seed_thread(session_factory)
    vendor.on("POST", COMPLETIONS, httpx.Response(200, json={
        "choices": [{"message": {"content": "Plain reply"}}],
    }))

    response = await client.post(
        f"/api/threads/{thread.id}/messages",
        json={"content": "hi", "stream": False},
    )

    assert response.status_code == 200
    assert response.json()["message"]["content"] == "Plain reply"
    assert response.json()["message"]["role"] == "assistant"


async def test_non_streaming_upstream_failure_is_json_error(client, session_factory, vendor):
    thread = await seed_thread(session_factory)
    vendor.on("POST", COMPLETIONS, httpx.Response(429, text="Rate limit reached for requests"))

    response = await client.post(
        f"/api/threads/{thread.id}/messages",
        json={"content": "hi", "stream": False},
    )

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "rate_limited"
    assert error["retryable"] is True


async def test_send_without_key_fails_before_streaming(client, session_factory):
    thread = await seed_thread(session_factory, with_key=False)

    response = await client.post(f"/api/threads/{thread.id}/messages", json={"content": "hi"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "key_missing"


async def test_empty_content_is_rejected(client, session_factory):
    thread = await seed_thread(session_factory)

    response = await client.post(f"/api/threads/{thread.id}/messages", json={"content": ""})

    assert response.status_code == 400


async def test_rate_limit(app, client, session_factory, vendor):
    app.state.rate_limiter = RateLimiter(limit=1)
    thread = await seed_thread(session_factory)
    vendor.on("POST", COMPLETIONS, httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))

    first = await client.post(f"/api/threads/{thread.id}/messages", json={"content": "a", "stream": False})
    second = await client.post(f"/api/threads/{thread.id}/messages", json={"content": "b", "stream": False})

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["error"]["code"] == "rate_limited"
    assert app.state.rate_limiter.remaining(f"user:{USER_ID}") == 0


async def test_health(client):
    response = await client.get("/health")
    assert response.json()["status"] == "healthy"


async def test_unreadable_vendor_reply_is_json_error(client, session_factory, vendor):
    thread = await seed_thread(session_factory)
    vendor.on("POST", COMPLETIONS, httpx.Response(200, text="<html>bad gateway</html>"))

    response = await client.post(
        f"/api/threads/{thread.id}/messages",
        json={"content": "hi", "stream": False},
    )

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "unknown"
    assert error["details"]["provider"] == "openai"


async def test_thread_list_shows_newest_message_per_thread(client, session_factory):
    first = await seed_thread(session_factory)
    second = await seed_thread(session_factory, with_key=False)
    async with session_factory() as session:
        store = ConversationStore(session)
        await store.append_message(first.id, "user", "older")
        await store.append_message(first.id, "assistant", "newer", request_id="r1")
        await session.commit()

    listed = {t["id"]: t["lastMessage"] for t in (await client.get("/api/threads")).json()["threads"]}

    assert listed == {str(first.id): "newer", str(second.id): None}
