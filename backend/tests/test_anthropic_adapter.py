import json

import httpx
import pytest

from app.core.errors import UpstreamBillingError, UpstreamNetworkError, UpstreamRateLimitedError
from app.services.adapter import AnthropicAdapter, ChatMessage, ChatSettings, StreamChunk
from conftest import FakeVendor, anthropic_stream, event_stream, sse

MESSAGES = [
    ChatMessage("system", "You are terse."),
    ChatMessage("user", "Hi"),
    ChatMessage("system", "No emoji."),
    ChatMessage("assistant", "Hello."),
    ChatMessage("user", "Bye"),
]


def make_adapter(vendor: FakeVendor) -> AnthropicAdapter:
    return AnthropicAdapter(transport=vendor.transport())


async def collect(adapter):
    return [
        event async for event in adapter.stream_chat(
            "sk-ant", "claude-3-5-sonnet", MESSAGES, ChatSettings()
        )
    ]


def test_system_goes_to_top_level_field_only():
    request = AnthropicAdapter().build_request(
        "claude-3-5-sonnet", MESSAGES, ChatSettings(), stream=False
    )

    assert request.json["system"] == "You are terse.\n\nNo emoji."
    assert all(m["role"] != "system" for m in request.json["messages"])
    assert [m["content"] for m in request.json["messages"]] == ["Hi", "Hello.", "Bye"]
    assert request.json["max_tokens"] == 1024
    assert request.json["temperature"] == 0.7


def test_no_system_field_without_system_messages():
    request = AnthropicAdapter().build_request(
        "claude-3-5-sonnet", [ChatMessage("user", "Hi")], ChatSettings(max_tokens=50), stream=True
    )
    assert "system" not in request.json
    assert request.json["max_tokens"] == 50
    assert request.json["stream"] is True


async def test_stream_translates_content_block_deltas():
    vendor = FakeVendor()
    vendor.on("POST", "/messages", lambda r: event_stream(anthropic_stream("Hel", "lo", " world")))

    events = await collect(make_adapter(vendor))

    assert events[:-1] == [StreamChunk("Hel"), StreamChunk("lo"), StreamChunk(" world")]
    assert events[-1].full_text == "Hello world"
    assert events[-1].usage == {"input_tokens": 5, "output_tokens": 3}

    headers = vendor.requests[0].headers
    assert headers["x-api-key"] == "sk-ant"
    assert headers["anthropic-version"] == "2023-06-01"


async def test_ping_and_unknown_events_are_ignored():
    body = sse(
        ("ping", {"type": "ping"}),
        ("content_block_start", {"type": "content_block_start", "content_block": {"type": "text", "text": ""}}),
        ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "x"}}),
        ("message_stop", {"type": "message_stop"}),
    )
    vendor = FakeVendor()
    vendor.on("POST", "/messages", lambda r: event_stream(body))

    events = await collect(make_adapter(vendor))

    assert [e.delta for e in events[:-1]] == ["x"]


async def test_stream_chunked_at_odd_boundaries():
    body = anthropic_stream("Hel", "lo")
    chunks = [body[i:i + 7] for i in range(0, len(body), 7)]
    vendor = FakeVendor()
    vendor.on("POST", "/messages", lambda r: event_stream(chunks))

    events = await collect(make_adapter(vendor))

    assert events[-1].full_text == "Hello"


async def test_missing_message_stop_fails():
    vendor = FakeVendor()
    vendor.on("POST", "/messages", lambda r: event_stream(anthropic_stream("cut", stop=False)))

    with pytest.raises(UpstreamNetworkError):
        await collect(make_adapter(vendor))


async def test_error_event_mid_stream():
    body = sse(
        ("content_block_delta", {"type": "content_block_delta", "delta": {"text": "a"}}),
        ("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Too many requests right now"}}),
    )
    vendor = FakeVendor()
    vendor.on("POST", "/messages", lambda r: event_stream(body))

    with pytest.raises(UpstreamRateLimitedError):
        await collect(make_adapter(vendor))


async def test_non_success_body_is_classified():
    raw = '{"type":"error","error":{"type":"billing_error","message":"Your credit balance is too low"}}'
    vendor = FakeVendor()
    vendor.on("POST", "/messages", httpx.Response(400, text=raw))

    with pytest.raises(UpstreamBillingError) as exc_info:
        await make_adapter(vendor).chat("sk-ant", "claude-3-5-sonnet", MESSAGES, ChatSettings())

    assert exc_info.value.message == raw


async def test_chat_joins_text_blocks():
    vendor = FakeVendor()
    vendor.on("POST", "/messages", httpx.Response(200, json={
        "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}],
        "usage": {"input_tokens": 4, "output_tokens": 2},
    }))

    result = await make_adapter(vendor).chat("sk-ant", "claude-3-5-sonnet", MESSAGES, ChatSettings())

    assert result.full_text == "Hello there"
    assert json.loads(vendor.requests[0].content)["stream"] is False


async def test_list_models_uses_display_name():
    vendor = FakeVendor()
    vendor.on("GET", "/models", httpx.Response(200, json={"data": [
        {"id": "claude-3-5-sonnet-20241022", "display_name": "Claude 3.5 Sonnet"},
        {"id": "claude-3-haiku-20240307"},
    ]}))

    models = await make_adapter(vendor).list_models("sk-ant")

    assert [m.display_name for m in models] == ["Claude 3.5 Sonnet", "claude-3-haiku-20240307"]
    assert all(m.capabilities.streaming for m in models)
    assert vendor.requests[0].url.params["limit"] == "1000"


async def test_non_object_frame_is_skipped():
    body = sse(42, "null") + anthropic_stream("ok")
    vendor = FakeVendor()
    vendor.on("POST", "/messages", lambda r: event_stream(body))

    events = await collect(make_adapter(vendor))

    assert events[0] == StreamChunk("ok")
    assert events[-1].full_text == "ok"
