"""
OpenAI Chat Completions adapter.
"""
import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional

import httpx

from app.core.errors import UpstreamNetworkError, upstream_error
from app.core.logging import get_logger
from app.services.adapter.base import (
    ChatMessage,
    ChatResult,
    ChatSettings,
    ModelCapabilities,
    NormalizedModel,
    Provider,
    ProviderAdapter,
    StreamChunk,
    StreamEvent,
    StreamResult,
    UpstreamRequest,
    split_system,
)
from app.services.adapter.sse import iter_frames

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


def normalize_openai_models(payload: dict[str, Any]) -> list[NormalizedModel]:
    """
    Keep chat-capable `gpt-` models when the catalog has any, otherwise
    everything. Capabilities are guessed from the id.
    """
    entries = [m for m in payload.get("data") or [] if m.get("id")]
    chat_models = [
        m for m in entries
        if m["id"].startswith("gpt-")
        and "instruct" not in m["id"]
        and "realtime" not in m["id"]
    ]

    models = []
    for entry in chat_models or entries:
        model_id = entry["id"]
        models.append(NormalizedModel(
            id=model_id,
            display_name=model_id,
            provider=Provider.OPENAI,
            capabilities=ModelCapabilities(
                streaming=True,
                vision="vision" in model_id or "gpt-4o" in model_id,
                tools="gpt-4" in model_id,
                json="gpt-4" in model_id,
            ),
        ))
    return models


class OpenAIAdapter(ProviderAdapter):
    """Adapter for the OpenAI Chat Completions API."""

    provider = Provider.OPENAI

    def _headers(self, secret: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {secret}",
        }

    def _models_params(self) -> Optional[dict[str, str]]:
        return None

    def _parse_models(self, payload: dict[str, Any]) -> list[NormalizedModel]:
        return normalize_openai_models(payload)

    @staticmethod
    def to_openai_messages(messages: list[ChatMessage]) -> list[dict[str, str]]:
        """
        Chat Completions has no top-level system field, so every system
        message is merged into one leading system turn.
        """
        system, turns = split_system(messages)
        payload = [m.to_dict() for m in turns]
        if system:
            payload.insert(0, {"role": "system", "content": system})
        return payload

    def build_request(
        self,
        model: str,
        messages: list[ChatMessage],
        settings: ChatSettings,
        stream: bool,
    ) -> UpstreamRequest:
        body: dict[str, Any] = {
            "model": model,
            "messages": self.to_openai_messages(messages),
            "temperature": settings.temperature_or_default(),
            "stream": stream,
        }
        if settings.max_tokens is not None:
            body["max_tokens"] = settings.max_tokens
        if stream:
            # final chunk carries token usage
            body["stream_options"] = {"include_usage": True}

        return UpstreamRequest(
            url=f"{self.base_url}/chat/completions",
            json=body,
            endpoint="chat/completions",
        )

    def _parse_chat(self, payload: dict[str, Any]) -> ChatResult:
        choices = payload.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        return ChatResult(full_text=content, usage=payload.get("usage") or {})

    async def _translate_stream(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        parts: list[str] = []
        usage: dict[str, Any] = {}
        finished = False

        async with aclosing(iter_frames(response.aiter_bytes())) as frames:
            async for frame in frames:
                if frame.data == DONE_SENTINEL:
                    finished = True
                    break

                try:
                    chunk = json.loads(frame.data)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed stream frame", provider=self.provider_name)
                    continue
                if not isinstance(chunk, dict):
                    continue

                if chunk.get("error"):
                    error = chunk["error"]
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    raise upstream_error(message or frame.data, provider=self.provider_name)

                if chunk.get("usage"):
                    usage = chunk["usage"]

                choices = chunk.get("choices") or []
                if not choices:
                    continue
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    parts.append(content)
                    yield StreamChunk(content)

        if not finished:
            raise UpstreamNetworkError(
                "OpenAI stream ended before [DONE]",
                provider=self.provider_name,
            )

        yield StreamResult(full_text="".join(parts), usage=usage)
