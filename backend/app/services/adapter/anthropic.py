"""
Anthropic Messages API adapter.
"""
import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional

import httpx

from app.core.config import settings as app_settings
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


def normalize_anthropic_models(payload: dict[str, Any]) -> list[NormalizedModel]:
    models = []
    for entry in payload.get("data") or []:
        model_id = entry.get("id")
        if not model_id:
            continue
        models.append(NormalizedModel(
            id=model_id,
            display_name=entry.get("display_name") or model_id,
            provider=Provider.ANTHROPIC,
            capabilities=ModelCapabilities(
                streaming=True,
                vision="vision" in model_id,
                tools="tool" in model_id,
                json="json" in model_id,
            ),
        ))
    return models


def _merge_usage(usage: dict[str, Any], update: Optional[dict[str, Any]]) -> None:
    for key, value in (update or {}).items():
        if value is not None:
            usage[key] = value


class AnthropicAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    provider = Provider.ANTHROPIC

    def _headers(self, secret: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": secret,
            "anthropic-version": app_settings.ANTHROPIC_VERSION,
        }

    def _models_params(self) -> Optional[dict[str, str]]:
        return {"limit": "1000"}

    def _parse_models(self, payload: dict[str, Any]) -> list[NormalizedModel]:
        return normalize_anthropic_models(payload)

    def build_request(
        self,
        model: str,
        messages: list[ChatMessage],
        settings: ChatSettings,
        stream: bool,
    ) -> UpstreamRequest:
        system, turns = split_system(messages)

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": settings.max_tokens or app_settings.ANTHROPIC_DEFAULT_MAX_TOKENS,
            "messages": [m.to_dict() for m in turns],
            "temperature": settings.temperature_or_default(),
            "stream": stream,
        }
        if system:
            body["system"] = system

        return UpstreamRequest(
            url=f"{self.base_url}/messages",
            json=body,
            endpoint="messages",
        )

    def _parse_chat(self, payload: dict[str, Any]) -> ChatResult:
        content = ""
        for block in payload.get("content") or []:
            if block.get("type") == "text":
                content += block.get("text", "")
        return ChatResult(full_text=content, usage=payload.get("usage") or {})

    async def _translate_stream(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        parts: list[str] = []
        usage: dict[str, Any] = {}
        stopped = False

        async with aclosing(iter_frames(response.aiter_bytes())) as frames:
            async for frame in frames:
                try:
                    event = json.loads(frame.data)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed stream frame", provider=self.provider_name)
                    continue
                if not isinstance(event, dict):
                    continue

                kind = frame.event or event.get("type")

                if kind == "content_block_delta":
                    text = (event.get("delta") or {}).get("text")
                    if text:
                        parts.append(text)
                        yield StreamChunk(text)
                elif kind == "message_start":
                    _merge_usage(usage, (event.get("message") or {}).get("usage"))
                elif kind == "message_delta":
                    _merge_usage(usage, event.get("usage"))
                elif kind == "error":
                    error = event.get("error") or {}
                    raise upstream_error(
                        error.get("message") or frame.data,
                        provider=self.provider_name,
                    )
                elif kind == "message_stop":
                    stopped = True
                    break

        if not stopped:
            raise UpstreamNetworkError(
                "Anthropic stream ended before message_stop",
                provider=self.provider_name,
            )

        yield StreamResult(full_text="".join(parts), usage=usage)
