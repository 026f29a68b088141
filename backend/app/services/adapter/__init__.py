"""
Provider adapter module - vendor abstraction layer.

Supports three vendors behind one streaming contract:
- OpenAI (Chat Completions)
- Anthropic (Messages)
- Google Gemini (generateContent)
"""
from typing import Optional, Union

import httpx

from app.services.adapter.anthropic import AnthropicAdapter
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
)
from app.services.adapter.gemini import GeminiAdapter
from app.services.adapter.openai import OpenAIAdapter
from app.services.adapter.sse import SSEFrame, SSEParser, iter_frames

ADAPTERS: dict[Provider, type[ProviderAdapter]] = {
    Provider.OPENAI: OpenAIAdapter,
    Provider.ANTHROPIC: AnthropicAdapter,
    Provider.GEMINI: GeminiAdapter,
}


def get_provider_adapter(
    provider: Union[Provider, str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderAdapter:
    """
    Factory function to get the adapter for a vendor.

    Raises ValueError for anything outside the Provider enum.
    """
    return ADAPTERS[Provider(provider)](transport=transport)


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "ChatMessage",
    "ChatResult",
    "ChatSettings",
    "GeminiAdapter",
    "ModelCapabilities",
    "NormalizedModel",
    "OpenAIAdapter",
    "Provider",
    "ProviderAdapter",
    "SSEFrame",
    "SSEParser",
    "StreamChunk",
    "StreamEvent",
    "StreamResult",
    "get_provider_adapter",
    "iter_frames",
]
