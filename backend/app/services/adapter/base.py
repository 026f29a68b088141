"""
Provider adapter contract shared by every vendor.

Each vendor speaks its own request format and token-streaming protocol.
Adapters hide that behind one surface:

- validate_credential(secret)
- list_models(secret)
- chat(secret, model, messages, settings)         -> ChatResult
- stream_chat(secret, model, messages, settings)  -> StreamChunk* then StreamResult
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, TypeVar, Union

import httpx

from app.core.config import settings as app_settings
from app.core.errors import (
    InvalidCredentialError,
    UpstreamNetworkError,
    upstream_error,
)
from app.core.logging import get_logger, UpstreamDebugLogger

logger = get_logger(__name__)
debug_logger = UpstreamDebugLogger(logger)

T = TypeVar("T")


class Provider(str, Enum):
    """The closed set of supported vendors."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


class ChatMessage:
    """Chat message structure."""

    def __init__(self, role: str, content: str):
        self.role = role
        self.content = content

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChatMessage):
            return NotImplemented
        return self.role == other.role and self.content == other.content

    def __repr__(self) -> str:
        return f"ChatMessage(role={self.role!r}, content={len(self.content)} chars)"


@dataclass
class ChatSettings:
    """Generation settings stored on a thread."""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ChatSettings":
        data = data or {}
        return cls(
            temperature=data.get("temperature"),
            max_tokens=data.get("maxTokens"),
        )

    def temperature_or_default(self) -> float:
        if self.temperature is None:
            return app_settings.DEFAULT_TEMPERATURE
        return self.temperature


@dataclass
class ChatResult:
    """Complete response of a single-shot exchange."""
    full_text: str
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamChunk:
    """One canonical delta."""
    delta: str


@dataclass
class StreamResult:
    """Terminal item of a naturally completed stream."""
    full_text: str
    usage: dict[str, Any] = field(default_factory=dict)


StreamEvent = Union[StreamChunk, StreamResult]


@dataclass
class ModelCapabilities:
    """Advisory flags, inferred from model ids where the vendor is silent."""
    streaming: bool = True
    vision: bool = False
    tools: bool = False
    json: bool = False


@dataclass
class NormalizedModel:
    """Vendor model catalog entry in the canonical shape."""
    id: str
    display_name: str
    provider: Provider
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    context_window: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "displayName": self.display_name,
            "provider": self.provider.value,
            "capabilities": {
                "streaming": self.capabilities.streaming,
                "vision": self.capabilities.vision,
                "tools": self.capabilities.tools,
                "json": self.capabilities.json,
            },
        }
        if self.context_window is not None:
            data["contextWindow"] = self.context_window
        return data


@dataclass
class UpstreamRequest:
    """A fully built vendor request."""
    url: str
    json: dict[str, Any]
    endpoint: str
    params: Optional[dict[str, str]] = None


def split_system(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    """Pull system messages out of the turn list; join them with blank lines."""
    system_parts: list[str] = []
    turns: list[ChatMessage] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
        else:
            turns.append(msg)
    return "\n\n".join(system_parts), turns


class ProviderAdapter(ABC):
    """Abstract base class for vendor adapters."""

    provider: Provider

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or app_settings.base_url_for(self.provider.value)).rstrip("/")
        self.timeout = timeout or app_settings.UPSTREAM_TIMEOUT
        self.provider_name = self.provider.value
        self._transport = transport

    # ----------------------------------------
    # Vendor hooks
    # ----------------------------------------

    @abstractmethod
    def _headers(self, secret: str) -> dict[str, str]:
        """Auth and content headers for every request."""

    @abstractmethod
    def _models_params(self) -> Optional[dict[str, str]]:
        """Query parameters for the model catalog request."""

    @abstractmethod
    def _parse_models(self, payload: dict[str, Any]) -> list[NormalizedModel]:
        """Reshape the vendor catalog into NormalizedModel entries."""

    @abstractmethod
    def build_request(
        self,
        model: str,
        messages: list[ChatMessage],
        settings: ChatSettings,
        stream: bool,
    ) -> UpstreamRequest:
        """Translate canonical messages into the vendor request."""

    @abstractmethod
    def _parse_chat(self, payload: dict[str, Any]) -> ChatResult:
        """Read a complete (non-streaming) vendor response."""

    @abstractmethod
    def _translate_stream(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        """Map vendor frames to StreamChunk items, ending with one StreamResult."""

    # ----------------------------------------
    # Shared contract
    # ----------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _error_text(self, response: httpx.Response, action: str) -> str:
        """Raw vendor body, or a short fallback when the body is empty."""
        text = response.text.strip()
        return text or f"{self.provider_name} {action} failed (HTTP {response.status_code})"

    def _network_error(self, exc: Exception) -> UpstreamNetworkError:
        if isinstance(exc, httpx.TimeoutException):
            message = f"{self.provider_name} request timed out"
        else:
            message = f"{self.provider_name} network error: {exc}"
        return UpstreamNetworkError(message, provider=self.provider_name)

    def _parse_body(self, response: httpx.Response, action: str, parse: Callable[[Any], T]) -> T:
        """Decode a 2xx body; anything unreadable is an upstream failure."""
        try:
            return parse(response.json())
        except (ValueError, AttributeError, TypeError, KeyError) as e:
            logger.warning(
                "Malformed upstream body",
                provider=self.provider_name,
                action=action,
                status_code=response.status_code,
            )
            raise upstream_error(
                self._error_text(response, action),
                provider=self.provider_name,
                upstream_status=response.status_code,
            ) from e

    async def _get_models(self, secret: str) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.get(
                    f"{self.base_url}/models",
                    headers=self._headers(secret),
                    params=self._models_params(),
                )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise self._network_error(e) from e

    async def validate_credential(self, secret: str) -> None:
        """Cheap read-only call; any non-2xx means the key is rejected."""
        response = await self._get_models(secret)
        if not response.is_success:
            logger.info(
                "Credential rejected",
                provider=self.provider_name,
                status_code=response.status_code,
            )
            raise InvalidCredentialError(
                self._error_text(response, "validation"),
                provider=self.provider_name,
                upstream_status=response.status_code,
            )

    async def list_models(self, secret: str) -> list[NormalizedModel]:
        """Fetch and normalize the vendor model catalog."""
        response = await self._get_models(secret)
        if not response.is_success:
            raise upstream_error(
                self._error_text(response, "models fetch"),
                provider=self.provider_name,
                upstream_status=response.status_code,
            )
        models = self._parse_body(response, "models fetch", self._parse_models)
        logger.debug("Fetched model catalog", provider=self.provider_name, count=len(models))
        return models

    async def chat(
        self,
        secret: str,
        model: str,
        messages: list[ChatMessage],
        settings: ChatSettings,
    ) -> ChatResult:
        """Single-shot exchange."""
        request = self.build_request(model, messages, settings, stream=False)

        with debug_logger.track_call(
            provider=self.provider_name,
            model=model,
            endpoint=request.endpoint,
        ) as call:
            call.add_messages([m.to_dict() for m in messages])
            call.set_request_params(
                temperature=settings.temperature_or_default(),
                max_tokens=settings.max_tokens,
            )

            try:
                async with self._client() as client:
                    response = await client.post(
                        request.url,
                        headers=self._headers(secret),
                        params=request.params,
                        json=request.json,
                    )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                raise self._network_error(e) from e

            if not response.is_success:
                raise upstream_error(
                    self._error_text(response, "chat"),
                    provider=self.provider_name,
                    upstream_status=response.status_code,
                )

            result = self._parse_body(response, "chat", self._parse_chat)
            call.set_response(result.full_text, result.usage)
            return result

    async def stream_chat(
        self,
        secret: str,
        model: str,
        messages: list[ChatMessage],
        settings: ChatSettings,
    ) -> AsyncIterator[StreamEvent]:
        """
        Streaming exchange.

        Yields StreamChunk per delta, then one StreamResult on natural
        completion. Closing the iterator (or cancelling the task driving it)
        closes the upstream response.
        """
        request = self.build_request(model, messages, settings, stream=True)

        with debug_logger.track_call(
            provider=self.provider_name,
            model=model,
            endpoint=request.endpoint,
            streaming=True,
        ) as call:
            call.add_messages([m.to_dict() for m in messages])
            call.set_request_params(
                temperature=settings.temperature_or_default(),
                max_tokens=settings.max_tokens,
            )

            try:
                async with self._client() as client:
                    async with client.stream(
                        "POST",
                        request.url,
                        headers=self._headers(secret),
                        params=request.params,
                        json=request.json,
                    ) as response:
                        if not response.is_success:
                            await response.aread()
                            raise upstream_error(
                                self._error_text(response, "stream"),
                                provider=self.provider_name,
                                upstream_status=response.status_code,
                            )

                        async for event in self._translate_stream(response):
                            if isinstance(event, StreamChunk):
                                call.add_chunk(event.delta)
                            else:
                                call.set_response(event.full_text, event.usage)
                            yield event
            except (httpx.TimeoutException, httpx.TransportError) as e:
                raise self._network_error(e) from e
