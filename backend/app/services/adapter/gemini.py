"""
Google Gemini (Generative Language API) adapter.

Gemini is the odd one out: streamed chunks are bare GenerateContentResponse
objects, not typed frames. With `alt=sse` they arrive as `data:` frames, but
without it (or behind proxies that drop the parameter) the body is a JSON
array streamed piecemeal. Both shapes are handled, and a malformed chunk is
skipped rather than failing the whole stream.
"""
import codecs
import json
import re
from typing import Any, AsyncIterator, Iterable, List, Optional, Union

import httpx

from app.core.errors import upstream_error
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
from app.services.adapter.sse import SSEParser

logger = get_logger(__name__)

# Start of the next top-level object after a broken one: a `{` at the start
# of a line, optionally after an array comma or an SSE `data:` prefix.
# Pretty-printed nested objects are indented, so they never match.
_OBJECT_BOUNDARY = re.compile(r"\n(?:,\s*)?(?:data:[ \t]*)?\{")


class JSONObjectScanner:
    """
    Incrementally pull top-level JSON objects out of loosely framed text.

    Tolerates a wrapping `[ ... ]`, `,` separators, whitespace and `data:`
    prefixes between objects. An object that cannot be decoded is skipped
    once the start of the next object is visible; until then it is assumed
    to be incomplete and kept buffered.
    """

    def __init__(self):
        self._decoder = json.JSONDecoder()
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped = 0

    def feed(self, data: Union[bytes, str]) -> List[dict]:
        if isinstance(data, bytes):
            data = self._bytes.decode(data)
        self._buffer += data
        return self._drain(final=False)

    def close(self) -> List[dict]:
        """Flush; whatever still fails to decode is counted as skipped."""
        self._buffer += self._bytes.decode(b"", final=True)
        return self._drain(final=True)

    def _drain(self, final: bool) -> List[dict]:
        objects: List[dict] = []
        while True:
            start = self._buffer.find("{")
            if start == -1:
                # only separators left
                self._buffer = ""
                break
            self._buffer = self._buffer[start:]

            try:
                obj, end = self._decoder.raw_decode(self._buffer)
            except json.JSONDecodeError:
                boundary = _OBJECT_BOUNDARY.search(self._buffer, 1)
                if boundary is None:
                    if final:
                        self.skipped += 1
                        self._buffer = ""
                    break
                self.skipped += 1
                self._buffer = self._buffer[boundary.start() + 1:]
                continue

            self._buffer = self._buffer[end:]
            if isinstance(obj, dict):
                objects.append(obj)
        return objects


def normalize_gemini_models(payload: dict[str, Any]) -> list[NormalizedModel]:
    models = []
    for entry in payload.get("models") or []:
        name = entry.get("name")
        if not name:
            continue
        methods = entry.get("supportedGenerationMethods") or []
        models.append(NormalizedModel(
            id=name,
            display_name=entry.get("displayName") or name,
            provider=Provider.GEMINI,
            capabilities=ModelCapabilities(
                streaming="streamGenerateContent" in methods,
                vision="vision" in name,
                tools=False,
                json=False,
            ),
            context_window=entry.get("inputTokenLimit"),
        ))
    return models


def candidate_text(payload: dict[str, Any]) -> str:
    """Text of the first candidate, all text parts joined."""
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if "text" in part)


class GeminiAdapter(ProviderAdapter):
    """Adapter for the Gemini generateContent API."""

    provider = Provider.GEMINI

    def _headers(self, secret: str) -> dict[str, str]:
        # header auth keeps the key out of request URLs and access logs
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": secret,
        }

    def _models_params(self) -> Optional[dict[str, str]]:
        return {"pageSize": "1000"}

    def _parse_models(self, payload: dict[str, Any]) -> list[NormalizedModel]:
        return normalize_gemini_models(payload)

    @staticmethod
    def model_path(model: str) -> str:
        return model if model.startswith("models/") else f"models/{model}"

    @staticmethod
    def to_gemini_contents(messages: list[ChatMessage]) -> tuple[str, list[dict]]:
        """Convert canonical messages to Gemini contents plus system instruction."""
        system_instruction, turns = split_system(messages)
        contents = []
        for msg in turns:
            role = "user" if msg.role == "user" else "model"
            contents.append({
                "role": role,
                "parts": [{"text": msg.content}]
            })
        return system_instruction, contents

    def build_request(
        self,
        model: str,
        messages: list[ChatMessage],
        settings: ChatSettings,
        stream: bool,
    ) -> UpstreamRequest:
        system_instruction, contents = self.to_gemini_contents(messages)

        generation_config: dict[str, Any] = {
            "temperature": settings.temperature_or_default(),
        }
        if settings.max_tokens is not None:
            generation_config["maxOutputTokens"] = settings.max_tokens

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
        }
        if system_instruction:
            body["systemInstruction"] = {
                "parts": [{"text": system_instruction}]
            }

        method = "streamGenerateContent" if stream else "generateContent"
        return UpstreamRequest(
            url=f"{self.base_url}/{self.model_path(model)}:{method}",
            json=body,
            endpoint=method,
            params={"alt": "sse"} if stream else None,
        )

    def _parse_chat(self, payload: dict[str, Any]) -> ChatResult:
        self._raise_for_payload_error(payload)
        if not payload.get("candidates"):
            block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise upstream_error(
                    f"Gemini blocked the prompt: {block_reason}",
                    provider=self.provider_name,
                )
        return ChatResult(
            full_text=candidate_text(payload),
            usage=payload.get("usageMetadata") or {},
        )

    def _raise_for_payload_error(self, payload: dict[str, Any]) -> None:
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise upstream_error(message or json.dumps(error), provider=self.provider_name)

    async def _translate_stream(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        parts: list[str] = []
        usage: dict[str, Any] = {}

        def consume(payloads: Iterable[dict]) -> list[str]:
            texts = []
            for payload in payloads:
                self._raise_for_payload_error(payload)
                if payload.get("usageMetadata"):
                    usage.update(payload["usageMetadata"])
                text = candidate_text(payload)
                if text:
                    texts.append(text)
            return texts

        content_type = response.headers.get("content-type", "")

        if "text/event-stream" in content_type:
            parser = SSEParser()
            async for chunk in response.aiter_bytes():
                for frame in parser.feed(chunk):
                    try:
                        payload = json.loads(frame.data)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed stream frame", provider=self.provider_name)
                        continue
                    if not isinstance(payload, dict):
                        continue
                    for text in consume([payload]):
                        parts.append(text)
                        yield StreamChunk(text)

            # last object may arrive without the closing blank line
            remainder = parser.close()
            if remainder.strip():
                scanner = JSONObjectScanner()
                for text in consume(scanner.feed(remainder) + scanner.close()):
                    parts.append(text)
                    yield StreamChunk(text)
        else:
            scanner = JSONObjectScanner()
            async for chunk in response.aiter_bytes():
                for text in consume(scanner.feed(chunk)):
                    parts.append(text)
                    yield StreamChunk(text)
            for text in consume(scanner.close()):
                parts.append(text)
                yield StreamChunk(text)
            if scanner.skipped:
                logger.warning(
                    "Skipped malformed stream chunks",
                    provider=self.provider_name,
                    skipped=scanner.skipped,
                )

        yield StreamResult(full_text="".join(parts), usage=usage)
