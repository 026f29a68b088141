"""
Structured logging configuration.
Designed for easy debugging without exposing credentials or conversation text.
"""
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator, List, Optional

import structlog
from structlog.types import Processor

from app.core.config import settings


def setup_logging() -> None:
    """Configure structured logging for the application."""

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.LOG_FORMAT == "json":
        # JSON format for production
        renderer = structlog.processors.JSONRenderer()
    else:
        # Console format for development
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))

    # httpx logs full request URLs at INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def _truncate_content(content: str, max_length: int = 0) -> str:
    """Truncate content if max_length is set."""
    if max_length <= 0:
        return content
    if len(content) <= max_length:
        return content
    return content[:max_length] + f"... [truncated, total {len(content)} chars]"


# ========================================
# Upstream call tracking
# ========================================

@dataclass
class UpstreamMessageLog:
    """One outgoing chat turn, as seen by the logger."""
    role: str
    content: str
    content_length: int = 0

    def __post_init__(self):
        self.content_length = len(self.content)


@dataclass
class UpstreamCallLog:
    """Complete log entry for one vendor API call."""
    call_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    provider: str = ""
    model: str = ""
    endpoint: str = ""
    streaming: bool = False

    request_messages: List[UpstreamMessageLog] = field(default_factory=list)
    request_temperature: Optional[float] = None
    request_max_tokens: Optional[int] = None

    response_content_length: int = 0
    stream_chunks: int = 0
    usage: dict[str, Any] = field(default_factory=dict)

    start_time: float = 0.0
    end_time: float = 0.0
    duration_ms: float = 0.0

    # ok, error or cancelled
    status: str = "ok"
    error_type: Optional[str] = None
    error_message: Optional[str] = None


class UpstreamDebugLogger:
    """
    Tracks vendor API calls made by the provider adapters.

    Every call produces one summary line (timings, sizes, usage).
    Message bodies are only logged when UPSTREAM_DEBUG_LOG is enabled.

    Usage:
        debug_logger = UpstreamDebugLogger(logger)
        with debug_logger.track_call("openai", "gpt-4o", "chat/completions") as call:
            call.add_messages(payload_messages)
            # ... make API call ...
            call.set_response(full_text, usage)
    """

    def __init__(self, logger: structlog.stdlib.BoundLogger):
        self.logger = logger
        self.enabled = settings.UPSTREAM_DEBUG_LOG
        self.max_length = settings.UPSTREAM_DEBUG_LOG_MAX_LENGTH

    @contextmanager
    def track_call(
        self,
        provider: str,
        model: str,
        endpoint: str,
        streaming: bool = False,
    ) -> Generator["UpstreamCallTracker", None, None]:
        """Context manager for tracking a vendor API call."""
        tracker = UpstreamCallTracker(
            logger=self.logger,
            enabled=self.enabled,
            max_length=self.max_length,
            provider=provider,
            model=model,
            endpoint=endpoint,
            streaming=streaming,
        )
        tracker.start()
        try:
            yield tracker
        except Exception as e:
            tracker.set_error(type(e).__name__, str(e))
            raise
        except BaseException:
            # Task cancellation or generator close mid-stream
            tracker.set_cancelled()
            raise
        finally:
            tracker.finish()


class UpstreamCallTracker:
    """Tracker for a single vendor API call."""

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        enabled: bool,
        max_length: int,
        provider: str,
        model: str,
        endpoint: str,
        streaming: bool,
    ):
        self.logger = logger
        self.enabled = enabled
        self.max_length = max_length
        self.log = UpstreamCallLog(
            provider=provider,
            model=model,
            endpoint=endpoint,
            streaming=streaming,
        )

    def start(self) -> None:
        """Mark the start of the call."""
        self.log.start_time = time.time()

        if self.enabled:
            self.logger.debug(
                "Upstream call started",
                call_id=self.log.call_id,
                provider=self.log.provider,
                model=self.log.model,
                endpoint=self.log.endpoint,
            )

    def add_message(self, role: str, content: str) -> None:
        """Add an outgoing turn to the request log."""
        msg = UpstreamMessageLog(role=role, content=content)
        self.log.request_messages.append(msg)

        if self.enabled:
            self.logger.debug(
                "Upstream request message",
                call_id=self.log.call_id,
                role=role,
                content_length=msg.content_length,
                content=_truncate_content(content, self.max_length),
            )

    def add_messages(self, messages: List[dict]) -> None:
        """Add multiple turns from a list of role/content dicts."""
        for msg in messages:
            self.add_message(msg.get("role", "unknown"), msg.get("content", ""))

    def set_request_params(
        self,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        """Set request parameters."""
        self.log.request_temperature = temperature
        self.log.request_max_tokens = max_tokens

    def add_chunk(self, delta: str) -> None:
        """Count one streamed delta."""
        self.log.stream_chunks += 1
        self.log.response_content_length += len(delta)

    def set_response(self, content: str, usage: Optional[dict[str, Any]] = None) -> None:
        """Set response data."""
        self.log.response_content_length = len(content)
        self.log.usage = dict(usage or {})
        self.log.status = "ok"

        if self.enabled:
            self.logger.debug(
                "Upstream response content",
                call_id=self.log.call_id,
                content_length=self.log.response_content_length,
                content=_truncate_content(content, self.max_length),
            )

    def set_error(self, error_type: str, error_message: str) -> None:
        """Set error information."""
        self.log.status = "error"
        self.log.error_type = error_type
        self.log.error_message = _truncate_content(error_message, 500)

    def set_cancelled(self) -> None:
        """Mark the call as abandoned by the caller."""
        if self.log.status == "ok":
            self.log.status = "cancelled"

    def finish(self) -> None:
        """Mark the end of the call and log summary."""
        self.log.end_time = time.time()
        self.log.duration_ms = (self.log.end_time - self.log.start_time) * 1000

        summary = dict(
            call_id=self.log.call_id,
            provider=self.log.provider,
            model=self.log.model,
            endpoint=self.log.endpoint,
            streaming=self.log.streaming,
            duration_ms=round(self.log.duration_ms, 2),
        )

        if self.log.status == "error":
            self.logger.error(
                "Upstream call failed",
                error_type=self.log.error_type,
                error_message=self.log.error_message,
                **summary,
            )
        elif self.log.status == "cancelled":
            self.logger.info(
                "Upstream call cancelled",
                stream_chunks=self.log.stream_chunks,
                response_chars=self.log.response_content_length,
                **summary,
            )
        else:
            self.logger.info(
                "Upstream call completed",
                message_count=len(self.log.request_messages),
                message_roles=[m.role for m in self.log.request_messages],
                request_chars=sum(m.content_length for m in self.log.request_messages),
                response_chars=self.log.response_content_length,
                stream_chunks=self.log.stream_chunks,
                usage=self.log.usage or None,
                **summary,
            )

