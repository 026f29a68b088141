"""
Chat module - one exchange at a time per thread, relayed as SSE.
"""
from app.services.chat.channel import DeltaChannel
from app.services.chat.locks import ConversationLocks
from app.services.chat.orchestrator import (
    ChatOrchestrator,
    Exchange,
    ExchangeState,
    build_chat_messages,
    build_thread_title,
)
from app.services.chat.relay import SSERelay, encode_event

__all__ = [
    "ChatOrchestrator",
    "ConversationLocks",
    "DeltaChannel",
    "Exchange",
    "ExchangeState",
    "SSERelay",
    "build_chat_messages",
    "build_thread_title",
    "encode_event",
]
