from app.models.thread import Thread, Message, MessageRole, ThreadStatus
from app.models.provider_key import ProviderKey, AuditLog, KeyStatus
from app.models.model_cache import ProviderModelCache

__all__ = [
    "Thread",
    "Message",
    "MessageRole",
    "ThreadStatus",
    "ProviderKey",
    "AuditLog",
    "KeyStatus",
    "ProviderModelCache",
]
