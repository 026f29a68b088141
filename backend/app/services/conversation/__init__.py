from app.services.conversation.store import ConversationStore

__all__ = ["ConversationStore"]
