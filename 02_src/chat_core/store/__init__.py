"""Conversation state module."""

from .sequence import MessageSequence
from .store import ConversationStore, IConversationStore

__all__ = ["ConversationStore", "IConversationStore", "MessageSequence"]
