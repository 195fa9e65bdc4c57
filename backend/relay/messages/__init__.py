"""Message persistence module for the chat relay."""

from .schemas import DEFAULT_USER, ChatMessage, MessageCreate, normalize_message
from .store import CommitGate, MessageStore, call_store

__all__ = [
    "DEFAULT_USER",
    "ChatMessage",
    "CommitGate",
    "MessageCreate",
    "MessageStore",
    "call_store",
    "normalize_message",
]
