"""Core services for chatstream."""

from chatstream.services.message_store import MessageListener, MessageStore

__all__ = [
    "MessageListener",
    "MessageStore",
]
