"""Base classes and exceptions for agent stream transports."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import Any


class TransportType(str, Enum):
    """Available transport types."""

    HTTP = "http"
    SCRIPTED = "scripted"


@dataclass
class TransportCapabilities:
    """Declares what features this transport supports."""

    # Whether reconnects may send Last-Event-ID to skip already applied events
    supports_resume: bool = False


# Exception Hierarchy
class StreamError(Exception):
    """Base exception for all streaming errors."""

    pass


class TransportError(StreamError):
    """Connection-level failure while opening or reading a stream."""

    def __init__(self, message: str, retryable: bool = True, status: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class StreamTimeoutError(TransportError):
    """No bytes arrived within the idle window."""

    def __init__(self, message: str = "Stream idle timeout"):
        super().__init__(message, retryable=True)


class StreamAbortedError(StreamError):
    """Stream was cancelled by the caller."""

    pass


class TransportConfigurationError(StreamError):
    """Invalid transport configuration."""

    pass


class Transport(ABC):
    """Base class for all agent stream transports."""

    @property
    @abstractmethod
    def capabilities(self) -> TransportCapabilities:
        """Declare what this transport can do."""
        pass

    @abstractmethod
    def connect(
        self,
        payload: dict[str, Any],
        last_event_id: str | None = None,
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """Open a stream for one request.

        Args:
            payload: JSON request body for the agent
            last_event_id: Id of the last applied event, sent on reconnect so
                the agent can resume instead of replaying

        Returns:
            Async context manager yielding raw byte chunks. Leaving the
            context releases the connection.

        Raises:
            TransportError: If the connection fails; ``retryable`` tells the
                controller whether another attempt makes sense
        """
        pass

    async def cleanup(self) -> None:
        """Clean up resources. Called when the transport is no longer needed."""
        pass
