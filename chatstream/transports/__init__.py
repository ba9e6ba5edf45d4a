"""Transports delivering the agent's event stream."""

from chatstream.transports.base import (
    StreamAbortedError,
    StreamError,
    StreamTimeoutError,
    Transport,
    TransportCapabilities,
    TransportConfigurationError,
    TransportError,
    TransportType,
)
from chatstream.transports.http import HttpTransport
from chatstream.transports.mock import Pause, ScriptedTransport, encode_sse, encode_terminator

__all__ = [
    "HttpTransport",
    "Pause",
    "ScriptedTransport",
    "StreamAbortedError",
    "StreamError",
    "StreamTimeoutError",
    "Transport",
    "TransportCapabilities",
    "TransportConfigurationError",
    "TransportError",
    "TransportType",
    "encode_sse",
    "encode_terminator",
]
