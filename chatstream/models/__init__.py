"""Domain and event models."""

from chatstream.models.domain import (
    CancelResponse,
    FeedbackOption,
    FinishReason,
    Message,
    MessageMetadata,
    MessageRole,
    ResearchState,
    StreamRequest,
    Thread,
    ToolCall,
)
from chatstream.models.events import (
    Envelope,
    StreamEvent,
    UnknownEvent,
    make_envelope,
    parse_event,
)

__all__ = [
    "CancelResponse",
    "Envelope",
    "FeedbackOption",
    "FinishReason",
    "Message",
    "MessageMetadata",
    "MessageRole",
    "ResearchState",
    "StreamEvent",
    "StreamRequest",
    "Thread",
    "ToolCall",
    "UnknownEvent",
    "make_envelope",
    "parse_event",
]
