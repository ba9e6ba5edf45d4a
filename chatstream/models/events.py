"""Envelope events emitted by the remote research agent.

Every wire event maps to exactly one model below. The ``type`` field is the
discriminator, so a decoded envelope always carries one concrete variant and
the merger can dispatch on it exhaustively.
"""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from chatstream.models.domain import FeedbackOption, MessageRole, utc_now


class MessageStartEvent(BaseModel):
    """A new turn begins."""

    type: Literal["message_start"] = "message_start"
    id: str
    thread_id: str | None = None
    role: MessageRole = MessageRole.ASSISTANT
    agent: str | None = None


class MessageChunkEvent(BaseModel):
    """Incremental text for a turn."""

    type: Literal["message_chunk"] = "message_chunk"
    id: str
    thread_id: str | None = None
    content: str = ""
    role: MessageRole | None = None
    agent: str | None = None


class ToolCallEvent(BaseModel):
    """Tool invocation; ``args`` is a full mapping or one raw fragment."""

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str | None = None
    args: dict[str, Any] | str | None = None
    message_id: str | None = None


class ToolCallChunkEvent(BaseModel):
    """Streaming fragment of a tool invocation's name or arguments."""

    type: Literal["tool_call_chunk"] = "tool_call_chunk"
    id: str
    name: str | None = None
    args: str | None = None
    index: int | None = None
    message_id: str | None = None


class ToolCallsEvent(BaseModel):
    """Several complete tool invocations announced in one frame."""

    type: Literal["tool_calls"] = "tool_calls"
    calls: list[ToolCallEvent] = Field(default_factory=list)


class ToolCallChunksEvent(BaseModel):
    """Several tool invocation fragments delivered in one frame."""

    type: Literal["tool_call_chunks"] = "tool_call_chunks"
    chunks: list[ToolCallChunkEvent] = Field(default_factory=list)


class ToolCallResultEvent(BaseModel):
    """Outcome of a tool invocation."""

    type: Literal["tool_call_result"] = "tool_call_result"
    id: str
    result: Any = None
    error: str | None = None


class ThinkingEvent(BaseModel):
    type: Literal["thinking"] = "thinking"
    id: str | None = None
    phase: str = ""
    content: str = ""
    progress: float | None = None


class ReasoningEvent(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    id: str | None = None
    step: str = ""
    content: str = ""
    reasoning_type: str | None = None


class SearchEvent(BaseModel):
    type: Literal["search"] = "search"
    id: str | None = None
    query: str
    content: str | None = None
    results: list[Any] | None = None
    search_type: str | None = None


class VisitEvent(BaseModel):
    type: Literal["visit"] = "visit"
    id: str | None = None
    url: str
    title: str | None = None
    content: str | None = None
    status: str | None = None


class AgentHandoffEvent(BaseModel):
    """Control passes from one agent to another within the same turn."""

    type: Literal["agent_handoff"] = "agent_handoff"
    id: str | None = None
    from_agent: str
    to_agent: str
    context: Any = None


class PlanCreatedEvent(BaseModel):
    type: Literal["plan_created"] = "plan_created"
    id: str | None = None
    plan: Any = None
    steps: list[Any] = Field(default_factory=list)
    approval_required: bool | None = None


class WritingReportEvent(BaseModel):
    type: Literal["writing_report"] = "writing_report"
    id: str | None = None
    progress: float | None = None
    section: str | None = None
    total_sections: int | None = None


class ReportGeneratedEvent(BaseModel):
    type: Literal["report_generated"] = "report_generated"
    id: str | None = None
    content: str = ""
    citations: list[Any] | None = None
    format: str | None = None


class InterruptEvent(BaseModel):
    """Agent pauses for a human decision among ``options``."""

    type: Literal["interrupt"] = "interrupt"
    id: str | None = None
    content: str = ""
    options: list[FeedbackOption] | None = None


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    id: str | None = None


class ErrorEvent(BaseModel):
    """Server-reported failure; fatal for the current stream."""

    type: Literal["error"] = "error"
    id: str | None = None
    error: str = "Unknown error"
    error_type: str | None = None
    recoverable: bool | None = None


class UnknownEvent(BaseModel):
    """Event name outside the known vocabulary, kept for forward compatibility."""

    type: Literal["unknown"] = "unknown"
    name: str
    data: dict[str, Any] = Field(default_factory=dict)


StreamEvent = Annotated[
    MessageStartEvent
    | MessageChunkEvent
    | ToolCallEvent
    | ToolCallChunkEvent
    | ToolCallsEvent
    | ToolCallChunksEvent
    | ToolCallResultEvent
    | ThinkingEvent
    | ReasoningEvent
    | SearchEvent
    | VisitEvent
    | AgentHandoffEvent
    | PlanCreatedEvent
    | WritingReportEvent
    | ReportGeneratedEvent
    | InterruptEvent
    | DoneEvent
    | ErrorEvent
    | UnknownEvent,
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"done", "interrupt", "error"})

# Batch events arrive as an array (or one bare item) under these fields
BATCH_FIELDS = {"tool_calls": "calls", "tool_call_chunks": "chunks"}

KNOWN_EVENT_TYPES = frozenset(
    {
        "message_start",
        "message_chunk",
        "tool_call",
        "tool_call_chunk",
        "tool_calls",
        "tool_call_chunks",
        "tool_call_result",
        "thinking",
        "reasoning",
        "search",
        "visit",
        "agent_handoff",
        "plan_created",
        "writing_report",
        "report_generated",
        "interrupt",
        "done",
        "error",
    }
)

_event_adapter: TypeAdapter[Any] = TypeAdapter(StreamEvent)


class Envelope(BaseModel):
    """One decoded ``{type, data}`` unit from the transport."""

    event: StreamEvent
    event_id: str | None = None
    received_at: datetime = Field(default_factory=utc_now)

    @property
    def type(self) -> str:
        return self.event.type

    @property
    def is_terminal(self) -> bool:
        return self.event.type in TERMINAL_EVENT_TYPES


def parse_event(name: str, data: Any) -> StreamEvent:
    """Validate a wire payload into its event variant.

    Raises:
        ValueError: If the payload does not fit a known event (pydantic
            ValidationError is a ValueError).
    """
    if name not in KNOWN_EVENT_TYPES:
        return UnknownEvent(name=name, data=data if isinstance(data, dict) else {"value": data})

    if name in BATCH_FIELDS:
        items = [] if data is None else data if isinstance(data, list) else [data]
        data = {BATCH_FIELDS[name]: items}

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Payload for '{name}' must be an object, got {type(data).__name__}")

    return _event_adapter.validate_python({**data, "type": name})


def tool_call_items(event: StreamEvent) -> list[ToolCallEvent | ToolCallChunkEvent]:
    """Individual tool invocations carried by an event, batched or not."""
    if isinstance(event, ToolCallEvent | ToolCallChunkEvent):
        return [event]
    if isinstance(event, ToolCallsEvent):
        return list(event.calls)
    if isinstance(event, ToolCallChunksEvent):
        return list(event.chunks)
    return []


def make_envelope(
    name: str,
    data: Any = None,
    event_id: str | None = None,
    received_at: datetime | None = None,
) -> Envelope:
    """Build an envelope directly from an event name and payload."""
    return Envelope(
        event=parse_event(name, data),
        event_id=event_id,
        received_at=received_at or utc_now(),
    )
