"""Core domain models using Pydantic."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time with timezone awareness."""
    return datetime.now(UTC)


# Enums
class MessageRole(str, Enum):
    """Role of a message in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"


class FinishReason(str, Enum):
    """How a message left its streaming phase."""

    NONE = "none"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ERROR = "error"


class ResearchState(str, Enum):
    """Progress of the agent's report writing."""

    GENERATING_REPORT = "generating_report"
    REPORT_GENERATED = "report_generated"


# Domain Models
class FeedbackOption(BaseModel):
    """Selectable choice offered by an interrupt."""

    text: str
    value: str


class ToolCall(BaseModel):
    """One invoked capability within a message."""

    id: str
    name: str = ""
    args_fragments: list[str] = Field(default_factory=list)
    args: Any = None
    args_complete: bool = False
    result: Any = None
    error: str | None = None
    # Set once by the first result; a null result is still an outcome
    has_outcome: bool = False


class MessageMetadata(BaseModel):
    """Agent tag, citations and activity traces attached to a message."""

    agent: str | None = None
    thread_id: str | None = None
    citations: list[Any] = Field(default_factory=list)

    # Activity traces, appended in arrival order
    thinking_phases: list[dict[str, Any]] = Field(default_factory=list)
    reasoning_steps: list[dict[str, Any]] = Field(default_factory=list)
    search_activities: list[dict[str, Any]] = Field(default_factory=list)
    visited_urls: list[dict[str, Any]] = Field(default_factory=list)
    agent_transitions: list[dict[str, Any]] = Field(default_factory=list)

    # Planning
    plan: Any = None
    plan_steps: list[Any] = Field(default_factory=list)
    requires_approval: bool | None = None

    # Report
    research_state: ResearchState | None = None
    report_content: str | None = None
    report_format: str | None = None

    # Interrupt / failure details
    interrupt_prompt: str | None = None
    interrupt_feedback: str | None = None
    error: str | None = None
    error_type: str | None = None


class Message(BaseModel):
    """One user or assistant turn, possibly still streaming."""

    id: str
    thread_id: str
    role: MessageRole = MessageRole.ASSISTANT
    content: str = ""
    is_streaming: bool = True
    finish_reason: FinishReason = FinishReason.NONE
    tool_calls: dict[str, ToolCall] = Field(default_factory=dict)
    options: list[FeedbackOption] = Field(default_factory=list)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    # Number of envelopes applied; orders competing writes by event arrival
    revision: int = 0

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason != FinishReason.NONE


class Thread(BaseModel):
    """Conversation-scoped container for an ordered set of messages."""

    id: str
    active_message_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# Request/Response Models for API
class StreamRequest(BaseModel):
    """Request forwarded to the remote agent when a stream is opened."""

    message: str | None = None
    interrupt_feedback: str | None = None
    resources: list[dict[str, Any]] = Field(default_factory=list)

    # Research agent options
    auto_accepted_plan: bool = False
    enable_deep_thinking: bool = False
    enable_background_investigation: bool = True
    max_plan_iterations: int = 3
    max_step_num: int = 10
    max_search_results: int = 10
    report_style: str = "comprehensive"

    extra: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self, thread_id: str) -> dict[str, Any]:
        """Build the JSON body sent to the agent for this thread."""
        payload = self.model_dump(exclude={"message", "extra"}, exclude_none=True)
        payload["thread_id"] = thread_id
        payload["messages"] = [{"role": "user", "content": self.message}] if self.message else []
        payload.update(self.extra)
        return payload


class CancelResponse(BaseModel):
    """Messages finalized by a cancel request."""

    thread_id: str
    cancelled: list[Message] = Field(default_factory=list)
