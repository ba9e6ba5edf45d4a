"""Rolling activity timeline derived from the envelope sequence."""

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from chatstream.models.domain import utc_now
from chatstream.models.events import (
    Envelope,
    ErrorEvent,
    ReasoningEvent,
    SearchEvent,
    ThinkingEvent,
    ToolCallResultEvent,
    VisitEvent,
    tool_call_items,
)

DEFAULT_MAX_ACTIVITIES = 50
DEFAULT_MAX_ERRORS = 10
PREVIEW_LENGTH = 50


class ActivityType(str, Enum):
    """Kind of agent activity shown in the progress timeline."""

    SEARCH = "search"
    VISIT = "visit"
    TOOL = "tool"
    THINKING = "thinking"
    REASONING = "reasoning"


class ActivityStatus(str, Enum):
    """Status of a timeline entry."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Classification of a failure reported to the timeline."""

    NETWORK = "network"
    SERVER = "server"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ActivityEntry(BaseModel):
    """One entry of the progress timeline."""

    id: str
    type: ActivityType
    content: str
    status: ActivityStatus = ActivityStatus.ACTIVE
    timestamp: datetime = Field(default_factory=utc_now)


class ErrorInfo(BaseModel):
    """Failure surfaced next to the timeline."""

    id: str
    type: ErrorKind
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    is_recoverable: bool = True
    retry_count: int = 0
    max_retries: int = 3
    context: dict[str, Any] = Field(default_factory=dict)


class ActivitySnapshot(BaseModel):
    """Point-in-time copy of a tracker's state."""

    activities: list[ActivityEntry] = Field(default_factory=list)
    current_activity: str = ""
    errors: list[ErrorInfo] = Field(default_factory=list)
    is_streaming: bool = False


def _preview(text: str) -> str:
    if len(text) <= PREVIEW_LENGTH:
        return text
    return f"{text[:PREVIEW_LENGTH]}..."


class ActivityTracker:
    """Builds a bounded, human-readable timeline of what the agent is doing.

    The tracker reads the same envelopes as the merger but keeps its own
    state; nothing here affects message reconstruction. Entries only move
    forward from active to completed or error.
    """

    def __init__(
        self,
        max_activities: int = DEFAULT_MAX_ACTIVITIES,
        max_errors: int = DEFAULT_MAX_ERRORS,
    ):
        self.activities: deque[ActivityEntry] = deque(maxlen=max_activities)
        self.errors: deque[ErrorInfo] = deque(maxlen=max_errors)
        self.current_activity = ""
        self.is_streaming = False

        self._activity_counter = 0
        self._error_counter = 0
        self._tool_entries: dict[str, str] = {}

    def start(self) -> None:
        """Reset the timeline for a new stream."""
        self.activities.clear()
        self.errors.clear()
        self._tool_entries.clear()
        self.current_activity = ""
        self.is_streaming = True

    def stop(self) -> None:
        """End streaming, completing any still-active entries."""
        self._close_active(ActivityStatus.COMPLETED)
        self.is_streaming = False

    def fail(
        self,
        kind: ErrorKind,
        message: str,
        is_recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Record a stream-level failure and fail any still-active entries."""
        error_id = self.add_error(kind, message, is_recoverable, context)
        self._close_active(ActivityStatus.ERROR)
        self.is_streaming = False
        return error_id

    def add_activity(
        self,
        activity_type: ActivityType,
        content: str,
        status: ActivityStatus = ActivityStatus.ACTIVE,
        timestamp: datetime | None = None,
    ) -> str:
        self._activity_counter += 1
        entry = ActivityEntry(
            id=f"activity_{self._activity_counter}",
            type=activity_type,
            content=content,
            status=status,
            timestamp=timestamp or utc_now(),
        )
        self.activities.append(entry)
        if status == ActivityStatus.ACTIVE:
            self.current_activity = content
        return entry.id

    def update_activity(
        self,
        activity_id: str,
        status: ActivityStatus | None = None,
        content: str | None = None,
    ) -> bool:
        """Update an active entry. Returns False if it is unknown or closed."""
        entry = self._find(activity_id)
        if entry is None or entry.status != ActivityStatus.ACTIVE:
            return False

        if content is not None:
            entry.content = content
        if status is not None:
            entry.status = status
            if status != ActivityStatus.ACTIVE:
                self.current_activity = ""
        return True

    def add_error(
        self,
        kind: ErrorKind,
        message: str,
        is_recoverable: bool = True,
        context: dict[str, Any] | None = None,
    ) -> str:
        self._error_counter += 1
        error = ErrorInfo(
            id=f"error_{self._error_counter}",
            type=kind,
            message=message,
            is_recoverable=is_recoverable,
            context=context or {},
        )
        self.errors.append(error)
        return error.id

    def dismiss_error(self, error_id: str) -> None:
        remaining = [error for error in self.errors if error.id != error_id]
        self.errors.clear()
        self.errors.extend(remaining)

    def snapshot(self) -> ActivitySnapshot:
        return ActivitySnapshot(
            activities=[entry.model_copy() for entry in self.activities],
            current_activity=self.current_activity,
            errors=[error.model_copy() for error in self.errors],
            is_streaming=self.is_streaming,
        )

    def process(self, envelope: Envelope) -> None:
        """Fold one envelope into the timeline."""
        event = envelope.event
        at = envelope.received_at

        if isinstance(event, SearchEvent):
            self.add_activity(ActivityType.SEARCH, f'Searching: "{event.query}"', timestamp=at)
        elif isinstance(event, VisitEvent):
            self.add_activity(
                ActivityType.VISIT, f"Visiting: {event.title or event.url}", timestamp=at
            )
        elif tool_call_items(event):
            for item in tool_call_items(event):
                if item.name and item.id not in self._tool_entries:
                    self._tool_entries[item.id] = self.add_activity(
                        ActivityType.TOOL, f"Executing: {item.name}", timestamp=at
                    )
        elif isinstance(event, ToolCallResultEvent):
            self._close_tool(event)
        elif isinstance(event, ThinkingEvent):
            self.add_activity(
                ActivityType.THINKING, f"{event.phase}: {_preview(event.content)}", timestamp=at
            )
        elif isinstance(event, ReasoningEvent):
            self.add_activity(
                ActivityType.REASONING, f"{event.step}: {_preview(event.content)}", timestamp=at
            )
        elif isinstance(event, ErrorEvent):
            self.fail(
                ErrorKind.SERVER,
                event.error,
                is_recoverable=bool(event.recoverable),
                context={"error_type": event.error_type} if event.error_type else None,
            )
        elif event.type in ("done", "interrupt"):
            self.stop()

    def _close_tool(self, event: ToolCallResultEvent) -> None:
        status = ActivityStatus.ERROR if event.error else ActivityStatus.COMPLETED

        activity_id = self._tool_entries.get(event.id)
        if activity_id is None:
            latest = next(
                (
                    entry
                    for entry in reversed(self.activities)
                    if entry.type == ActivityType.TOOL and entry.status == ActivityStatus.ACTIVE
                ),
                None,
            )
            activity_id = latest.id if latest else None

        if activity_id is not None:
            self.update_activity(activity_id, status=status)

        if event.error:
            self.add_error(
                ErrorKind.VALIDATION,
                f"Tool execution failed: {event.error}",
                context={"operation": "tool_execution", "tool_call": event.id},
            )

    def _close_active(self, status: ActivityStatus) -> None:
        for entry in self.activities:
            if entry.status == ActivityStatus.ACTIVE:
                entry.status = status
        self.current_activity = ""

    def _find(self, activity_id: str) -> ActivityEntry | None:
        return next((entry for entry in self.activities if entry.id == activity_id), None)
