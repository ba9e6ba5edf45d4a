"""Reconstruction rules applying envelope events to message drafts.

Everything in this module is pure: functions never mutate their inputs and
read time only from the envelope, so the same draft and envelope always
produce the same result.
"""

import copy
import json
import re
from collections.abc import Callable, Container, Mapping
from datetime import datetime
from typing import Any

from chatstream.models.domain import (
    FeedbackOption,
    FinishReason,
    Message,
    MessageMetadata,
    MessageRole,
    ResearchState,
    ToolCall,
)
from chatstream.models.events import (
    AgentHandoffEvent,
    DoneEvent,
    Envelope,
    ErrorEvent,
    InterruptEvent,
    MessageChunkEvent,
    MessageStartEvent,
    PlanCreatedEvent,
    ReasoningEvent,
    ReportGeneratedEvent,
    SearchEvent,
    StreamEvent,
    ThinkingEvent,
    ToolCallChunkEvent,
    ToolCallChunksEvent,
    ToolCallEvent,
    ToolCallResultEvent,
    ToolCallsEvent,
    UnknownEvent,
    VisitEvent,
    WritingReportEvent,
    tool_call_items,
)

PLANNER_AGENT = "planner"

DEFAULT_PLANNER_OPTIONS = (
    FeedbackOption(text="Accept", value="accepted"),
    FeedbackOption(text="Edit", value="edit"),
)

_NUMBERED_STEP = re.compile(r"^\s*\d+\.\s+(.+?)\s*$", re.MULTILINE)


def merge(
    draft: Message | None,
    envelope: Envelope,
    *,
    message_id: str | None = None,
    thread_id: str | None = None,
) -> Message | None:
    """Apply one envelope to a draft and return the updated copy.

    Args:
        draft: Current draft, or None if the message does not exist yet
        envelope: Decoded event to apply
        message_id: Id to create the draft under when ``draft`` is None;
            defaults to the id carried by the event
        thread_id: Thread for a newly created draft

    Returns:
        The new draft. The input draft itself when the event is unknown or the
        draft is already terminal. None when there is no draft and the event
        carries nothing to create one from.
    """
    event = envelope.event
    if isinstance(event, UnknownEvent):
        return draft

    if draft is None:
        target = message_id or _event_message_id(event)
        if target is None:
            return None
        thread_id = thread_id or getattr(event, "thread_id", None) or ""
        draft = new_draft(target, thread_id, envelope.received_at)
    elif draft.is_terminal:
        return draft
    else:
        draft = draft.model_copy(deep=True)

    _HANDLERS[event.type](draft, event, envelope.received_at)

    draft.revision += 1
    draft.updated_at = envelope.received_at
    if draft.is_terminal:
        draft.is_streaming = False
        _complete_all_tool_args(draft)
    return draft


def new_draft(
    message_id: str,
    thread_id: str,
    at: datetime,
    role: MessageRole = MessageRole.ASSISTANT,
) -> Message:
    """Create an empty streaming draft."""
    return Message(
        id=message_id,
        thread_id=thread_id,
        role=role,
        is_streaming=True,
        metadata=MessageMetadata(thread_id=thread_id or None),
        created_at=at,
        updated_at=at,
    )


def finalize(
    message: Message,
    reason: FinishReason,
    at: datetime,
    error: str | None = None,
) -> Message:
    """Force the terminal transition of a message.

    A message that is already terminal is returned unchanged, so the single
    terminal transition is never overwritten.
    """
    if message.is_terminal:
        return message
    if reason == FinishReason.NONE:
        raise ValueError("finalize requires a terminal finish reason")

    message = message.model_copy(deep=True)
    if error:
        _append_error(message, error)
    message.finish_reason = reason
    message.is_streaming = False
    message.revision += 1
    message.updated_at = at
    _complete_all_tool_args(message)
    return message


def resolve_target(
    event: StreamEvent,
    active_id: str | None,
    tool_owners: Mapping[str, str],
    known_ids: Container[str] = (),
) -> str | None:
    """Pick the message id an event applies to.

    Turn events name their message directly. Tool events go to the message that
    first announced the tool call, falling back to the active message. A batch
    follows its first item that names or already has an owner. Other events use
    their own id only when it names a known message.
    """
    if isinstance(event, MessageStartEvent | MessageChunkEvent):
        return event.id
    items = tool_call_items(event)
    if items:
        for item in items:
            owner = item.message_id or tool_owners.get(item.id)
            if owner:
                return owner
        return active_id
    if isinstance(event, ToolCallResultEvent):
        return tool_owners.get(event.id) or active_id
    if isinstance(event, UnknownEvent):
        return None

    event_id = getattr(event, "id", None)
    if event_id and event_id in known_ids:
        return event_id
    return active_id


def parse_tool_args(fragments: list[str]) -> Any:
    """Join argument fragments in arrival order and parse them once.

    Returns an empty dict for no fragments and None when the joined text is
    not valid JSON.
    """
    raw = "".join(fragments)
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def extract_plan_steps(content: str) -> list[Any]:
    """Read plan steps from planner output (JSON ``steps`` or numbered lines)."""
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        parsed = None

    if isinstance(parsed, dict):
        steps = parsed.get("steps")
        return list(steps) if isinstance(steps, list) else []

    return _NUMBERED_STEP.findall(content)


# Event handlers
def _on_message_start(draft: Message, event: MessageStartEvent, at: datetime) -> None:
    draft.role = event.role
    if event.agent:
        draft.metadata.agent = event.agent
    if event.thread_id and not draft.thread_id:
        draft.thread_id = event.thread_id
        draft.metadata.thread_id = event.thread_id


def _on_message_chunk(draft: Message, event: MessageChunkEvent, at: datetime) -> None:
    draft.content += event.content
    if event.role:
        draft.role = event.role
    if event.agent:
        draft.metadata.agent = event.agent


def _on_tool_call(draft: Message, event: ToolCallEvent | ToolCallChunkEvent, at: datetime) -> None:
    tool_call = draft.tool_calls.get(event.id)
    if tool_call is None:
        tool_call = ToolCall(id=event.id)
        draft.tool_calls[event.id] = tool_call

    if event.name:
        tool_call.name = event.name

    args = event.args
    if isinstance(args, dict):
        tool_call.args_fragments = [json.dumps(args)]
        tool_call.args = copy.deepcopy(args)
        tool_call.args_complete = True
    elif isinstance(args, str) and args and not tool_call.args_complete:
        tool_call.args_fragments.append(args)
        parsed = parse_tool_args(tool_call.args_fragments)
        if isinstance(parsed, dict):
            # An object prefix only parses once the closing brace has arrived
            tool_call.args = parsed


def _on_tool_call_batch(
    draft: Message, event: ToolCallsEvent | ToolCallChunksEvent, at: datetime
) -> None:
    for item in tool_call_items(event):
        _on_tool_call(draft, item, at)


def _on_tool_call_result(draft: Message, event: ToolCallResultEvent, at: datetime) -> None:
    tool_call = draft.tool_calls.get(event.id)
    if tool_call is None or tool_call.has_outcome:
        return

    _complete_tool_args(tool_call)
    if event.error is not None:
        tool_call.error = event.error
    else:
        tool_call.result = copy.deepcopy(event.result)
    tool_call.has_outcome = True


def _trace_entry(event: StreamEvent, at: datetime) -> dict[str, Any]:
    entry = event.model_dump(mode="json", exclude={"type", "id"}, exclude_none=True)
    entry["timestamp"] = at.isoformat()
    return entry


def _on_thinking(draft: Message, event: ThinkingEvent, at: datetime) -> None:
    draft.metadata.thinking_phases.append(_trace_entry(event, at))


def _on_reasoning(draft: Message, event: ReasoningEvent, at: datetime) -> None:
    draft.metadata.reasoning_steps.append(_trace_entry(event, at))


def _on_search(draft: Message, event: SearchEvent, at: datetime) -> None:
    draft.metadata.search_activities.append(_trace_entry(event, at))


def _on_visit(draft: Message, event: VisitEvent, at: datetime) -> None:
    draft.metadata.visited_urls.append(_trace_entry(event, at))


def _on_agent_handoff(draft: Message, event: AgentHandoffEvent, at: datetime) -> None:
    draft.metadata.agent_transitions.append(
        {
            "from": event.from_agent,
            "to": event.to_agent,
            "context": event.context,
            "timestamp": at.isoformat(),
        }
    )
    draft.metadata.agent = event.to_agent


def _on_plan_created(draft: Message, event: PlanCreatedEvent, at: datetime) -> None:
    draft.metadata.plan = event.plan
    draft.metadata.plan_steps = list(event.steps)
    draft.metadata.requires_approval = event.approval_required


def _on_writing_report(draft: Message, event: WritingReportEvent, at: datetime) -> None:
    draft.metadata.research_state = ResearchState.GENERATING_REPORT


def _on_report_generated(draft: Message, event: ReportGeneratedEvent, at: datetime) -> None:
    draft.metadata.research_state = ResearchState.REPORT_GENERATED
    draft.metadata.report_content = event.content
    draft.metadata.report_format = event.format or "markdown"
    if event.citations:
        draft.metadata.citations.extend(event.citations)


def _on_interrupt(draft: Message, event: InterruptEvent, at: datetime) -> None:
    is_planner = draft.metadata.agent == PLANNER_AGENT

    options = event.options
    if not options and is_planner:
        options = list(DEFAULT_PLANNER_OPTIONS)

    draft.options = [option.model_copy() for option in options or []]
    draft.metadata.interrupt_prompt = event.content or None
    if is_planner and draft.content and not draft.metadata.plan_steps:
        draft.metadata.plan_steps = extract_plan_steps(draft.content)

    draft.finish_reason = FinishReason.INTERRUPTED


def _on_done(draft: Message, event: DoneEvent, at: datetime) -> None:
    draft.finish_reason = FinishReason.COMPLETED


def _on_error(draft: Message, event: ErrorEvent, at: datetime) -> None:
    _append_error(draft, event.error)
    draft.metadata.error_type = event.error_type
    draft.finish_reason = FinishReason.ERROR


_HANDLERS: dict[str, Callable[[Message, Any, datetime], None]] = {
    "message_start": _on_message_start,
    "message_chunk": _on_message_chunk,
    "tool_call": _on_tool_call,
    "tool_call_chunk": _on_tool_call,
    "tool_calls": _on_tool_call_batch,
    "tool_call_chunks": _on_tool_call_batch,
    "tool_call_result": _on_tool_call_result,
    "thinking": _on_thinking,
    "reasoning": _on_reasoning,
    "search": _on_search,
    "visit": _on_visit,
    "agent_handoff": _on_agent_handoff,
    "plan_created": _on_plan_created,
    "writing_report": _on_writing_report,
    "report_generated": _on_report_generated,
    "interrupt": _on_interrupt,
    "done": _on_done,
    "error": _on_error,
}


# Helpers
def _event_message_id(event: StreamEvent) -> str | None:
    items = tool_call_items(event)
    if items or isinstance(event, ToolCallsEvent | ToolCallChunksEvent):
        return next((item.message_id for item in items if item.message_id), None)
    if isinstance(event, ToolCallResultEvent):
        return None
    return getattr(event, "id", None)


def _append_error(message: Message, error: str) -> None:
    separator = "\n\n" if message.content else ""
    message.content += f"{separator}Error: {error}"
    message.metadata.error = error


def _complete_tool_args(tool_call: ToolCall) -> None:
    if tool_call.args_complete:
        return
    tool_call.args = parse_tool_args(tool_call.args_fragments)
    if len(tool_call.args_fragments) > 1:
        tool_call.args_fragments = ["".join(tool_call.args_fragments)]
    tool_call.args_complete = True


def _complete_all_tool_args(message: Message) -> None:
    for tool_call in message.tool_calls.values():
        _complete_tool_args(tool_call)
