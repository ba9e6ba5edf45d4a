"""Tests for the stream controller lifecycle."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from chatstream.models.domain import FinishReason, MessageRole
from chatstream.streaming.activity import ErrorKind
from chatstream.streaming.controller import StreamController
from chatstream.transports.base import Transport, TransportCapabilities, TransportError
from chatstream.transports.mock import Pause, ScriptedTransport, encode_sse, encode_terminator


def _controller(
    store, settings, *scripts, **overrides
) -> tuple[StreamController, ScriptedTransport]:
    transport = ScriptedTransport(*scripts)
    if overrides:
        settings = settings.model_copy(update=overrides)
    return StreamController(store, transport, settings), transport


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _text_turn(message_id: str = "1") -> list[bytes]:
    return [
        encode_sse("message_start", {"id": message_id, "role": "assistant"}),
        encode_sse("message_chunk", {"id": message_id, "content": "Hello "}),
        encode_sse("message_chunk", {"id": message_id, "content": "world"}),
        encode_sse("done"),
    ]


@pytest.mark.asyncio
async def test_stream_completes_and_is_stored(store, settings):
    controller, transport = _controller(store, settings, _text_turn())

    result = await controller.start("t1", {"message": "Hi"})

    assert result.id == "1"
    assert result.content == "Hello world"
    assert result.is_streaming is False
    assert result.finish_reason == FinishReason.COMPLETED

    user, assistant = await store.get_by_thread("t1")
    assert user.role == MessageRole.USER
    assert user.content == "Hi"
    assert user.is_streaming is False
    assert assistant == result
    assert await store.active_message_id("t1") is None
    assert transport.calls[0]["payload"]["messages"] == [{"role": "user", "content": "Hi"}]
    assert transport.calls[0]["payload"]["thread_id"] == "t1"
    assert not controller.is_active("t1")


@pytest.mark.asyncio
async def test_interrupt_resolves_with_options(store, settings):
    script = [
        encode_sse("message_start", {"id": "3"}),
        encode_sse("message_chunk", {"id": "3", "content": "Proposed plan"}),
        encode_sse("interrupt", {"options": [{"text": "Accept", "value": "accepted"}]}),
        encode_sse("message_chunk", {"id": "3", "content": "never read"}),
    ]
    controller, _ = _controller(store, settings, script)

    result = await controller.start("t1", {})

    assert result.finish_reason == FinishReason.INTERRUPTED
    assert [o.value for o in result.options] == ["accepted"]
    assert result.content == "Proposed plan"


@pytest.mark.asyncio
async def test_tool_calls_are_routed_to_their_message(store, settings):
    script = [
        encode_sse("message_start", {"id": "2"}),
        encode_sse("tool_call_chunk", {"id": "t1", "name": "search", "args": '{"query"'}),
        encode_sse("tool_call_chunk", {"id": "t1", "args": ': "x"}'}),
        encode_sse("tool_call_result", {"id": "t1", "result": ["r1"]}),
        encode_sse("done"),
    ]
    controller, _ = _controller(store, settings, script)

    result = await controller.start("t1", {})

    tool_call = result.tool_calls["t1"]
    assert tool_call.name == "search"
    assert tool_call.args == {"query": "x"}
    assert tool_call.result == ["r1"]


@pytest.mark.asyncio
async def test_clean_end_of_stream_completes(store, settings):
    script = [
        encode_sse("message_start", {"id": "1"}),
        encode_sse("message_chunk", {"id": "1", "content": "partial"}),
    ]
    controller, _ = _controller(store, settings, script)

    result = await controller.start("t1", {})

    assert result.finish_reason == FinishReason.COMPLETED
    assert result.content == "partial"


@pytest.mark.asyncio
async def test_terminator_ends_the_stream(store, settings):
    script = [
        encode_sse("message_start", {"id": "1"}),
        encode_sse("message_chunk", {"id": "1", "content": "a"}),
        encode_terminator(),
        Pause(5),
    ]
    controller, _ = _controller(store, settings, script)

    result = await asyncio.wait_for(controller.start("t1", {}), timeout=1)

    assert result.finish_reason == FinishReason.COMPLETED
    assert result.content == "a"


@pytest.mark.asyncio
async def test_new_message_finalizes_previous_one(store, settings):
    script = [
        encode_sse("message_start", {"id": "m1", "agent": "planner"}),
        encode_sse("message_chunk", {"id": "m1", "content": "plan"}),
        encode_sse("message_start", {"id": "m2", "agent": "reporter"}),
        encode_sse("message_chunk", {"id": "m2", "content": "report"}),
        encode_sse("done"),
    ]
    controller, _ = _controller(store, settings, script)

    result = await controller.start("t1", {})

    first, second = await store.get_by_thread("t1")
    assert first.id == "m1"
    assert first.finish_reason == FinishReason.COMPLETED
    assert first.is_streaming is False
    assert result.id == second.id == "m2"
    assert second.content == "report"


@pytest.mark.asyncio
async def test_protocol_error_is_fatal(store, settings):
    script = [
        encode_sse("message_start", {"id": "1"}),
        encode_sse("message_chunk", {"id": "1", "content": "partial"}),
        encode_sse("error", {"error": "boom"}),
    ]
    controller, transport = _controller(store, settings, script, _text_turn())

    result = await controller.start("t1", {})

    assert result.finish_reason == FinishReason.ERROR
    assert result.content == "partial\n\nError: boom"
    assert len(transport.calls) == 1
    assert controller.activity("t1").snapshot().errors[0].message == "boom"


@pytest.mark.asyncio
async def test_dropped_connection_resumes_from_last_event(store, settings):
    first = [
        encode_sse("message_start", {"id": "1"}, event_id="e1"),
        encode_sse("message_chunk", {"id": "1", "content": "Hel"}, event_id="e2"),
        TransportError("connection reset"),
    ]
    second = [
        encode_sse("message_start", {"id": "1"}, event_id="e1"),
        encode_sse("message_chunk", {"id": "1", "content": "Hel"}, event_id="e2"),
        encode_sse("message_chunk", {"id": "1", "content": "lo"}, event_id="e3"),
        encode_sse("done", event_id="e4"),
    ]
    controller, transport = _controller(store, settings, first, second)

    result = await controller.start("t1", {})

    assert result.content == "Hello"
    assert result.finish_reason == FinishReason.COMPLETED
    assert [call["last_event_id"] for call in transport.calls] == [None, "e2"]
    assert transport.closed_connections == 2

    errors = controller.activity("t1").snapshot().errors
    assert errors[0].type == ErrorKind.NETWORK
    assert errors[0].is_recoverable


@pytest.mark.asyncio
async def test_duplicate_events_are_applied_once(store, settings):
    chunk = encode_sse("message_chunk", {"id": "1", "content": "once"}, event_id="e2")
    script = [
        encode_sse("message_start", {"id": "1"}, event_id="e1"),
        chunk,
        chunk,
        encode_sse("done", event_id="e3"),
    ]
    controller, _ = _controller(store, settings, script)

    result = await controller.start("t1", {})

    assert result.content == "once"


@pytest.mark.asyncio
async def test_server_errors_are_retried(store, settings):
    controller, transport = _controller(
        store,
        settings,
        TransportError("HTTP 503", status=503),
        _text_turn(),
    )

    result = await controller.start("t1", {})

    assert result.finish_reason == FinishReason.COMPLETED
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_client_errors_are_fatal(store, settings):
    controller, transport = _controller(
        store,
        settings,
        TransportError("HTTP 401: unauthorized", retryable=False, status=401),
        _text_turn(),
    )

    result = await controller.start("t1", {"message": "Hi"})

    assert result.role == MessageRole.ASSISTANT
    assert result.finish_reason == FinishReason.ERROR
    assert "HTTP 401" in result.content
    assert len(transport.calls) == 1

    messages = await store.get_by_thread("t1")
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1] == result


@pytest.mark.asyncio
async def test_retries_are_bounded(store, settings):
    controller, transport = _controller(
        store,
        settings,
        TransportError("refused"),
        TransportError("refused"),
        TransportError("refused"),
        _text_turn(),
    )

    result = await controller.start("t1", {})

    assert result.finish_reason == FinishReason.ERROR
    assert result.metadata.error == "refused"
    assert len(transport.calls) == settings.stream_max_attempts


@pytest.mark.asyncio
async def test_idle_timeout_is_retried_once(store, settings):
    first = [encode_sse("message_start", {"id": "1"}, event_id="e1"), Pause(5)]
    second = [
        encode_sse("message_chunk", {"id": "1", "content": "late"}, event_id="e2"),
        encode_sse("done", event_id="e3"),
    ]
    controller, transport = _controller(store, settings, first, second)

    result = await controller.start("t1", {})

    assert result.finish_reason == FinishReason.COMPLETED
    assert result.content == "late"
    assert transport.calls[1]["last_event_id"] == "e1"
    assert controller.activity("t1").snapshot().errors[0].type == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_second_idle_timeout_is_fatal(store, settings):
    stalled = [encode_sse("message_start", {"id": "1"}), Pause(5)]
    controller, transport = _controller(store, settings, stalled, [Pause(5)], _text_turn())

    result = await controller.start("t1", {})

    assert result.id == "1"
    assert result.finish_reason == FinishReason.ERROR
    assert "No data received" in result.content
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_cancel_interrupts_in_flight_messages(store, settings):
    script = [
        encode_sse("message_start", {"id": "1"}),
        encode_sse("message_chunk", {"id": "1", "content": "partial"}),
        Pause(30),
    ]
    controller, transport = _controller(store, settings, script, stream_idle_timeout=60.0)

    task = asyncio.create_task(controller.start("t1", {}))

    async def has_partial() -> bool:
        message = await store.get("t1", "1")
        return message is not None and message.content == "partial"

    await _wait_for(has_partial)
    assert controller.is_active("t1")

    cancelled = await controller.cancel("t1")

    assert [m.id for m in cancelled] == ["1"]
    assert all(not m.is_streaming for m in await store.get_by_thread("t1"))
    assert transport.closed_connections == 1

    result = await asyncio.wait_for(task, timeout=1)
    assert result.finish_reason == FinishReason.INTERRUPTED
    assert result.content == "partial"
    assert not controller.is_active("t1")


@pytest.mark.asyncio
async def test_cancel_during_backoff(store, settings):
    controller, transport = _controller(
        store,
        settings,
        TransportError("refused"),
        _text_turn(),
        stream_retry_min_seconds=30.0,
        stream_retry_max_seconds=30.0,
    )

    task = asyncio.create_task(controller.start("t1", {}))

    async def attempted() -> bool:
        return len(transport.calls) == 1

    await _wait_for(attempted)
    await asyncio.sleep(0.05)
    cancelled = await asyncio.wait_for(controller.cancel("t1"), timeout=1)

    result = await task
    assert result.finish_reason == FinishReason.INTERRUPTED
    assert result.role == MessageRole.ASSISTANT
    assert cancelled == [result]
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_cancel_without_active_stream(store, settings):
    controller, _ = _controller(store, settings)

    assert await controller.cancel("t1") == []
    assert await controller.cancel() == []


@pytest.mark.asyncio
async def test_starting_again_replaces_the_active_stream(store, settings):
    stalled = [
        encode_sse("message_start", {"id": "old"}),
        encode_sse("message_chunk", {"id": "old", "content": "stale"}),
        Pause(30),
    ]
    controller, _ = _controller(
        store, settings, stalled, _text_turn("new"), stream_idle_timeout=60.0
    )

    first = asyncio.create_task(controller.start("t1", {}))

    async def old_started() -> bool:
        return await store.get("t1", "old") is not None

    await _wait_for(old_started)
    second = await controller.start("t1", {})

    old = await asyncio.wait_for(first, timeout=1)
    assert old.finish_reason == FinishReason.INTERRUPTED
    assert second.id == "new"
    assert second.finish_reason == FinishReason.COMPLETED


@pytest.mark.asyncio
async def test_streams_on_different_threads_are_independent(store, settings):
    controller, _ = _controller(store, settings, _text_turn("a"), _text_turn("b"))

    first, second = await asyncio.gather(
        controller.start("t1", {}),
        controller.start("t2", {}),
    )

    assert {first.thread_id, second.thread_id} == {"t1", "t2"}
    assert len(await store.get_by_thread("t1")) == 1
    assert len(await store.get_by_thread("t2")) == 1


@pytest.mark.asyncio
async def test_error_before_any_message_creates_synthetic_reply(store, settings):
    controller, _ = _controller(store, settings, [encode_sse("error", {"error": "quota exceeded"})])

    result = await controller.start("t1", {})

    assert result.role == MessageRole.ASSISTANT
    assert result.finish_reason == FinishReason.ERROR
    assert result.content == "Error: quota exceeded"
    assert await store.get("t1", result.id) == result


@pytest.mark.asyncio
async def test_unknown_events_are_ignored(store, settings):
    script = [
        encode_sse("message_start", {"id": "1"}),
        encode_sse("future_event", {"id": "1", "content": "ignored"}),
        encode_sse("message_chunk", {"id": "1", "content": "kept"}),
        encode_sse("done"),
    ]
    controller, _ = _controller(store, settings, script)

    result = await controller.start("t1", {})

    assert result.content == "kept"


class _UnresponsiveTransport(Transport):
    """Accepts the request but never sends headers or body."""

    def __init__(self):
        self.attempts = 0

    @property
    def capabilities(self) -> TransportCapabilities:
        return TransportCapabilities()

    @asynccontextmanager
    async def connect(self, payload, last_event_id=None):
        self.attempts += 1
        await asyncio.sleep(3600)
        yield None


@pytest.mark.asyncio
async def test_unresponsive_connect_times_out(store, settings):
    transport = _UnresponsiveTransport()
    controller = StreamController(store, transport, settings)

    result = await asyncio.wait_for(controller.start("t1", {}), timeout=5)

    assert result.finish_reason == FinishReason.ERROR
    assert "No data received" in result.content
    assert transport.attempts == 2
    assert not controller.is_active("t1")
    errors = controller.activity("t1").snapshot().errors
    assert {error.type for error in errors} == {ErrorKind.TIMEOUT}


@pytest.mark.asyncio
async def test_concurrent_replacements_leave_one_stream(store, settings):
    def slow_turn(message_id: str) -> list:
        return [
            encode_sse("message_start", {"id": message_id}),
            encode_sse("message_chunk", {"id": message_id, "content": "Hello "}),
            Pause(0.3),
            encode_sse("message_chunk", {"id": message_id, "content": "world"}),
            encode_sse("done"),
        ]

    stalled = [encode_sse("message_start", {"id": "a"}), Pause(30)]
    controller, _ = _controller(
        store,
        settings,
        stalled,
        slow_turn("b"),
        slow_turn("c"),
        stream_idle_timeout=5.0,
    )

    first = asyncio.create_task(controller.start("t1", {}))

    async def first_started() -> bool:
        return await store.get("t1", "a") is not None

    await _wait_for(first_started)
    second, third = await asyncio.wait_for(
        asyncio.gather(controller.start("t1", {}), controller.start("t1", {})), timeout=5
    )

    assert (await asyncio.wait_for(first, timeout=1)).finish_reason == FinishReason.INTERRUPTED
    reasons = [second.finish_reason, third.finish_reason]
    assert reasons.count(FinishReason.COMPLETED) == 1
    assert reasons.count(FinishReason.INTERRUPTED) == 1
    assert not controller.is_active("t1")
    assert all(not m.is_streaming for m in await store.get_by_thread("t1"))
    assert await store.active_message_id("t1") is None


@pytest.mark.asyncio
async def test_last_event_id_is_only_sent_when_transport_resumes(store, settings):
    first = [
        encode_sse("message_start", {"id": "1"}, event_id="e1"),
        encode_sse("message_chunk", {"id": "1", "content": "Hel"}, event_id="e2"),
        TransportError("connection reset"),
    ]
    second = [
        encode_sse("message_start", {"id": "1"}, event_id="e1"),
        encode_sse("message_chunk", {"id": "1", "content": "Hel"}, event_id="e2"),
        encode_sse("message_chunk", {"id": "1", "content": "lo"}, event_id="e3"),
        encode_sse("done", event_id="e4"),
    ]
    transport = ScriptedTransport(first, second, resume=False)
    controller = StreamController(store, transport, settings)

    result = await controller.start("t1", {})

    assert result.content == "Hello"
    assert [call["last_event_id"] for call in transport.calls] == [None, None]


@pytest.mark.asyncio
async def test_batched_tool_calls_are_routed_to_their_message(store, settings):
    script = [
        encode_sse("message_start", {"id": "2"}),
        encode_sse(
            "tool_call_chunks",
            [
                {"id": "c1", "name": "search", "args": '{"query"'},
                {"id": "c2", "name": "fetch"},
            ],
        ),
        encode_sse("tool_calls", [{"id": "c2", "name": "fetch", "args": {"url": "u"}}]),
        encode_sse("tool_call_chunks", [{"id": "c1", "args": ': "x"}'}]),
        encode_sse("tool_call_result", {"id": "c1", "result": ["r1"]}),
        encode_sse("done"),
    ]
    controller, _ = _controller(store, settings, script)

    result = await controller.start("t1", {})

    assert result.tool_calls["c1"].args == {"query": "x"}
    assert result.tool_calls["c1"].result == ["r1"]
    assert result.tool_calls["c2"].args == {"url": "u"}
    activities = controller.activity("t1").snapshot().activities
    assert [a.content for a in activities] == ["Executing: search", "Executing: fetch"]


@pytest.mark.asyncio
async def test_forget_drops_thread_activity(store, settings):
    controller, _ = _controller(
        store, settings, [encode_sse("search", {"query": "q"}), *_text_turn()]
    )
    await controller.start("t1", {})
    assert controller.activity("t1").snapshot().activities

    await controller.forget("t1")

    assert controller.activity("t1").snapshot().activities == []
    assert not controller.is_active("t1")
