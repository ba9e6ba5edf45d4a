"""Tests for the agent stream transports."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from chatstream.models.domain import FinishReason
from chatstream.streaming.controller import StreamController
from chatstream.streaming.decoder import EventDecoder
from chatstream.transports.base import TransportError
from chatstream.transports.http import HttpTransport
from chatstream.transports.mock import ScriptedTransport, encode_sse


async def _stream(request: web.Request) -> web.StreamResponse:
    body = await request.json()
    response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
    await response.prepare(request)
    await response.write(encode_sse("message_start", {"id": "m1", "thread_id": body["thread_id"]}))
    await response.write(encode_sse("message_chunk", {"id": "m1", "content": "over http"}))
    resume_from = request.headers.get("Last-Event-ID", "none")
    await response.write(encode_sse("done", event_id=f"after-{resume_from}"))
    await response.write_eof()
    return response


async def _busy(request: web.Request) -> web.Response:
    return web.Response(status=503, text="busy")


async def _unauthorized(request: web.Request) -> web.Response:
    return web.Response(status=401, text="bad token")


@pytest.fixture
async def agent_server():
    app = web.Application()
    app.router.add_post("/stream", _stream)
    app.router.add_post("/busy", _busy)
    app.router.add_post("/unauthorized", _unauthorized)

    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest.mark.asyncio
async def test_http_transport_streams_body(agent_server):
    transport = HttpTransport(str(agent_server.make_url("/stream")))
    decoder = EventDecoder()

    async with transport.connect({"thread_id": "t1"}, last_event_id="e9") as chunks:
        envelopes = [envelope async for chunk in chunks for envelope in decoder.feed(chunk)]
    await transport.cleanup()

    assert [e.type for e in envelopes] == ["message_start", "message_chunk", "done"]
    assert envelopes[0].event.thread_id == "t1"
    assert envelopes[-1].event_id == "after-e9"


@pytest.mark.asyncio
async def test_http_server_errors_are_retryable(agent_server):
    transport = HttpTransport(str(agent_server.make_url("/busy")))

    with pytest.raises(TransportError) as exc_info:
        async with transport.connect({"thread_id": "t1"}):
            pass
    await transport.cleanup()

    assert exc_info.value.status == 503
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_http_client_errors_are_fatal(agent_server):
    transport = HttpTransport(str(agent_server.make_url("/unauthorized")))

    with pytest.raises(TransportError) as exc_info:
        async with transport.connect({"thread_id": "t1"}):
            pass
    await transport.cleanup()

    assert exc_info.value.status == 401
    assert not exc_info.value.retryable
    assert "bad token" in str(exc_info.value)


@pytest.mark.asyncio
async def test_http_connection_failure_is_retryable():
    transport = HttpTransport("http://127.0.0.1:1/stream", connect_timeout=1.0)

    with pytest.raises(TransportError) as exc_info:
        async with transport.connect({"thread_id": "t1"}):
            pass
    await transport.cleanup()

    assert exc_info.value.retryable
    assert exc_info.value.status is None


@pytest.mark.asyncio
async def test_controller_over_http(agent_server, store, settings):
    transport = HttpTransport(str(agent_server.make_url("/stream")))
    controller = StreamController(store, transport, settings)

    result = await controller.start("t1", {"message": "hello"})
    await controller.shutdown()

    assert result.content == "over http"
    assert result.finish_reason == FinishReason.COMPLETED


@pytest.mark.asyncio
async def test_scripted_transport_runs_out_of_scripts():
    transport = ScriptedTransport([encode_sse("done")])

    async with transport.connect({}) as chunks:
        assert [chunk async for chunk in chunks] == [encode_sse("done")]

    with pytest.raises(TransportError) as exc_info:
        async with transport.connect({}):
            pass
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_scripted_transport_replays_file_in_a_loop(tmp_path):
    recording = tmp_path / "recording.sse"
    recording.write_bytes(encode_sse("message_chunk", {"id": "m", "content": "x"}))
    transport = ScriptedTransport.from_file(recording)

    for _ in range(2):
        async with transport.connect({}) as chunks:
            assert b"".join([chunk async for chunk in chunks]) == recording.read_bytes()

    assert transport.closed_connections == 2
