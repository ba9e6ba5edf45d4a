"""API endpoints for thread streaming and message history."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from chatstream.models.domain import CancelResponse, Message, StreamRequest, Thread
from chatstream.services.message_store import MessageStore
from chatstream.streaming.activity import ActivitySnapshot
from chatstream.streaming.controller import StreamController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/threads", tags=["threads"])

KEEPALIVE_SECONDS = 15.0
SUBSCRIBER_QUEUE_SIZE = 100


def _offer(queue: asyncio.Queue[Message | None], item: Message | None) -> None:
    if queue.full():
        # Slow subscriber; the oldest pending update is dropped
        queue.get_nowait()
        logger.warning("Subscriber queue full, dropping oldest update")
    queue.put_nowait(item)


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_controller(request: Request) -> StreamController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Agent transport is not configured")
    return controller


@router.get("", response_model=list[Thread])
async def list_threads(store: MessageStore = Depends(get_store)) -> list[Thread]:
    """List all threads, most recently updated first."""
    return await store.list_threads()


@router.post("/{thread_id}/stream", response_model=Message)
async def stream(
    thread_id: str,
    request: StreamRequest,
    controller: StreamController = Depends(get_controller),
) -> Message:
    """Run one agent stream on a thread.

    Any stream already running on the thread is cancelled first. Progress can
    be followed on ``GET /threads/{thread_id}/events`` while this request is
    open.

    Args:
        thread_id: Thread identifier
        request: Request forwarded to the agent
        controller: Stream controller

    Returns:
        The final message of the stream
    """
    return await controller.start(thread_id, request)


@router.post("/{thread_id}/cancel", response_model=CancelResponse)
async def cancel(
    thread_id: str,
    controller: StreamController = Depends(get_controller),
) -> CancelResponse:
    """Cancel the active stream of a thread, if any."""
    cancelled = await controller.cancel(thread_id)
    return CancelResponse(thread_id=thread_id, cancelled=cancelled)


@router.get("/{thread_id}/messages", response_model=list[Message])
async def get_messages(
    thread_id: str,
    store: MessageStore = Depends(get_store),
) -> list[Message]:
    """Get a thread's messages in arrival order."""
    return await store.load_thread(thread_id)


@router.get("/{thread_id}/messages/{message_id}", response_model=Message)
async def get_message(
    thread_id: str,
    message_id: str,
    store: MessageStore = Depends(get_store),
) -> Message:
    """Get one message.

    Raises:
        HTTPException: If message not found
    """
    message = await store.get(thread_id, message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


@router.get("/{thread_id}/activity", response_model=ActivitySnapshot)
async def get_activity(
    thread_id: str,
    controller: StreamController = Depends(get_controller),
) -> ActivitySnapshot:
    """Get the activity timeline of a thread's latest stream."""
    return controller.activity(thread_id).snapshot()


@router.get("/{thread_id}/events")
async def subscribe(
    thread_id: str,
    request: Request,
    store: MessageStore = Depends(get_store),
) -> StreamingResponse:
    """Follow message updates of a thread as Server-Sent Events.

    Each accepted store write is sent as a ``message`` event carrying the full
    message. Comment lines keep idle connections open. The stream ends when
    the thread is deleted.
    """
    queue: asyncio.Queue[Message | None] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
    unsubscribe = store.subscribe(
        thread_id,
        lambda message: _offer(queue, message),
        on_close=lambda: _offer(queue, None),
    )

    async def generate():
        try:
            while not await request.is_disconnected():
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if message is None:
                    break
                data = message.model_dump_json()
                yield f"id: {message.id}:{message.revision}\nevent: message\ndata: {data}\n\n"
        finally:
            unsubscribe()
            logger.debug(f"Subscriber left thread {thread_id}")

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.delete("/{thread_id}", status_code=204)
async def delete_thread(
    thread_id: str,
    request: Request,
    store: MessageStore = Depends(get_store),
) -> None:
    """Cancel any stream on the thread, drop its activity and delete its messages."""
    controller: StreamController | None = getattr(request.app.state, "controller", None)
    if controller is not None:
        await controller.forget(thread_id)
    await store.delete_thread(thread_id)
