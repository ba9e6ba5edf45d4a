"""Per-thread lifecycle of agent streams: open, feed, retry, time out, cancel."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import AsyncExitStack
from typing import Any, TypeVar
from uuid import uuid4

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from chatstream.config import Settings
from chatstream.models.domain import (
    FinishReason,
    Message,
    MessageRole,
    StreamRequest,
    utc_now,
)
from chatstream.models.events import (
    Envelope,
    MessageChunkEvent,
    MessageStartEvent,
    UnknownEvent,
    tool_call_items,
)
from chatstream.services.message_store import MessageStore
from chatstream.streaming.activity import ActivityTracker, ErrorKind
from chatstream.streaming.decoder import EventDecoder
from chatstream.streaming.merger import finalize, merge, new_draft, resolve_target
from chatstream.transports.base import (
    StreamAbortedError,
    StreamTimeoutError,
    Transport,
    TransportError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _StreamRun:
    """Mutable state of one in-flight stream."""

    def __init__(self, thread_id: str, request: StreamRequest):
        self.run_id = uuid4().hex
        self.thread_id = thread_id
        self.request = request
        self.abort = asyncio.Event()
        self.task: asyncio.Task[Message] | None = None

        # Assistant drafts of this stream, keyed by message id
        self.drafts: dict[str, Message] = {}
        self.active_id: str | None = None
        self.last_message_id: str | None = None
        self.tool_owners: dict[str, str] = {}

        self.applied_event_ids: set[str] = set()
        self.last_event_id: str | None = None
        self.timeouts = 0
        self.cancelled: list[Message] = []


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await anext(chunks)
    except StopAsyncIteration:
        return None


class StreamController:
    """Drives agent streams into the message store.

    One stream may be active per thread. Every applied event is merged into
    its message and upserted to the store, so the store always holds the
    latest reconstruction. ``start`` always resolves with a terminal message:
    failures, timeouts and cancellation become the message's finish reason
    instead of exceptions.
    """

    def __init__(self, store: MessageStore, transport: Transport, settings: Settings):
        """Initialize the controller.

        Args:
            store: Store receiving every message snapshot
            transport: Transport used to open agent streams
            settings: Retry, timeout and activity limits
        """
        self.store = store
        self.transport = transport
        self.settings = settings
        self._runs: dict[str, _StreamRun] = {}
        self._trackers: dict[str, ActivityTracker] = {}
        # Serializes replace-and-register so a thread never has two live runs
        self._start_locks: dict[str, asyncio.Lock] = {}

    def is_active(self, thread_id: str) -> bool:
        run = self._runs.get(thread_id)
        return run is not None and run.task is not None and not run.task.done()

    def activity(self, thread_id: str) -> ActivityTracker:
        """Get the activity tracker of a thread, creating an idle one if needed."""
        tracker = self._trackers.get(thread_id)
        if tracker is None:
            tracker = ActivityTracker(
                max_activities=self.settings.activity_history_limit,
                max_errors=self.settings.activity_error_limit,
            )
            self._trackers[thread_id] = tracker
        return tracker

    async def start(self, thread_id: str, payload: StreamRequest | dict[str, Any]) -> Message:
        """Stream one agent response into a thread.

        Any stream already running on the thread is cancelled first.

        Args:
            thread_id: Thread the response belongs to
            payload: Request forwarded to the agent

        Returns:
            The final message of the stream as stored, with ``is_streaming``
            false and ``finish_reason`` telling how it ended
        """
        request = (
            payload if isinstance(payload, StreamRequest) else StreamRequest.model_validate(payload)
        )

        lock = self._start_locks.setdefault(thread_id, asyncio.Lock())
        async with lock:
            if self.is_active(thread_id):
                logger.info(f"Replacing active stream on thread {thread_id}")
                await self.cancel(thread_id)

            run = _StreamRun(thread_id, request)
            self._runs[thread_id] = run
            self.activity(thread_id).start()
            run.task = asyncio.create_task(self._run(run), name=f"stream-{thread_id}")

        try:
            return await asyncio.shield(run.task)
        except asyncio.CancelledError:
            # The caller went away; stop the stream but let it settle
            run.abort.set()
            raise
        finally:
            if self._runs.get(thread_id) is run and run.task.done():
                del self._runs[thread_id]

    async def cancel(self, thread_id: str | None = None) -> list[Message]:
        """Cancel the stream of one thread, or of every thread.

        Returns once the cancelled streams have settled.

        Args:
            thread_id: Thread to cancel, or None for all threads

        Returns:
            Messages that were finalized as interrupted
        """
        if thread_id is None:
            runs = list(self._runs.values())
        else:
            runs = [self._runs[thread_id]] if thread_id in self._runs else []

        for run in runs:
            run.abort.set()
            logger.info(f"Cancelling stream {run.run_id} on thread {run.thread_id}")

        tasks = [run.task for run in runs if run.task is not None]
        if tasks:
            await asyncio.wait(tasks)

        cancelled: list[Message] = []
        for run in runs:
            if self._runs.get(run.thread_id) is run:
                del self._runs[run.thread_id]
            cancelled.extend(run.cancelled)
        return cancelled

    async def forget(self, thread_id: str) -> list[Message]:
        """Cancel a thread's stream and drop its activity timeline.

        Used when the thread itself is deleted.
        """
        cancelled = await self.cancel(thread_id)
        self._trackers.pop(thread_id, None)
        lock = self._start_locks.get(thread_id)
        if lock is not None and not lock.locked():
            del self._start_locks[thread_id]
        return cancelled

    async def shutdown(self) -> None:
        """Cancel every stream and release the transport."""
        await self.cancel()
        await self.transport.cleanup()

    async def _run(self, run: _StreamRun) -> Message:
        reason = FinishReason.COMPLETED
        error: str | None = None
        tracker = self.activity(run.thread_id)

        try:
            await self._store_user_message(run)
            async for attempt in self._retrying(run):
                with attempt:
                    await self._consume(run)
        except StreamAbortedError:
            reason = FinishReason.INTERRUPTED
            tracker.stop()
            logger.info(f"Stream {run.run_id} on thread {run.thread_id} cancelled")
        except TransportError as e:
            if run.abort.is_set():
                # Failed while being cancelled; the cancel decides the outcome
                reason = FinishReason.INTERRUPTED
                tracker.stop()
            else:
                reason, error = FinishReason.ERROR, str(e)
                tracker.fail(self._error_kind(e), error)
                logger.error(f"Stream {run.run_id} on thread {run.thread_id} failed: {e}")
        except Exception as e:
            reason, error = FinishReason.ERROR, str(e) or type(e).__name__
            tracker.fail(ErrorKind.UNKNOWN, error)
            logger.error(
                f"Unexpected failure in stream {run.run_id} on thread {run.thread_id}: {e}",
                exc_info=True,
            )
        else:
            if tracker.is_streaming:
                tracker.stop()

        return await self._settle(run, reason, error)

    def _retrying(self, run: _StreamRun) -> AsyncRetrying:
        async def sleep(seconds: float) -> None:
            try:
                await asyncio.wait_for(run.abort.wait(), timeout=seconds)
            except TimeoutError:
                return
            raise StreamAbortedError("Stream cancelled during retry backoff")

        def should_retry(exc: BaseException) -> bool:
            if run.abort.is_set():
                return False
            if isinstance(exc, StreamTimeoutError):
                return run.timeouts <= self.settings.stream_timeout_retries
            return isinstance(exc, TransportError) and exc.retryable

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"Stream {run.run_id} attempt {retry_state.attempt_number} failed, "
                f"retrying: {exc}"
            )
            if isinstance(exc, TransportError):
                self.activity(run.thread_id).add_error(
                    self._error_kind(exc),
                    str(exc),
                    is_recoverable=True,
                    context={"attempt": retry_state.attempt_number},
                )

        return AsyncRetrying(
            sleep=sleep,
            reraise=True,
            stop=stop_after_attempt(max(1, self.settings.stream_max_attempts)),
            wait=wait_exponential(
                multiplier=self.settings.stream_retry_min_seconds,
                max=self.settings.stream_retry_max_seconds,
            ),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep,
        )

    async def _consume(self, run: _StreamRun) -> None:
        """Read one connection until a terminal event, the terminator or EOF."""
        payload = run.request.to_payload(run.thread_id)
        resume_from = run.last_event_id if self.transport.capabilities.supports_resume else None
        decoder = EventDecoder()

        async with AsyncExitStack() as stack:
            chunks = await self._race(
                run,
                stack.enter_async_context(
                    self.transport.connect(payload, last_event_id=resume_from)
                ),
                timeout=self.settings.stream_idle_timeout,
            )

            while True:
                chunk = await self._race(
                    run, _next_chunk(chunks), timeout=self.settings.stream_idle_timeout
                )
                if chunk is None:
                    break
                for envelope in decoder.feed(chunk):
                    if await self._apply(run, envelope):
                        return
                if decoder.finished:
                    return

        for envelope in decoder.close():
            if await self._apply(run, envelope):
                return

    async def _race(
        self,
        run: _StreamRun,
        awaitable: Awaitable[T],
        timeout: float | None = None,
    ) -> T:
        """Await ``awaitable`` unless the stream is aborted or ``timeout`` passes first.

        A result that is already available wins over a simultaneous abort; the
        abort is then seen at the next suspension point.
        """
        task = asyncio.ensure_future(awaitable)
        abort_waiter = asyncio.ensure_future(run.abort.wait())
        try:
            done, _ = await asyncio.wait(
                {task, abort_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            abort_waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        await asyncio.wait({task})
        if not task.cancelled():
            # Retrieve the late outcome so it is not reported as unhandled
            task.exception()

        if run.abort.is_set():
            raise StreamAbortedError("Stream cancelled")

        run.timeouts += 1
        raise StreamTimeoutError(f"No data received for {timeout} seconds")

    async def _apply(self, run: _StreamRun, envelope: Envelope) -> bool:
        """Route, merge and store one envelope. Returns True when reading should stop."""
        if envelope.event_id is not None:
            if envelope.event_id in run.applied_event_ids:
                logger.debug(f"Skipping duplicate event {envelope.event_id}")
                return False
            run.applied_event_ids.add(envelope.event_id)
            run.last_event_id = envelope.event_id

        self.activity(run.thread_id).process(envelope)

        event = envelope.event
        if isinstance(event, UnknownEvent):
            logger.debug(f"Ignoring unknown event '{event.name}'")
            return False

        target = resolve_target(event, run.active_id, run.tool_owners, run.drafts)
        if (
            isinstance(event, MessageStartEvent | MessageChunkEvent)
            and target not in run.drafts
            and run.active_id is not None
        ):
            await self._finalize_draft(run, run.active_id, FinishReason.COMPLETED)

        draft = run.drafts.get(target) if target else None
        updated = merge(draft, envelope, message_id=target, thread_id=run.thread_id)
        if updated is None:
            if not envelope.is_terminal:
                logger.debug(f"Dropping '{event.type}' event with no message to apply to")
                return False
            # Terminal outcome before any message: carry it on a synthetic one
            updated = merge(
                None, envelope, message_id=self._synthetic_id(run), thread_id=run.thread_id
            )
        if updated is draft:
            return envelope.is_terminal

        for item in tool_call_items(event):
            run.tool_owners.setdefault(item.id, updated.id)

        await self._write(run, updated)
        if updated.is_streaming and run.active_id != updated.id:
            run.active_id = updated.id
            await self.store.set_active(run.thread_id, updated.id)

        return envelope.is_terminal

    async def _write(self, run: _StreamRun, message: Message) -> None:
        """Upsert a draft, refusing non-terminal writes once the stream is aborted."""
        if run.abort.is_set() and not message.is_terminal:
            raise StreamAbortedError("Stream cancelled")

        run.drafts[message.id] = message
        run.last_message_id = message.id
        await self.store.upsert(message)

    async def _finalize_draft(
        self,
        run: _StreamRun,
        message_id: str,
        reason: FinishReason,
        error: str | None = None,
    ) -> Message | None:
        draft = run.drafts.get(message_id)
        if draft is None or draft.is_terminal:
            return None

        final = finalize(draft, reason, utc_now(), error)
        await self._write(run, final)
        if run.active_id == message_id:
            run.active_id = None
        return final

    async def _store_user_message(self, run: _StreamRun) -> None:
        if not run.request.message:
            return

        now = utc_now()
        user_message = new_draft(f"user-{run.run_id}", run.thread_id, now, role=MessageRole.USER)
        user_message.content = run.request.message
        user_message.metadata.interrupt_feedback = run.request.interrupt_feedback
        user_message = finalize(user_message, FinishReason.COMPLETED, now)
        await self.store.upsert(user_message)

    async def _settle(
        self,
        run: _StreamRun,
        reason: FinishReason,
        error: str | None,
    ) -> Message:
        """Finalize every open draft and read the outcome back from the store."""
        try:
            for message_id in list(run.drafts):
                final = await self._finalize_draft(run, message_id, reason, error)
                if final is not None and reason == FinishReason.INTERRUPTED:
                    run.cancelled.append(final)

            if run.last_message_id is None:
                synthetic = new_draft(self._synthetic_id(run), run.thread_id, utc_now())
                synthetic = finalize(synthetic, reason, utc_now(), error)
                await self._write(run, synthetic)
                if reason == FinishReason.INTERRUPTED:
                    run.cancelled.append(synthetic)

            await self.store.set_active(run.thread_id, None)
            stored = await self.store.get(run.thread_id, run.last_message_id)
        except Exception as e:
            logger.error(
                f"Failed to store final state of stream {run.run_id} "
                f"on thread {run.thread_id}: {e}",
                exc_info=True,
            )
            stored = None

        result = stored or run.drafts[run.last_message_id]
        logger.info(
            f"Stream {run.run_id} on thread {run.thread_id} finished: "
            f"{result.finish_reason.value} (message {result.id})"
        )
        return result

    @staticmethod
    def _synthetic_id(run: _StreamRun) -> str:
        return f"assistant-{run.run_id}"

    @staticmethod
    def _error_kind(error: TransportError) -> ErrorKind:
        if isinstance(error, StreamTimeoutError):
            return ErrorKind.TIMEOUT
        if error.status is not None:
            return ErrorKind.SERVER
        return ErrorKind.NETWORK
