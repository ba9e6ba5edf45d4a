"""Thread-partitioned, durable store of reconstructed messages."""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatstream.database.models import MessageDB, ThreadDB
from chatstream.models.domain import FinishReason, Message, Thread, utc_now
from chatstream.streaming.merger import finalize

logger = logging.getLogger(__name__)

MessageListener = Callable[[Message], None]
CloseListener = Callable[[], None]


class _ThreadState:
    """In-memory view of one thread, guarded by a single-writer lock."""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        self.messages: dict[str, Message] = {}
        self.active_message_id: str | None = None
        self.listeners: list[MessageListener] = []
        self.close_listeners: dict[MessageListener, CloseListener] = {}
        self.lock = asyncio.Lock()
        self.loaded = False


class MessageStore:
    """Owns every message of every thread.

    Writes are upserts keyed by message id and ordered by the message's
    ``revision`` (its count of applied events), so replays and late writes
    never roll a message back. A terminal message is never replaced. Each
    accepted write is committed to the database before listeners are told.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize with a database session factory."""
        self._session_factory = session_factory
        self._threads: dict[str, _ThreadState] = {}

    async def upsert(self, message: Message) -> bool:
        """Insert or replace a message.

        Args:
            message: Message snapshot to store

        Returns:
            True if the snapshot was stored, False if it was older than (or a
            replay of) what the store already holds
        """
        state = self._state(message.thread_id)
        async with state.lock:
            await self._ensure_loaded(state)

            current = state.messages.get(message.id)
            if not self._should_replace(current, message):
                logger.debug(
                    f"Ignoring stale write for message {message.id} "
                    f"(revision {message.revision}) in thread {message.thread_id}"
                )
                return False

            sequence = len(state.messages) if current is None else None
            await self._persist(message, sequence)

            stored = message.model_copy(deep=True)
            state.messages[message.id] = stored

        self._notify(state, stored)
        return True

    async def get(self, thread_id: str, message_id: str) -> Message | None:
        """Get a message by thread and id."""
        state = self._state(thread_id)
        async with state.lock:
            await self._ensure_loaded(state)
            message = state.messages.get(message_id)
            return message.model_copy(deep=True) if message else None

    async def get_by_thread(self, thread_id: str) -> list[Message]:
        """Retrieve a thread's messages in arrival order."""
        state = self._state(thread_id)
        async with state.lock:
            await self._ensure_loaded(state)
            return [message.model_copy(deep=True) for message in state.messages.values()]

    async def load_thread(self, thread_id: str) -> list[Message]:
        """Load a thread from the database, recovering interrupted streams.

        Messages persisted while still streaming (the process stopped
        mid-stream) are finalized as interrupted so the conversation can be
        resumed.
        """
        return await self.get_by_thread(thread_id)

    def subscribe(
        self,
        thread_id: str,
        listener: MessageListener,
        on_close: CloseListener | None = None,
    ) -> Callable[[], None]:
        """Register a listener for accepted writes in a thread.

        Args:
            thread_id: Thread to follow
            listener: Called with a copy of every accepted write
            on_close: Called once if the thread is deleted while subscribed

        Returns:
            Callable that removes the listener
        """
        state = self._state(thread_id)
        state.listeners.append(listener)
        if on_close is not None:
            state.close_listeners[listener] = on_close

        def unsubscribe() -> None:
            self.unsubscribe(thread_id, listener)

        return unsubscribe

    def unsubscribe(self, thread_id: str, listener: MessageListener) -> None:
        state = self._threads.get(thread_id)
        if state and listener in state.listeners:
            state.listeners.remove(listener)
            state.close_listeners.pop(listener, None)

    async def set_active(self, thread_id: str, message_id: str | None) -> None:
        """Record which message is currently streaming in a thread."""
        state = self._state(thread_id)
        async with state.lock:
            await self._ensure_loaded(state)
            state.active_message_id = message_id

            async with self._session_factory() as db:
                thread_db = await self._get_or_create_thread(db, thread_id)
                thread_db.active_message_id = message_id
                thread_db.updated_at = datetime.now(UTC)
                await db.commit()

    async def active_message_id(self, thread_id: str) -> str | None:
        state = self._state(thread_id)
        async with state.lock:
            await self._ensure_loaded(state)
            return state.active_message_id

    async def get_thread(self, thread_id: str) -> Thread | None:
        """Get thread details, or None if the thread was never written."""
        async with self._session_factory() as db:
            thread_db = await db.get(ThreadDB, thread_id)
            return self._thread_to_domain(thread_db) if thread_db else None

    async def list_threads(self) -> list[Thread]:
        """List all persisted threads, most recently updated first."""
        async with self._session_factory() as db:
            result = await db.execute(select(ThreadDB).order_by(ThreadDB.updated_at.desc()))
            return [self._thread_to_domain(thread_db) for thread_db in result.scalars().all()]

    async def delete_thread(self, thread_id: str) -> None:
        """Tear down a thread: its messages, its row and its listeners."""
        state = self._state(thread_id)
        async with state.lock:
            async with self._session_factory() as db:
                await db.execute(delete(MessageDB).where(MessageDB.thread_id == thread_id))
                await db.execute(delete(ThreadDB).where(ThreadDB.id == thread_id))
                await db.commit()

            closers = list(state.close_listeners.values())
            state.listeners.clear()
            state.close_listeners.clear()
            self._threads.pop(thread_id, None)

        for on_close in closers:
            try:
                on_close()
            except Exception as e:
                logger.error(f"Close listener failed for thread {thread_id}: {e}", exc_info=True)

        logger.info(f"Deleted thread {thread_id}")

    @staticmethod
    def _should_replace(current: Message | None, incoming: Message) -> bool:
        if current is None:
            return True
        if current.is_terminal:
            return False
        return incoming.revision >= current.revision

    def _state(self, thread_id: str) -> _ThreadState:
        state = self._threads.get(thread_id)
        if state is None:
            state = _ThreadState(thread_id)
            self._threads[thread_id] = state
        return state

    async def _ensure_loaded(self, state: _ThreadState) -> None:
        if state.loaded:
            return

        async with self._session_factory() as db:
            thread_db = await db.get(ThreadDB, state.thread_id)
            result = await db.execute(
                select(MessageDB)
                .where(MessageDB.thread_id == state.thread_id)
                .order_by(MessageDB.sequence)
            )

            recovered = 0
            for row in result.scalars().all():
                message = self._message_to_domain(row)
                if message.is_streaming:
                    message = finalize(message, FinishReason.INTERRUPTED, utc_now())
                    self._apply_to_row(row, message)
                    recovered += 1
                state.messages[message.id] = message

            if thread_db is not None:
                state.active_message_id = thread_db.active_message_id
                if recovered:
                    thread_db.active_message_id = None
                    state.active_message_id = None

            if recovered:
                await db.commit()
                logger.warning(
                    f"Recovered {recovered} unfinished message(s) in thread {state.thread_id}"
                )

        state.loaded = True

    async def _persist(self, message: Message, sequence: int | None) -> None:
        async with self._session_factory() as db:
            thread_db = await self._get_or_create_thread(db, message.thread_id)
            thread_db.updated_at = datetime.now(UTC)

            row = await db.get(MessageDB, (message.thread_id, message.id))
            if row is None:
                row = MessageDB(
                    thread_id=message.thread_id,
                    id=message.id,
                    sequence=sequence or 0,
                )
                db.add(row)
            self._apply_to_row(row, message)
            await db.commit()

    @staticmethod
    async def _get_or_create_thread(db: AsyncSession, thread_id: str) -> ThreadDB:
        thread_db = await db.get(ThreadDB, thread_id)
        if thread_db is None:
            thread_db = ThreadDB(id=thread_id)
            db.add(thread_db)
            await db.flush()
        return thread_db

    def _notify(self, state: _ThreadState, message: Message) -> None:
        for listener in list(state.listeners):
            try:
                listener(message.model_copy(deep=True))
            except Exception as e:
                logger.error(
                    f"Listener failed for message {message.id} in thread {state.thread_id}: {e}",
                    exc_info=True,
                )

    @staticmethod
    def _apply_to_row(row: MessageDB, message: Message) -> None:
        """Copy a domain message onto its database row."""
        row.revision = message.revision
        row.role = message.role
        row.content = message.content
        row.is_streaming = message.is_streaming
        row.finish_reason = message.finish_reason
        row.tool_calls = {
            tool_id: tool_call.model_dump(mode="json")
            for tool_id, tool_call in message.tool_calls.items()
        }
        row.options = [option.model_dump(mode="json") for option in message.options]
        row.message_metadata = message.metadata.model_dump(mode="json")
        row.created_at = message.created_at
        row.updated_at = message.updated_at

    @staticmethod
    def _message_to_domain(row: MessageDB) -> Message:
        """Convert database message to domain message."""
        return Message.model_validate(
            {
                "id": row.id,
                "thread_id": row.thread_id,
                "role": row.role,
                "content": row.content,
                "is_streaming": row.is_streaming,
                "finish_reason": row.finish_reason,
                "tool_calls": row.tool_calls or {},
                "options": row.options or [],
                "metadata": row.message_metadata or {},
                "revision": row.revision,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
            }
        )

    @staticmethod
    def _thread_to_domain(thread_db: ThreadDB) -> Thread:
        """Convert database thread to domain thread."""
        return Thread(
            id=thread_db.id,
            active_message_id=thread_db.active_message_id,
            created_at=thread_db.created_at,
            updated_at=thread_db.updated_at,
        )
