"""Shared pytest fixtures."""

import pytest

from chatstream.config import Settings
from chatstream.database import create_session_factory, create_tables
from chatstream.services.message_store import MessageStore


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'chatstream.db'}")
    await create_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> MessageStore:
    return MessageStore(session_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        stream_idle_timeout=0.2,
        stream_max_attempts=3,
        stream_retry_min_seconds=0.01,
        stream_retry_max_seconds=0.02,
        stream_timeout_retries=1,
    )
