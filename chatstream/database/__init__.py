"""Database models and connection."""

from chatstream.database.connection import (
    AsyncSessionLocal,
    close_db,
    create_session_factory,
    create_tables,
    init_db,
)
from chatstream.database.models import Base, MessageDB, ThreadDB

__all__ = [
    "AsyncSessionLocal",
    "Base",
    "MessageDB",
    "ThreadDB",
    "close_db",
    "create_session_factory",
    "create_tables",
    "init_db",
]
