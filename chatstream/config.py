"""Application configuration and settings."""

from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic_settings import BaseSettings, SettingsConfigDict

from chatstream.transports.base import Transport, TransportConfigurationError, TransportType

if TYPE_CHECKING:
    from chatstream.services.message_store import MessageStore
    from chatstream.streaming.controller import StreamController


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    # Application
    app_name: str = "Chatstream"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./chatstream.db"
    database_echo: bool = False

    # Agent Transport
    transport_type: TransportType = TransportType.HTTP
    agent_stream_url: str | None = None
    agent_headers: dict[str, str] = {}
    agent_connect_timeout: float = 10.0
    scripted_replay_file: str | None = None

    # Stream Controller
    stream_idle_timeout: float = 60.0  # seconds without bytes
    stream_max_attempts: int = 3
    stream_retry_min_seconds: float = 0.5
    stream_retry_max_seconds: float = 8.0
    stream_timeout_retries: int = 1

    # Activity Tracker
    activity_history_limit: int = 50
    activity_error_limit: int = 10


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def create_transport(
    transport_type: TransportType | None = None,
    settings: Settings | None = None,
) -> Transport:
    """Factory function to create agent transports.

    Args:
        transport_type: Type of transport to create (defaults to config setting)
        settings: Settings to read from (defaults to the cached settings)

    Returns:
        Configured Transport instance

    Raises:
        TransportConfigurationError: If transport type invalid or settings missing
    """
    settings = settings or get_settings()
    transport_type = transport_type or settings.transport_type

    if transport_type == TransportType.HTTP:
        from chatstream.transports.http import HttpTransport

        if not settings.agent_stream_url:
            raise TransportConfigurationError("AGENT_STREAM_URL required for HTTP transport")

        return HttpTransport(
            url=settings.agent_stream_url,
            headers=settings.agent_headers,
            connect_timeout=settings.agent_connect_timeout,
        )

    elif transport_type == TransportType.SCRIPTED:
        from chatstream.transports.mock import ScriptedTransport

        if not settings.scripted_replay_file:
            raise TransportConfigurationError(
                "SCRIPTED_REPLAY_FILE required for scripted transport"
            )

        try:
            return ScriptedTransport.from_file(settings.scripted_replay_file)
        except OSError as e:
            raise TransportConfigurationError(
                f"Cannot read replay file {settings.scripted_replay_file}: {e}"
            ) from e

    else:
        raise TransportConfigurationError(f"Unknown transport type: {transport_type}")


def create_stream_controller(
    store: "MessageStore",
    transport: Transport | None = None,
    settings: Settings | None = None,
) -> "StreamController":
    """Factory function to create the stream controller.

    Args:
        store: Message store the controller writes to
        transport: Transport to use (defaults to ``create_transport()``)
        settings: Settings to read from (defaults to the cached settings)

    Returns:
        Configured StreamController instance

    Raises:
        TransportConfigurationError: If no transport can be built
    """
    from chatstream.streaming.controller import StreamController

    settings = settings or get_settings()
    transport = transport or create_transport(settings=settings)
    return StreamController(store=store, transport=transport, settings=settings)
