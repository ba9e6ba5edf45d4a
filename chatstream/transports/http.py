"""HTTP transport reading Server-Sent Events from the research agent."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiohttp

from chatstream.transports.base import Transport, TransportCapabilities, TransportError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 425, 429})


class HttpTransport(Transport):
    """POSTs the request and streams the event-stream response body."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        connect_timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize the transport.

        Args:
            url: Agent streaming endpoint
            headers: Extra headers sent with every request (e.g. auth)
            connect_timeout: Seconds allowed to establish the connection.
                Read idleness is enforced by the stream controller.
            session: Optional shared aiohttp session
        """
        self.url = url
        self.headers = headers or {}
        self.connect_timeout = connect_timeout
        self._session = session
        self._owns_session = session is None

    @property
    def capabilities(self) -> TransportCapabilities:
        return TransportCapabilities(supports_resume=True)

    @asynccontextmanager
    async def connect(
        self,
        payload: dict[str, Any],
        last_event_id: str | None = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open the agent stream and yield its body chunks."""
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            **self.headers,
        }
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id

        session = self._get_session()
        logger.info(f"Connecting to agent stream {self.url} (resume from {last_event_id})")

        try:
            response = await session.post(
                self.url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout),
            )
        except (aiohttp.ClientError, TimeoutError, OSError) as e:
            raise TransportError(f"Failed to connect to agent stream: {e}") from e

        try:
            if response.status >= 400:
                error_text = await response.text()
                retryable = response.status >= 500 or response.status in RETRYABLE_STATUSES
                raise TransportError(
                    f"Agent stream returned HTTP {response.status}: {error_text[:200]}",
                    retryable=retryable,
                    status=response.status,
                )
            yield self._iter_chunks(response)
        finally:
            # Drops the connection if the body was not fully read
            response.close()

    async def _iter_chunks(self, response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_any():
                yield chunk
        except (aiohttp.ClientPayloadError, aiohttp.ClientConnectionError, OSError) as e:
            raise TransportError(f"Agent stream interrupted: {e}") from e

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def cleanup(self) -> None:
        """Close the HTTP session if this transport created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
