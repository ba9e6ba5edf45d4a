"""Scripted transport for testing and offline replays."""

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from chatstream.transports.base import Transport, TransportCapabilities, TransportError


@dataclass
class Pause:
    """Stall the scripted stream for ``seconds`` without sending bytes."""

    seconds: float


def encode_sse(event: str, data: Any = None, event_id: str | None = None) -> bytes:
    """Encode one Server-Sent Event frame."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data if data is not None else {})}")
    return ("\n".join(lines) + "\n\n").encode()


def encode_terminator() -> bytes:
    return b"data: [DONE]\n\n"


class ScriptedTransport(Transport):
    """Replays one script per connection attempt.

    A script is a sequence of items played in order: ``bytes``/``str`` chunks
    are yielded, exceptions are raised mid-stream, and ``Pause`` stalls the
    read. A script that is itself an exception fails the connection attempt.
    With ``loop`` set, scripts are replayed from the start once exhausted.
    ``resume`` controls whether reconnects are offered the last event id.
    """

    def __init__(
        self,
        *scripts: Sequence[Any] | Exception,
        loop: bool = False,
        resume: bool = True,
    ):
        self.scripts = list(scripts)
        self.loop = loop
        self.resume = resume
        self.calls: list[dict[str, Any]] = []
        self.closed_connections = 0

    @classmethod
    def from_file(cls, path: str | Path, loop: bool = True) -> "ScriptedTransport":
        """Replay a recorded event-stream body from disk."""
        return cls([Path(path).read_bytes()], loop=loop)

    @property
    def capabilities(self) -> TransportCapabilities:
        return TransportCapabilities(supports_resume=self.resume)

    @asynccontextmanager
    async def connect(
        self,
        payload: dict[str, Any],
        last_event_id: str | None = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        attempt = len(self.calls)
        self.calls.append({"payload": payload, "last_event_id": last_event_id})

        if self.loop and self.scripts:
            attempt %= len(self.scripts)
        if attempt >= len(self.scripts):
            raise TransportError("No scripted response left", retryable=False)

        script = self.scripts[attempt]
        if isinstance(script, Exception):
            raise script

        try:
            yield self._play(script)
        finally:
            self.closed_connections += 1

    async def _play(self, script: Sequence[Any]) -> AsyncIterator[bytes]:
        for item in script:
            if isinstance(item, Exception):
                raise item
            if isinstance(item, Pause):
                await asyncio.sleep(item.seconds)
                continue
            yield item.encode() if isinstance(item, str) else item
            await asyncio.sleep(0)
