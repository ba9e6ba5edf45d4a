"""Incremental decoder turning a byte stream into envelope events."""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from chatstream.models.events import Envelope, parse_event

logger = logging.getLogger(__name__)

TERMINATOR = "[DONE]"
DEFAULT_EVENT_NAME = "message"


class EventDecoder:
    """Decodes Server-Sent Events or newline-delimited JSON envelopes.

    Bytes may be split anywhere, including inside a UTF-8 sequence or a JSON
    value; incomplete trailing data is buffered until the next ``feed`` call.
    A frame whose data is the terminator sentinel ends decoding. Malformed
    frames are skipped and counted in ``decode_errors``.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event_name: str | None = None
        self._event_id: str | None = None
        self._data_lines: list[str] = []

        self.last_event_id: str | None = None
        self.finished = False
        self.frames = 0
        self.decode_errors = 0

    def feed(self, chunk: bytes | str) -> list[Envelope]:
        """Consume one transport read and return the envelopes it completed."""
        if self.finished:
            return []

        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        self._buffer += text

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        envelopes: list[Envelope] = []
        for line in lines:
            self._process_line(line.rstrip("\r"), envelopes)
            if self.finished:
                self._buffer = ""
                break
        return envelopes

    def close(self) -> list[Envelope]:
        """Flush buffered data at end of stream."""
        if self.finished:
            return []

        envelopes: list[Envelope] = []
        self._buffer += self._utf8.decode(b"", final=True)
        if self._buffer:
            self._process_line(self._buffer.rstrip("\r"), envelopes)
            self._buffer = ""
        if not self.finished:
            self._dispatch(envelopes)
        return envelopes

    def _process_line(self, line: str, envelopes: list[Envelope]) -> None:
        stripped = line.strip()
        if not stripped:
            self._dispatch(envelopes)
            return

        if line.startswith(":"):
            return

        if stripped.startswith("{") or stripped == TERMINATOR:
            # Bare NDJSON frame
            self._dispatch(envelopes)
            self._data_lines.append(stripped)
            self._dispatch(envelopes)
            return

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            if self._data_lines:
                # Previous frame was not closed by a blank line
                self._dispatch(envelopes)
            self._event_name = value.strip()
        elif field == "data":
            self._data_lines.append(value)
        elif field == "id":
            self._event_id = value.strip() or None

    def _dispatch(self, envelopes: list[Envelope]) -> None:
        name = self._event_name
        event_id = self._event_id
        data = "\n".join(self._data_lines)

        self._event_name = None
        self._event_id = None
        self._data_lines = []

        if not data.strip():
            return

        self.frames += 1
        if event_id:
            self.last_event_id = event_id

        if data.strip() == TERMINATOR:
            self.finished = True
            return

        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            self._skip(f"invalid JSON ({e.msg})", data)
            return

        name, body = self._unwrap(name, payload)
        if name is None:
            self._skip("frame has no event name", data)
            return

        try:
            event = parse_event(name, body)
        except ValueError as e:
            self._skip(f"invalid '{name}' payload: {e}", data)
            return

        envelopes.append(Envelope(event=event, event_id=event_id))

    @staticmethod
    def _unwrap(name: str | None, payload: Any) -> tuple[str | None, Any]:
        """Resolve the event name, unwrapping ``{"event": ..., "data": ...}``."""
        is_envelope = (
            isinstance(payload, dict)
            and isinstance(payload.get("event", payload.get("type")), str)
            and "data" in payload
        )
        if is_envelope and name in (None, DEFAULT_EVENT_NAME):
            return payload.get("event", payload.get("type")), payload["data"]
        if name is None or name == DEFAULT_EVENT_NAME:
            return None, payload
        return name, payload

    def _skip(self, reason: str, data: str) -> None:
        self.decode_errors += 1
        logger.warning(f"Skipping malformed stream frame: {reason}: {data[:200]!r}")


async def decode_stream(
    chunks: AsyncIterable[bytes | str],
    decoder: EventDecoder | None = None,
) -> AsyncIterator[Envelope]:
    """Lazily decode an async byte stream into envelopes.

    Args:
        chunks: Raw transport reads
        decoder: Optional decoder to reuse (e.g. to inspect ``last_event_id``)

    Yields:
        Envelope events in arrival order, until the terminator or end of input
    """
    decoder = decoder or EventDecoder()
    async for chunk in chunks:
        for envelope in decoder.feed(chunk):
            yield envelope
        if decoder.finished:
            return
    for envelope in decoder.close():
        yield envelope
