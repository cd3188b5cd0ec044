"""Incremental JSON-lines decoder for the agent's stdout.

Bytes arrive in arbitrary chunks. A residual buffer holds any partial
line until its newline shows up, so the decoded event sequence does not
depend on where chunk boundaries fall (including inside a multi-byte
UTF-8 character, since decoding happens per complete line).

Lines that are not JSON objects are expected noise (diagnostic text on
the same stream) and are skipped.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from .events import AgentEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventDecoder:
    """Stateful line splitter + parser. One instance per run."""

    def __init__(self) -> None:
        self._buffer = b""
        self._finished = False
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> list[AgentEvent]:
        """Consume a chunk and return the events completed by it."""
        if self._finished:
            raise RuntimeError("EventDecoder.feed() called after finish()")
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        events: list[AgentEvent] = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[AgentEvent]:
        """Flush the trailing unterminated line, if any."""
        self._finished = True
        tail, self._buffer = self._buffer, b""
        event = self._parse_line(tail)
        return [event] if event is not None else []

    def _parse_line(self, line: bytes) -> AgentEvent | None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            logger.debug("Skipping non-JSON agent output: %.120s", text)
            return None
        if not isinstance(data, dict):
            self.skipped_lines += 1
            logger.debug("Skipping non-object JSON line: %.120s", text)
            return None
        return dict_to_event(data)


async def decode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[AgentEvent]:
    """Lazily decode an async byte stream into agent events."""
    decoder = EventDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.finish():
        yield event
