#!/usr/bin/env python3
"""Incremental server-sent-event framing used by the streaming proxy."""
import codecs
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

DONE_SENTINEL = '[DONE]'


@dataclass
class SSEEvent:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.data == DONE_SENTINEL


class SSEParser:
    """Turns arbitrarily split byte chunks into complete events.

    Lines are buffered until a blank line ends the event; multiple ``data:``
    lines are joined with ``\\n``. Comment lines and events without data are
    dropped.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ''
        self._data: List[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None

    def feed(self, chunk: bytes) -> List[SSEEvent]:
        self._buffer += self._decoder.decode(chunk)
        return self._drain_lines()

    def flush(self) -> List[SSEEvent]:
        """Emit whatever is left once the upstream body ends."""
        self._buffer += self._decoder.decode(b'', final=True)
        events = self._drain_lines()
        if self._buffer:
            self._process_line(self._buffer, events)
            self._buffer = ''
        self._dispatch(events)
        return events

    def _drain_lines(self) -> List[SSEEvent]:
        events: List[SSEEvent] = []
        while True:
            newline_index = self._buffer.find('\n')
            if newline_index == -1:
                break
            line, self._buffer = self._buffer[:newline_index], self._buffer[newline_index + 1:]
            self._process_line(line.rstrip('\r'), events)
        return events

    def _process_line(self, line: str, events: List[SSEEvent]):
        if not line:
            self._dispatch(events)
            return
        if line.startswith(':'):
            return

        field, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]

        if field == 'data':
            self._data.append(value)
        elif field == 'event':
            self._event = value
        elif field == 'id':
            self._id = value

    def _dispatch(self, events: List[SSEEvent]):
        if self._data:
            events.append(SSEEvent(data='\n'.join(self._data), event=self._event, id=self._id))
        self._data = []
        self._event = None
        self._id = None


def format_event(data: str) -> bytes:
    """Encode one payload as an SSE ``data`` frame."""
    lines = data.split('\n') if data else ['']
    return (''.join(f"data: {line}\n" for line in lines) + '\n').encode('utf-8')


async def iter_events(chunks: AsyncIterator[bytes]) -> AsyncIterator[SSEEvent]:
    """Parse an async byte stream into events as they complete."""
    parser = SSEParser()
    async for chunk in chunks:
        if not chunk:
            continue
        for event in parser.feed(chunk):
            yield event
    for event in parser.flush():
        yield event
