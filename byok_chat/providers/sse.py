"""Server-sent event framing.

Transport reads arrive in arbitrary chunks: a line (or a multi-byte UTF-8
sequence) may be split across reads. ``SSEDecoder`` buffers raw bytes and only
emits an event once its terminating blank line has arrived.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class ServerSentEvent:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None


class SSEDecoder:
    """Incremental text/event-stream parser."""

    def __init__(self) -> None:
        self._buffer = b""
        self._data: list[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None

    def feed(self, chunk: bytes) -> list[ServerSentEvent]:
        """Consume a raw chunk and return every event it completes."""
        self._buffer += chunk
        events: list[ServerSentEvent] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw, self._buffer = self._buffer[:idx], self._buffer[idx + 1:]
            line = raw.rstrip(b"\r").decode("utf-8", errors="replace")
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[ServerSentEvent]:
        """Emit whatever is pending when the transport closes.

        A trailing line without a newline is treated as complete, and an event
        missing only its blank-line terminator is dispatched.
        """
        events: list[ServerSentEvent] = []
        if self._buffer:
            line = self._buffer.rstrip(b"\r").decode("utf-8", errors="replace")
            self._buffer = b""
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> Optional[ServerSentEvent]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if not self._data:
            self._event = None
            return None
        event = ServerSentEvent(data="\n".join(self._data), event=self._event, id=self._id)
        self._data = []
        self._event = None
        return event
