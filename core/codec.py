"""
Stream Protocol Codec
Frames events as Server-Sent Events for the live stream and as NDJSON
records for replay, and parses both back into typed events
"""
import logging
from typing import List, Optional

from pydantic import ValidationError

from core.errors import MalformedFrame
from models.events import BaseEvent, EVENT_ADAPTER
from utils import diagnostics

logger = logging.getLogger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"
NDJSON_MEDIA_TYPE = "application/x-ndjson"
LAST_EVENT_ID_HEADER = "Last-Event-ID"


def encode_event_json(event: BaseEvent) -> str:
    return event.model_dump_json()


def decode_event_json(data: str) -> BaseEvent:
    """
    Decode one serialized event into its tagged variant

    Raises:
        MalformedFrame: Invalid JSON, unknown type or missing fields
    """
    try:
        return EVENT_ADAPTER.validate_json(data)
    except ValidationError as e:
        raise MalformedFrame(f"Invalid event document: {e.error_count()} error(s)", raw=data) from e


def encode_frame(event: BaseEvent) -> str:
    """
    SSE content frame: id line, single-line data field, blank line terminator
    """
    return f"id: {event.event_id}\ndata: {encode_event_json(event)}\n\n"


def encode_heartbeat(comment: str = "ping") -> str:
    """Comment-only SSE frame that keeps idle intermediaries from timing out"""
    return f": {comment}\n\n"


def encode_record(event: BaseEvent) -> str:
    """One self-contained replay record, newline terminated"""
    return encode_event_json(event) + "\n"


def decode_record(line: str) -> BaseEvent:
    line = line.strip()
    if not line:
        raise MalformedFrame("Empty replay record", raw=line)
    return decode_event_json(line)


class FrameParser:
    """
    Incremental SSE parser

    Feed it raw text chunks (feed) or already split lines (feed_line); it
    returns the events completed so far. Heartbeat comments are ignored and
    malformed frames are dropped and logged without stopping the stream.
    """

    def __init__(self):
        self._buffer = ""
        self._data_lines: List[str] = []
        self._event_id: Optional[str] = None
        self.dropped = 0
        self.heartbeats = 0

    def feed(self, chunk: str) -> List[BaseEvent]:
        self._buffer += chunk
        events: List[BaseEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            events.extend(self.feed_line(line))
        return events

    def feed_line(self, line: str) -> List[BaseEvent]:
        if line.endswith("\r"):
            line = line[:-1]

        if line == "":
            return self._dispatch()

        if line.startswith(":"):
            self.heartbeats += 1
            return []

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "id":
            self._event_id = value.strip()
        elif field == "data":
            self._data_lines.append(value)
        # "event" and "retry" carry nothing the stream relies on
        return []

    def flush(self) -> List[BaseEvent]:
        """Dispatch whatever is pending once the stream has ended"""
        events: List[BaseEvent] = []
        if self._buffer:
            remaining, self._buffer = self._buffer, ""
            events.extend(self.feed_line(remaining))
        events.extend(self._dispatch())
        return events

    def _dispatch(self) -> List[BaseEvent]:
        data_lines, raw_id = self._data_lines, self._event_id
        self._data_lines = []
        self._event_id = None

        if not data_lines and raw_id is None:
            return []

        try:
            return [self._decode(raw_id, "\n".join(data_lines))]
        except MalformedFrame as e:
            self.dropped += 1
            logger.warning(f"Dropping malformed frame (id={raw_id!r}): {e}")
            diagnostics.log_raw("malformed frame", e.raw or "")
            return []

    def _decode(self, raw_id: Optional[str], data: str) -> BaseEvent:
        if raw_id is None or raw_id == "":
            raise MalformedFrame("Frame has data but no id", raw=data)
        if not data:
            raise MalformedFrame("Frame has an id but no data", raw=raw_id)
        try:
            frame_id = int(raw_id)
        except ValueError:
            raise MalformedFrame(f"Non-integer frame id {raw_id!r}", raw=data)

        event = decode_event_json(data)
        if event.event_id != frame_id:
            raise MalformedFrame(
                f"Frame id {frame_id} does not match event_id {event.event_id}",
                raw=data,
            )
        return event


def parse_last_event_id(value: Optional[str]) -> Optional[int]:
    """
    Parse a Last-Event-ID header value

    Returns:
        The cursor, or None when the header is absent or blank

    Raises:
        MalformedFrame: The value is not a non-negative integer
    """
    if value is None or value.strip() == "":
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        raise MalformedFrame(f"Invalid Last-Event-ID {value!r}", raw=value)
    if parsed < 0:
        raise MalformedFrame(f"Negative Last-Event-ID {value!r}", raw=value)
    return parsed
