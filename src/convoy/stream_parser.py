"""Parser for the newline-delimited JSON stream a worker writes to stdout.

Each line is one record ``{"type": ..., "timestamp": ..., ...}``. Records
are normalized once, at parse time, into the canonical event classes
below; alternate field spellings (``name``/``tool_name``,
``id``/``tool_id``, ``tool_use_id``, ``content``/``output``) never leave
this module. Fields the canonical shape does not know about are kept in
``extra`` and written back out by ``to_dict()``.

Lines that are not JSON objects are dropped: workers interleave stray
text with the protocol and that is not an error.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from convoy.callbacks import CallbackTable, Handler

log = logging.getLogger(__name__)

EVENT_INIT = "init"
EVENT_MESSAGE = "message"
EVENT_ASSISTANT = "assistant"
EVENT_TOOL_USE = "tool_use"
EVENT_TOOL_RESULT = "tool_result"
EVENT_RESULT = "result"
EVENT_SYSTEM = "system"
EVENT_CONTENT_BLOCK_START = "content_block_start"
EVENT_CONTENT_BLOCK_DELTA = "content_block_delta"
EVENT_CONTENT_BLOCK_STOP = "content_block_stop"
EVENT_UNKNOWN = "unknown"

# Listener kinds that are not record types.
ANY_EVENT = "event"
END_OF_STREAM = "end"

STREAM_READ_SIZE = 64 * 1024


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Canonical event types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, kw_only=True)
class StreamEvent:
    """Fields shared by every record. ``extra`` holds unrecognized fields."""

    type: str
    timestamp: str
    extra: Mapping[str, Any] = field(default_factory=dict)

    def _canonical_fields(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Return the canonical wire shape of this event."""
        data: dict[str, Any] = dict(self.extra)
        data["type"] = self.type
        data["timestamp"] = self.timestamp
        for key, value in self._canonical_fields().items():
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True, kw_only=True)
class InitEvent(StreamEvent):
    type: str = EVENT_INIT
    session_id: str = ""
    model: str | None = None

    def _canonical_fields(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "model": self.model}


@dataclass(frozen=True, kw_only=True)
class MessageEvent(StreamEvent):
    type: str = EVENT_MESSAGE
    content: str = ""
    role: str | None = None

    def _canonical_fields(self) -> dict[str, Any]:
        return {"content": self.content, "role": self.role}


@dataclass(frozen=True, kw_only=True)
class AssistantEvent(StreamEvent):
    type: str = EVENT_ASSISTANT
    message: Mapping[str, Any] | None = None

    def _canonical_fields(self) -> dict[str, Any]:
        return {"message": dict(self.message) if self.message is not None else None}


@dataclass(frozen=True, kw_only=True)
class ToolUseEvent(StreamEvent):
    type: str = EVENT_TOOL_USE
    tool_name: str = ""
    tool_id: str = ""
    input: Mapping[str, Any] = field(default_factory=dict)

    def _canonical_fields(self) -> dict[str, Any]:
        return {"tool_name": self.tool_name, "tool_id": self.tool_id, "input": dict(self.input)}


@dataclass(frozen=True, kw_only=True)
class ToolResultEvent(StreamEvent):
    type: str = EVENT_TOOL_RESULT
    tool_id: str = ""
    output: str = ""
    is_error: bool | None = None

    def _canonical_fields(self) -> dict[str, Any]:
        return {"tool_id": self.tool_id, "output": self.output, "is_error": self.is_error}


@dataclass(frozen=True)
class Cost:
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }
        if self.total_cost_usd is not None:
            data["total_cost_usd"] = self.total_cost_usd
        return data


@dataclass(frozen=True, kw_only=True)
class ResultEvent(StreamEvent):
    type: str = EVENT_RESULT
    result: str | None = None
    cost: Cost | None = None
    duration_ms: int | None = None
    num_turns: int | None = None

    def _canonical_fields(self) -> dict[str, Any]:
        return {
            "result": self.result,
            "cost": self.cost.to_dict() if self.cost is not None else None,
            "duration_ms": self.duration_ms,
            "num_turns": self.num_turns,
        }


@dataclass(frozen=True, kw_only=True)
class SystemEvent(StreamEvent):
    type: str = EVENT_SYSTEM
    subtype: str | None = None
    message: str | None = None

    def _canonical_fields(self) -> dict[str, Any]:
        return {"subtype": self.subtype, "message": self.message}


@dataclass(frozen=True, kw_only=True)
class ContentBlockStartEvent(StreamEvent):
    type: str = EVENT_CONTENT_BLOCK_START
    index: int = 0
    content_block: Mapping[str, Any] = field(default_factory=dict)

    def _canonical_fields(self) -> dict[str, Any]:
        return {"index": self.index, "content_block": dict(self.content_block)}


@dataclass(frozen=True, kw_only=True)
class ContentBlockDeltaEvent(StreamEvent):
    type: str = EVENT_CONTENT_BLOCK_DELTA
    index: int = 0
    delta: Mapping[str, Any] = field(default_factory=dict)

    def _canonical_fields(self) -> dict[str, Any]:
        return {"index": self.index, "delta": dict(self.delta)}


@dataclass(frozen=True, kw_only=True)
class ContentBlockStopEvent(StreamEvent):
    type: str = EVENT_CONTENT_BLOCK_STOP
    index: int = 0

    def _canonical_fields(self) -> dict[str, Any]:
        return {"index": self.index}


@dataclass(frozen=True, kw_only=True)
class UnknownEvent(StreamEvent):
    """Opaque record: an unrecognized ``type``, or none at all."""


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def _str(value: Any, default: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return default
    return str(value)


def _opt_str(value: Any) -> str | None:
    return None if value is None else _str(value)


def _opt_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _blocks_text(blocks: list[Any]) -> str:
    """Join the ``text`` of each content block with newlines."""
    texts = [
        block["text"]
        for block in blocks
        if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"]
    ]
    return "\n".join(texts)


def _first_present(record: dict[str, Any], *keys: str) -> Any:
    """Return the first value among *keys* that is present and truthy."""
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_cost(value: Any) -> Cost | None:
    if not isinstance(value, dict):
        return None
    total = value.get("total_cost_usd")
    return Cost(
        input_tokens=_opt_int(value.get("input_tokens")) or 0,
        output_tokens=_opt_int(value.get("output_tokens")) or 0,
        total_cost_usd=float(total) if isinstance(total, int | float) and not isinstance(total, bool) else None,
    )


# ---------------------------------------------------------------------------
# Per-type builders. Each pops the keys it consumes from ``record``;
# whatever is left over becomes ``extra``.
# ---------------------------------------------------------------------------


def _build_init(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "session_id": _str(record.pop("session_id", None)),
        "model": _opt_str(record.pop("model", None)),
    }


def _build_message(record: dict[str, Any]) -> dict[str, Any]:
    content = record.pop("content", None)
    if isinstance(content, list):
        content = _blocks_text(content)
    return {"content": _str(content), "role": _opt_str(record.pop("role", None))}


def _build_assistant(record: dict[str, Any]) -> dict[str, Any]:
    message = record.pop("message", None)
    return {"message": dict(message) if isinstance(message, dict) else None}


def _build_tool_use(record: dict[str, Any]) -> dict[str, Any]:
    tool_name = _first_present(record, "tool_name", "name")
    tool_id = _first_present(record, "tool_id", "id")
    for key in ("tool_name", "name", "tool_id", "id"):
        record.pop(key, None)
    return {
        "tool_name": _str(tool_name),
        "tool_id": _str(tool_id),
        "input": _mapping(record.pop("input", None)),
    }


def _build_tool_result(record: dict[str, Any]) -> dict[str, Any]:
    tool_id = _first_present(record, "tool_id", "tool_use_id")
    output = record.get("output")
    if output in (None, ""):
        content = record.get("content")
        if isinstance(content, list):
            output = _blocks_text(content)
        elif content not in (None, ""):
            output = content
    for key in ("tool_id", "tool_use_id", "output", "content"):
        record.pop(key, None)
    is_error = record.pop("is_error", None)
    return {
        "tool_id": _str(tool_id),
        "output": _str(output),
        "is_error": is_error if isinstance(is_error, bool) else None,
    }


def _build_result(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "result": _opt_str(record.pop("result", None)),
        "cost": _parse_cost(record.pop("cost", None)),
        "duration_ms": _opt_int(record.pop("duration_ms", None)),
        "num_turns": _opt_int(record.pop("num_turns", None)),
    }


def _build_system(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "subtype": _opt_str(record.pop("subtype", None)),
        "message": _opt_str(record.pop("message", None)),
    }


def _build_block_start(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": _opt_int(record.pop("index", None)) or 0,
        "content_block": _mapping(record.pop("content_block", None)),
    }


def _build_block_delta(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": _opt_int(record.pop("index", None)) or 0,
        "delta": _mapping(record.pop("delta", None)),
    }


def _build_block_stop(record: dict[str, Any]) -> dict[str, Any]:
    return {"index": _opt_int(record.pop("index", None)) or 0}


_BUILDERS: dict[str, tuple[type[StreamEvent], Callable[[dict[str, Any]], dict[str, Any]]]] = {
    EVENT_INIT: (InitEvent, _build_init),
    EVENT_MESSAGE: (MessageEvent, _build_message),
    EVENT_ASSISTANT: (AssistantEvent, _build_assistant),
    EVENT_TOOL_USE: (ToolUseEvent, _build_tool_use),
    EVENT_TOOL_RESULT: (ToolResultEvent, _build_tool_result),
    EVENT_RESULT: (ResultEvent, _build_result),
    EVENT_SYSTEM: (SystemEvent, _build_system),
    EVENT_CONTENT_BLOCK_START: (ContentBlockStartEvent, _build_block_start),
    EVENT_CONTENT_BLOCK_DELTA: (ContentBlockDeltaEvent, _build_block_delta),
    EVENT_CONTENT_BLOCK_STOP: (ContentBlockStopEvent, _build_block_stop),
}

RECOGNIZED_EVENT_TYPES = frozenset(_BUILDERS)


def normalize_record(
    record: Mapping[str, Any],
    *,
    now: Callable[[], str] = utc_now_iso,
) -> StreamEvent:
    """Turn one decoded JSON object into its canonical event."""
    fields_left = dict(record)
    event_type = fields_left.pop("type", None)
    timestamp = fields_left.pop("timestamp", None)
    if not isinstance(timestamp, str) or not timestamp:
        timestamp = now()

    if not isinstance(event_type, str) or not event_type:
        return UnknownEvent(type=EVENT_UNKNOWN, timestamp=timestamp, extra=fields_left)

    builder = _BUILDERS.get(event_type)
    if builder is None:
        return UnknownEvent(type=event_type, timestamp=timestamp, extra=fields_left)

    event_cls, build = builder
    canonical = build(fields_left)
    return event_cls(timestamp=timestamp, extra=fields_left, **canonical)


def parse_stream_line(
    line: str,
    *,
    now: Callable[[], str] = utc_now_iso,
) -> StreamEvent | None:
    """Parse one protocol line. Returns None for blank or non-record lines."""
    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        log.debug("Discarding non-protocol line: %.200s", trimmed)
        return None
    if not isinstance(parsed, dict):
        log.debug("Discarding non-object JSON line: %.200s", trimmed)
        return None
    return normalize_record(parsed, now=now)


# ---------------------------------------------------------------------------
# Incremental parser
# ---------------------------------------------------------------------------


class StreamEventParser:
    """Incremental line-buffered decoder for a worker's output stream.

    Feed raw chunks with :meth:`write` (bytes may split anywhere, including
    inside a multi-byte character) and call :meth:`end` once the stream
    closes. Subscribers register with :meth:`on` either for one record
    type (``"tool_use"``, ``"result"``...), for every event (``"event"``),
    or for end of stream (``"end"``). Per-type handlers run before the
    generic ones.
    """

    def __init__(self, *, now: Callable[[], str] = utc_now_iso) -> None:
        self._now = now
        self._partial: list[str] = []  # fragments of the unterminated line
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._callbacks = CallbackTable("stream parser")
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def on(self, kind: str, handler: Handler) -> None:
        self._callbacks.add(kind, handler)

    def off(self, kind: str, handler: Handler) -> None:
        self._callbacks.remove(kind, handler)

    def write(self, chunk: bytes | str) -> list[StreamEvent]:
        """Feed a chunk and return the events it completed, in order."""
        if self._ended:
            raise RuntimeError("StreamEventParser.write() called after end()")
        if isinstance(chunk, bytes | bytearray):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []
        pieces = text.split("\n")
        if len(pieces) == 1:
            self._partial.append(text)
            return []
        self._partial.append(pieces[0])
        pieces[0] = "".join(self._partial)
        self._partial = [pieces.pop()]
        return self._emit_lines(pieces)

    def end(self) -> list[StreamEvent]:
        """Flush the trailing partial line and signal end of stream."""
        if self._ended:
            return []
        self._partial.append(self._decoder.decode(b"", final=True))
        trailing = "".join(self._partial)
        self._partial = []
        self._ended = True
        events = self._emit_lines(trailing.split("\n"))
        self._callbacks.dispatch(END_OF_STREAM, None)
        return events

    def _emit_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            event = parse_stream_line(line, now=self._now)
            if event is None:
                continue
            events.append(event)
            self._callbacks.dispatch(event.type, event)
            self._callbacks.dispatch(ANY_EVENT, event)
        return events


async def iter_stream_events(
    reader: asyncio.StreamReader,
    *,
    now: Callable[[], str] = utc_now_iso,
    chunk_size: int = STREAM_READ_SIZE,
) -> AsyncIterator[StreamEvent]:
    """Yield canonical events from *reader* until EOF."""
    parser = StreamEventParser(now=now)
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        for event in parser.write(chunk):
            yield event
    for event in parser.end():
        yield event


# ---------------------------------------------------------------------------
# Helpers for consumers
# ---------------------------------------------------------------------------


def extract_text_content(event: StreamEvent) -> str | None:
    """Return the human-readable text an event carries, if any."""
    if isinstance(event, MessageEvent):
        return event.content or None
    if isinstance(event, AssistantEvent):
        content = (event.message or {}).get("content")
        if isinstance(content, list):
            return "".join(
                block["text"]
                for block in content
                if isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
            )
        return None
    if isinstance(event, ContentBlockDeltaEvent):
        text = event.delta.get("text")
        return text if isinstance(text, str) and text else None
    if isinstance(event, ResultEvent):
        return event.result or None
    return None


def is_completion_event(event: StreamEvent) -> bool:
    return event.type == EVENT_RESULT


def is_error_event(event: StreamEvent) -> bool:
    if isinstance(event, ToolResultEvent):
        return event.is_error is True
    if isinstance(event, SystemEvent):
        return event.subtype == "error"
    return False


def format_tool_use(event: ToolUseEvent) -> str:
    return f"{event.tool_name}\n{json.dumps(dict(event.input), indent=2)}"


def format_tool_result(event: ToolResultEvent) -> str:
    prefix = "❌ " if event.is_error else "✓ "
    return f"{prefix}{event.output}"
