"""
Wire decoder -- raw provider stream text to canonical ``StreamEvent`` objects.

Providers deliver their streams in one of two framings:

  - ``LINE``: one record per line.  Either ``data: {json}`` (server-sent
    events) or a bare JSON object per line (NDJSON, as Ollama does).
  - ``BLOCK``: records separated by a blank line, each block holding SSE
    fields (``event:``, ``data:``, ``id:``...).

Fragments may arrive split anywhere, including mid-record and mid-character;
the decoder buffers the incomplete tail until the next ``feed``.

Malformed records are dropped and counted -- they never end the stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from enum import Enum
from typing import Any, Callable

from chatstream.llm.types import EventKind, StreamEvent
from chatstream.types import DecodeError

logger = logging.getLogger(__name__)

# Adapter hook: (parsed record, sequence index) -> event(s), or None when the
# record carries no semantic content (keep-alives).
ChunkAdapter = Callable[[dict, int], "StreamEvent | list[StreamEvent] | None"]

DONE_SENTINEL = "[DONE]"

_IGNORED_FIELDS = ("id:", "retry:")


class RecordFraming(str, Enum):
    LINE = "line"
    BLOCK = "block"


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def normalize_event(
    data: dict[str, Any],
    sn: int,
    *,
    default_type: EventKind = EventKind.TEXT,
) -> StreamEvent:
    """
    Map a record with heterogeneous field names onto a ``StreamEvent``.

    The type comes from ``eventType``, ``type`` or ``event``; only a record
    with *no* type falls back to *default_type*.  An unrecognised type raises
    ``DecodeError`` rather than being coerced.
    """
    raw_type = data.get("eventType") or data.get("type") or data.get("event")
    if raw_type is None:
        kind = default_type
    else:
        kind = EventKind.parse(str(raw_type))
        if kind is None:
            raise DecodeError(f"unknown event type {raw_type!r}")

    raw_content = data.get("content")
    content: dict[str, Any] = {}
    text: Any = None
    if isinstance(raw_content, dict):
        content = dict(raw_content)
        text = raw_content.get("text")
    if text is None and "text" in data:
        text = data["text"]
    if text is None and raw_content is not None and not isinstance(raw_content, dict):
        text = raw_content
    content["text"] = _coerce_text(text)

    metadata = data.get("metadata")
    if metadata is None:
        metadata = data.get("meta")
    metadata = dict(metadata) if isinstance(metadata, dict) else {}
    for key in ("toolName", "toolParams", "toolResult"):
        if key in data and key not in metadata:
            metadata[key] = data[key]

    source_sn = data.get("eventSn", data.get("sn"))
    if isinstance(source_sn, int) and not isinstance(source_sn, bool):
        metadata.setdefault("sourceSn", source_sn)

    return StreamEvent(
        event_type=kind,
        event_sn=sn,
        content=content,
        metadata=metadata or None,
    )


class WireDecoder:
    """
    Incremental decoder for one stream.

    Parameters
    ----------
    framing:
        How records are separated on the wire.
    chunk_adapter:
        Provider hook that maps a parsed JSON record to an event.  When
        omitted, records are expected in the canonical shape and go through
        ``normalize_event``.
    sentinel:
        Payload that marks clean termination (``[DONE]``).
    emit_end_on_sentinel:
        Emit an ``END`` event when the sentinel arrives.
    """

    def __init__(
        self,
        framing: RecordFraming = RecordFraming.LINE,
        chunk_adapter: ChunkAdapter | None = None,
        sentinel: str = DONE_SENTINEL,
        emit_end_on_sentinel: bool = True,
    ) -> None:
        self._framing = RecordFraming(framing)
        self._adapter = chunk_adapter
        self._sentinel = sentinel
        self._emit_end = emit_end_on_sentinel
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._index = 0
        self._sn = 0
        self.dropped = 0
        self.finished = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def pending(self) -> str:
        """Buffered text that does not yet form a complete record."""
        return self._buffer

    def feed(self, fragment: str | bytes | dict) -> list[StreamEvent]:
        """Consume one delivery and return the events it completes."""
        if self.finished:
            return []

        if isinstance(fragment, dict):
            return self._emit_parsed(fragment, event_hint=None)

        if isinstance(fragment, (bytes, bytearray)):
            fragment = self._utf8.decode(bytes(fragment))

        # "\r\n" can straddle two deliveries.
        self._buffer = (self._buffer + fragment).replace("\r\n", "\n")
        separator = "\n\n" if self._framing is RecordFraming.BLOCK else "\n"

        events: list[StreamEvent] = []
        while separator in self._buffer and not self.finished:
            record, self._buffer = self._buffer.split(separator, 1)
            events.extend(self._decode_record(record))
        return events

    def flush(self) -> list[StreamEvent]:
        """Decode whatever remains buffered at a clean end of stream."""
        if self.finished:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if not tail.strip():
            return []
        if self._framing is RecordFraming.BLOCK:
            return self._decode_record(tail)
        events: list[StreamEvent] = []
        for line in tail.split("\n"):
            events.extend(self._decode_record(line))
        return events

    def discard(self) -> str:
        """Drop buffered text without decoding it; returns what was dropped."""
        tail, self._buffer = self._buffer, ""
        return tail

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _decode_record(self, record: str) -> list[StreamEvent]:
        if not record.strip() or self.finished:
            return []

        payload_lines: list[str] = []
        event_hint: str | None = None
        bare: list[str] = []

        for line in record.split("\n"):
            line = line.rstrip("\r")
            stripped = line.strip()
            if not stripped or stripped.startswith(":"):
                continue
            if stripped.startswith("data:"):
                payload_lines.append(stripped[len("data:"):].strip())
            elif stripped.startswith("event:"):
                event_hint = stripped[len("event:"):].strip() or None
            elif stripped.startswith(_IGNORED_FIELDS):
                continue
            else:
                bare.append(stripped)

        if payload_lines:
            payload = "\n".join(payload_lines)
        elif bare:
            payload = "\n".join(bare)
        else:
            return []

        if payload == self._sentinel:
            self.finished = True
            if not self._emit_end:
                return []
            event = StreamEvent(
                event_type=EventKind.END,
                event_sn=self._next_sn(),
                content={"text": ""},
                metadata={"completed": True},
            )
            return [event]

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            self._drop(payload, f"invalid JSON: {exc}")
            return []

        if not isinstance(data, dict):
            self._drop(payload, "record is not a JSON object")
            return []

        return self._emit_parsed(data, event_hint)

    def _emit_parsed(self, data: dict, event_hint: str | None) -> list[StreamEvent]:
        if event_hint and not any(k in data for k in ("eventType", "type", "event")):
            data = {**data, "eventType": event_hint}

        index = self._index
        self._index += 1
        try:
            if self._adapter is not None:
                result = self._adapter(data, index)
            else:
                result = normalize_event(data, index)
        except DecodeError as exc:
            self._drop(json.dumps(data, ensure_ascii=False), str(exc))
            return []

        if result is None:
            return []
        events = result if isinstance(result, list) else [result]
        for event in events:
            event.event_sn = self._next_sn()
        return events

    def _next_sn(self) -> int:
        sn = self._sn
        self._sn += 1
        return sn

    def _drop(self, payload: str, reason: str) -> None:
        self.dropped += 1
        logger.warning("Dropping malformed record (%s): %s", reason, payload[:200])
