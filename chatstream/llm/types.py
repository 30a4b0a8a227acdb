"""Core types for the LLM subsystem."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    """Closed set of canonical stream event types."""

    START = "START"
    THINK_START = "THINK_START"
    THINK = "THINK"
    THINK_END = "THINK_END"
    TOOL_START = "TOOL_START"
    TOOL = "TOOL"
    TOOL_END = "TOOL_END"
    ECHARTS_START = "ECHARTS_START"
    ECHARTS = "ECHARTS"
    ECHARTS_END = "ECHARTS_END"
    INTENTION_RECOGNIZE = "INTENTION_RECOGNIZE"
    RETRIEVE = "RETRIEVE"
    TEXT = "TEXT"
    END = "END"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value: str) -> EventKind | None:
        """Return the member named by *value* (case-insensitive) or ``None``."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


@dataclass
class StreamEvent:
    """
    One normalized increment of model output.

    *content* always carries a ``"text"`` key (possibly empty); providers may
    add extra fields next to it.  *event_sn* is assigned by the decoder and
    is only meant for ordering and debugging.
    """

    event_type: EventKind
    event_sn: int = 0
    content: dict[str, Any] = field(default_factory=lambda: {"text": ""})
    metadata: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        text = self.content.get("text")
        if not isinstance(text, str):
            self.content = {**self.content, "text": "" if text is None else str(text)}

    @property
    def text(self) -> str:
        return self.content["text"]

    @property
    def meta(self) -> dict[str, Any]:
        """Metadata as a dict, empty when the event carries none."""
        return self.metadata or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the canonical JSON shape."""
        d: dict[str, Any] = {
            "eventType": self.event_type.value,
            "eventSn": self.event_sn,
            "content": dict(self.content),
        }
        if self.metadata is not None:
            d["metadata"] = dict(self.metadata)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamEvent:
        """Reconstruct an event from the canonical JSON shape."""
        return cls(
            event_type=EventKind(data["eventType"]),
            event_sn=int(data.get("eventSn", 0)),
            content=dict(data.get("content") or {"text": ""}),
            metadata=data.get("metadata"),
        )


def make_event(
    kind: EventKind,
    text: str = "",
    sn: int = 0,
    metadata: dict[str, Any] | None = None,
    **content: Any,
) -> StreamEvent:
    """Shorthand for building a ``StreamEvent``."""
    return StreamEvent(
        event_type=kind,
        event_sn=sn,
        content={"text": text, **content},
        metadata=metadata,
    )


@dataclass
class Message:
    """A single provider-facing chat message."""

    role: str  # "user", "assistant", "system"
    content: str
    metadata: dict[str, Any] | None = None


@dataclass
class RawToolDelta:
    """
    An incremental delta for a streaming tool call.

    OpenAI-compatible providers emit these as tool-call fragments arrive.
    The ToolCallAssembler accumulates them and produces finished calls.
    """

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""
    done: bool = False


@dataclass
class AssembledToolCall:
    """A resolved tool call with parsed arguments."""

    id: str
    name: str
    arguments: dict


@dataclass
class AdaptedResponse:
    """The canonical shape of a non-streaming provider reply."""

    content: str
    status: str = "success"  # "success" | "error"
    provider: str = ""
    role: str = "assistant"
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamProgress:
    """
    Best-effort progress figures for one transport session.

    *speed* is events per second; *estimated_time_remaining* is in seconds.
    Both are derived online and are never normative.
    """

    total_chunks: int = 0
    received_chunks: int = 0
    speed: float | None = None
    estimated_time_remaining: float | None = None
    elapsed: float = 0.0
