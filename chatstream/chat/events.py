"""
State machine inputs.

External callers send SEND_MESSAGE, RESET, CANCEL and STOP_STREAM.  The
stream pump posts the internal events (SESSION_OPENED, STREAM_MESSAGE,
STREAM_COMPLETE, STREAM_ERROR) tagged with the session they came from, so a
superseded session can never affect the conversation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from chatstream.llm.types import StreamEvent


class ChatState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    THINKING = "thinking"
    TOOL_EXECUTING = "tool_executing"
    WAITING_TOOL = "waiting_tool"
    ERROR = "error"
    COMPLETED = "completed"


PROCESSING_STATES = frozenset(
    {
        ChatState.STREAMING,
        ChatState.THINKING,
        ChatState.TOOL_EXECUTING,
        ChatState.WAITING_TOOL,
    }
)

STREAMING_STATES = frozenset(
    {ChatState.STREAMING, ChatState.THINKING, ChatState.TOOL_EXECUTING}
)


class ChatEventType(str, Enum):
    SEND_MESSAGE = "SEND_MESSAGE"
    RESET = "RESET"
    CANCEL = "CANCEL"
    STOP_STREAM = "STOP_STREAM"
    SESSION_OPENED = "SESSION_OPENED"
    STREAM_MESSAGE = "STREAM_MESSAGE"
    STREAM_COMPLETE = "STREAM_COMPLETE"
    STREAM_ERROR = "STREAM_ERROR"


class SendOutcome(str, Enum):
    HANDLED = "handled"
    IGNORED = "ignored"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass(frozen=True)
class ChatEvent:
    type: ChatEventType
    message: str | None = None
    stream_event: StreamEvent | None = None
    error: str | None = None
    session: Any = None

    def describe(self) -> dict[str, Any]:
        """JSON-friendly summary, stored as ``lastEvent`` on failure."""
        d: dict[str, Any] = {"type": self.type.value}
        if self.message is not None:
            d["message"] = self.message
        if self.stream_event is not None:
            d["streamEvent"] = self.stream_event.to_dict()
        if self.error is not None:
            d["error"] = self.error
        return d


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def send_message(text: str) -> ChatEvent:
    return ChatEvent(ChatEventType.SEND_MESSAGE, message=text)


def reset() -> ChatEvent:
    return ChatEvent(ChatEventType.RESET)


def cancel() -> ChatEvent:
    return ChatEvent(ChatEventType.CANCEL)


def stop_stream() -> ChatEvent:
    return ChatEvent(ChatEventType.STOP_STREAM)


def session_opened(session: Any = None) -> ChatEvent:
    return ChatEvent(ChatEventType.SESSION_OPENED, session=session)


def stream_message(event: StreamEvent, session: Any = None) -> ChatEvent:
    """Wrap one canonical event; *session* is ``None`` for direct injection."""
    return ChatEvent(ChatEventType.STREAM_MESSAGE, stream_event=event, session=session)


def stream_complete(session: Any = None) -> ChatEvent:
    return ChatEvent(ChatEventType.STREAM_COMPLETE, session=session)


def stream_error(error: str, session: Any = None) -> ChatEvent:
    return ChatEvent(ChatEventType.STREAM_ERROR, error=error, session=session)
