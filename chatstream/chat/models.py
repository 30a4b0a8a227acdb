"""
Conversation data model.

Every model serializes to the camelCase JSON shape used by conversation
snapshots (``to_dict`` / ``from_dict``).  Timestamps are ``time.time()``
floats.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import jsonschema

from chatstream.llm.types import EventKind
from chatstream.types import DataFormatError


class Role:
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    THINKING = "thinking"
    TOOL = "tool"


class MessageStatus:
    SENDING = "sending"
    SENT = "sent"
    ERROR = "error"


class ToolStatus:
    STARTED = "started"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


def _new_id() -> str:
    return str(uuid.uuid4())


def _kind(value: Any) -> EventKind | None:
    if value is None:
        return None
    kind = EventKind.parse(str(value))
    if kind is None:
        raise DataFormatError(f"unknown event type {value!r}")
    return kind


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class ConversationMessage:
    role: str
    content: str
    status: str = MessageStatus.SENT
    event_type: EventKind | None = None
    metadata: dict[str, Any] | None = None
    is_thinking: bool = False
    is_tool_call: bool = False
    tool_name: str | None = None
    id: str = field(default_factory=_new_id)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "status": self.status,
        }
        if self.event_type is not None:
            d["eventType"] = self.event_type.value
        if self.metadata is not None:
            d["metadata"] = self.metadata
        if self.is_thinking:
            d["isThinking"] = True
        if self.is_tool_call:
            d["isToolCall"] = True
        if self.tool_name is not None:
            d["toolName"] = self.tool_name
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        return cls(
            id=data["id"],
            role=data["role"],
            content=data["content"],
            timestamp=float(data.get("timestamp", time.time())),
            status=data.get("status", MessageStatus.SENT),
            event_type=_kind(data.get("eventType")),
            metadata=data.get("metadata"),
            is_thinking=bool(data.get("isThinking", False)),
            is_tool_call=bool(data.get("isToolCall", False)),
            tool_name=data.get("toolName"),
        )


@dataclass
class ThinkingChunk:
    text: str
    timestamp: float = field(default_factory=time.time)
    is_thinking: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "timestamp": self.timestamp, "isThinking": self.is_thinking}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThinkingChunk:
        return cls(
            text=data["text"],
            timestamp=float(data.get("timestamp", time.time())),
            is_thinking=bool(data.get("isThinking", True)),
        )


@dataclass
class ToolCall:
    """One provider-invoked tool call: started -> executing -> completed/error."""

    name: str
    params: dict[str, Any] = field(default_factory=dict)
    status: str = ToolStatus.STARTED
    result: Any = None
    call_id: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "params": self.params,
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.result is not None:
            d["result"] = self.result
        if self.call_id is not None:
            d["callId"] = self.call_id
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(
            name=data["name"],
            params=dict(data.get("params") or {}),
            status=data.get("status", ToolStatus.STARTED),
            result=data.get("result"),
            call_id=data.get("callId"),
            timestamp=float(data.get("timestamp", time.time())),
        )


# ---------------------------------------------------------------------------
# Conversation and context
# ---------------------------------------------------------------------------


@dataclass
class Conversation:
    id: str = field(default_factory=_new_id)
    title: str = "New Conversation"
    messages: list[ConversationMessage] = field(default_factory=list)
    thinking_stream: list[ThinkingChunk] = field(default_factory=list)
    current_tool: ToolCall | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "thinkingStream": [c.to_dict() for c in self.thinking_stream],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.current_tool is not None:
            d["currentTool"] = self.current_tool.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        now = time.time()
        current = data.get("currentTool")
        return cls(
            id=data.get("id") or _new_id(),
            title=data.get("title", "New Conversation"),
            messages=[ConversationMessage.from_dict(m) for m in data.get("messages") or []],
            thinking_stream=[ThinkingChunk.from_dict(c) for c in data.get("thinkingStream") or []],
            current_tool=ToolCall.from_dict(current) if current else None,
            created_at=float(data.get("createdAt", now)),
            updated_at=float(data.get("updatedAt", now)),
        )


@dataclass
class AgentConfig:
    """
    Per-conversation agent settings.

    ``model``, ``temperature`` and ``max_tokens`` are sent as request
    overrides; ``None`` leaves the provider's own setting in place.
    """

    name: str = "AI Assistant"
    model: str | None = None
    temperature: float | None = 0.7
    max_tokens: int | None = 1000
    system_prompt: str | None = "You are a helpful AI assistant."
    api_endpoint: str | None = None

    def request_overrides(self) -> dict[str, Any]:
        overrides = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "base_url": self.api_endpoint,
        }
        return {k: v for k, v in overrides.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "model": self.model,
            "temperature": self.temperature,
            "maxTokens": self.max_tokens,
            "systemPrompt": self.system_prompt,
            "apiEndpoint": self.api_endpoint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentConfig:
        default = cls()
        return cls(
            name=data.get("name", default.name),
            model=data.get("model", default.model),
            temperature=data.get("temperature", default.temperature),
            max_tokens=data.get("maxTokens", default.max_tokens),
            system_prompt=data.get("systemPrompt", default.system_prompt),
            api_endpoint=data.get("apiEndpoint", default.api_endpoint),
        )


@dataclass
class ChatContext:
    conversation: Conversation = field(default_factory=Conversation)
    config: AgentConfig = field(default_factory=AgentConfig)
    metadata: dict[str, Any] = field(default_factory=dict)
    is_streaming: bool = False
    current_thinking: str = ""
    active_tools: list[ToolCall] = field(default_factory=list)
    last_event_type: EventKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation": self.conversation.to_dict(),
            "config": self.config.to_dict(),
            "metadata": self.metadata,
            "isStreaming": self.is_streaming,
            "currentThinking": self.current_thinking,
            "activeTools": [t.to_dict() for t in self.active_tools],
            "lastEventType": self.last_event_type.value if self.last_event_type else None,
        }


# ---------------------------------------------------------------------------
# Snapshot schema
# ---------------------------------------------------------------------------

_MESSAGE_SCHEMA = {
    "type": "object",
    "required": ["id", "role", "content"],
    "properties": {
        "id": {"type": "string"},
        "role": {"enum": ["user", "assistant", "system", "thinking", "tool"]},
        "content": {"type": "string"},
        "timestamp": {"type": "number"},
        "status": {"enum": ["sending", "sent", "error"]},
        "eventType": {"enum": [k.value for k in EventKind]},
        "metadata": {"type": ["object", "null"]},
    },
}

SNAPSHOT_SCHEMA = {
    "type": "object",
    "required": ["conversation", "config"],
    "properties": {
        "conversation": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "title": {"type": "string"},
                "messages": {"type": "array", "items": _MESSAGE_SCHEMA},
                "thinkingStream": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["text"],
                        "properties": {"text": {"type": "string"}},
                    },
                },
                "currentTool": {
                    "type": ["object", "null"],
                    "required": ["name"],
                },
            },
        },
        "config": {"type": "object"},
        "timestamp": {"type": "number"},
    },
}


def validate_snapshot(data: Any) -> None:
    """Raise ``DataFormatError`` when *data* is not a conversation snapshot."""
    try:
        jsonschema.validate(instance=data, schema=SNAPSHOT_SCHEMA)
    except jsonschema.ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise DataFormatError(f"Invalid conversation data at {path}: {e.message}") from e
