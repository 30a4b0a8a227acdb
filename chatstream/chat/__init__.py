"""Conversation model and state machine."""

from chatstream.chat.events import (
    ChatEvent,
    ChatEventType,
    ChatState,
    SendOutcome,
)
from chatstream.chat.models import (
    AgentConfig,
    ChatContext,
    Conversation,
    ConversationMessage,
    ThinkingChunk,
    ToolCall,
)
from chatstream.chat.state_machine import ChatStateMachine

__all__ = [
    "AgentConfig",
    "ChatContext",
    "ChatEvent",
    "ChatEventType",
    "ChatState",
    "ChatStateMachine",
    "Conversation",
    "ConversationMessage",
    "SendOutcome",
    "ThinkingChunk",
    "ToolCall",
]
