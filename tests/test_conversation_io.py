"""Tests for conversation snapshots: export, import and validation."""

from __future__ import annotations

import json

import pytest

from chatstream.chat.events import ChatState, cancel, send_message
from chatstream.chat.models import (
    AgentConfig,
    ChatContext,
    Conversation,
    ConversationMessage,
    ToolCall,
    validate_snapshot,
)
from chatstream.chat.state_machine import ChatStateMachine
from chatstream.llm.types import EventKind
from chatstream.types import DataFormatError, StateError

from tests.mock_streams import scripted_service, text_script


@pytest.fixture
async def finished_machine():
    machine = ChatStateMachine(
        ChatContext(config=AgentConfig(name="Analyst", model="m-1", system_prompt="Be exact.")),
        service=scripted_service(text_script("Hi", " there")),
    )
    await machine.send(send_message("hello"))
    await machine.wait_stream()
    yield machine
    machine.destroy()


class TestExport:
    @pytest.mark.asyncio
    async def test_snapshot_shape(self, finished_machine):
        data = json.loads(finished_machine.export_conversation())

        assert set(data) == {"conversation", "config", "timestamp"}
        assert data["config"]["name"] == "Analyst"
        assert data["config"]["systemPrompt"] == "Be exact."
        messages = data["conversation"]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "system"]
        assert messages[1]["content"] == "Hi there"
        assert messages[1]["eventType"] == "START"
        validate_snapshot(data)

    @pytest.mark.asyncio
    async def test_round_trip_into_new_machine(self, finished_machine):
        snapshot = finished_machine.export_conversation()
        original = finished_machine.get_context()

        other = ChatStateMachine()
        other.import_conversation(snapshot)

        ctx = other.get_context()
        assert ctx.conversation == original.conversation
        assert ctx.config == original.config


class TestModels:
    def test_message_dict_omits_unset_fields(self):
        msg = ConversationMessage(role="user", content="hi")
        d = msg.to_dict()
        assert "eventType" not in d
        assert "toolName" not in d
        assert ConversationMessage.from_dict(d) == msg

    def test_conversation_with_current_tool(self):
        conv = Conversation(
            messages=[ConversationMessage(role="tool", content="x", event_type=EventKind.TOOL_START, is_tool_call=True, tool_name="t")],
            current_tool=ToolCall(name="t", params={"a": 1}, call_id="c1"),
        )
        restored = Conversation.from_dict(json.loads(json.dumps(conv.to_dict())))
        assert restored == conv

    def test_unknown_message_event_type(self):
        with pytest.raises(DataFormatError):
            ConversationMessage.from_dict({"id": "1", "role": "user", "content": "", "eventType": "nope"})

    def test_agent_config_defaults_for_missing_keys(self):
        cfg = AgentConfig.from_dict({"name": "X"})
        assert cfg.name == "X"
        assert cfg.max_tokens == 1000


class TestImportValidation:
    @pytest.mark.parametrize(
        "payload",
        [
            "not json at all",
            json.dumps([1, 2, 3]),
            json.dumps({"conversation": {}}),
            json.dumps({"conversation": {"messages": [{"role": "user"}]}, "config": {}}),
            json.dumps(
                {
                    "conversation": {"messages": [{"id": "1", "role": "robot", "content": ""}]},
                    "config": {},
                }
            ),
        ],
    )
    def test_malformed_input_rejected(self, payload):
        machine = ChatStateMachine()
        before = machine.get_context()

        with pytest.raises(DataFormatError):
            machine.import_conversation(payload)

        assert machine.get_context() == before

    def test_accepts_dict(self):
        machine = ChatStateMachine()
        machine.import_conversation(
            {
                "conversation": {
                    "id": "conv-1",
                    "title": "Imported",
                    "messages": [{"id": "m1", "role": "user", "content": "hey", "timestamp": 1.0}],
                },
                "config": {"name": "Bot", "temperature": 0.2},
            }
        )
        ctx = machine.get_context()
        assert ctx.conversation.id == "conv-1"
        assert ctx.conversation.messages[0].content == "hey"
        assert ctx.config.temperature == 0.2

    @pytest.mark.asyncio
    async def test_refused_while_streaming(self):
        machine = ChatStateMachine(service=scripted_service(text_script("a"), delay=0.05))
        snapshot = machine.export_conversation()
        await machine.send(send_message("hi"))
        before = machine.get_context()

        with pytest.raises(StateError):
            machine.import_conversation(snapshot)

        assert machine.get_context() == before
        assert machine.get_state() is ChatState.STREAMING
        await machine.send(cancel())
        await machine.wait_stream()
