"""
Conversation state machine.

Consumes canonical ``StreamEvent`` objects and maintains a ``ChatContext``:

    idle -> connecting -> streaming <-> thinking <-> tool_executing
         -> waiting_tool -> (streaming | completed)

``error`` is reachable from every processing state.  ``error`` and
``completed`` accept SEND_MESSAGE (start over via ``connecting``) and RESET
(back to ``idle`` with a fresh conversation).  Event/state pairs not listed
in ``_dispatch`` are ignored.

``send`` calls are serialized: each one completes its transition, including
a suspending session open, before the next is processed.  A ``send`` issued
from inside the dispatch of another (same task) is queued and run after it.

Any exception raised while handling an event moves the machine to ``error``
with ``lastError`` and ``lastEvent`` recorded in the context metadata.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from collections import deque
from dataclasses import asdict
from typing import Any, Callable

from chatstream.chat.events import (
    PROCESSING_STATES,
    STREAMING_STATES,
    ChatEvent,
    ChatEventType,
    ChatState,
    SendOutcome,
    stream_complete,
    stream_error,
    stream_message,
)
from chatstream.chat.models import (
    AgentConfig,
    ChatContext,
    Conversation,
    ConversationMessage,
    MessageStatus,
    Role,
    ThinkingChunk,
    ToolCall,
    ToolStatus,
    validate_snapshot,
)
from chatstream.config import MachineSection, ProviderConfig
from chatstream.llm.providers.base import ProviderService
from chatstream.llm.providers.custom_api import CustomApiService
from chatstream.llm.transport import CancellationToken, TransportSession
from chatstream.llm.types import EventKind, Message, StreamEvent, StreamProgress
from chatstream.types import (
    ChatStreamError,
    DataFormatError,
    StateError,
    TransportError,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ChatState, ChatContext], None]

_RESTARTABLE = frozenset({ChatState.IDLE, ChatState.ERROR, ChatState.COMPLETED})
_STREAM_EVENTS = frozenset(
    {
        ChatEventType.SESSION_OPENED,
        ChatEventType.STREAM_MESSAGE,
        ChatEventType.STREAM_COMPLETE,
        ChatEventType.STREAM_ERROR,
    }
)


def _preview(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class ChatStateMachine:
    """
    Drives one conversation.

    Parameters
    ----------
    context:
        Initial context (copied).  A fresh conversation by default.
    service:
        Provider service used to open streams.  Defaults to the custom
        provider in mock mode.
    options:
        Buffer and list bounds; see ``MachineSection``.
    """

    def __init__(
        self,
        context: ChatContext | None = None,
        *,
        service: ProviderService | None = None,
        options: MachineSection | None = None,
    ) -> None:
        self._context = copy.deepcopy(context) if context else ChatContext()
        self._service = service or CustomApiService(ProviderConfig(mock_mode=True))
        self._options = options or MachineSection()
        self._state = ChatState.IDLE
        self._listeners: list[Listener] = []

        self._thinking_buffer = ""
        self._tool_buffer = ""
        self._assistant_id: str | None = None
        self._thinking_id: str | None = None
        self._tool_progress_id: str | None = None
        self._chart_id: str | None = None

        self._session: TransportSession | None = None
        self._pump: asyncio.Task | None = None
        self._progress: StreamProgress | None = None

        self._lock = asyncio.Lock()
        self._queue: deque[ChatEvent] = deque()
        self._owner: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def service(self) -> ProviderService:
        return self._service

    def get_state(self) -> ChatState:
        return self._state

    def get_context(self) -> ChatContext:
        """Return a deep copy; mutating it never affects the machine."""
        return copy.deepcopy(self._context)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def send(self, event: ChatEvent) -> SendOutcome:
        owner = self._owner
        if owner is not None and owner is asyncio.current_task():
            self._queue.append(event)
            logger.debug("Queued re-entrant %s", event.type.value)
            return SendOutcome.QUEUED

        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                outcome = await self._process(event)
                while self._queue:
                    await self._process(self._queue.popleft())
            finally:
                self._owner = None
        return outcome

    async def wait_stream(self) -> None:
        """Wait until the current stream pump (if any) has finished."""
        task = self._pump
        if task is not None and not task.done():
            await asyncio.wait([task])

    def get_stats(self) -> dict[str, Any]:
        conv = self._context.conversation
        return {
            "state": self._state.value,
            "messageCount": len(conv.messages),
            "thinkingChunks": len(conv.thinking_stream),
            "activeTools": len(self._context.active_tools),
            "isStreaming": self._context.is_streaming,
            "lastEvent": (
                self._context.last_event_type.value
                if self._context.last_event_type
                else None
            ),
            "conversationId": conv.id,
            "progress": asdict(self._progress) if self._progress else None,
        }

    def destroy(self) -> None:
        """Cancel in-flight work and drop every listener."""
        self._stop_session("destroyed")
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        self._listeners.clear()
        self._clear_thinking()
        self._tool_buffer = ""

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def export_conversation(self) -> str:
        return json.dumps(
            {
                "conversation": self._context.conversation.to_dict(),
                "config": self._context.config.to_dict(),
                "timestamp": time.time(),
            },
            ensure_ascii=False,
            indent=2,
        )

    def import_conversation(self, data: str | dict) -> None:
        """
        Replace the conversation and agent config from a snapshot.

        Raises ``DataFormatError`` for malformed input and ``StateError``
        while a stream is open.  The context is untouched on failure.
        """
        if self._session is not None or self._state not in _RESTARTABLE:
            raise StateError(f"Cannot import while {self._state.value}")

        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise DataFormatError(f"Invalid conversation data: {exc}") from exc
        validate_snapshot(data)
        try:
            conversation = Conversation.from_dict(data["conversation"])
            config = AgentConfig.from_dict(data["config"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DataFormatError(f"Invalid conversation data: {exc}") from exc

        self._context.conversation = conversation
        self._context.config = config
        self._assistant_id = self._thinking_id = None
        self._tool_progress_id = self._chart_id = None
        logger.info("Imported conversation %s (%d messages)", conversation.id, len(conversation.messages))
        self._notify()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _process(self, event: ChatEvent) -> SendOutcome:
        logger.debug("Processing %s in %s", event.type.value, self._state.value)
        try:
            return await self._dispatch(event)
        except Exception as exc:
            logger.error("Handler failed for %s: %s", event.type.value, exc, exc_info=True)
            message = str(exc) or type(exc).__name__
            self._enter_error(
                message,
                system_text=f"Internal error: {message}",
                last_event=event.describe(),
            )
            return SendOutcome.FAILED

    async def _dispatch(self, event: ChatEvent) -> SendOutcome:
        kind = event.type
        state = self._state

        if kind in _STREAM_EVENTS and event.session is not None and event.session is not self._session:
            logger.debug("Ignoring %s from a superseded session", kind.value)
            return SendOutcome.IGNORED

        if kind is ChatEventType.SEND_MESSAGE and state in _RESTARTABLE:
            await self._start(event.message or "")
        elif kind is ChatEventType.RESET and state in _RESTARTABLE:
            self._reset()
        elif kind in (ChatEventType.CANCEL, ChatEventType.STOP_STREAM) and (
            state is ChatState.CONNECTING or state in PROCESSING_STATES
        ):
            self._cancel()
        elif kind is ChatEventType.SESSION_OPENED and state is ChatState.CONNECTING:
            self._transition(ChatState.STREAMING)
        elif kind is ChatEventType.STREAM_MESSAGE and state in PROCESSING_STATES:
            if event.stream_event is None:
                raise StateError("STREAM_MESSAGE carries no event")
            self._handle_stream_event(event.stream_event)
        elif kind is ChatEventType.STREAM_COMPLETE and state in PROCESSING_STATES:
            self._complete()
        elif kind is ChatEventType.STREAM_ERROR and (
            state is ChatState.CONNECTING or state in PROCESSING_STATES
        ):
            error = event.error or "Stream error"
            self._enter_error(
                error,
                system_text=f"Stream error: {error}",
                last_event=event.describe(),
            )
        else:
            logger.debug("Ignored %s in %s", kind.value, state.value)
            return SendOutcome.IGNORED
        return SendOutcome.HANDLED

    def _handle_stream_event(self, ev: StreamEvent) -> None:
        if not isinstance(ev.event_type, EventKind):
            logger.warning("Ignoring event with unknown type %r", ev.event_type)
            return
        self._context.last_event_type = ev.event_type
        self._HANDLERS[ev.event_type](self, ev)

    # ------------------------------------------------------------------
    # Stream lifecycle
    # ------------------------------------------------------------------

    def _history(self) -> list[Message]:
        history: list[Message] = []
        prompt = self._context.config.system_prompt
        if prompt:
            history.append(Message(role=Role.SYSTEM, content=prompt))
        turns = [
            m for m in self._context.conversation.messages
            if m.role in (Role.USER, Role.ASSISTANT) and m.content
        ]
        window = self._options.history_window
        for m in turns[-window:] if window > 0 else []:
            history.append(Message(role=m.role, content=m.content))
        return history

    async def _start(self, text: str) -> None:
        self._stop_session("superseded")
        self._context.metadata.pop("lastError", None)
        self._context.metadata.pop("lastEvent", None)
        self._add_message(ConversationMessage(role=Role.USER, content=text))
        self._transition(ChatState.CONNECTING)

        token = CancellationToken()
        try:
            session = await self._service.open_stream(
                self._history(),
                overrides=self._context.config.request_overrides(),
                token=token,
                on_progress=self._on_progress,
            )
        except ChatStreamError as exc:
            logger.warning("Stream open failed: %s", exc)
            self._enter_error(
                str(exc),
                system_text=f"Stream request failed: {exc}",
                last_event={"type": ChatEventType.SEND_MESSAGE.value, "message": text},
            )
            return

        self._session = session
        self._transition(ChatState.STREAMING)
        self._pump = asyncio.create_task(self._pump_stream(session))

    async def _pump_stream(self, session: TransportSession) -> None:
        try:
            async for ev in session.stream():
                await self.send(stream_message(ev, session))
                if self._session is not session or self._state not in PROCESSING_STATES:
                    break
            else:
                if self._session is session and self._state in PROCESSING_STATES:
                    if session.token.cancelled:
                        # cancelled through the service rather than the machine
                        await self.send(ChatEvent(ChatEventType.CANCEL))
                    else:
                        await self.send(stream_complete(session))
        except TransportError as exc:
            await self.send(stream_error(str(exc), session))
        except Exception as exc:
            logger.exception("Stream pump failed")
            await self.send(stream_error(str(exc) or type(exc).__name__, session))
        finally:
            await session.aclose()
            if self._session is session:
                self._session = None

    def _on_progress(self, progress: StreamProgress) -> None:
        self._progress = progress

    def _stop_session(self, reason: str) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.cancel(reason)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, new_state: ChatState) -> None:
        old = self._state
        self._state = new_state
        self._context.is_streaming = new_state in STREAMING_STATES
        if new_state in _RESTARTABLE and self._options.auto_clear_buffer:
            self._clear_thinking()
            self._tool_buffer = ""
        logger.debug("State transition: %s -> %s", old.value, new_state.value)
        self._notify()

    def _reset(self) -> None:
        self._stop_session("reset")
        self._context = ChatContext(config=self._context.config)
        self._assistant_id = self._thinking_id = None
        self._tool_progress_id = self._chart_id = None
        self._clear_thinking()
        self._tool_buffer = ""
        self._progress = None
        self._transition(ChatState.IDLE)

    def _cancel(self) -> None:
        self._stop_session("cancelled by user")
        self._finalize_sending(cancelled=True)
        self._add_message(
            ConversationMessage(role=Role.SYSTEM, content="Request cancelled by user")
        )
        self._transition(ChatState.IDLE)

    def _complete(self) -> None:
        self._finalize_sending(MessageStatus.SENT)
        self._transition(ChatState.COMPLETED)

    def _enter_error(
        self,
        error: str,
        *,
        system_text: str,
        last_event: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._stop_session("error")
        self._finalize_sending(MessageStatus.ERROR)
        self._add_message(
            ConversationMessage(
                role=Role.SYSTEM,
                content=system_text,
                status=MessageStatus.ERROR,
                event_type=EventKind.ERROR,
                metadata=metadata,
            )
        )
        self._context.metadata["lastError"] = error
        if last_event is not None:
            self._context.metadata["lastEvent"] = last_event
        self._transition(ChatState.ERROR)

    def _finalize_sending(self, status: str = MessageStatus.SENT, *, cancelled: bool = False) -> None:
        """Close every ``sending`` message; a cancel discards empty ones."""
        conv = self._context.conversation
        kept: list[ConversationMessage] = []
        for msg in conv.messages:
            if msg.status == MessageStatus.SENDING:
                if cancelled:
                    if not msg.content:
                        continue
                    msg.status = MessageStatus.SENT
                    msg.metadata = {**(msg.metadata or {}), "cancelled": True}
                else:
                    msg.status = status
            kept.append(msg)
        conv.messages = kept
        self._assistant_id = self._thinking_id = None
        self._tool_progress_id = self._chart_id = None

    # ------------------------------------------------------------------
    # Context helpers
    # ------------------------------------------------------------------

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state, copy.deepcopy(self._context))
            except Exception:
                logger.exception("Listener failed")

    def _touch(self) -> None:
        self._context.conversation.updated_at = time.time()

    def _add_message(self, message: ConversationMessage) -> ConversationMessage:
        conv = self._context.conversation
        conv.messages.append(message)
        limit = self._options.max_messages
        if limit > 0 and len(conv.messages) > limit:
            conv.messages = conv.messages[-limit:]
        self._touch()
        self._notify()
        return message

    def _find(self, message_id: str | None) -> ConversationMessage | None:
        if message_id is None:
            return None
        for msg in reversed(self._context.conversation.messages):
            if msg.id == message_id:
                return msg
        return None

    def _open(self, message_id: str | None) -> ConversationMessage | None:
        msg = self._find(message_id)
        if msg is not None and msg.status == MessageStatus.SENDING:
            return msg
        return None

    def _clear_thinking(self) -> None:
        self._thinking_buffer = ""
        self._context.current_thinking = ""
        self._context.conversation.thinking_stream = []

    def _close_assistant(self) -> None:
        msg = self._open(self._assistant_id)
        if msg is not None:
            msg.status = MessageStatus.SENT
        self._assistant_id = None

    def _close_chart(self) -> None:
        chart = self._open(self._chart_id)
        if chart is not None:
            chart.status = MessageStatus.SENT
        self._chart_id = None

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_start(self, ev: StreamEvent) -> None:
        self._close_chart()
        self._close_assistant()
        msg = self._add_message(
            ConversationMessage(
                role=Role.ASSISTANT,
                content="",
                status=MessageStatus.SENDING,
                event_type=EventKind.START,
                metadata={"startText": ev.text} if ev.text else None,
            )
        )
        self._assistant_id = msg.id

    def _on_text(self, ev: StreamEvent) -> None:
        self._close_chart()
        if self._state is not ChatState.STREAMING:
            self._transition(ChatState.STREAMING)
        msg = self._open(self._assistant_id)
        if msg is None:
            msg = self._add_message(
                ConversationMessage(
                    role=Role.ASSISTANT,
                    content=ev.text,
                    status=MessageStatus.SENDING,
                    event_type=EventKind.TEXT,
                )
            )
            self._assistant_id = msg.id
        else:
            msg.content += ev.text
            self._touch()
            self._notify()

    def _on_end(self, ev: StreamEvent) -> None:
        msg = self._open(self._assistant_id)
        if msg is not None:
            msg.content += ev.text
            msg.status = MessageStatus.SENT
            if ev.metadata:
                msg.metadata = {**(msg.metadata or {}), **ev.metadata}
        elif ev.text:
            self._add_message(
                ConversationMessage(
                    role=Role.ASSISTANT,
                    content=ev.text,
                    event_type=EventKind.END,
                    metadata=ev.metadata,
                )
            )
        self._assistant_id = None
        self._add_message(
            ConversationMessage(
                role=Role.SYSTEM,
                content=ev.text or "Conversation complete",
                event_type=EventKind.END,
                metadata=ev.metadata,
            )
        )
        self._complete()

    def _on_think_start(self, ev: StreamEvent) -> None:
        self._transition(ChatState.THINKING)
        self._clear_thinking()
        previous = self._open(self._thinking_id)
        if previous is not None:
            previous.status = MessageStatus.SENT
        msg = self._add_message(
            ConversationMessage(
                role=Role.THINKING,
                content=ev.text or "Thinking...",
                status=MessageStatus.SENDING,
                event_type=EventKind.THINK_START,
                is_thinking=True,
            )
        )
        self._thinking_id = msg.id

    def _on_think(self, ev: StreamEvent) -> None:
        if self._state is not ChatState.THINKING:
            self._transition(ChatState.THINKING)

        cap = self._options.max_thinking_buffer
        self._thinking_buffer = (self._thinking_buffer + ev.text)[-cap:] if cap > 0 else ""
        conv = self._context.conversation
        conv.thinking_stream.append(ThinkingChunk(text=ev.text))
        limit = self._options.max_thinking_chunks
        if limit > 0 and len(conv.thinking_stream) > limit:
            conv.thinking_stream = conv.thinking_stream[-limit:]
        self._context.current_thinking = self._thinking_buffer

        msg = self._open(self._thinking_id)
        if msg is None:
            msg = self._add_message(
                ConversationMessage(
                    role=Role.THINKING,
                    content=self._thinking_buffer,
                    status=MessageStatus.SENDING,
                    event_type=EventKind.THINK_START,
                    is_thinking=True,
                )
            )
            self._thinking_id = msg.id
        else:
            msg.content = self._thinking_buffer
            self._touch()
            self._notify()

    def _on_think_end(self, ev: StreamEvent) -> None:
        thought = self._thinking_buffer
        open_msg = self._open(self._thinking_id)
        if open_msg is not None:
            open_msg.status = MessageStatus.SENT
        self._thinking_id = None
        self._add_message(
            ConversationMessage(
                role=Role.THINKING,
                content=f"Thought complete: {_preview(thought, 150)}",
                event_type=EventKind.THINK_END,
                is_thinking=True,
                metadata={"fullThought": thought, "thoughtLength": len(thought)},
            )
        )
        self._clear_thinking()
        self._transition(ChatState.STREAMING)

    def _on_tool_start(self, ev: StreamEvent) -> None:
        meta = ev.meta
        name = meta.get("toolName") or "unknown_tool"
        params = meta.get("toolParams") or {}
        if not isinstance(params, dict):
            params = {"value": params}

        conv = self._context.conversation
        previous = conv.current_tool
        if previous is not None and previous.status in (ToolStatus.STARTED, ToolStatus.EXECUTING):
            previous.status = ToolStatus.ERROR
            previous.result = {"error": "superseded"}
        progress = self._open(self._tool_progress_id)
        if progress is not None:
            progress.status = MessageStatus.SENT
        self._tool_progress_id = None
        self._tool_buffer = ""

        call = ToolCall(name=name, params=params, call_id=meta.get("toolCallId"))
        conv.current_tool = call
        self._context.active_tools.append(call)
        limit = self._options.max_active_tools
        if limit > 0 and len(self._context.active_tools) > limit:
            self._context.active_tools = self._context.active_tools[-limit:]

        tool_meta: dict[str, Any] = {"params": params}
        if call.call_id:
            tool_meta["callId"] = call.call_id
        self._add_message(
            ConversationMessage(
                role=Role.TOOL,
                content=f"Calling tool: {name}",
                event_type=EventKind.TOOL_START,
                is_tool_call=True,
                tool_name=name,
                metadata=tool_meta,
            )
        )
        self._transition(ChatState.TOOL_EXECUTING)

    def _on_tool(self, ev: StreamEvent) -> None:
        if self._state is not ChatState.TOOL_EXECUTING:
            self._transition(ChatState.TOOL_EXECUTING)

        cap = self._options.max_tool_buffer
        self._tool_buffer = (self._tool_buffer + ev.text)[-cap:] if cap > 0 else ""
        call = self._context.conversation.current_tool
        if call is None:
            logger.debug("TOOL output with no open tool call")
            return
        call.status = ToolStatus.EXECUTING

        content = f"Tool running: {_preview(self._tool_buffer, 100)}"
        msg = self._open(self._tool_progress_id)
        if msg is None:
            msg = self._add_message(
                ConversationMessage(
                    role=Role.TOOL,
                    content=content,
                    status=MessageStatus.SENDING,
                    event_type=EventKind.TOOL,
                    is_tool_call=True,
                    tool_name=call.name,
                )
            )
            self._tool_progress_id = msg.id
        else:
            msg.content = content
            self._touch()
            self._notify()

    def _on_tool_end(self, ev: StreamEvent) -> None:
        meta = ev.meta
        failed = bool(meta.get("toolError"))
        result = meta.get("toolResult", meta.get("toolError"))

        progress = self._open(self._tool_progress_id)
        if progress is not None:
            progress.status = MessageStatus.ERROR if failed else MessageStatus.SENT
        self._tool_progress_id = None

        conv = self._context.conversation
        call = conv.current_tool
        if call is None:
            logger.warning("TOOL_END with no open tool call")
        else:
            call.status = ToolStatus.ERROR if failed else ToolStatus.COMPLETED
            call.result = result
            conv.current_tool = None
            self._add_message(
                ConversationMessage(
                    role=Role.TOOL,
                    content=f"Tool {call.name} {'failed' if failed else 'completed'}",
                    event_type=EventKind.TOOL_END,
                    is_tool_call=True,
                    tool_name=call.name,
                    metadata={"result": result, "status": call.status},
                )
            )
        self._tool_buffer = ""
        self._transition(ChatState.WAITING_TOOL)

    def _on_analysis(self, ev: StreamEvent) -> None:
        label = "Recognizing intent" if ev.event_type is EventKind.INTENTION_RECOGNIZE else "Retrieving"
        self._add_message(
            ConversationMessage(
                role=Role.SYSTEM,
                content=f"{label}: {ev.text}",
                event_type=ev.event_type,
                metadata=ev.metadata,
            )
        )

    def _on_chart_start(self, ev: StreamEvent) -> None:
        self._close_chart()
        self._close_assistant()
        msg = self._add_message(
            ConversationMessage(
                role=Role.ASSISTANT,
                content=ev.text,
                status=MessageStatus.SENDING,
                event_type=EventKind.ECHARTS_START,
                metadata={**ev.meta, "chart": True},
            )
        )
        self._chart_id = msg.id

    def _on_chart(self, ev: StreamEvent) -> None:
        msg = self._open(self._chart_id)
        if msg is None:
            self._on_chart_start(ev)
            return
        msg.content += ev.text
        if ev.metadata:
            msg.metadata = {**(msg.metadata or {}), **ev.metadata}
        self._touch()
        self._notify()

    def _on_chart_end(self, ev: StreamEvent) -> None:
        msg = self._open(self._chart_id)
        if msg is None:
            msg = self._add_message(
                ConversationMessage(
                    role=Role.ASSISTANT,
                    content=ev.text,
                    event_type=EventKind.ECHARTS_END,
                    metadata={**ev.meta, "chart": True},
                )
            )
        else:
            msg.content += ev.text
            msg.status = MessageStatus.SENT
            if ev.metadata:
                msg.metadata = {**(msg.metadata or {}), **ev.metadata}
            self._touch()
            self._notify()
        self._chart_id = None

    def _on_error(self, ev: StreamEvent) -> None:
        text = ev.text or "Unknown error"
        self._enter_error(
            text,
            system_text=f"Error: {text}",
            last_event={
                "type": ChatEventType.STREAM_MESSAGE.value,
                "streamEvent": ev.to_dict(),
            },
            metadata=ev.metadata,
        )

    _HANDLERS: dict[EventKind, Callable[[ChatStateMachine, StreamEvent], None]] = {
        EventKind.START: _on_start,
        EventKind.TEXT: _on_text,
        EventKind.END: _on_end,
        EventKind.THINK_START: _on_think_start,
        EventKind.THINK: _on_think,
        EventKind.THINK_END: _on_think_end,
        EventKind.TOOL_START: _on_tool_start,
        EventKind.TOOL: _on_tool,
        EventKind.TOOL_END: _on_tool_end,
        EventKind.INTENTION_RECOGNIZE: _on_analysis,
        EventKind.RETRIEVE: _on_analysis,
        EventKind.ECHARTS_START: _on_chart_start,
        EventKind.ECHARTS: _on_chart,
        EventKind.ECHARTS_END: _on_chart_end,
        EventKind.ERROR: _on_error,
    }


_unhandled = set(EventKind) - set(ChatStateMachine._HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler for event kinds: {sorted(k.value for k in _unhandled)}")
