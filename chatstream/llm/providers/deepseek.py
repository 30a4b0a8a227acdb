"""
DeepSeek provider (OpenAI-compatible chat completions).

Streams ``data: {json}`` lines terminated by ``data: [DONE]``.  Each chunk
carries ``choices[0].delta`` with ``content``, ``reasoning_content`` (the
reasoner models) or ``tool_calls`` fragments.
"""

from __future__ import annotations

import logging
from typing import Any

from chatstream.config import ProviderConfig
from chatstream.llm.decoder import ChunkAdapter, RecordFraming
from chatstream.llm.providers.base import ProviderService, RequestAdapter, ResponseAdapter
from chatstream.llm.tool_call_assembler import ToolCallAssembler
from chatstream.llm.types import (
    AdaptedResponse,
    AssembledToolCall,
    EventKind,
    Message,
    RawToolDelta,
    StreamEvent,
    make_event,
)
from chatstream.types import DecodeError

logger = logging.getLogger(__name__)

PROVIDER_ID = "deepseek"
DEFAULT_BASE_URL = "https://api.deepseek.com/v1/chat/completions"


def _tool_deltas(raw_tcs: list[dict]) -> list[RawToolDelta]:
    if not isinstance(raw_tcs, list):
        raise DecodeError("tool_calls is not a list")
    deltas = []
    for raw_tc in raw_tcs:
        if not isinstance(raw_tc, dict):
            raise DecodeError("tool call fragment is not an object")
        func = raw_tc.get("function") or {}
        if not isinstance(func, dict) or not isinstance(raw_tc.get("index", 0), int):
            raise DecodeError("malformed tool call fragment")
        deltas.append(
            RawToolDelta(
                call_index=raw_tc.get("index", 0),
                id=raw_tc.get("id"),
                name_delta=func.get("name") or "",
                args_delta=func.get("arguments") or "",
            )
        )
    return deltas


class DeepseekRequestAdapter(RequestAdapter):
    provider_id = PROVIDER_ID
    default_model = "deepseek-chat"

    def adapt_request(self, messages: list[Message], config: ProviderConfig) -> dict:
        body: dict[str, Any] = {
            **self._common_fields(config),
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": True,
        }
        body.update(config.custom_params)
        return body


class DeepseekResponseAdapter(ResponseAdapter):
    provider_id = PROVIDER_ID

    def adapt_response(self, raw: dict) -> AdaptedResponse:
        choices = raw.get("choices") or [{}]
        message = choices[0].get("message") or {}
        metadata: dict[str, Any] = {
            "id": raw.get("id"),
            "model": raw.get("model"),
            "usage": raw.get("usage"),
        }
        if message.get("reasoning_content"):
            metadata["reasoning"] = message["reasoning_content"]
        if message.get("tool_calls"):
            assembler = ToolCallAssembler()
            for delta in _tool_deltas(
                [{**tc, "index": tc.get("index", i)} for i, tc in enumerate(message["tool_calls"])]
            ):
                assembler.feed(delta)
            metadata["toolCalls"] = [
                {"id": c.id, "name": c.name, "arguments": c.arguments}
                for c in assembler.flush()
            ]
        return AdaptedResponse(
            content=message.get("content") or "",
            provider=PROVIDER_ID,
            metadata=metadata,
        )

    def adapt_stream_chunk(self, raw: Any, index: int) -> StreamEvent | None:
        if not isinstance(raw, dict):
            return None
        choices = raw.get("choices")
        if not choices:
            return None
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise DecodeError("choices[0] is not an object")

        choice = choices[0]
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise DecodeError("delta is not an object")
        finish_reason = choice.get("finish_reason")
        reasoning = delta.get("reasoning_content")
        content = delta.get("content")
        if not all(v is None or isinstance(v, str) for v in (reasoning, content)):
            raise DecodeError("delta text is not a string")
        raw_tcs = delta.get("tool_calls")

        metadata = {
            k: v
            for k, v in (
                ("finish_reason", finish_reason),
                ("model", raw.get("model")),
                ("id", raw.get("id")),
                ("created", raw.get("created")),
            )
            if v is not None
        }
        if raw_tcs:
            metadata["toolDeltas"] = _tool_deltas(raw_tcs)

        if reasoning:
            event = make_event(EventKind.THINK, reasoning, index, metadata)
            if content:
                event.content["answer"] = content
            return event
        if content or raw_tcs or finish_reason:
            return make_event(EventKind.TEXT, content or "", index, metadata)
        # keep-alive
        return None


class DeepseekStreamShaper:
    """
    Per-session post-processing of adapted chunks.

    Brackets each run of reasoning chunks with THINK_START / THINK_END and
    turns streamed tool-call fragments into TOOL_START events once the
    model finishes its turn.
    """

    def __init__(self, adapter: DeepseekResponseAdapter) -> None:
        self._adapter = adapter
        self._assembler = ToolCallAssembler()
        self._thinking = False

    def __call__(self, data: dict, index: int) -> list[StreamEvent] | None:
        event = self._adapter.adapt_stream_chunk(data, index)
        if event is None:
            return None

        meta = event.meta
        deltas: list[RawToolDelta] = meta.pop("toolDeltas", None) or []
        finish_reason = meta.get("finish_reason")
        out: list[StreamEvent] = []

        if event.event_type is EventKind.THINK:
            if not self._thinking:
                self._thinking = True
                out.append(make_event(EventKind.THINK_START))
            answer = event.content.pop("answer", None)
            out.append(event)
            if answer:
                out.append(self._close_thinking())
                out.append(make_event(EventKind.TEXT, answer, metadata=dict(meta)))
        else:
            if self._thinking:
                out.append(self._close_thinking())
            if event.text:
                out.append(event)

        for delta in deltas:
            out.extend(self._tool_start(c) for c in self._assembler.feed(delta))

        if finish_reason:
            if self._thinking:
                out.append(self._close_thinking())
            out.extend(self._tool_start(c) for c in self._assembler.flush())
            for err in self._assembler.errors:
                logger.warning("Dropped malformed tool call: %s", err)
            self._assembler.reset()

        return out or None

    def _close_thinking(self) -> StreamEvent:
        self._thinking = False
        return make_event(EventKind.THINK_END)

    @staticmethod
    def _tool_start(call: AssembledToolCall) -> StreamEvent:
        return make_event(
            EventKind.TOOL_START,
            f"Calling {call.name}",
            metadata={
                "toolName": call.name,
                "toolParams": call.arguments,
                "toolCallId": call.id,
            },
        )


class DeepseekService(ProviderService):
    """Falls back to mock mode when no API key is available."""

    provider_id = PROVIDER_ID
    default_base_url = DEFAULT_BASE_URL
    framing = RecordFraming.LINE

    def _default_request_adapter(self) -> RequestAdapter:
        return DeepseekRequestAdapter()

    def _default_response_adapter(self) -> ResponseAdapter:
        return DeepseekResponseAdapter()

    def _missing_credentials(self, config: ProviderConfig) -> bool:
        return not config.api_key

    def make_chunk_adapter(self) -> ChunkAdapter:
        if isinstance(self.response_adapter, DeepseekResponseAdapter):
            return DeepseekStreamShaper(self.response_adapter)
        return self.response_adapter.adapt_stream_chunk
