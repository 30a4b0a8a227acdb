"""
Assembles OpenAI-style streaming tool-call fragments into finished calls.

Fragments are keyed by ``call_index``.  A call is finalized when a fragment
with ``done=True`` arrives or on ``flush()`` at the end of the provider's
turn.  A call whose argument string is not valid JSON is dropped and an
error is recorded in ``errors``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from chatstream.llm.types import AssembledToolCall, RawToolDelta


@dataclass
class _PendingCall:
    id: str | None = None
    name: str = ""
    args: str = ""


class ToolCallAssembler:
    """Buffers raw tool-call deltas and emits ``AssembledToolCall`` objects."""

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}
        self.errors: list[str] = []

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def feed(self, delta: RawToolDelta) -> list[AssembledToolCall]:
        """Add one fragment; returns the calls it completes (possibly none)."""
        call = self._pending.setdefault(delta.call_index, _PendingCall())
        if delta.id and not call.id:
            call.id = delta.id
        call.name += delta.name_delta
        call.args += delta.args_delta

        if delta.done:
            return self._finalize(delta.call_index)
        return []

    def flush(self) -> list[AssembledToolCall]:
        """Finalize every buffered call, in index order."""
        calls: list[AssembledToolCall] = []
        for idx in sorted(self._pending):
            calls.extend(self._finalize(idx))
        return calls

    def reset(self) -> None:
        self._pending.clear()
        self.errors.clear()

    def _finalize(self, idx: int) -> list[AssembledToolCall]:
        call = self._pending.pop(idx, None)
        if call is None:
            return []
        try:
            arguments = json.loads(call.args or "{}")
        except json.JSONDecodeError as exc:
            self.errors.append(f"tool_call_json_parse_failed idx={idx} err={exc}")
            return []
        if not isinstance(arguments, dict):
            self.errors.append(f"tool_call_args_not_object idx={idx}")
            return []
        return [
            AssembledToolCall(
                id=call.id or f"call_{idx}",
                name=call.name.strip(),
                arguments=arguments,
            )
        ]
