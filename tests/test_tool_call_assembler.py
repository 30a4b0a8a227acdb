"""Tests for chatstream.llm.tool_call_assembler.ToolCallAssembler."""

from __future__ import annotations

from chatstream.llm.tool_call_assembler import ToolCallAssembler
from chatstream.llm.types import RawToolDelta


def _fragments(idx: int, call_id: str, name: str, args: str, pieces: int = 3) -> list[RawToolDelta]:
    """Split *args* into roughly equal deltas the way a provider streams them."""
    step = max(1, len(args) // pieces)
    chunks = [args[i:i + step] for i in range(0, len(args), step)] or [""]
    deltas = [RawToolDelta(call_index=idx, id=call_id, name_delta=name)]
    deltas.extend(RawToolDelta(call_index=idx, args_delta=c) for c in chunks)
    return deltas


class TestAssembly:
    """Fragments for one call accumulate until done or flush."""

    def test_fragments_then_done(self):
        asm = ToolCallAssembler()
        for delta in _fragments(0, "call_a", "search_database", '{"query": "Q1 sales"}'):
            assert asm.feed(delta) == []
        assert asm.has_pending

        calls = asm.feed(RawToolDelta(call_index=0, done=True))

        assert len(calls) == 1
        assert calls[0].id == "call_a"
        assert calls[0].name == "search_database"
        assert calls[0].arguments == {"query": "Q1 sales"}
        assert not asm.has_pending

    def test_name_split_across_deltas(self):
        asm = ToolCallAssembler()
        asm.feed(RawToolDelta(call_index=0, id="c", name_delta="get_"))
        asm.feed(RawToolDelta(call_index=0, name_delta="weather "))
        calls = asm.feed(RawToolDelta(call_index=0, args_delta='{"city": "Oslo"}', done=True))
        assert calls[0].name == "get_weather"

    def test_later_id_does_not_replace_first(self):
        asm = ToolCallAssembler()
        asm.feed(RawToolDelta(call_index=0, id="first", name_delta="t"))
        calls = asm.feed(RawToolDelta(call_index=0, id="second", args_delta="{}", done=True))
        assert calls[0].id == "first"

    def test_missing_id_falls_back_to_index(self):
        asm = ToolCallAssembler()
        calls = asm.feed(RawToolDelta(call_index=3, name_delta="t", args_delta="{}", done=True))
        assert calls[0].id == "call_3"

    def test_no_arguments_means_empty_object(self):
        asm = ToolCallAssembler()
        asm.feed(RawToolDelta(call_index=0, id="x", name_delta="ping"))
        assert asm.flush()[0].arguments == {}


class TestInterleavedCalls:
    def test_calls_keyed_by_index(self):
        asm = ToolCallAssembler()
        a = _fragments(0, "a", "alpha", '{"n": 1}')
        b = _fragments(1, "b", "beta", '{"n": 2}')
        for pair in zip(a, b):
            for delta in pair:
                asm.feed(delta)

        calls = asm.flush()

        assert [c.name for c in calls] == ["alpha", "beta"]
        assert [c.arguments["n"] for c in calls] == [1, 2]

    def test_flush_orders_by_index(self):
        asm = ToolCallAssembler()
        asm.feed(RawToolDelta(call_index=2, id="z", name_delta="late", args_delta="{}"))
        asm.feed(RawToolDelta(call_index=0, id="a", name_delta="early", args_delta="{}"))
        assert [c.name for c in asm.flush()] == ["early", "late"]


class TestMalformedArguments:
    """Bad argument strings are recorded in ``errors`` and dropped."""

    def test_invalid_json(self):
        asm = ToolCallAssembler()
        asm.feed(RawToolDelta(call_index=0, id="bad", name_delta="broken", args_delta='{"a": '))
        assert asm.flush() == []
        assert len(asm.errors) == 1
        assert asm.errors[0].startswith("tool_call_json_parse_failed idx=0")

    def test_non_object_arguments(self):
        asm = ToolCallAssembler()
        assert asm.feed(RawToolDelta(call_index=1, name_delta="t", args_delta="[1, 2]", done=True)) == []
        assert asm.errors == ["tool_call_args_not_object idx=1"]

    def test_bad_call_does_not_block_others(self):
        asm = ToolCallAssembler()
        asm.feed(RawToolDelta(call_index=0, id="bad", name_delta="x", args_delta="{nope"))
        asm.feed(RawToolDelta(call_index=1, id="ok", name_delta="y", args_delta='{"k": true}'))
        calls = asm.flush()
        assert [c.id for c in calls] == ["ok"]
        assert len(asm.errors) == 1

    def test_reset_clears_pending_and_errors(self):
        asm = ToolCallAssembler()
        asm.feed(RawToolDelta(call_index=0, args_delta="oops", done=True))
        asm.feed(RawToolDelta(call_index=1, name_delta="pending"))
        asm.reset()
        assert asm.errors == []
        assert not asm.has_pending
        assert asm.flush() == []
