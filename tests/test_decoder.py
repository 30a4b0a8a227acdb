"""Tests for chatstream.llm.decoder."""

from __future__ import annotations

import json

import pytest

from chatstream.llm.decoder import RecordFraming, WireDecoder, normalize_event
from chatstream.llm.types import EventKind, StreamEvent
from chatstream.types import DecodeError

from tests.mock_streams import CUSTOM_STREAM, DEEPSEEK_TEXT_STREAM


def _feed_all(decoder: WireDecoder, fragments) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    for frag in fragments:
        events.extend(decoder.feed(frag))
    events.extend(decoder.flush())
    return events


class TestNormalizeEvent:
    def test_canonical_record(self):
        ev = normalize_event(
            {"eventType": "TEXT", "content": {"text": "hi", "extra": 1}, "metadata": {"a": 1}},
            4,
        )
        assert ev.event_type is EventKind.TEXT
        assert ev.event_sn == 4
        assert ev.content == {"text": "hi", "extra": 1}
        assert ev.metadata == {"a": 1}

    def test_alternate_field_names(self):
        ev = normalize_event({"type": "think", "text": "hmm", "meta": {"x": True}}, 0)
        assert ev.event_type is EventKind.THINK
        assert ev.text == "hmm"
        assert ev.metadata == {"x": True}

    def test_string_content(self):
        ev = normalize_event({"eventType": "TEXT", "content": "plain"}, 0)
        assert ev.text == "plain"

    def test_missing_type_defaults_to_text(self):
        ev = normalize_event({"content": "x"}, 0)
        assert ev.event_type is EventKind.TEXT

    def test_unknown_type_is_rejected_not_coerced(self):
        with pytest.raises(DecodeError):
            normalize_event({"eventType": "BANANA", "content": "x"}, 0)

    def test_tool_fields_hoisted_into_metadata(self):
        ev = normalize_event(
            {"eventType": "TOOL_START", "toolName": "search", "toolParams": {"q": 1}},
            0,
        )
        assert ev.meta["toolName"] == "search"
        assert ev.meta["toolParams"] == {"q": 1}

    def test_non_string_text_is_serialized(self):
        ev = normalize_event({"eventType": "ECHARTS", "content": {"text": {"series": [1]}}}, 0)
        assert json.loads(ev.text) == {"series": [1]}


class TestLineFraming:
    def test_sse_lines(self):
        decoder = WireDecoder(RecordFraming.LINE)
        events = _feed_all(
            decoder,
            [
                'data: {"eventType": "START"}\n',
                'data: {"eventType": "TEXT", "content": "a"}\n',
                "data: [DONE]\n",
            ],
        )
        assert [e.event_type for e in events] == [EventKind.START, EventKind.TEXT, EventKind.END]
        assert events[-1].metadata == {"completed": True}
        assert decoder.finished

    def test_bare_json_lines(self):
        decoder = WireDecoder(RecordFraming.LINE)
        events = _feed_all(decoder, ['{"eventType": "TEXT", "content": "x"}\n{"eventType": "END"}\n'])
        assert [e.text for e in events] == ["x", ""]

    def test_fragment_split_mid_record(self):
        decoder = WireDecoder(RecordFraming.LINE)
        assert decoder.feed('data: {"eventType": "TE') == []
        assert decoder.pending == 'data: {"eventType": "TE'
        events = decoder.feed('XT", "content": "joined"}\n')
        assert len(events) == 1
        assert events[0].text == "joined"

    def test_multibyte_character_split_across_reads(self):
        decoder = WireDecoder(RecordFraming.LINE)
        raw = 'data: {"eventType": "TEXT", "content": "héllo"}\n'.encode("utf-8")
        cut = raw.index("é".encode("utf-8")) + 1
        events = _feed_all(decoder, [raw[:cut], raw[cut:]])
        assert events[0].text == "héllo"

    def test_sequence_numbers_are_monotonic(self):
        decoder = WireDecoder(RecordFraming.LINE)
        events = _feed_all(
            decoder,
            ['{"eventType": "TEXT", "content": "a", "sn": 99}\n', "garbage\n", '{"eventType": "TEXT"}\n'],
        )
        assert [e.event_sn for e in events] == [0, 1]
        assert events[0].meta["sourceSn"] == 99

    def test_comments_and_ignored_fields(self):
        decoder = WireDecoder(RecordFraming.LINE)
        events = _feed_all(decoder, [": keep-alive\nid: 7\nretry: 100\n", '{"eventType": "TEXT", "content": "x"}\n'])
        assert len(events) == 1

    def test_nothing_after_sentinel(self):
        decoder = WireDecoder(RecordFraming.LINE)
        events = _feed_all(decoder, ["data: [DONE]\n", '{"eventType": "TEXT", "content": "late"}\n'])
        assert [e.event_type for e in events] == [EventKind.END]

    def test_sentinel_without_end_event(self):
        decoder = WireDecoder(RecordFraming.LINE, emit_end_on_sentinel=False)
        assert decoder.feed("data: [DONE]\n") == []
        assert decoder.finished


class TestBlockFraming:
    def test_custom_stream(self):
        decoder = WireDecoder(RecordFraming.BLOCK)
        events = _feed_all(decoder, [CUSTOM_STREAM])
        assert [e.event_type for e in events] == [
            EventKind.START,
            EventKind.TEXT,
            EventKind.TEXT,
            EventKind.END,
        ]
        assert "".join(e.text for e in events) == "Hi there"

    def test_event_field_supplies_type(self):
        decoder = WireDecoder(RecordFraming.BLOCK)
        events = _feed_all(decoder, ['event: THINK\ndata: {"content": "pondering"}\n\n'])
        assert events[0].event_type is EventKind.THINK

    def test_multi_line_data_is_joined(self):
        decoder = WireDecoder(RecordFraming.BLOCK)
        events = _feed_all(decoder, ['data: {"eventType": "TEXT",\ndata:  "content": "x"}\n\n'])
        assert events[0].text == "x"

    def test_crlf_line_endings(self):
        decoder = WireDecoder(RecordFraming.BLOCK)
        events = _feed_all(decoder, ['data: {"eventType": "TEXT", "content": "x"}\r\n\r\n'])
        assert len(events) == 1

    def test_crlf_split_across_deliveries(self):
        decoder = WireDecoder(RecordFraming.BLOCK)
        events = _feed_all(
            decoder,
            [
                'data: {"eventType": "TEXT", "content": "A"}\r\n\r',
                '\ndata: {"eventType": "TEXT", "content": "B"}\r\n\r',
                '\n',
            ],
        )
        assert [e.text for e in events] == ["A", "B"]
        assert decoder.dropped == 0

    def test_flush_decodes_unterminated_tail(self):
        decoder = WireDecoder(RecordFraming.BLOCK)
        assert decoder.feed('data: {"eventType": "END"}') == []
        events = decoder.flush()
        assert [e.event_type for e in events] == [EventKind.END]


class TestMalformedRecords:
    def test_bad_record_between_valid_ones(self):
        decoder = WireDecoder(RecordFraming.LINE)
        events = _feed_all(
            decoder,
            [
                'data: {"eventType": "TEXT", "content": "one"}\n',
                "data: {not json\n",
                'data: {"eventType": "TEXT", "content": "two"}\n',
            ],
        )
        assert [e.text for e in events] == ["one", "two"]
        assert decoder.dropped == 1

    def test_unknown_type_dropped(self):
        decoder = WireDecoder(RecordFraming.LINE)
        events = _feed_all(decoder, ['{"eventType": "NOPE"}\n', '{"eventType": "TEXT", "content": "ok"}\n'])
        assert [e.text for e in events] == ["ok"]
        assert decoder.dropped == 1

    def test_non_object_json_dropped(self):
        decoder = WireDecoder(RecordFraming.LINE)
        assert _feed_all(decoder, ["[1, 2, 3]\n"]) == []
        assert decoder.dropped == 1

    def test_drop_is_logged(self, caplog):
        decoder = WireDecoder(RecordFraming.LINE)
        with caplog.at_level("WARNING", logger="chatstream.llm.decoder"):
            decoder.feed("data: oops\n")
        assert "Dropping malformed record" in caplog.text


class TestChunkAdapter:
    def test_adapter_returning_none_skips(self):
        decoder = WireDecoder(RecordFraming.LINE, chunk_adapter=lambda data, idx: None)
        assert _feed_all(decoder, ['{"x": 1}\n']) == []

    def test_adapter_returning_several_events(self):
        def adapter(data, idx):
            return [
                StreamEvent(EventKind.THINK_START),
                StreamEvent(EventKind.THINK, content={"text": data["t"]}),
            ]

        decoder = WireDecoder(RecordFraming.LINE, chunk_adapter=adapter)
        events = _feed_all(decoder, ['{"t": "a"}\n', '{"t": "b"}\n'])
        assert [e.event_sn for e in events] == [0, 1, 2, 3]

    def test_deepseek_capture(self):
        from chatstream.llm.providers.deepseek import DeepseekResponseAdapter, DeepseekStreamShaper

        decoder = WireDecoder(
            RecordFraming.LINE,
            chunk_adapter=DeepseekStreamShaper(DeepseekResponseAdapter()),
        )
        events = _feed_all(decoder, [DEEPSEEK_TEXT_STREAM])
        assert [e.event_type for e in events] == [EventKind.TEXT, EventKind.TEXT, EventKind.END]
        assert "".join(e.text for e in events) == "Hello world"

    def test_wrong_shaped_deepseek_chunk_is_dropped(self, caplog):
        from chatstream.llm.providers.deepseek import DeepseekResponseAdapter, DeepseekStreamShaper

        decoder = WireDecoder(
            RecordFraming.LINE,
            chunk_adapter=DeepseekStreamShaper(DeepseekResponseAdapter()),
        )
        lines = [
            'data: {"choices": [{"delta": {"content": "A"}}]}\n',
            'data: {"choices": [null]}\n',
            'data: {"choices": [{"delta": "x"}]}\n',
            'data: {"choices": [{"delta": {"content": "B"}}]}\n',
            "data: [DONE]\n",
        ]
        with caplog.at_level("WARNING", logger="chatstream.llm.decoder"):
            events = _feed_all(decoder, lines)

        assert [e.text for e in events if e.event_type is EventKind.TEXT] == ["A", "B"]
        assert events[-1].event_type is EventKind.END
        assert decoder.dropped == 2
        assert "Dropping malformed record" in caplog.text

    def test_dict_delivery(self):
        decoder = WireDecoder()
        events = decoder.feed({"eventType": "TEXT", "content": "already parsed"})
        assert events[0].text == "already parsed"
