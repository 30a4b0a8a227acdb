"""Canned event scripts for mock mode and the ``demo`` command."""

from __future__ import annotations

from chatstream.llm.types import EventKind, StreamEvent, make_event

DEFAULT_MOCK_RESPONSES = [
    "Hello! I'm an AI assistant and I'm glad to help. What can I do for you?",
    "That's a good question. Let me explain it in detail...",
    "Based on what you need, here are a few options:\n1. First...\n2. Next...\n3. Finally...",
    "I understand the confusion. Let me put this concept simply...",
    "To help you better I need a little more information...",
]


def mock_text_script(text: str, *, source: str = "") -> list[StreamEvent]:
    """START, one TEXT per character, then END."""
    base = {"mock": True}
    if source:
        base["provider"] = source
    events = [make_event(EventKind.START, metadata=dict(base))]
    total = len(text)
    for i, ch in enumerate(text, start=1):
        events.append(
            make_event(EventKind.TEXT, ch, metadata={**base, "progress": i / total})
        )
    events.append(make_event(EventKind.END, metadata={**base, "completed": True}))
    for sn, event in enumerate(events):
        event.event_sn = sn
    return events


def demo_script() -> list[StreamEvent]:
    """
    A full walk through every major event family.

    Used by ``chatstream demo`` to exercise the state machine without a
    provider.
    """
    events = [
        make_event(EventKind.START, "Starting analysis"),
        make_event(EventKind.THINK_START, "Thinking"),
        make_event(EventKind.THINK, "The user wants sales figures. "),
        make_event(EventKind.THINK, "I should query the database first."),
        make_event(EventKind.THINK_END),
        make_event(
            EventKind.TOOL_START,
            "Querying database",
            metadata={
                "toolName": "search_database",
                "toolParams": {"table": "sales", "period": "2024-Q1"},
            },
        ),
        make_event(
            EventKind.TOOL,
            "Found 1,284 rows",
            metadata={"toolName": "search_database"},
        ),
        make_event(
            EventKind.TOOL_END,
            "Query complete",
            metadata={
                "toolName": "search_database",
                "toolResult": {"rows": 1284, "total": 452300},
            },
        ),
        make_event(EventKind.TEXT, "Sales for 2024-Q1 totalled 452,300 "),
        make_event(EventKind.TEXT, "across 1,284 orders."),
        make_event(
            EventKind.END,
            metadata={
                "completed": True,
                "usage": {"promptTokens": 42, "completionTokens": 18},
            },
        ),
    ]
    for sn, event in enumerate(events):
        event.event_sn = sn
    return events
