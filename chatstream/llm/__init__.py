"""LLM subsystem -- canonical events, wire decoding, transport and providers."""

from chatstream.llm.types import (
    AdaptedResponse,
    EventKind,
    Message,
    StreamEvent,
    StreamProgress,
    make_event,
)
from chatstream.llm.decoder import RecordFraming, WireDecoder, normalize_event
from chatstream.llm.transport import (
    CancellationToken,
    SessionOutcome,
    Transport,
    TransportSession,
)
from chatstream.llm.registry import AdapterRegistry, ProviderType, default_registry
from chatstream.llm.factory import ServiceFactory
from chatstream.llm.retry import with_retry

__all__ = [
    "AdaptedResponse",
    "AdapterRegistry",
    "CancellationToken",
    "EventKind",
    "Message",
    "ProviderType",
    "RecordFraming",
    "ServiceFactory",
    "SessionOutcome",
    "StreamEvent",
    "StreamProgress",
    "Transport",
    "TransportSession",
    "WireDecoder",
    "default_registry",
    "make_event",
    "normalize_event",
    "with_retry",
]
