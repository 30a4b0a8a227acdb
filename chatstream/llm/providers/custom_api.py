"""
Custom API provider.

Talks to a first-party endpoint that already streams canonical records:
blank-line separated SSE blocks whose ``data:`` payload carries
``eventType``, ``content`` and optionally a ``data`` object of extra
content fields.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from chatstream.config import ProviderConfig
from chatstream.llm.decoder import DONE_SENTINEL, RecordFraming, normalize_event
from chatstream.llm.providers.base import ProviderService, RequestAdapter, ResponseAdapter
from chatstream.llm.types import AdaptedResponse, Message, StreamEvent
from chatstream.types import DecodeError

logger = logging.getLogger(__name__)

PROVIDER_ID = "custom"


class CustomApiRequestAdapter(RequestAdapter):
    provider_id = PROVIDER_ID
    default_model = "custom-model"

    def adapt_request(self, messages: list[Message], config: ProviderConfig) -> dict:
        body: dict[str, Any] = {
            "messages": [
                {"role": m.role, "content": m.content, "metadata": m.metadata}
                for m in messages
            ],
            **self._common_fields(config),
        }
        body.update(config.custom_params)
        return body


class CustomApiResponseAdapter(ResponseAdapter):
    provider_id = PROVIDER_ID

    def adapt_response(self, raw: dict) -> AdaptedResponse:
        metadata = {"responseId": raw.get("id"), "model": raw.get("model")}
        if isinstance(raw.get("metadata"), dict):
            metadata.update(raw["metadata"])
        return AdaptedResponse(
            content=str(raw.get("content") or ""),
            provider=PROVIDER_ID,
            metadata=metadata,
        )

    def adapt_stream_chunk(self, raw: Any, index: int) -> StreamEvent | None:
        """
        Accepts either a parsed record (dict) or the raw text of one SSE
        block.  The sentinel and empty blocks map to ``None``.
        """
        if isinstance(raw, str):
            payload = ""
            for line in raw.split("\n"):
                line = line.strip()
                if line.startswith("data:"):
                    payload = line[len("data:"):].strip()
            if not payload or payload == DONE_SENTINEL:
                return None
            try:
                raw = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise DecodeError(f"invalid JSON: {exc}") from exc

        if not isinstance(raw, dict):
            return None

        event = normalize_event(raw, index)
        extra = raw.get("data")
        if isinstance(extra, dict):
            event.content.update({k: v for k, v in extra.items() if k != "text"})
        return event


class CustomApiService(ProviderService):
    """Falls back to mock mode when no ``base_url`` is configured."""

    provider_id = PROVIDER_ID
    framing = RecordFraming.BLOCK

    def _default_request_adapter(self) -> RequestAdapter:
        return CustomApiRequestAdapter()

    def _default_response_adapter(self) -> ResponseAdapter:
        return CustomApiResponseAdapter()

    def _missing_credentials(self, config: ProviderConfig) -> bool:
        return not config.base_url
