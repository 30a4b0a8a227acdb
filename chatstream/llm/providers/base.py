"""
Provider adapters and the service base class.

A provider is described by two adapters and one service:

  - ``RequestAdapter`` turns canonical messages into the provider's request
    body.
  - ``ResponseAdapter`` turns the provider's replies (whole or streamed)
    into ``AdaptedResponse`` / ``StreamEvent`` objects.
  - ``ProviderService`` owns the configuration, the open transport session
    and mock mode for one provider instance.
"""

from __future__ import annotations

import copy
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields, replace
from typing import Any, Callable

import httpx

from chatstream.config import ProviderConfig
from chatstream.llm.decoder import DONE_SENTINEL, ChunkAdapter, RecordFraming
from chatstream.llm.scripts import DEFAULT_MOCK_RESPONSES, mock_text_script
from chatstream.llm.transport import (
    CancellationToken,
    ProgressCallback,
    RequestSpec,
    ScriptedStreamSession,
    SessionOutcome,
    Transport,
    TransportSession,
)
from chatstream.llm.types import AdaptedResponse, Message, StreamEvent
from chatstream.types import (
    ChatStreamError,
    ConfigurationError,
    TransportError,
    TransportTimeout,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class RequestAdapter(ABC):
    """Builds a provider request body from canonical messages."""

    provider_id: str = ""
    default_model: str = ""
    default_temperature: float = 0.7
    default_max_tokens: int = 1000

    @abstractmethod
    def adapt_request(self, messages: list[Message], config: ProviderConfig) -> dict:
        ...

    def _common_fields(self, config: ProviderConfig) -> dict[str, Any]:
        return {
            "model": config.model or self.default_model,
            "temperature": (
                config.temperature
                if config.temperature is not None
                else self.default_temperature
            ),
            "max_tokens": (
                config.max_tokens
                if config.max_tokens is not None
                else self.default_max_tokens
            ),
        }


class ResponseAdapter(ABC):
    """Maps provider replies onto canonical shapes."""

    provider_id: str = ""

    @abstractmethod
    def adapt_response(self, raw: dict) -> AdaptedResponse:
        """Map a complete (non-streaming) reply."""
        ...

    @abstractmethod
    def adapt_stream_chunk(self, raw: Any, index: int) -> StreamEvent | None:
        """
        Map one streamed record.

        Returns ``None`` for records with no semantic content.  Raises
        ``DecodeError`` for records that cannot be mapped.
        """
        ...


# ---------------------------------------------------------------------------
# Callback style streaming
# ---------------------------------------------------------------------------


@dataclass
class StreamCallbacks:
    on_start: Callable[[], None] | None = None
    on_chunk: Callable[[StreamEvent], None] | None = None
    on_complete: Callable[[], None] | None = None
    on_error: Callable[[Exception], None] | None = None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ProviderService(ABC):
    """
    One configured provider instance.

    Parameters
    ----------
    config:
        Provider settings.  Defaults to an empty ``ProviderConfig`` named
        after the provider.
    request_adapter / response_adapter:
        Adapter overrides; the registry passes its registered pair.
    http_transport:
        Optional ``httpx`` transport, used by tests to serve canned
        responses through ``httpx.MockTransport``.
    """

    provider_id: str = ""
    default_base_url: str | None = None
    framing: RecordFraming = RecordFraming.LINE
    sentinel: str = DONE_SENTINEL

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        request_adapter: RequestAdapter | None = None,
        response_adapter: ResponseAdapter | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = copy.deepcopy(config) if config else ProviderConfig(name=self.provider_id)
        self.request_adapter = request_adapter or self._default_request_adapter()
        self.response_adapter = response_adapter or self._default_response_adapter()
        self._http_transport = http_transport
        self._transport = Transport(http_transport)
        self._mock_responses = list(DEFAULT_MOCK_RESPONSES)
        self._mock_script: list[StreamEvent | Exception] | None = None
        self._requesting = False

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _default_request_adapter(self) -> RequestAdapter:
        ...

    @abstractmethod
    def _default_response_adapter(self) -> ResponseAdapter:
        ...

    @abstractmethod
    def _missing_credentials(self, config: ProviderConfig) -> bool:
        """True when *config* cannot reach a real endpoint."""
        ...

    def make_chunk_adapter(self) -> ChunkAdapter:
        """Per-session record mapper handed to the wire decoder."""
        return self.response_adapter.adapt_stream_chunk

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> ProviderConfig:
        """Return a copy; mutating it does not affect the service."""
        return copy.deepcopy(self._config)

    def set_config(self, **updates: Any) -> None:
        valid = {f.name for f in fields(ProviderConfig)}
        unknown = set(updates) - valid
        if unknown:
            raise ConfigurationError(
                f"Unknown provider settings: {', '.join(sorted(unknown))}"
            )
        self._config = replace(self._config, **updates)
        logger.debug("%s config updated: %s", self.provider_id, sorted(updates))

    @property
    def mock_mode(self) -> bool:
        return self._config.mock_mode or self._missing_credentials(self._config)

    def enable_mock_mode(self, enable: bool = True) -> None:
        self._config = replace(self._config, mock_mode=enable)

    def set_mock_responses(self, responses: list[str]) -> None:
        if not responses:
            raise ConfigurationError("At least one mock response is required")
        self._mock_responses = list(responses)

    def set_mock_script(self, script: list[StreamEvent | Exception] | None) -> None:
        """
        Replay *script* verbatim for every mock stream instead of a random
        canned reply; ``None`` restores the canned replies.
        """
        self._mock_script = list(script) if script is not None else None

    @property
    def is_processing(self) -> bool:
        return self._requesting or self._transport.active is not None

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _effective(self, overrides: dict[str, Any] | None) -> ProviderConfig:
        if not overrides:
            return self._config
        return replace(self._config, **overrides)

    def _url(self, config: ProviderConfig) -> str:
        url = config.base_url or self.default_base_url
        if not url:
            raise ConfigurationError(f"No base_url configured for {self.provider_id}")
        return url

    def _headers(self, config: ProviderConfig) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        headers.update(config.headers)
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    def _mock_text(self) -> str:
        return random.choice(self._mock_responses)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def open_stream(
        self,
        messages: list[Message],
        *,
        overrides: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TransportSession:
        """
        Open a streaming session for *messages*.

        Any session this service still has open is cancelled first.
        """
        config = self._effective(overrides)
        if config.mock_mode or self._missing_credentials(config):
            logger.info("%s: serving mock stream", self.provider_id)
            script = self._mock_script
            if script is None:
                script = mock_text_script(self._mock_text(), source=self.provider_id)
            session = ScriptedStreamSession(
                script,
                delay=config.mock_delay,
                token=token,
                on_progress=on_progress,
            )
            return await self._transport.attach(session)

        body = self.request_adapter.adapt_request(messages, config)
        spec = RequestSpec(
            url=self._url(config),
            body=body,
            headers=self._headers(config),
            timeout=config.timeout_seconds,
            framing=self.framing,
            sentinel=self.sentinel,
        )
        logger.info(
            "%s: model=%s messages=%d api_key=%s",
            self.provider_id,
            body.get("model"),
            len(messages),
            "set" if config.api_key else "(none)",
        )
        return await self._transport.open(
            spec,
            chunk_adapter=self.make_chunk_adapter(),
            token=token,
            on_progress=on_progress,
        )

    async def stream_request(
        self,
        messages: list[Message],
        callbacks: StreamCallbacks,
        *,
        overrides: dict[str, Any] | None = None,
    ) -> SessionOutcome:
        """Callback-style wrapper around ``open_stream``."""
        try:
            session = await self.open_stream(messages, overrides=overrides)
        except ChatStreamError as exc:
            if callbacks.on_error:
                callbacks.on_error(exc)
            return SessionOutcome.FAILED

        if callbacks.on_start:
            callbacks.on_start()
        try:
            async for event in session.stream():
                if callbacks.on_chunk:
                    callbacks.on_chunk(event)
        except TransportError as exc:
            if callbacks.on_error:
                callbacks.on_error(exc)
            return SessionOutcome.FAILED
        finally:
            await session.aclose()

        if session.outcome is SessionOutcome.COMPLETED and callbacks.on_complete:
            callbacks.on_complete()
        return session.outcome

    def cancel(self, reason: str = "cancelled") -> None:
        self._transport.cancel(reason)

    async def aclose(self) -> None:
        await self._transport.release()

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def request(
        self,
        messages: list[Message],
        *,
        overrides: dict[str, Any] | None = None,
        raise_errors: bool = False,
    ) -> AdaptedResponse:
        """
        Send a complete (non-streaming) request.

        Failures become an ``AdaptedResponse`` with ``status="error"`` unless
        *raise_errors* is set, in which case ``TransportError`` propagates.
        """
        config = self._effective(overrides)
        if config.mock_mode or self._missing_credentials(config):
            return AdaptedResponse(
                content=self._mock_text(),
                provider=self.provider_id,
                metadata={"mock": True},
            )

        self._requesting = True
        try:
            body = self.request_adapter.adapt_request(messages, config)
            body["stream"] = False
            headers = self._headers(config)
            headers["Accept"] = "application/json"
            try:
                async with httpx.AsyncClient(
                    timeout=config.timeout_seconds, transport=self._http_transport
                ) as client:
                    resp = await client.post(self._url(config), json=body, headers=headers)
                    if not resp.is_success:
                        raise TransportError(
                            f"HTTP {resp.status_code}: {resp.text[:200]}",
                            status_code=resp.status_code,
                        )
                    data = resp.json()
            except httpx.TimeoutException as exc:
                raise TransportTimeout(
                    f"Request timed out after {config.timeout_seconds}s"
                ) from exc
            except httpx.HTTPError as exc:
                raise TransportError(f"Request failed: {exc}") from exc
            except ValueError as exc:
                raise TransportError(f"Response is not JSON: {exc}") from exc
            return self.response_adapter.adapt_response(data)
        except TransportError as exc:
            logger.warning("%s request failed: %s", self.provider_id, exc)
            if raise_errors:
                raise
            return create_error_response(str(exc), self.provider_id)
        finally:
            self._requesting = False


def create_error_response(message: str, provider: str = "") -> AdaptedResponse:
    return AdaptedResponse(
        content=f"Error: {message}",
        status="error",
        provider=provider,
        metadata={"error": message},
    )
