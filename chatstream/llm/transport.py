"""
Transport sessions -- one in-flight streaming exchange with a provider.

A session turns a provider response into a single-pass async stream of
canonical ``StreamEvent`` objects while tracking:

  - cooperative cancellation through a ``CancellationToken``, checked at
    every read boundary and between records (never mid-parse);
  - progress figures (received count, rate, estimated remaining time);
  - the final ``SessionOutcome`` so callers can tell a clean end from an
    error end without relying on exceptions for cancellation.

Two implementations exist: ``HTTPStreamSession`` reads an ``httpx``
streaming response through a ``WireDecoder``; ``ScriptedStreamSession``
replays canned events with an artificial delay (mock mode, demos, tests).

A cancelled session discards any buffered-but-incomplete record; only a
clean end of stream flushes the decoder.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterator, Callable, Iterable

import httpx

from chatstream.llm.decoder import (
    DONE_SENTINEL,
    ChunkAdapter,
    RecordFraming,
    WireDecoder,
)
from chatstream.llm.types import EventKind, StreamEvent, StreamProgress
from chatstream.types import ProtocolError, TransportError, TransportTimeout

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[StreamProgress], None]


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a session."""

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._reason is None:
            self._reason = reason
            logger.debug("Cancellation requested: %s", reason)


class SessionOutcome(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class RequestSpec:
    """Everything needed to open one streaming HTTP request."""

    url: str
    body: dict
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    method: str = "POST"
    framing: RecordFraming = RecordFraming.LINE
    sentinel: str = DONE_SENTINEL


class TransportSession(ABC):
    """
    Base class for a single streaming exchange.

    Subclasses implement ``_produce`` (the raw event source) and
    ``_release`` (free the underlying connection).  The base class owns the
    cancellation checks, progress accounting and outcome bookkeeping.
    """

    def __init__(
        self,
        *,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        expected_total: int = 0,
    ) -> None:
        self.token = token or CancellationToken()
        self.progress = StreamProgress(total_chunks=expected_total)
        self.outcome = SessionOutcome.PENDING
        self.error: Exception | None = None
        self._on_progress = on_progress
        self._started_at = time.monotonic()
        self._iterator: AsyncIterator[StreamEvent] | None = None
        self._released = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stream(self) -> AsyncIterator[StreamEvent]:
        """
        Return the event stream.

        The stream is single-pass and not restartable: calling this a
        second time raises ``RuntimeError``.  Callers that need to replay
        events must buffer them.
        """
        if self._iterator is not None:
            raise RuntimeError("Session stream already consumed")
        self._iterator = self._run()
        return self._iterator

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation; observed at the next read boundary."""
        self.token.cancel(reason)

    @property
    def active(self) -> bool:
        return self.outcome is SessionOutcome.PENDING and not self._released

    async def aclose(self) -> None:
        """Release the session whether or not its stream was consumed."""
        if self._iterator is not None:
            try:
                await self._iterator.aclose()
            except RuntimeError:
                # Another task is mid-read; it releases at its next boundary.
                self.token.cancel("closed")
                return
        if self.outcome is SessionOutcome.PENDING:
            self.outcome = SessionOutcome.CANCELLED
        await self._release_once()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self) -> AsyncIterator[StreamEvent]:
        saw_end = False
        try:
            async for event in self._produce():
                if self.token.cancelled:
                    break
                self._record(event)
                saw_end = event.event_type is EventKind.END
                yield event
                if self.token.cancelled:
                    break
            if self.token.cancelled:
                self.outcome = SessionOutcome.CANCELLED
                logger.info("Stream cancelled: %s", self.token.reason)
            else:
                self.outcome = SessionOutcome.COMPLETED
        except Exception as exc:
            self.outcome = SessionOutcome.FAILED
            self.error = exc
            raise
        finally:
            # A consumer that stops right after END saw a clean finish.
            if self.outcome is SessionOutcome.PENDING:
                self.outcome = (
                    SessionOutcome.COMPLETED if saw_end else SessionOutcome.CANCELLED
                )
            await self._release_once()

    def _record(self, event: StreamEvent) -> None:
        p = self.progress
        p.received_chunks += 1
        p.total_chunks = max(p.total_chunks, p.received_chunks)
        p.elapsed = time.monotonic() - self._started_at
        if p.received_chunks > 1 and p.elapsed > 0:
            p.speed = p.received_chunks / p.elapsed
            p.estimated_time_remaining = (
                (p.total_chunks - p.received_chunks) / p.speed
            )
        if self._on_progress is not None:
            try:
                self._on_progress(replace(p))
            except Exception:
                logger.exception("Progress callback failed")

    async def _release_once(self) -> None:
        if self._released:
            return
        self._released = True
        await self._release()

    @abstractmethod
    def _produce(self) -> AsyncIterator[StreamEvent]:
        """Yield raw events; must check ``self.token`` at each read."""
        ...

    @abstractmethod
    async def _release(self) -> None:
        """Free the underlying connection."""
        ...


# ---------------------------------------------------------------------------
# HTTP sessions
# ---------------------------------------------------------------------------


class HTTPStreamSession(TransportSession):
    """A session reading an open ``httpx`` streaming response."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        decoder: WireDecoder,
        *,
        timeout: float,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        super().__init__(token=token, on_progress=on_progress)
        self._client = client
        self._response = response
        self._decoder = decoder
        self._timeout = timeout

    @property
    def decoder(self) -> WireDecoder:
        return self._decoder

    async def _produce(self) -> AsyncIterator[StreamEvent]:
        try:
            async for raw_bytes in self._response.aiter_bytes():
                if self.token.cancelled:
                    break
                for event in self._decoder.feed(raw_bytes):
                    yield event
                    if self.token.cancelled:
                        break
                if self._decoder.finished or self.token.cancelled:
                    break
        except httpx.TimeoutException as exc:
            raise TransportTimeout(
                f"No data received within {self._timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream read failed: {exc}") from exc

        if self.token.cancelled:
            dropped = self._decoder.discard()
            if dropped:
                logger.debug("Discarded %d buffered chars on cancel", len(dropped))
            return

        for event in self._decoder.flush():
            yield event

    async def _release(self) -> None:
        await self._response.aclose()
        await self._client.aclose()


def _error_excerpt(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text[:200]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
    return text[:200]


async def open_http_session(
    spec: RequestSpec,
    *,
    chunk_adapter: ChunkAdapter | None = None,
    token: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> HTTPStreamSession:
    """
    Send *spec* and return a session once the response headers arrive.

    Raises ``TransportError`` for connection failures and non-success
    statuses, ``TransportTimeout`` when the provider does not answer within
    ``spec.timeout``, and ``ProtocolError`` when the reply has no body to
    stream.  The connection is released on every failure path.
    """
    client = httpx.AsyncClient(timeout=spec.timeout, transport=http_transport)
    request = client.build_request(
        spec.method, spec.url, json=spec.body, headers=spec.headers
    )
    logger.info("Opening stream: %s %s", spec.method, spec.url)

    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as exc:
        await client.aclose()
        raise TransportTimeout(f"Request timed out after {spec.timeout}s") from exc
    except httpx.HTTPError as exc:
        await client.aclose()
        raise TransportError(f"Connection failed: {exc}") from exc

    if not response.is_success:
        try:
            body = await response.aread()
        except httpx.HTTPError:
            body = b""
        await response.aclose()
        await client.aclose()
        raise TransportError(
            f"HTTP {response.status_code}: {_error_excerpt(body) or response.reason_phrase}",
            status_code=response.status_code,
        )

    if response.status_code == 204 or response.headers.get("content-length") == "0":
        await response.aclose()
        await client.aclose()
        raise ProtocolError("Response has no stream body")

    decoder = WireDecoder(
        framing=spec.framing,
        chunk_adapter=chunk_adapter,
        sentinel=spec.sentinel,
    )
    return HTTPStreamSession(
        client,
        response,
        decoder,
        timeout=spec.timeout,
        token=token,
        on_progress=on_progress,
    )


# ---------------------------------------------------------------------------
# Scripted sessions
# ---------------------------------------------------------------------------


class ScriptedStreamSession(TransportSession):
    """
    Replays a fixed list of events, sleeping *delay* seconds before each.

    An ``Exception`` instance in the script is raised at its position, which
    lets tests and demos simulate a transport failure mid-stream.
    """

    def __init__(
        self,
        script: Iterable[StreamEvent | Exception],
        *,
        delay: float = 0.0,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        items = list(script)
        super().__init__(
            token=token,
            on_progress=on_progress,
            expected_total=sum(1 for i in items if isinstance(i, StreamEvent)),
        )
        self._script = items
        self._delay = delay

    async def _produce(self) -> AsyncIterator[StreamEvent]:
        for item in self._script:
            if self.token.cancelled:
                return
            if self._delay:
                await asyncio.sleep(self._delay)
            if self.token.cancelled:
                return
            if isinstance(item, Exception):
                raise item
            yield copy.deepcopy(item)

    async def _release(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Per-service holder
# ---------------------------------------------------------------------------


class Transport:
    """
    Holds the single open session of one service instance.

    Opening (or attaching) a new session cancels and releases the previous
    one.
    """

    def __init__(self, http_transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._http_transport = http_transport
        self._active: TransportSession | None = None

    @property
    def active(self) -> TransportSession | None:
        if self._active is not None and not self._active.active:
            self._active = None
        return self._active

    async def open(
        self,
        spec: RequestSpec,
        *,
        chunk_adapter: ChunkAdapter | None = None,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> HTTPStreamSession:
        await self.release()
        session = await open_http_session(
            spec,
            chunk_adapter=chunk_adapter,
            token=token,
            on_progress=on_progress,
            http_transport=self._http_transport,
        )
        self._active = session
        return session

    async def attach(self, session: TransportSession) -> TransportSession:
        """Make an already-built session (e.g. a scripted one) the open one."""
        await self.release()
        self._active = session
        return session

    def cancel(self, reason: str = "cancelled") -> None:
        if self._active is not None:
            self._active.cancel(reason)

    async def release(self) -> None:
        previous, self._active = self._active, None
        if previous is not None:
            previous.cancel("superseded")
            await previous.aclose()
