"""Tests for chatstream.llm.retry.with_retry."""

from __future__ import annotations

import pytest

from chatstream.llm.retry import with_retry
from chatstream.types import ConfigurationError, TransportError


class _Flaky:
    def __init__(self, failures: int, exc: Exception):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        fn = _Flaky(2, TransportError("flaky"))
        assert await with_retry(fn, retries=3, delay=0) == "ok"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_reraises_last_error(self):
        fn = _Flaky(5, TransportError("still down"))
        with pytest.raises(TransportError, match="still down"):
            await with_retry(fn, retries=2, delay=0)
        assert fn.calls == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        fn = _Flaky(1, ConfigurationError("bad"))
        with pytest.raises(ConfigurationError):
            await with_retry(fn, retries=3, delay=0, retry_on=(TransportError,))
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_retries_must_be_positive(self):
        with pytest.raises(ValueError):
            await with_retry(_Flaky(0, TransportError("x")), retries=0)

    @pytest.mark.asyncio
    async def test_last_error_propagates_unchanged(self, caplog):
        error = TransportError("gone")
        fn = _Flaky(3, error)
        with caplog.at_level("WARNING", logger="chatstream.llm.retry"):
            with pytest.raises(TransportError) as info:
                await with_retry(fn, retries=3, delay=0)
        assert info.value is error
        assert fn.calls == 3
        assert caplog.text.count("retrying") == 2
