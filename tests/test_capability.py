"""
Test: retry/timeout wrapper and response parsing helpers.
"""
import asyncio

import pytest

from checkmate.exceptions import CapabilityError
from checkmate.services.capability import (
    RetryingCapability,
    extract_json_array,
    extract_json_object,
    strip_code_fences,
)
from conftest import FakeCapability


def flaky(failures: int, answer: str = "ok"):
    state = {"calls": 0}

    def responder(prompt, images):
        state["calls"] += 1
        if state["calls"] <= failures:
            return RuntimeError(f"boom {state['calls']}")
        return answer

    return responder


class SlowCapability(FakeCapability):
    def __init__(self, delay: float):
        super().__init__(lambda prompt, images: "late")
        self.delay = delay

    async def invoke(self, prompt, images=None):
        await asyncio.sleep(self.delay)
        return await super().invoke(prompt, images)


class TestRetryingCapability:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        inner = FakeCapability(flaky(0))
        assert await RetryingCapability(inner, backoff_seconds=0).invoke("p") == "ok"
        assert len(inner.calls) == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        inner = FakeCapability(flaky(2))
        assert await RetryingCapability(inner, max_attempts=3, backoff_seconds=0).invoke("p") == "ok"
        assert len(inner.calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_capability_error(self):
        inner = FakeCapability(flaky(5))
        with pytest.raises(CapabilityError) as exc_info:
            await RetryingCapability(inner, max_attempts=3, backoff_seconds=0).invoke("p")
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.original_error, RuntimeError)
        assert len(inner.calls) == 3

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr("checkmate.services.capability.asyncio.sleep", fake_sleep)
        inner = FakeCapability(flaky(5))
        with pytest.raises(CapabilityError):
            await RetryingCapability(inner, max_attempts=3, backoff_seconds=1.0).invoke("p")
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self):
        retrying = RetryingCapability(SlowCapability(delay=1.0), max_attempts=2, backoff_seconds=0, timeout_seconds=0.01)
        with pytest.raises(CapabilityError) as exc_info:
            await retrying.invoke("p")
        assert isinstance(exc_info.value.original_error, asyncio.TimeoutError)


class TestParsing:
    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_object_surrounded_by_prose(self):
        assert extract_json_object('Here you go: {"a": {"b": 2}} thanks') == {"a": {"b": 2}}

    def test_object_missing(self):
        assert extract_json_object("no json here") is None

    def test_object_invalid(self):
        assert extract_json_object("{not: valid}") is None

    def test_object_none(self):
        assert extract_json_object(None) is None

    def test_array(self):
        assert extract_json_array('```json\n[{"number": 1}]\n```') == [{"number": 1}]

    def test_array_missing(self):
        assert extract_json_array('{"number": 1}') is None
