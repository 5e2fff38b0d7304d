"""
Unit tests for timeout, retry and JSON extraction helpers.

WHAT: Test with_timeout, call_with_retry and extract_json_object
WHY: Every external call goes through these; their failure mapping must be exact
HOW: Small coroutines that sleep or fail on demand
"""

import asyncio

import pytest

from agent_market.utils.exceptions import ExternalCallTimeoutError
from agent_market.utils.retry import call_with_retry, with_timeout
from agent_market.utils.text import extract_json_object, strip_thinking


@pytest.mark.unit
class TestWithTimeout:
    """Test bounded awaits."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1.0, "oracle") == 42

    @pytest.mark.asyncio
    async def test_timeout_maps_to_external_error(self):
        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(ExternalCallTimeoutError) as exc_info:
            await with_timeout(slow(), 0.01, "settlement")

        assert exc_info.value.code == "EXTERNAL_TIMEOUT"
        assert exc_info.value.details["collaborator"] == "settlement"


@pytest.mark.unit
class TestCallWithRetry:
    """Test retry loop."""

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("down")
            return "ok"

        result = await call_with_retry(
            flaky, retry_on=(ConnectionError,), max_retries=3, retry_delay=0, description="flaky"
        )

        assert result == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        async def down():
            attempts.append(1)
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await call_with_retry(down, retry_on=(ConnectionError,), max_retries=2, retry_delay=0, description="down")

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_not_retried(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await call_with_retry(broken, retry_on=(ConnectionError,), max_retries=3, retry_delay=0, description="broken")

        assert len(attempts) == 1


@pytest.mark.unit
class TestExtractJson:
    """Test JSON recovery from model output."""

    def test_plain_json(self):
        assert extract_json_object('{"action": "accept"}') == {"action": "accept"}

    def test_fenced_json(self):
        assert extract_json_object('Sure!\n```json\n{"action": "reject"}\n```') == {"action": "reject"}

    def test_json_after_thinking(self):
        text = '<think>the offer is fine</think>Verdict: {"action": "accept"} done'

        assert extract_json_object(text) == {"action": "accept"}

    def test_no_json(self):
        assert extract_json_object("not json") is None
        assert extract_json_object("") is None
        assert extract_json_object("[1, 2]") is None

    def test_strip_thinking(self):
        assert strip_thinking("<thinking>hmm</thinking> Hello") == "Hello"
