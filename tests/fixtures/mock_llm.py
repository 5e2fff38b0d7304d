"""
Mock LLM provider for deterministic testing.

WHAT: Fake LLM provider that returns scripted responses
WHY: Test the decision oracle without a real LLM dependency
HOW: Implement LLMProvider protocol with canned responses or a scripted exception
"""

from typing import Dict, List

from agent_market.llm.types import ChatMessage, LLMResult, ProviderStatus, ProviderResponseError


class MockLLMProvider:
    """
    Mock LLM provider for testing with scripted responses.

    Can be configured to return specific responses or raise errors.
    """

    def __init__(
        self,
        responses: List[str] | None = None,
        should_fail: bool = False,
        error: Exception | None = None
    ):
        """
        Initialize mock provider.

        Args:
            responses: List of canned responses (cycled through)
            should_fail: If True, raise errors instead of responding
            error: Exception raised when should_fail is set (ProviderResponseError by default)
        """
        self.responses = responses or ["Mock response"]
        self.should_fail = should_fail
        self.error = error
        self.call_count = 0
        self.calls: List[Dict] = []
        self.closed = False

    async def ping(self) -> ProviderStatus:
        """Mock ping."""
        return ProviderStatus(
            available=not self.should_fail,
            base_url="http://mock:1234/v1",
            models=["mock-model"] if not self.should_fail else None,
            error="Mock failure" if self.should_fail else None
        )

    async def generate(
        self,
        messages: List[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
        stop: List[str] | None = None,
        model: str | None = None
    ) -> LLMResult:
        """Mock generate."""
        # Record call
        self.calls.append({
            "method": "generate",
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stop": stop,
            "model": model
        })

        if self.should_fail:
            raise self.error or ProviderResponseError("Mock provider error")

        # Return scripted response
        response_idx = self.call_count % len(self.responses)
        response_text = self.responses[response_idx]
        self.call_count += 1

        return LLMResult(
            text=response_text,
            usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
            model=model or "mock-model"
        )

    async def close(self) -> None:
        self.closed = True
