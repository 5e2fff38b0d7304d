"""
OpenAI-compatible chat completion provider.

WHAT: LLM inference against LM Studio, OpenRouter or Groq
WHY: All three speak the same /chat/completions contract; only URL, key and model differ
HOW: HTTPX client with retries and exponential backoff, thinking-block stripping
"""

import httpx
import json
import asyncio

from .types import (
    ChatMessage,
    LLMResult,
    ProviderStatus,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderResponseError,
)
from ..utils.text import strip_thinking
from ..utils.logger import get_logger

logger = get_logger(__name__)


class OpenAICompatibleProvider:
    """Chat completion provider with retry logic."""

    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        default_model: str,
        api_key: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        client: httpx.AsyncClient | None = None
    ):
        """
        Initialize provider with an httpx client.

        Args:
            name: Provider label used in logs (lm_studio, openrouter, groq)
            base_url: API root, e.g. http://localhost:1234/v1
            default_model: Model used when generate() is not given one
            api_key: Bearer token, empty for local servers
            timeout: Read timeout in seconds
            max_retries: Attempts for timeouts, connection errors and 5xx
            retry_delay: Base delay for exponential backoff
            client: Optional preconfigured client (tests)
        """
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(5.0, read=self.timeout),
            limits=httpx.Limits(
                max_keepalive_connections=10,
                max_connections=20
            ),
            headers=headers
        )

    async def ping(self) -> ProviderStatus:
        """
        Check provider availability.

        Returns:
            ProviderStatus with availability and model list
        """
        try:
            response = await self.client.get(
                f"{self.base_url}/models",
                timeout=5.0
            )
            response.raise_for_status()
            data = response.json()

            models = [m.get("id") for m in data.get("data", [])]

            return ProviderStatus(
                available=True,
                base_url=self.base_url,
                models=models if models else None
            )
        except httpx.TimeoutException:
            logger.warning(f"{self.name} ping timed out")
            return ProviderStatus(
                available=False,
                base_url=self.base_url,
                error="Connection timeout"
            )
        except httpx.ConnectError:
            logger.warning(f"{self.name} not reachable")
            return ProviderStatus(
                available=False,
                base_url=self.base_url,
                error="Connection refused"
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{self.name} ping failed: {e}")
            return ProviderStatus(
                available=False,
                base_url=self.base_url,
                error=str(e)
            )

    async def generate(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
        stop: list[str] | None = None,
        model: str | None = None
    ) -> LLMResult:
        """
        Generate complete response.

        Args:
            messages: Conversation history
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            stop: Optional stop sequences
            model: Optional model name (uses default_model if not provided)

        Returns:
            LLMResult with text, usage, and model

        Raises:
            ProviderTimeoutError: Request timed out
            ProviderUnavailableError: Provider not reachable
            ProviderResponseError: Invalid response from provider
        """
        model_to_use = model or self.default_model

        payload = {
            "model": model_to_use,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }

        if stop:
            payload["stop"] = stop

        # Retry logic with exponential backoff
        for attempt in range(self.max_retries):
            try:
                response = await self.client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload
                )
                response.raise_for_status()
                data = response.json()

                raw_text = data["choices"][0]["message"]["content"] or ""
                usage = data.get("usage", {})
                response_model = data.get("model", model_to_use)

                text = strip_thinking(raw_text)

                logger.info(f"{self.name} generate success (model: {response_model}, tokens: {usage.get('total_tokens', 'unknown')})")

                return LLMResult(
                    text=text,
                    usage=usage,
                    model=response_model
                )

            except httpx.TimeoutException as e:
                logger.warning(f"{self.name} timeout (attempt {attempt + 1}/{self.max_retries})")
                if attempt == self.max_retries - 1:
                    raise ProviderTimeoutError(f"Request timed out after {self.max_retries} attempts") from e
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

            except httpx.ConnectError as e:
                logger.error(f"{self.name} connection refused (attempt {attempt + 1}/{self.max_retries})")
                if attempt == self.max_retries - 1:
                    raise ProviderUnavailableError(f"{self.name} is not reachable") from e
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500:
                    logger.error(f"{self.name} server error {e.response.status_code} (attempt {attempt + 1}/{self.max_retries})")
                    if attempt == self.max_retries - 1:
                        raise ProviderResponseError(f"Server error: {e.response.status_code}") from e
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
                else:
                    # Client errors don't retry
                    raise ProviderResponseError(f"HTTP {e.response.status_code}: {e.response.text}") from e

            except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
                logger.error(f"Invalid response from {self.name}: {e}")
                raise ProviderResponseError(f"Invalid response format: {e}") from e

        raise ProviderUnavailableError(f"{self.name} made no attempts (max_retries={self.max_retries})")

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
