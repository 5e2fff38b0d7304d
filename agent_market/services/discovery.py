"""
Discovery gateways.

WHAT: Resolve a capability tag to counterpart endpoints
WHY: Buyers find sellers without hard-coded addresses
HOW: Static in-process agent card registry, or an HTTP registry via httpx with retries
"""

from typing import Protocol

import httpx
from pydantic import ValidationError

from ..models.agent import AgentCard, CounterpartRef
from ..utils.exceptions import DiscoveryError
from ..utils.retry import call_with_retry
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DiscoveryGateway(Protocol):
    """Resolves capability tags to counterparts."""

    async def lookup(self, capability_tag: str) -> list[CounterpartRef]:
        ...


class StaticDiscoveryGateway:
    """Agent cards registered in-process at startup."""

    def __init__(self, cards: list[AgentCard] | None = None):
        self._cards: dict[str, AgentCard] = {}
        for card in cards or []:
            self.register(card)

    def register(self, card: AgentCard) -> None:
        self._cards[card.agent_id] = card
        logger.info(f"Agent card registered: {card.agent_id} ({', '.join(card.capabilities)})")

    def unregister(self, agent_id: str) -> None:
        self._cards.pop(agent_id, None)

    def cards(self) -> list[AgentCard]:
        return list(self._cards.values())

    async def lookup(self, capability_tag: str) -> list[CounterpartRef]:
        matches = [
            card.to_counterpart()
            for card in self._cards.values()
            if capability_tag in card.capabilities
        ]
        logger.info(f"Discovery lookup '{capability_tag}': {len(matches)} counterpart(s)")
        return matches


class HttpDiscoveryGateway:
    """
    Registry service client.

    Expects GET {base_url}/agents?capability=<tag> to return either a list of
    agent cards or {"agents": [...]}.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        client: httpx.AsyncClient | None = None
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def _fetch(self, capability_tag: str) -> httpx.Response:
        response = await self.client.get(
            f"{self.base_url}/agents",
            params={"capability": capability_tag}
        )
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def lookup(self, capability_tag: str) -> list[CounterpartRef]:
        """
        Query the registry.

        Raises:
            DiscoveryError: Registry unreachable after retries or returned an error
        """
        try:
            response = await call_with_retry(
                lambda: self._fetch(capability_tag),
                retry_on=(httpx.TransportError, httpx.HTTPStatusError),
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                description=f"Discovery lookup '{capability_tag}'",
            )
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Discovery registry unavailable: {e}") from e

        if response.status_code >= 400:
            raise DiscoveryError(
                f"Discovery registry returned HTTP {response.status_code}",
                details={"status_code": response.status_code}
            )

        try:
            body = response.json()
        except ValueError as e:
            raise DiscoveryError("Discovery registry returned invalid JSON") from e

        entries = body.get("agents", []) if isinstance(body, dict) else body
        counterparts = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                card = AgentCard.model_validate(entry)
            except ValidationError as e:
                logger.warning(f"Skipping malformed agent card: {e.error_count()} error(s)")
                continue
            if capability_tag in card.capabilities:
                counterparts.append(card.to_counterpart())

        logger.info(f"Discovery lookup '{capability_tag}': {len(counterparts)} counterpart(s)")
        return counterparts

    async def close(self):
        await self.client.aclose()
