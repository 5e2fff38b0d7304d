"""
Decision oracles.

WHAT: Product selection and offer evaluation for both workflows
WHY: Workflows need a structured verdict; the protocol must work with a trivial rule too
HOW: Deterministic threshold rules, and an LLM oracle that validates its output and falls back to the rules
"""

import re
from decimal import Decimal
from typing import Any, Protocol

from pydantic import ValidationError

from ..agents.prompts import render_offer_evaluation_prompt, render_selection_prompt
from ..llm.provider import LLMProvider
from ..llm.types import (
    ProviderDisabledError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from ..models.listing import Listing, quantize_price
from ..models.negotiation import Candidate, Offer, OfferVerdict, PurchaseConstraints, Selection
from ..utils.exceptions import OracleUnavailableError
from ..utils.text import extract_json_object
from ..utils.logger import get_logger

logger = get_logger(__name__)

_STOPWORDS = {
    "the", "and", "for", "with", "want", "need", "buy", "looking", "some", "any",
    "please", "under", "below", "than", "that", "this", "get", "find", "me", "a", "an",
}


def midpoint(a: Decimal, b: Decimal) -> Decimal:
    return quantize_price((Decimal(a) + Decimal(b)) / 2)


def intent_keywords(intent: str) -> set[str]:
    words = re.findall(r"[a-z0-9]+", intent.lower())
    return {w for w in words if len(w) >= 3 and w not in _STOPWORDS and not w.isdigit()}


class DecisionOracle(Protocol):
    """Structured judgments for selection and offer evaluation."""

    async def select_best(
        self,
        candidates: list[Candidate],
        constraints: PurchaseConstraints
    ) -> Selection | None:
        ...

    async def evaluate_offer(self, listing: Listing, offer: Offer) -> OfferVerdict:
        ...


class RuleBasedOracle:
    """
    Deterministic oracle.

    Selection: candidates in the requested currency whose text shares a
    keyword with the intent (all of them if the intent has no keywords),
    ranked by likely affordability, keyword overlap, price, then id.
    Evaluation: ratio >= accept_threshold accepts, ratio >= counter_floor
    counters at the midpoint of asking and offered price, anything lower rejects.
    """

    def __init__(
        self,
        *,
        accept_threshold: float = 0.9,
        counter_floor: float = 0.8
    ):
        self.accept_threshold = Decimal(str(accept_threshold))
        self.counter_floor = Decimal(str(counter_floor))

    async def select_best(
        self,
        candidates: list[Candidate],
        constraints: PurchaseConstraints
    ) -> Selection | None:
        return self.select_sync(candidates, constraints)

    def select_sync(
        self,
        candidates: list[Candidate],
        constraints: PurchaseConstraints,
        *,
        source: str = "oracle"
    ) -> Selection | None:
        pool = [
            c for c in candidates
            if constraints.currency is None or c.listing.currency == constraints.currency
        ]
        if not pool:
            return None

        keywords = intent_keywords(constraints.intent)

        def overlap(candidate: Candidate) -> int:
            text = f"{candidate.listing.title} {candidate.listing.description} {candidate.listing.category}"
            return len(keywords & intent_keywords(text))

        if keywords:
            pool = [c for c in pool if overlap(c) > 0]
            if not pool:
                return None

        def within_budget(candidate: Candidate) -> bool:
            if constraints.budget is None:
                return True
            return candidate.listing.price * self.accept_threshold <= constraints.budget

        best = min(
            pool,
            key=lambda c: (not within_budget(c), -overlap(c), c.listing.price, c.listing.listing_id)
        )
        reason = f"{best.listing.title} at {best.listing.price} {best.listing.currency} best matches '{constraints.intent}'"
        return Selection(listing_id=best.listing.listing_id, reason=reason, source=source)

    async def evaluate_offer(self, listing: Listing, offer: Offer) -> OfferVerdict:
        return self.evaluate_sync(listing, offer)

    def evaluate_sync(self, listing: Listing, offer: Offer, *, source: str = "oracle") -> OfferVerdict:
        if offer.currency != listing.currency:
            message = f"Offers must be in {listing.currency}."
            return OfferVerdict(action="reject", message=message, reasoning="currency mismatch", source=source)

        ratio = offer.price / listing.price
        if ratio >= self.accept_threshold:
            return OfferVerdict(
                action="accept",
                message=f"Deal! {offer.price} {offer.currency} works for me.",
                reasoning=f"offer is {ratio:.1%} of asking, at or above {self.accept_threshold:.0%}",
                source=source,
            )
        if ratio >= self.counter_floor:
            counter = midpoint(listing.price, offer.price)
            return OfferVerdict(
                action="counter",
                counter_price=counter,
                message=f"I can't go that low. How about {counter} {listing.currency}?",
                reasoning=f"offer is {ratio:.1%} of asking; splitting the difference",
                source=source,
            )
        return OfferVerdict(
            action="reject",
            message=f"Sorry, {offer.price} {offer.currency} is too low for this item.",
            reasoning=f"offer is {ratio:.1%} of asking, below {self.counter_floor:.0%}",
            source=source,
        )


def _normalize_verdict_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Accept camelCase replies (counterOffer) alongside snake_case."""
    if "counter_price" not in data:
        for alias in ("counterOffer", "counter_offer", "counterPrice"):
            if alias in data:
                data = {**data, "counter_price": data[alias]}
                break
    if isinstance(data.get("action"), str):
        data = {**data, "action": data["action"].strip().lower()}
    return data


class LLMDecisionOracle:
    """
    LLM-backed oracle with a deterministic fallback.

    Any response that cannot be parsed into a valid verdict or selection is
    replaced by the rule-based result; provider outages raise OracleUnavailableError.
    """

    def __init__(
        self,
        provider: LLMProvider,
        fallback: RuleBasedOracle,
        *,
        temperature: float = 0.0,
        max_tokens: int = 512
    ):
        self.provider = provider
        self.fallback = fallback
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def _complete(self, messages) -> str | None:
        """Return model text, or None if the provider answered with garbage."""
        try:
            result = await self.provider.generate(
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens
            )
        except ProviderResponseError as e:
            logger.warning(f"Oracle provider returned an invalid response: {e}")
            return None
        except (ProviderTimeoutError, ProviderUnavailableError, ProviderDisabledError) as e:
            raise OracleUnavailableError(f"Decision oracle unavailable: {e}") from e
        return result.text

    async def select_best(
        self,
        candidates: list[Candidate],
        constraints: PurchaseConstraints
    ) -> Selection | None:
        if not candidates:
            return None

        text = await self._complete(render_selection_prompt(candidates, constraints))
        data = extract_json_object(text)
        known_ids = {c.listing.listing_id for c in candidates}

        if data is not None and "listing_id" in data:
            listing_id = data.get("listing_id")
            if listing_id in (None, "", "null"):
                logger.info("Oracle selected no listing")
                return None
            if listing_id in known_ids:
                return Selection(listing_id=listing_id, reason=str(data.get("reason", "")), source="oracle")
            logger.warning(f"Oracle selected unknown listing {listing_id}; using rule-based selection")
        else:
            logger.warning("Malformed oracle selection; using rule-based selection")

        return self.fallback.select_sync(candidates, constraints, source="fallback")

    async def evaluate_offer(self, listing: Listing, offer: Offer) -> OfferVerdict:
        text = await self._complete(render_offer_evaluation_prompt(
            listing,
            offer,
            accept_threshold=float(self.fallback.accept_threshold),
            counter_floor=float(self.fallback.counter_floor)
        ))
        data = extract_json_object(text)

        if data is not None:
            try:
                verdict = OfferVerdict.model_validate({**_normalize_verdict_keys(data), "source": "oracle"})
            except ValidationError as e:
                logger.warning(f"Oracle verdict failed validation ({e.error_count()} error(s)); using rule-based verdict")
            else:
                if verdict.action == "counter" and not (offer.price < verdict.counter_price <= listing.price):
                    logger.warning(
                        f"Oracle counter {verdict.counter_price} outside ({offer.price}, {listing.price}]; "
                        "using rule-based verdict"
                    )
                else:
                    logger.info(f"Oracle verdict for {listing.listing_id}: {verdict.action}")
                    return verdict
        else:
            logger.warning("Malformed oracle verdict; using rule-based verdict")

        return self.fallback.evaluate_sync(listing, offer, source="fallback")
