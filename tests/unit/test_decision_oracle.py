"""
Unit tests for decision oracles.

WHAT: Test rule-based evaluation and selection, and LLM output validation with fallback
WHY: Workflows trust the verdict shape; malformed model output must never reach them
HOW: RuleBasedOracle directly; LLMDecisionOracle over MockLLMProvider
"""

from decimal import Decimal

import pytest

from agent_market.llm.types import ProviderTimeoutError
from agent_market.models.agent import CounterpartRef
from agent_market.models.listing import Listing, ListingStatus, ListingSummary
from agent_market.models.negotiation import Candidate, Offer, PurchaseConstraints
from agent_market.services.decision_oracle import LLMDecisionOracle, RuleBasedOracle, midpoint
from agent_market.utils.exceptions import OracleUnavailableError
from tests.fixtures.mock_llm import MockLLMProvider


def _listing(price="100", currency="HBAR") -> Listing:
    return Listing(
        listing_id="listing-camera",
        title="Vintage film camera",
        price=price,
        currency=currency,
        status=ListingStatus.ACTIVE,
        seller_id="seller-agent",
    )


def _offer(price, currency="HBAR") -> Offer:
    return Offer(listing_id="listing-camera", proposer_id="buyer-1", price=price, currency=currency)


def _candidate(listing_id, title, price, currency="HBAR", description="") -> Candidate:
    return Candidate(
        listing=ListingSummary(
            listing_id=listing_id,
            title=title,
            description=description,
            price=price,
            currency=currency,
            seller_id="seller-agent",
        ),
        counterpart=CounterpartRef(agent_id="seller-agent", endpoint="local://seller-agent"),
    )


@pytest.mark.unit
class TestRuleBasedEvaluation:
    """Test the threshold rules."""

    @pytest.mark.asyncio
    async def test_accept_at_threshold(self):
        verdict = await RuleBasedOracle().evaluate_offer(_listing(), _offer("90"))

        assert verdict.action == "accept"
        assert verdict.acceptable is True
        assert verdict.source == "oracle"

    @pytest.mark.asyncio
    async def test_counter_at_midpoint(self):
        verdict = await RuleBasedOracle().evaluate_offer(_listing(), _offer("85"))

        assert verdict.action == "counter"
        assert verdict.counter_price == Decimal("92.50")
        assert verdict.acceptable is False

    @pytest.mark.asyncio
    async def test_counter_rounds_half_up(self):
        verdict = await RuleBasedOracle().evaluate_offer(_listing(), _offer("88.75"))

        assert verdict.counter_price == Decimal("94.38")

    @pytest.mark.asyncio
    async def test_reject_below_floor(self):
        verdict = await RuleBasedOracle().evaluate_offer(_listing(), _offer("79.99"))

        assert verdict.action == "reject"
        assert verdict.counter_price is None

    @pytest.mark.asyncio
    async def test_reject_currency_mismatch(self):
        verdict = await RuleBasedOracle().evaluate_offer(_listing(), _offer("100", currency="USDC"))

        assert verdict.action == "reject"

    def test_custom_thresholds(self):
        oracle = RuleBasedOracle(accept_threshold=0.95, counter_floor=0.5)

        assert oracle.evaluate_sync(_listing(), _offer("90")).action == "counter"
        assert oracle.evaluate_sync(_listing(), _offer("50")).action == "counter"
        assert oracle.evaluate_sync(_listing(), _offer("95")).action == "accept"

    def test_midpoint(self):
        assert midpoint(Decimal("85"), Decimal("92.50")) == Decimal("88.75")


@pytest.mark.unit
class TestRuleBasedSelection:
    """Test intent matching and ranking."""

    @pytest.mark.asyncio
    async def test_selects_matching_listing(self):
        candidates = [
            _candidate("listing-lamp", "Desk lamp", "20"),
            _candidate("listing-camera", "Vintage film camera", "100"),
        ]

        selection = await RuleBasedOracle().select_best(candidates, PurchaseConstraints(intent="vintage camera"))

        assert selection.listing_id == "listing-camera"

    @pytest.mark.asyncio
    async def test_prefers_affordable_then_cheaper(self):
        candidates = [
            _candidate("listing-a", "Film camera", "300"),
            _candidate("listing-b", "Film camera", "120"),
            _candidate("listing-c", "Film camera", "100"),
        ]
        constraints = PurchaseConstraints(intent="film camera", budget="110")

        selection = await RuleBasedOracle().select_best(candidates, constraints)

        assert selection.listing_id == "listing-c"

    @pytest.mark.asyncio
    async def test_no_match_returns_none(self):
        candidates = [_candidate("listing-lamp", "Desk lamp", "20")]

        assert await RuleBasedOracle().select_best(candidates, PurchaseConstraints(intent="guitar")) is None

    @pytest.mark.asyncio
    async def test_currency_filter(self):
        candidates = [_candidate("listing-camera", "Vintage film camera", "100", currency="USDC")]
        constraints = PurchaseConstraints(intent="camera", currency="hbar")

        assert await RuleBasedOracle().select_best(candidates, constraints) is None


@pytest.mark.unit
class TestLLMDecisionOracle:
    """Test model output validation and fallback."""

    def _oracle(self, provider):
        return LLMDecisionOracle(provider, RuleBasedOracle())

    @pytest.mark.asyncio
    async def test_valid_json_verdict_used(self):
        provider = MockLLMProvider(responses=['{"action": "counter", "counter_price": 95, "message": "Meet me at 95"}'])

        verdict = await self._oracle(provider).evaluate_offer(_listing(), _offer("85"))

        assert verdict.action == "counter"
        assert verdict.counter_price == Decimal("95.00")
        assert verdict.source == "oracle"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_camel_case_counter_offer_accepted(self):
        provider = MockLLMProvider(responses=['```json\n{"action": "Counter", "counterOffer": "96.5"}\n```'])

        verdict = await self._oracle(provider).evaluate_offer(_listing(), _offer("85"))

        assert verdict.counter_price == Decimal("96.50")

    @pytest.mark.asyncio
    async def test_malformed_output_falls_back_to_rules(self):
        provider = MockLLMProvider(responses=["not json"])

        verdict = await self._oracle(provider).evaluate_offer(_listing(), _offer("85"))

        assert verdict.source == "fallback"
        assert verdict.action == "counter"
        assert verdict.counter_price == Decimal("92.50")

    @pytest.mark.asyncio
    async def test_invalid_action_falls_back(self):
        provider = MockLLMProvider(responses=['{"action": "maybe"}'])

        verdict = await self._oracle(provider).evaluate_offer(_listing(), _offer("95"))

        assert verdict.source == "fallback"
        assert verdict.action == "accept"

    @pytest.mark.asyncio
    async def test_counter_outside_range_falls_back(self):
        provider = MockLLMProvider(responses=['{"action": "counter", "counter_price": 150}'])

        verdict = await self._oracle(provider).evaluate_offer(_listing(), _offer("85"))

        assert verdict.source == "fallback"
        assert verdict.counter_price == Decimal("92.50")

    @pytest.mark.asyncio
    async def test_bad_provider_response_falls_back(self):
        provider = MockLLMProvider(should_fail=True)

        verdict = await self._oracle(provider).evaluate_offer(_listing(), _offer("85"))

        assert verdict.source == "fallback"

    @pytest.mark.asyncio
    async def test_provider_outage_raises_unavailable(self):
        provider = MockLLMProvider(should_fail=True, error=ProviderTimeoutError("slow"))

        with pytest.raises(OracleUnavailableError):
            await self._oracle(provider).evaluate_offer(_listing(), _offer("85"))

    @pytest.mark.asyncio
    async def test_selection_uses_model_choice(self):
        provider = MockLLMProvider(responses=['{"listing_id": "listing-lamp", "reason": "cheapest"}'])
        candidates = [
            _candidate("listing-lamp", "Desk lamp", "20"),
            _candidate("listing-camera", "Vintage film camera", "100"),
        ]

        selection = await self._oracle(provider).select_best(candidates, PurchaseConstraints(intent="camera"))

        assert selection.listing_id == "listing-lamp"
        assert selection.source == "oracle"

    @pytest.mark.asyncio
    async def test_selection_of_unknown_id_falls_back(self):
        provider = MockLLMProvider(responses=['{"listing_id": "listing-made-up"}'])
        candidates = [_candidate("listing-camera", "Vintage film camera", "100")]

        selection = await self._oracle(provider).select_best(candidates, PurchaseConstraints(intent="camera"))

        assert selection.listing_id == "listing-camera"
        assert selection.source == "fallback"

    @pytest.mark.asyncio
    async def test_selection_of_nothing(self):
        provider = MockLLMProvider(responses=['{"listing_id": null, "reason": "no match"}'])
        candidates = [_candidate("listing-camera", "Vintage film camera", "100")]

        assert await self._oracle(provider).select_best(candidates, PurchaseConstraints(intent="camera")) is None
