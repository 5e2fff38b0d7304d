"""
Unit tests for workflow transition tables.

WHAT: Test the generic table and the buyer/seller edges
WHY: Workflow edges are data; a wrong edge is a wrong workflow
HOW: Call next_step with hand-built states
"""

from decimal import Decimal

import pytest

from agent_market.agents.buyer_workflow import BUYER_TRANSITIONS
from agent_market.agents.seller_workflow import SELLER_TRANSITIONS
from agent_market.agents.state_machine import NoTransitionError, Transition, TransitionTable, always
from agent_market.models.agent import CounterpartRef
from agent_market.models.listing import Listing, ListingStatus, ListingSummary
from agent_market.models.negotiation import Candidate, Offer, OfferVerdict, PurchaseConstraints
from agent_market.models.workflow import BuyerState, BuyerStep, SellerState, SellerStep, WorkflowError


def _candidate() -> Candidate:
    return Candidate(
        listing=ListingSummary(
            listing_id="listing-camera", title="Camera", price="100", currency="HBAR", seller_id="seller-agent"
        ),
        counterpart=CounterpartRef(agent_id="seller-agent", endpoint="local://seller-agent"),
    )


def _error(step) -> WorkflowError:
    return WorkflowError(error_type="DiscoveryError", code="DISCOVERY_FAILED", message="none", step=step)


@pytest.mark.unit
class TestTransitionTable:
    """Test the generic table."""

    def test_first_passing_guard_wins(self):
        table = TransitionTable(
            [
                Transition("a", lambda ctx: ctx > 5, "big"),
                Transition("a", always, "small"),
            ],
            terminal=["big", "small"],
        )

        assert table.next_step("a", 10) == "big"
        assert table.next_step("a", 1) == "small"
        assert table.targets("a") == {"big", "small"}

    def test_terminal_state_stays(self):
        table = TransitionTable([Transition("a", always, "done")], terminal=["done"])

        assert table.next_step("done", None) == "done"
        assert table.is_terminal("done")

    def test_no_matching_guard_raises(self):
        table = TransitionTable([Transition("a", lambda ctx: False, "b")], terminal=["b"])

        with pytest.raises(NoTransitionError):
            table.next_step("a", None)

    def test_terminal_with_outgoing_edge_rejected(self):
        with pytest.raises(ValueError):
            TransitionTable([Transition("done", always, "a")], terminal=["done"])


@pytest.mark.unit
class TestBuyerTransitions:
    """Test buyer workflow edges."""

    def _state(self, **kwargs) -> BuyerState:
        return BuyerState(buyer_id="buyer-1", request=PurchaseConstraints(intent="camera"), **kwargs)

    def test_discover_edges(self):
        assert BUYER_TRANSITIONS.next_step(BuyerStep.DISCOVER, self._state(candidates=[_candidate()])) == BuyerStep.SELECT
        assert BUYER_TRANSITIONS.next_step(BuyerStep.DISCOVER, self._state(error=_error("discover"))) == BuyerStep.FAILED

    def test_negotiate_without_agreement_returns_to_select(self):
        state = self._state(candidates=[_candidate()])

        assert BUYER_TRANSITIONS.next_step(BuyerStep.NEGOTIATE, state) == BuyerStep.SELECT

    def test_negotiate_with_agreement_goes_to_pay(self):
        state = self._state(selected=_candidate(), agreed_price=Decimal("90.00"))

        assert BUYER_TRANSITIONS.next_step(BuyerStep.NEGOTIATE, state) == BuyerStep.PAY

    def test_terminal_steps(self):
        assert BUYER_TRANSITIONS.is_terminal(BuyerStep.COMPLETE)
        assert BUYER_TRANSITIONS.is_terminal(BuyerStep.FAILED)
        assert BUYER_TRANSITIONS.targets(BuyerStep.PAY) == {BuyerStep.COMPLETE, BuyerStep.FAILED}


@pytest.mark.unit
class TestSellerTransitions:
    """Test seller workflow edges."""

    def _listing(self, status) -> Listing:
        return Listing(listing_id="listing-camera", title="Camera", price="100", currency="HBAR",
                       status=status, seller_id="seller-agent")

    def _offer(self) -> Offer:
        return Offer(listing_id="listing-camera", proposer_id="buyer-1", price="90", currency="HBAR")

    def test_list_to_wait_when_active(self):
        state = SellerState(listing=self._listing(ListingStatus.ACTIVE))

        assert SELLER_TRANSITIONS.next_step(SellerStep.LIST, state) == SellerStep.WAIT

    def test_list_failure(self):
        state = SellerState(error=_error("list"))

        assert SELLER_TRANSITIONS.next_step(SellerStep.LIST, state) == SellerStep.FAILED

    def test_wait_prefers_payment_over_offers(self):
        state = SellerState(pending_offers=[self._offer()], payment_confirmed=True)

        assert SELLER_TRANSITIONS.next_step(SellerStep.WAIT, state) == SellerStep.SHIP

    def test_evaluate_edges(self):
        accept = SellerState(verdict=OfferVerdict(action="accept"))
        counter = SellerState(verdict=OfferVerdict(action="counter", counter_price="95"))

        assert SELLER_TRANSITIONS.next_step(SellerStep.EVALUATE, accept) == SellerStep.ACCEPT
        assert SELLER_TRANSITIONS.next_step(SellerStep.EVALUATE, counter) == SellerStep.WAIT

    def test_accept_waits_for_payment(self):
        assert SELLER_TRANSITIONS.next_step(SellerStep.ACCEPT, SellerState()) == SellerStep.WAIT

    def test_ship_failure_returns_to_wait(self):
        state = SellerState(error=_error("ship"))

        assert SELLER_TRANSITIONS.next_step(SellerStep.SHIP, state) == SellerStep.WAIT

    def test_no_ship_edge_without_payment(self):
        assert SellerStep.SHIP not in SELLER_TRANSITIONS.targets(SellerStep.EVALUATE)
        assert SELLER_TRANSITIONS.targets(SellerStep.SHIP) == {SellerStep.DONE, SellerStep.WAIT}
