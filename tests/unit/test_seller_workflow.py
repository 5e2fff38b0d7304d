"""
Unit tests for the seller workflow.

WHAT: Test listing, offer evaluation, duplicate handling, shipping and expiry
WHY: Every offer must get exactly one reply and a listing must ship at most once
HOW: SellerWorkflow over an in-memory store with rule-based or scripted oracles
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from agent_market.agents.seller_workflow import (
    CONCURRENT_RESERVATION,
    CURRENCY_MISMATCH,
    LISTING_UNAVAILABLE,
    ORACLE_UNAVAILABLE,
    PAYMENT_NOT_CONFIRMED,
    ROUND_CAP_EXCEEDED,
    ROUND_CONFLICT,
    SHIPMENT_FAILED,
    STALE_ROUND,
    SellerWorkflow,
)
from agent_market.models.listing import ListingStatus
from agent_market.models.message import NegotiationReply, PaymentNotice, PurchaseOffer, ShipmentNotice
from agent_market.models.negotiation import OfferVerdict, SessionOutcome
from agent_market.models.payment import PaymentStatus
from agent_market.models.workflow import SellerStep
from agent_market.services.decision_oracle import RuleBasedOracle
from agent_market.services.negotiation_protocol import expect_payload
from agent_market.utils.exceptions import ListingConflictError, OracleUnavailableError
from tests.fixtures.fakes import ScriptedOracle

LISTING_ID = "listing-camera"


def _offer(price, buyer_id="buyer-1", round_number=1, currency="HBAR") -> PurchaseOffer:
    return PurchaseOffer(
        listing_id=LISTING_ID,
        offer_price=price,
        currency=currency,
        buyer_id=buyer_id,
        round_number=round_number,
    )


def _reply(envelope) -> NegotiationReply:
    return expect_payload(envelope, NegotiationReply)


@pytest.fixture
def make_workflow(store, payments, archive, test_settings):
    def factory(oracle=None, **setting_overrides):
        settings = test_settings.model_copy(update=setting_overrides) if setting_overrides else test_settings
        return SellerWorkflow(
            "seller-agent",
            store=store,
            oracle=oracle or RuleBasedOracle(),
            payments=payments,
            archive=archive,
            settings=settings,
            seller_address="0.0.2002",
        )
    return factory


async def _listed(make_workflow, camera_draft, **kwargs) -> SellerWorkflow:
    workflow = make_workflow(**kwargs)
    await workflow.list_product(camera_draft, listing_id=LISTING_ID)
    return workflow


def _pay(payments, buyer_id="buyer-1", amount="90.00", ref="tx-1"):
    record = payments.begin(LISTING_ID, buyer_id, Decimal(amount), "HBAR", "0.0.2002")
    record = payments.confirm(record.payment_id, ref)
    return PaymentNotice(
        listing_id=LISTING_ID,
        buyer_id=buyer_id,
        payment_id=record.payment_id,
        settlement_ref=ref,
        amount=record.amount,
        currency="HBAR",
    )


@pytest.mark.unit
class TestListing:
    """Test the list step."""

    @pytest.mark.asyncio
    async def test_list_product_publishes_and_waits(self, make_workflow, camera_draft, store):
        workflow = await _listed(make_workflow, camera_draft)

        assert workflow.state.step == SellerStep.WAIT
        assert store.get(LISTING_ID).status == ListingStatus.ACTIVE
        assert store.get(LISTING_ID).seller_address == "0.0.2002"

    @pytest.mark.asyncio
    async def test_list_conflict_fails_workflow(self, make_workflow, camera_draft, store):
        await _listed(make_workflow, camera_draft)
        workflow = make_workflow()
        changed = camera_draft.model_copy(update={"title": "Different camera"})

        with pytest.raises(ListingConflictError):
            await workflow.list_product(changed, listing_id=LISTING_ID)

        assert workflow.state.step == SellerStep.FAILED
        assert workflow.state.error.code == "LISTING_CONFLICT"


@pytest.mark.unit
class TestOffers:
    """Test offer evaluation and session tracking."""

    @pytest.mark.asyncio
    async def test_accept_reserves_listing(self, make_workflow, camera_draft, store, archive):
        workflow = await _listed(make_workflow, camera_draft)

        reply = _reply(await workflow.handle_offer(_offer("90")))

        assert reply.accepted is True
        assert reply.session_id == "listing-camera:buyer-1"
        listing = store.get(LISTING_ID)
        assert listing.status == ListingStatus.RESERVED
        assert listing.reserved_by == "listing-camera:buyer-1"
        assert workflow.state.step == SellerStep.WAIT
        archived = archive.list_for_listing(LISTING_ID)
        assert archived[0].outcome == SessionOutcome.AGREED
        assert archived[0].agreed_price == Decimal("90.00")

    @pytest.mark.asyncio
    async def test_counter_keeps_session_open(self, make_workflow, camera_draft, store):
        workflow = await _listed(make_workflow, camera_draft)

        reply = _reply(await workflow.handle_offer(_offer("85")))

        assert reply.action == "counter"
        assert reply.counter_price == Decimal("92.50")
        session = workflow.sessions["listing-camera:buyer-1"]
        assert session.is_open
        assert session.round_count == 1
        assert [entry.proposer_id for entry in session.history] == ["buyer-1", "seller-agent"]
        assert store.get(LISTING_ID).status == ListingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_duplicate_offer_replays_reply(self, make_workflow, camera_draft):
        oracle = ScriptedOracle([OfferVerdict(action="counter", counter_price="95")])
        workflow = await _listed(make_workflow, camera_draft, oracle=oracle)

        first = await workflow.handle_offer(_offer("85"))
        second = await workflow.handle_offer(_offer("85"))

        assert second.message_id == first.message_id
        assert _reply(second).counter_price == Decimal("95.00")
        assert len(oracle.evaluated) == 1
        assert workflow.sessions["listing-camera:buyer-1"].round_count == 1

    @pytest.mark.asyncio
    async def test_out_of_order_round_rejected(self, make_workflow, camera_draft):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("85"))

        reply = _reply(await workflow.handle_offer(_offer("88", round_number=3)))

        assert reply.action == "reject"
        assert reply.error_code == STALE_ROUND
        assert workflow.sessions["listing-camera:buyer-1"].is_open

    @pytest.mark.asyncio
    async def test_round_cap_closes_session(self, make_workflow, camera_draft, archive):
        workflow = await _listed(make_workflow, camera_draft)

        for round_number in (1, 2, 3):
            reply = _reply(await workflow.handle_offer(_offer("85", round_number=round_number)))
            assert reply.action == "counter"

        assert workflow.sessions["listing-camera:buyer-1"].outcome == SessionOutcome.ABANDONED

        over = _reply(await workflow.handle_offer(_offer("85", round_number=4)))
        assert over.action == "reject"
        assert over.error_code == ROUND_CAP_EXCEEDED
        assert archive.list_for_listing(LISTING_ID)[0].round_count == 3

    @pytest.mark.asyncio
    async def test_second_buyer_rejected_while_reserved(self, make_workflow, camera_draft):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("95", buyer_id="buyer-1"))

        reply = _reply(await workflow.handle_offer(_offer("100", buyer_id="buyer-2")))

        assert reply.action == "reject"
        assert reply.error_code == CONCURRENT_RESERVATION

    @pytest.mark.asyncio
    async def test_duplicate_after_accept_replays(self, make_workflow, camera_draft):
        workflow = await _listed(make_workflow, camera_draft)
        first = await workflow.handle_offer(_offer("95"))

        again = await workflow.handle_offer(_offer("95"))

        assert again.message_id == first.message_id
        assert _reply(again).accepted is True

    @pytest.mark.asyncio
    async def test_answered_round_with_new_price_rejected(self, make_workflow, camera_draft):
        oracle = ScriptedOracle([OfferVerdict(action="counter", counter_price="95")])
        workflow = await _listed(make_workflow, camera_draft, oracle=oracle)
        await workflow.handle_offer(_offer("85"))

        reply = _reply(await workflow.handle_offer(_offer("10")))

        assert reply.action == "reject"
        assert reply.error_code == ROUND_CONFLICT
        assert len(oracle.evaluated) == 1
        session = workflow.sessions["listing-camera:buyer-1"]
        assert session.is_open
        assert session.offer_terms == {1: "85.00 HBAR"}

    @pytest.mark.asyncio
    async def test_agreed_round_cannot_be_rewritten(self, make_workflow, camera_draft, store, archive):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("90"))

        reply = _reply(await workflow.handle_offer(_offer("10")))

        assert reply.accepted is False
        assert reply.error_code == ROUND_CONFLICT
        assert store.get(LISTING_ID).reserved_by == "listing-camera:buyer-1"
        assert archive.latest_agreement("listing-camera:buyer-1").agreed_price == Decimal("90.00")
        assert len(archive.list_for_listing(LISTING_ID)) == 1

    @pytest.mark.asyncio
    async def test_new_negotiation_after_rejection(self, make_workflow, camera_draft, store, archive):
        workflow = await _listed(make_workflow, camera_draft)
        rejected = _reply(await workflow.handle_offer(_offer("50")))
        assert rejected.action == "reject"

        reply = _reply(await workflow.handle_offer(_offer("90")))

        assert reply.accepted is True
        assert store.get(LISTING_ID).reserved_by == "listing-camera:buyer-1"
        outcomes = [s.outcome for s in archive.list_for_listing(LISTING_ID)]
        assert outcomes == [SessionOutcome.ABANDONED, SessionOutcome.AGREED]

    @pytest.mark.asyncio
    async def test_repeated_rejected_offer_replays(self, make_workflow, camera_draft, archive):
        workflow = await _listed(make_workflow, camera_draft)
        first = await workflow.handle_offer(_offer("50"))

        again = await workflow.handle_offer(_offer("50"))

        assert again.message_id == first.message_id
        assert len(archive.list_for_listing(LISTING_ID)) == 1

    @pytest.mark.asyncio
    async def test_later_round_of_closed_session_is_stale(self, make_workflow, camera_draft, store):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("50"))

        reply = _reply(await workflow.handle_offer(_offer("90", round_number=2)))

        assert reply.error_code == STALE_ROUND
        assert store.get(LISTING_ID).status == ListingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_resumed_holder_below_agreed_price_countered(self, make_workflow, camera_draft, store):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("90"))
        resumed = make_workflow()
        resumed.resume(store.get(LISTING_ID))

        reply = _reply(await resumed.handle_offer(_offer("10")))

        assert reply.action == "counter"
        assert reply.counter_price == Decimal("90.00")
        assert store.get(LISTING_ID).reserved_by == "listing-camera:buyer-1"

    @pytest.mark.asyncio
    async def test_resumed_workflow_accepts_holder(self, make_workflow, camera_draft, store):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("95"))
        resumed = make_workflow()
        resumed.resume(store.get(LISTING_ID))

        reply = _reply(await resumed.handle_offer(_offer("95")))

        assert resumed.state.step == SellerStep.WAIT
        assert reply.accepted is True
        assert store.get(LISTING_ID).reserved_by == "listing-camera:buyer-1"

    @pytest.mark.asyncio
    async def test_currency_mismatch(self, make_workflow, camera_draft):
        workflow = await _listed(make_workflow, camera_draft)

        reply = _reply(await workflow.handle_offer(_offer("100", currency="USDC")))

        assert reply.error_code == CURRENCY_MISMATCH

    @pytest.mark.asyncio
    async def test_oracle_outage_does_not_consume_round(self, make_workflow, camera_draft):
        oracle = ScriptedOracle([OracleUnavailableError("down"), OfferVerdict(action="accept")])
        workflow = await _listed(make_workflow, camera_draft, oracle=oracle)

        first = _reply(await workflow.handle_offer(_offer("90")))
        assert first.action == "reject"
        assert first.error_code == ORACLE_UNAVAILABLE
        assert workflow.sessions["listing-camera:buyer-1"].round_count == 0

        second = _reply(await workflow.handle_offer(_offer("90")))
        assert second.accepted is True
        assert len(oracle.evaluated) == 2

    @pytest.mark.asyncio
    async def test_oracle_timeout_maps_to_unavailable(self, make_workflow, camera_draft):
        oracle = ScriptedOracle([OfferVerdict(action="accept")], delay=1.0)
        workflow = await _listed(make_workflow, camera_draft, oracle=oracle, ORACLE_TIMEOUT_SECONDS=0.01)

        reply = _reply(await workflow.handle_offer(_offer("90")))

        assert reply.error_code == ORACLE_UNAVAILABLE


@pytest.mark.unit
class TestShipping:
    """Test payment-gated shipping."""

    @pytest.mark.asyncio
    async def test_confirmed_payment_ships_once(self, make_workflow, camera_draft, store, payments):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("90"))
        notice = _pay(payments)

        shipped = expect_payload(await workflow.handle_payment(notice), ShipmentNotice)
        again = expect_payload(await workflow.handle_payment(notice), ShipmentNotice)

        assert shipped.shipped is True
        assert shipped.tracking_number.startswith("TRACK-")
        assert again.tracking_number == shipped.tracking_number
        assert store.get(LISTING_ID).status == ListingStatus.SOLD
        assert workflow.state.step == SellerStep.DONE

    @pytest.mark.asyncio
    async def test_unconfirmed_payment_not_shipped(self, make_workflow, camera_draft, store, payments):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("90"))
        record = payments.begin(LISTING_ID, "buyer-1", Decimal("90"), "HBAR", "0.0.2002")
        notice = PaymentNotice(
            listing_id=LISTING_ID, buyer_id="buyer-1", payment_id=record.payment_id,
            settlement_ref="tx-forged", amount="90", currency="HBAR",
        )

        reply = expect_payload(await workflow.handle_payment(notice), ShipmentNotice)

        assert reply.shipped is False
        assert reply.error_code == PAYMENT_NOT_CONFIRMED
        assert store.get(LISTING_ID).status == ListingStatus.RESERVED

    @pytest.mark.asyncio
    async def test_ship_failure_keeps_payment(self, make_workflow, camera_draft, store, payments):
        workflow = await _listed(make_workflow, camera_draft)
        notice = _pay(payments)

        reply = expect_payload(await workflow.handle_payment(notice), ShipmentNotice)

        assert reply.shipped is False
        assert reply.error_code == SHIPMENT_FAILED
        assert payments.get(notice.payment_id).status == PaymentStatus.CONFIRMED
        assert workflow.state.step == SellerStep.WAIT
        assert workflow.state.payment_confirmed is False

    @pytest.mark.asyncio
    async def test_offers_after_sale_rejected(self, make_workflow, camera_draft, payments):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("90"))
        await workflow.handle_payment(_pay(payments))

        reply = _reply(await workflow.handle_offer(_offer("100", buyer_id="buyer-2")))

        assert reply.error_code == LISTING_UNAVAILABLE


@pytest.mark.unit
class TestExpiry:
    """Test idle session and reservation expiry."""

    @pytest.mark.asyncio
    async def test_idle_session_expires(self, make_workflow, camera_draft, archive):
        workflow = await _listed(make_workflow, camera_draft)
        start = datetime.utcnow()
        await workflow.handle_offer(_offer("85"), now=start)

        expired = workflow.expire_idle_sessions(start + timedelta(minutes=31))

        assert expired == ["listing-camera:buyer-1"]
        assert archive.get("listing-camera:buyer-1").outcome == SessionOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_stale_reservation_released(self, make_workflow, camera_draft, store):
        workflow = await _listed(make_workflow, camera_draft)
        await workflow.handle_offer(_offer("90"))

        workflow.expire_idle_sessions(datetime.utcnow() + timedelta(seconds=301))

        assert store.get(LISTING_ID).status == ListingStatus.ACTIVE
        assert workflow.state.listing.status == ListingStatus.ACTIVE
