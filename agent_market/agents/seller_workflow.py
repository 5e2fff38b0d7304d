"""
Seller workflow.

WHAT: list -> wait -> evaluate -> accept -> ship state machine for one listing
WHY: Every offer gets exactly one reply and a paid listing is shipped exactly once
HOW: Explicit transition table driven until the workflow rests in wait or a terminal step;
     negotiation sessions are tracked per buyer and archived once they close
"""

import time
from datetime import datetime, timedelta
from typing import Optional

from ..core.config import Settings
from ..core.listing_store import ListingStore
from ..core.payments import PaymentRepository
from ..core.session_archive import SessionArchive
from ..models.listing import Listing, ListingDraft, ListingStatus
from ..models.message import MessageEnvelope, PaymentNotice, PurchaseOffer
from ..models.negotiation import NegotiationSession, Offer, OfferVerdict, SessionOutcome, session_key
from ..models.payment import ShipmentConfirmation
from ..models.workflow import SellerState, SellerStep, WorkflowError
from ..services.decision_oracle import DecisionOracle
from ..services.negotiation_protocol import (
    build_negotiation_reply,
    build_rejection,
    build_shipment_failure,
    build_shipment_notice,
    classify_round,
    offer_terms,
    parse_envelope,
)
from ..utils.exceptions import (
    ConcurrentReservationError,
    ExternalCallTimeoutError,
    InvalidTransitionError,
    MarketplaceError,
    OracleUnavailableError,
    ShipmentError,
)
from ..utils.retry import with_timeout
from ..utils.logger import get_logger
from .prompts import render_shipment_message
from .state_machine import Transition, TransitionTable, always

logger = get_logger(__name__)

# Reply error codes carried on negotiation_reply / shipment_notice payloads
CONCURRENT_RESERVATION = "concurrent_reservation"
LISTING_UNAVAILABLE = "listing_unavailable"
CURRENCY_MISMATCH = "currency_mismatch"
ORACLE_UNAVAILABLE = "oracle_unavailable"
ROUND_CAP_EXCEEDED = "round_cap_exceeded"
STALE_ROUND = "stale_round"
ROUND_CONFLICT = "round_conflict"
PAYMENT_NOT_CONFIRMED = "payment_not_confirmed"
SHIPMENT_FAILED = "shipment_failed"


# === Guards ===

def listing_active(state: SellerState) -> bool:
    return state.listing is not None and state.listing.status == ListingStatus.ACTIVE


def has_error(state: SellerState) -> bool:
    return state.error is not None


def payment_confirmed(state: SellerState) -> bool:
    return state.payment_confirmed


def offer_queued(state: SellerState) -> bool:
    return bool(state.pending_offers)


def verdict_acceptable(state: SellerState) -> bool:
    return state.verdict is not None and state.verdict.acceptable


def shipped(state: SellerState) -> bool:
    return state.shipment is not None


SELLER_TRANSITIONS: TransitionTable[SellerStep, SellerState] = TransitionTable(
    [
        Transition(SellerStep.LIST, listing_active, SellerStep.WAIT),
        Transition(SellerStep.LIST, has_error, SellerStep.FAILED),
        Transition(SellerStep.WAIT, payment_confirmed, SellerStep.SHIP),
        Transition(SellerStep.WAIT, offer_queued, SellerStep.EVALUATE),
        Transition(SellerStep.EVALUATE, verdict_acceptable, SellerStep.ACCEPT),
        Transition(SellerStep.EVALUATE, always, SellerStep.WAIT),
        Transition(SellerStep.ACCEPT, payment_confirmed, SellerStep.SHIP),
        Transition(SellerStep.ACCEPT, always, SellerStep.WAIT),
        Transition(SellerStep.SHIP, shipped, SellerStep.DONE),
        Transition(SellerStep.SHIP, has_error, SellerStep.WAIT),
    ],
    terminal=[SellerStep.DONE, SellerStep.FAILED],
)


def _continues(session: NegotiationSession, round_number: int, terms: str) -> bool:
    """
    Whether an offer belongs to an existing session.

    A closed session keeps answering its later rounds (replay, conflict or stale) and
    an agreed deal stands; otherwise a round-1 offer opens a new negotiation unless it
    repeats the first offer exactly.
    """
    if session.is_open or round_number > 1:
        return True
    if session.outcome == SessionOutcome.AGREED:
        return True
    return session.outcome != SessionOutcome.EXPIRED and session.offer_terms.get(1) == terms


# Where a workflow picks up for a listing that already exists in the store
_RESUME_STEPS = {
    ListingStatus.DRAFT: SellerStep.LIST,
    ListingStatus.RESERVED: SellerStep.WAIT,
    ListingStatus.SOLD: SellerStep.DONE,
    ListingStatus.CANCELLED: SellerStep.FAILED,
}


class SellerWorkflow:
    """
    Workflow for a single listing.

    Not safe for concurrent calls on its own; SellerAgent serialises access
    with a per-listing lock.
    """

    def __init__(
        self,
        seller_id: str,
        *,
        store: ListingStore,
        oracle: DecisionOracle,
        payments: PaymentRepository,
        archive: SessionArchive,
        settings: Settings,
        seller_address: str | None = None
    ):
        self.seller_id = seller_id
        self.seller_address = seller_address
        self.store = store
        self.oracle = oracle
        self.payments = payments
        self.archive = archive
        self.settings = settings

        self.listing_id: Optional[str] = None
        self.state = SellerState()
        self.sessions: dict[str, NegotiationSession] = {}

        self._handlers = {
            SellerStep.EVALUATE: self._evaluate,
            SellerStep.ACCEPT: self._accept,
            SellerStep.SHIP: self._ship,
        }

    # === List ===

    async def list_product(self, draft: ListingDraft, listing_id: str | None = None) -> Listing:
        """
        Create and publish the listing.

        WHAT: draft -> active, or pick up an existing listing created under the same id
        WHY: Offers are only evaluated for active listings
        HOW: create/create_with_id, publish, then follow the list transitions

        Raises:
            ListingConflictError: listing_id exists with different fields
        """
        try:
            if listing_id:
                listing = self.store.create_with_id(listing_id, draft, self.seller_id, self.seller_address)
            else:
                listing = self.store.create(draft, self.seller_id, self.seller_address)
            if listing.status == ListingStatus.DRAFT:
                listing = self.store.publish(listing.listing_id, self.seller_address)
        except MarketplaceError as e:
            self.state.error = WorkflowError.from_exception(e, SellerStep.LIST.value)
            self.state.step = SELLER_TRANSITIONS.next_step(SellerStep.LIST, self.state)
            raise

        self.resume(listing)
        logger.info(f"Seller {self.seller_id} listed {listing.listing_id} ({listing.status.value})")
        return listing

    def resume(self, listing: Listing) -> None:
        """Attach to a stored listing and move to the step matching its status."""
        self.listing_id = listing.listing_id
        self.state.listing = listing
        self.state.error = None
        step = _RESUME_STEPS.get(listing.status)
        if step is None:
            step = SELLER_TRANSITIONS.next_step(SellerStep.LIST, self.state)
        self.state.step = step

    # === Offers ===

    async def handle_offer(self, offer: PurchaseOffer, now: datetime | None = None) -> MessageEnvelope:
        """
        Answer one purchase_offer.

        WHAT: Exactly one negotiation_reply per offer; duplicates get the cached reply
        WHY: Redelivery must not re-evaluate an offer or re-reserve the listing
        HOW: Round classification per session, then wait -> evaluate -> (accept) -> wait;
             an answered round offered again at different terms is rejected, not replayed
        """
        now = now or datetime.utcnow()
        self.expire_idle_sessions(now)

        sid = session_key(offer.listing_id, offer.buyer_id)
        terms = offer_terms(offer)
        session = self._session_for(offer, terms, now)

        status = classify_round(session, offer.round_number, terms)
        if status == "replay":
            logger.info(f"Duplicate offer for {sid} round {offer.round_number}; replaying reply")
            return parse_envelope(session.replies[offer.round_number])
        if status == "conflict":
            logger.warning(
                f"Offer for {sid} round {offer.round_number} changed terms to {terms} "
                f"(answered for {session.offer_terms[offer.round_number]})"
            )
            return build_rejection(
                self.seller_id, offer, ROUND_CONFLICT,
                f"Round {offer.round_number} was already answered for different terms."
            )
        if status == "over_cap":
            return build_rejection(
                self.seller_id, offer, ROUND_CAP_EXCEEDED,
                f"Negotiation is limited to {session.max_rounds} rounds."
            )
        if status == "stale":
            expected = (
                f"Expected round {session.round_count + 1}, got {offer.round_number}."
                if session.is_open else "This negotiation is closed; start again from round 1."
            )
            return build_rejection(self.seller_id, offer, STALE_ROUND, expected)

        if SELLER_TRANSITIONS.is_terminal(self.state.step):
            return self._answer(session, offer, OfferVerdict(
                action="reject", message="This item is no longer available.", source="fallback"
            ), LISTING_UNAVAILABLE, now)

        self.state.pending_offers.append(Offer(
            listing_id=offer.listing_id,
            proposer_id=offer.buyer_id,
            price=offer.offer_price,
            currency=offer.currency,
            rationale=offer.rationale,
            round_number=offer.round_number,
        ))
        await self._advance()

        return self._answer(session, offer, self.state.verdict, self.state.reply_error_code, now)

    def _session_for(self, offer: PurchaseOffer, terms: str, now: datetime) -> NegotiationSession:
        """The buyer's current session, or a fresh one when a round-1 offer starts a new negotiation."""
        sid = session_key(offer.listing_id, offer.buyer_id)
        session = self.sessions.get(sid)
        if session is not None and _continues(session, offer.round_number, terms):
            return session
        session = NegotiationSession(
            session_id=sid,
            listing_id=offer.listing_id,
            buyer_id=offer.buyer_id,
            seller_id=self.seller_id,
            max_rounds=self.settings.MAX_NEGOTIATION_ROUNDS,
            opened_at=now,
            last_activity_at=now,
        )
        self.sessions[sid] = session
        logger.info(f"Negotiation session opened: {sid}")
        return session

    def _answer(
        self,
        session: NegotiationSession,
        offer: PurchaseOffer,
        verdict: OfferVerdict,
        error_code: str | None,
        now: datetime
    ) -> MessageEnvelope:
        """Build the reply and apply it to the session."""
        reply = build_negotiation_reply(self.seller_id, offer, verdict, error_code=error_code)

        # An outage is not the buyer's fault; the round can be offered again
        if error_code == ORACLE_UNAVAILABLE:
            return reply

        session.history.append(Offer(
            listing_id=offer.listing_id,
            proposer_id=offer.buyer_id,
            price=offer.offer_price,
            currency=offer.currency,
            rationale=offer.rationale,
            round_number=offer.round_number,
        ))
        if verdict.action == "counter":
            session.history.append(Offer(
                listing_id=offer.listing_id,
                proposer_id=self.seller_id,
                price=verdict.counter_price,
                currency=offer.currency,
                rationale=verdict.message,
                round_number=offer.round_number,
            ))
        session.round_count = offer.round_number
        session.last_activity_at = now
        session.replies[offer.round_number] = reply.to_wire()
        session.offer_terms[offer.round_number] = offer_terms(offer)

        if verdict.action == "accept":
            self._close(session, SessionOutcome.AGREED, offer.offer_price)
        elif verdict.action == "reject":
            self._close(session, SessionOutcome.ABANDONED)
        elif session.rounds_remaining == 0:
            self._close(session, SessionOutcome.ABANDONED)

        logger.info(
            f"Seller {self.seller_id} replied {verdict.action} to {session.session_id} "
            f"round {offer.round_number}" + (f" ({error_code})" if error_code else "")
        )
        return reply

    def _close(self, session: NegotiationSession, outcome: SessionOutcome, agreed_price=None) -> None:
        session.close(outcome, agreed_price)
        self.archive.archive(session)

    # === Payment ===

    async def handle_payment(self, notice: PaymentNotice) -> MessageEnvelope:
        """
        Ship after a confirmed payment.

        A repeated notice for an already shipped purchase returns the same shipment.
        """
        shipment = self.state.shipment
        if shipment is not None:
            if shipment.buyer_id == notice.buyer_id:
                return build_shipment_notice(self.seller_id, shipment)
            return build_shipment_failure(
                self.seller_id, notice.listing_id, notice.buyer_id,
                LISTING_UNAVAILABLE, "This item has already been sold."
            )

        record = self.payments.get(notice.payment_id)
        if (
            record is None
            or not record.is_confirmed
            or record.listing_id != self.listing_id
            or record.buyer_id != notice.buyer_id
            or record.settlement_ref != notice.settlement_ref
        ):
            logger.warning(f"Payment notice {notice.payment_id} for {notice.listing_id} not backed by a confirmed payment")
            return build_shipment_failure(
                self.seller_id, notice.listing_id, notice.buyer_id,
                PAYMENT_NOT_CONFIRMED, "No confirmed payment found for this purchase."
            )

        if SELLER_TRANSITIONS.is_terminal(self.state.step):
            return build_shipment_failure(
                self.seller_id, notice.listing_id, notice.buyer_id,
                LISTING_UNAVAILABLE, "This item is no longer available."
            )

        self.state.payment = record
        self.state.payment_confirmed = True
        await self._advance()

        if self.state.shipment is not None:
            return build_shipment_notice(self.seller_id, self.state.shipment)

        error = self.state.error
        self.state.error = None
        self.state.payment = None
        self.state.payment_confirmed = False
        return build_shipment_failure(
            self.seller_id, notice.listing_id, notice.buyer_id,
            SHIPMENT_FAILED, error.message if error else "Shipment failed."
        )

    # === Driver ===

    async def _advance(self) -> None:
        """Follow transitions until the workflow rests in wait or a terminal step."""
        while True:
            previous = self.state.step
            self.state.step = SELLER_TRANSITIONS.next_step(previous, self.state)
            logger.debug(f"Seller {self.seller_id} [{self.listing_id}]: {previous.value} -> {self.state.step.value}")
            handler = self._handlers.get(self.state.step)
            if handler is None:
                return
            await handler()

    async def _evaluate(self) -> None:
        state = self.state
        offer = state.pending_offers.pop(0)
        state.current_offer = offer
        state.verdict = None
        state.reply_error_code = None

        holder = session_key(offer.listing_id, offer.proposer_id)
        listing = self.store.get(offer.listing_id)
        state.listing = listing

        if listing.status == ListingStatus.RESERVED:
            if listing.reserved_by == holder:
                agreement = self.archive.latest_agreement(holder)
                if agreement is not None and offer.price < agreement.agreed_price:
                    state.verdict = OfferVerdict(
                        action="counter",
                        counter_price=agreement.agreed_price,
                        message=f"This item is reserved for you at {agreement.agreed_price} {listing.currency}.",
                        source="fallback",
                    )
                else:
                    state.verdict = OfferVerdict(
                        action="accept", message="This item is already reserved for you.", source="fallback"
                    )
            else:
                self._reject(CONCURRENT_RESERVATION, "This item is reserved by another buyer.")
            return
        if listing.status != ListingStatus.ACTIVE:
            self._reject(LISTING_UNAVAILABLE, "This item is no longer available.")
            return
        if offer.currency != listing.currency:
            self._reject(CURRENCY_MISMATCH, f"Offers must be in {listing.currency}.")
            return

        try:
            state.verdict = await with_timeout(
                self.oracle.evaluate_offer(listing, offer),
                self.settings.ORACLE_TIMEOUT_SECONDS,
                "oracle"
            )
        except (OracleUnavailableError, ExternalCallTimeoutError) as e:
            logger.warning(f"Seller {self.seller_id} could not evaluate offer for {listing.listing_id}: {e.message}")
            self._reject(ORACLE_UNAVAILABLE, "I can't evaluate offers right now. Please try again later.")

    async def _accept(self) -> None:
        offer = self.state.current_offer
        holder = session_key(offer.listing_id, offer.proposer_id)
        try:
            self.state.listing = self.store.reserve(offer.listing_id, holder)
        except ConcurrentReservationError:
            self._reject(CONCURRENT_RESERVATION, "This item was just reserved by another buyer.")
        except InvalidTransitionError:
            self._reject(LISTING_UNAVAILABLE, "This item is no longer available.")

    def _reject(self, error_code: str, message: str) -> None:
        self.state.verdict = OfferVerdict(action="reject", message=message, reasoning=error_code, source="fallback")
        self.state.reply_error_code = error_code

    async def _ship(self) -> None:
        """
        Mark the listing sold and produce the shipment.

        WHAT: reserved -> sold for the paying buyer's session
        WHY: Payment confirmed is the only release gate for shipping
        HOW: mark_sold is a compare-and-set on the holder; failures never touch the payment
        """
        payment = self.state.payment
        holder = session_key(payment.listing_id, payment.buyer_id)
        try:
            listing = self.store.mark_sold(payment.listing_id, holder)
        except MarketplaceError as e:
            logger.error(f"Shipment of {payment.listing_id} to {payment.buyer_id} failed: {e.message}")
            self.state.error = WorkflowError.from_exception(
                ShipmentError(f"Could not ship {payment.listing_id}: {e.message}", details=e.details, payment=payment),
                SellerStep.SHIP.value
            )
            return

        tracking_number = f"TRACK-{int(time.time() * 1000)}"
        self.state.listing = listing
        self.state.shipment = ShipmentConfirmation(
            listing_id=listing.listing_id,
            buyer_id=payment.buyer_id,
            tracking_number=tracking_number,
            message=render_shipment_message(listing, tracking_number),
        )
        logger.info(f"Shipped {listing.listing_id} to {payment.buyer_id} (tracking: {tracking_number})")

    # === Expiry ===

    def expire_idle_sessions(self, now: datetime | None = None) -> list[str]:
        """
        Expire sessions idle past the negotiation timeout and stale reservations.

        Returns:
            Session ids that were expired
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=self.settings.NEGOTIATION_TIMEOUT_MINUTES)
        expired = []
        for sid, session in self.sessions.items():
            if session.is_open and session.last_activity_at < cutoff:
                self._close(session, SessionOutcome.EXPIRED)
                expired.append(sid)
                self._release_if_unpaid(session)

        if expired:
            logger.info(f"Expired {len(expired)} idle session(s) for {self.listing_id}: {expired}")

        released = self.store.release_expired(self.settings.RESERVATION_TTL_SECONDS, now)
        if self.listing_id in released:
            self.state.listing = self.store.find(self.listing_id)
        return expired

    def _release_if_unpaid(self, session: NegotiationSession) -> None:
        listing = self.store.find(session.listing_id)
        if listing is None or listing.reserved_by != session.session_id:
            return
        if self.payments.confirmed_for_listing(session.listing_id) is not None:
            return
        self.store.release(session.listing_id, session.session_id)
