"""
Buyer workflow.

WHAT: discover -> select -> negotiate -> pay -> complete state machine for one purchase
WHY: Drive a purchase to a consistent terminal outcome with a typed error on failure
HOW: Explicit transition table, one handler per step, progress events for streaming
"""

import asyncio
from decimal import Decimal
from typing import AsyncIterator, Callable

from ..core.config import Settings
from ..models.message import ListingResponse, NegotiationReply
from ..models.negotiation import Candidate, Offer, PurchaseConstraints, session_key
from ..models.workflow import BuyerState, BuyerStep, WorkflowError, WorkflowEvent, WorkflowResult
from ..models.listing import quantize_price
from ..services.decision_oracle import DecisionOracle, midpoint
from ..services.discovery import DiscoveryGateway
from ..services.negotiation_protocol import (
    build_listing_query,
    build_purchase_offer,
    expect_payload,
)
from ..services.settlement_orchestrator import SettlementOrchestrator
from ..services.transport import MessageTransport
from ..utils.exceptions import (
    ConcurrentReservationError,
    DiscoveryError,
    ExternalCallTimeoutError,
    MalformedMessageError,
    MarketplaceError,
    NegotiationError,
    PaymentError,
    RoundCapExceededError,
    SelectionError,
    ShipmentError,
    TransportError,
)
from ..utils.retry import with_timeout
from ..utils.logger import get_logger
from .state_machine import NoTransitionError, Transition, TransitionTable, always

logger = get_logger(__name__)

Emit = Callable[[str, dict], None]


# === Guards ===

def has_error(state: BuyerState) -> bool:
    return state.error is not None


def has_candidates(state: BuyerState) -> bool:
    return bool(state.candidates)


def has_selection(state: BuyerState) -> bool:
    return state.selected is not None


def has_agreement(state: BuyerState) -> bool:
    return state.agreed_price is not None and state.selected is not None


def payment_confirmed(state: BuyerState) -> bool:
    return state.payment is not None and state.payment.is_confirmed


BUYER_TRANSITIONS: TransitionTable[BuyerStep, BuyerState] = TransitionTable(
    [
        Transition(BuyerStep.DISCOVER, has_error, BuyerStep.FAILED),
        Transition(BuyerStep.DISCOVER, has_candidates, BuyerStep.SELECT),
        Transition(BuyerStep.SELECT, has_error, BuyerStep.FAILED),
        Transition(BuyerStep.SELECT, has_selection, BuyerStep.NEGOTIATE),
        Transition(BuyerStep.NEGOTIATE, has_error, BuyerStep.FAILED),
        Transition(BuyerStep.NEGOTIATE, has_agreement, BuyerStep.PAY),
        Transition(BuyerStep.NEGOTIATE, always, BuyerStep.SELECT),
        Transition(BuyerStep.PAY, has_error, BuyerStep.FAILED),
        Transition(BuyerStep.PAY, payment_confirmed, BuyerStep.COMPLETE),
    ],
    terminal=[BuyerStep.COMPLETE, BuyerStep.FAILED],
)

# Errors that end the current candidate but let the buyer try another one
CANDIDATE_ERRORS = (
    NegotiationError,
    ConcurrentReservationError,
    TransportError,
    ExternalCallTimeoutError,
)


class BuyerWorkflow:
    """
    One buyer's purchase run.

    A workflow instance owns the state of the runs it starts; callers get a
    WorkflowResult built from a deep copy of the final state.
    """

    def __init__(
        self,
        buyer_id: str,
        *,
        discovery: DiscoveryGateway,
        oracle: DecisionOracle,
        transport: MessageTransport,
        orchestrator: SettlementOrchestrator,
        settings: Settings,
        buyer_address: str | None = None
    ):
        self.buyer_id = buyer_id
        self.buyer_address = buyer_address
        self.discovery = discovery
        self.oracle = oracle
        self.transport = transport
        self.orchestrator = orchestrator
        self.settings = settings

        self._handlers = {
            BuyerStep.DISCOVER: self._discover,
            BuyerStep.SELECT: self._select,
            BuyerStep.NEGOTIATE: self._negotiate,
            BuyerStep.PAY: self._pay,
            BuyerStep.COMPLETE: self._complete,
        }

    async def run(self, request: PurchaseConstraints) -> WorkflowResult:
        """
        Run to a terminal state.

        Returns:
            WorkflowResult with the success payload, or a typed error and the failing step
        """
        state = BuyerState(buyer_id=self.buyer_id, request=request)
        async for _ in self._drive(state):
            pass
        return WorkflowResult.from_state(state)

    async def run_events(self, request: PurchaseConstraints) -> AsyncIterator[WorkflowEvent]:
        """
        Run to a terminal state, yielding progress events.

        The final event is workflow_complete carrying the WorkflowResult.
        """
        state = BuyerState(buyer_id=self.buyer_id, request=request)
        async for event in self._drive(state):
            yield event

    async def _drive(self, state: BuyerState) -> AsyncIterator[WorkflowEvent]:
        logger.info(
            f"Buyer {self.buyer_id} starting purchase: '{state.request.intent}' "
            f"(budget={state.request.budget})"
        )

        while True:
            step = state.step
            events: list[WorkflowEvent] = []

            def emit(event_type: str, data: dict) -> None:
                events.append(WorkflowEvent(type=event_type, step=step.value, data=data))

            if step == BuyerStep.FAILED:
                yield WorkflowEvent(type="step_failed", step=state.error.step, data=state.error.model_dump(mode="json"))
                break

            emit("step_started", {})
            try:
                await self._handlers[step](state, emit)
            except MarketplaceError as e:
                logger.warning(f"Buyer {self.buyer_id} step {step.value} failed: {e.code} - {e.message}")
                state.error = WorkflowError.from_exception(e, step.value)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Buyer {self.buyer_id} unexpected error in {step.value}: {e}", exc_info=True)
                state.error = WorkflowError.from_exception(e, step.value)

            for event in events:
                yield event

            if BUYER_TRANSITIONS.is_terminal(step):
                break

            try:
                state.step = BUYER_TRANSITIONS.next_step(step, state)
            except NoTransitionError as e:
                logger.error(f"Buyer {self.buyer_id} stuck in {step.value}: {e}")
                state.error = WorkflowError.from_exception(e, step.value)
                state.step = BuyerStep.FAILED
            logger.debug(f"Buyer {self.buyer_id}: {step.value} -> {state.step.value}")

        result = WorkflowResult.from_state(state)
        logger.info(
            f"Buyer {self.buyer_id} finished: success={result.success}"
            + (f", error={result.error.error_type} at {result.error.step}" if result.error else "")
        )
        yield WorkflowEvent(type="workflow_complete", step=state.step.value, data=result.model_dump(mode="json"))

    # === Steps ===

    async def _discover(self, state: BuyerState, emit: Emit) -> None:
        """
        Find counterparts and collect their listings.

        WHAT: Capability lookup, then a listing_query to each counterpart
        WHY: Candidates must come from counterpart replies, not be fabricated
        HOW: Bounded concurrent fan-out; unresponsive counterparts and listings
             with no settlement account are skipped
        """
        tag = self.settings.CAPABILITY_TAG
        counterparts = await with_timeout(
            self.discovery.lookup(tag),
            self.settings.DISCOVERY_TIMEOUT_SECONDS,
            "discovery"
        )
        if not counterparts:
            raise DiscoveryError(f"No counterparts found for capability '{tag}'", details={"capability": tag})

        semaphore = asyncio.Semaphore(self.settings.DISCOVERY_FANOUT_LIMIT)

        async def query(counterpart):
            async with semaphore:
                reply = await with_timeout(
                    self.transport.send(
                        counterpart.endpoint,
                        build_listing_query(self.buyer_id, capability=tag, query=state.request.intent)
                    ),
                    self.settings.TRANSPORT_TIMEOUT_SECONDS,
                    "transport"
                )
                return expect_payload(reply, ListingResponse)

        results = await asyncio.gather(*(query(c) for c in counterparts), return_exceptions=True)

        seen: set[str] = set()
        for counterpart, result in zip(counterparts, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Counterpart {counterpart.agent_id} did not answer listing query: {result}")
                continue
            for summary in result.listings:
                if summary.listing_id in seen:
                    continue
                seen.add(summary.listing_id)
                if not (summary.seller_address or counterpart.address):
                    logger.warning(f"Skipping {summary.listing_id}: {counterpart.agent_id} has no settlement account")
                    continue
                state.candidates.append(Candidate(listing=summary, counterpart=counterpart))

        if not state.candidates:
            raise DiscoveryError(
                f"No listings offered by {len(counterparts)} counterpart(s)",
                details={"capability": tag, "counterparts": [c.agent_id for c in counterparts]}
            )

        emit("candidates_found", {
            "count": len(state.candidates),
            "listings": [c.listing.model_dump(mode="json") for c in state.candidates],
        })

    async def _select(self, state: BuyerState, emit: Emit) -> None:
        remaining = state.remaining_candidates()
        state.selected = None
        if not remaining:
            raise SelectionError("No candidates left to select from")

        selection = await with_timeout(
            self.oracle.select_best(remaining, state.request),
            self.settings.ORACLE_TIMEOUT_SECONDS,
            "oracle"
        )
        if selection is None:
            if state.last_negotiation_error is not None:
                # Nothing else worth negotiating; report why the last candidate failed
                state.error = state.last_negotiation_error
                return
            raise SelectionError(
                f"No viable candidate for '{state.request.intent}'",
                details={"candidates": [c.listing.listing_id for c in remaining]}
            )

        chosen = next((c for c in remaining if c.listing.listing_id == selection.listing_id), None)
        if chosen is None:
            raise SelectionError(f"Oracle selected unknown listing {selection.listing_id}")

        state.selected = chosen
        logger.info(f"Buyer {self.buyer_id} selected {chosen.listing.listing_id}: {selection.reason}")
        emit("candidate_selected", {
            "listing": chosen.listing.model_dump(mode="json"),
            "reason": selection.reason,
            "source": selection.source,
        })

    def initial_offer(self, asking: Decimal, budget: Decimal | None) -> Decimal:
        anchor = quantize_price(asking * Decimal(str(self.settings.OFFER_RATIO)))
        return min(budget, anchor) if budget is not None else anchor

    @staticmethod
    def revised_offer(previous: Decimal, counter: Decimal, budget: Decimal | None) -> Decimal:
        """Move halfway toward the counter; never down, never past the counter or budget."""
        revised = max(previous, midpoint(previous, counter))
        revised = min(revised, counter)
        if budget is not None:
            revised = min(revised, budget)
        return max(revised, previous)

    async def _negotiate(self, state: BuyerState, emit: Emit) -> None:
        """
        Exchange offers with the selected counterpart.

        WHAT: Initial offer, then revise on counters until accept, reject or the round cap
        WHY: The round cap bounds the session even if the seller never converges
        HOW: One purchase_offer per round; candidate-level failures send the buyer back to select
        """
        candidate = state.selected
        listing = candidate.listing
        budget = state.request.budget
        sid = session_key(listing.listing_id, self.buyer_id)
        max_rounds = self.settings.MAX_NEGOTIATION_ROUNDS

        try:
            offer_price = self.initial_offer(listing.price, budget)
            for round_number in range(1, max_rounds + 1):
                state.current_offer = Offer(
                    listing_id=listing.listing_id,
                    proposer_id=self.buyer_id,
                    price=offer_price,
                    currency=listing.currency,
                    rationale=f"Offer {round_number} of {max_rounds}",
                    round_number=round_number,
                )
                state.negotiation_history.append({
                    "round": round_number,
                    "from": "buyer",
                    "listing_id": listing.listing_id,
                    "price": str(offer_price),
                })
                emit("offer_sent", {"listing_id": listing.listing_id, "round": round_number, "price": str(offer_price)})

                reply_envelope = await with_timeout(
                    self.transport.send(
                        candidate.counterpart.endpoint,
                        build_purchase_offer(
                            self.buyer_id,
                            listing.listing_id,
                            offer_price,
                            listing.currency,
                            round_number,
                            rationale=state.current_offer.rationale,
                            buyer_address=self.buyer_address,
                            recipient_id=candidate.counterpart.agent_id,
                        )
                    ),
                    self.settings.TRANSPORT_TIMEOUT_SECONDS,
                    "transport"
                )
                reply = expect_payload(reply_envelope, NegotiationReply)
                if reply.listing_id != listing.listing_id or reply.round_number != round_number:
                    raise MalformedMessageError(
                        f"Reply for {reply.listing_id} round {reply.round_number} does not match "
                        f"offer for {listing.listing_id} round {round_number}"
                    )

                state.negotiation_history.append({
                    "round": round_number,
                    "from": "seller",
                    "listing_id": listing.listing_id,
                    "action": reply.action,
                    "counter_price": str(reply.counter_price) if reply.counter_price is not None else None,
                    "rationale": reply.rationale,
                    "error_code": reply.error_code,
                })
                emit("reply_received", {
                    "listing_id": listing.listing_id,
                    "round": round_number,
                    "action": reply.action,
                    "counter_price": str(reply.counter_price) if reply.counter_price is not None else None,
                    "message": reply.rationale,
                })

                if reply.error_code == "concurrent_reservation":
                    raise ConcurrentReservationError(listing.listing_id)
                if reply.action == "accept":
                    state.agreed_price = offer_price
                    logger.info(f"Buyer {self.buyer_id} agreed {offer_price} {listing.currency} for {listing.listing_id}")
                    return
                if reply.action == "reject":
                    raise NegotiationError(
                        f"Seller rejected offer of {offer_price} {listing.currency}: {reply.rationale}",
                        details={"listing_id": listing.listing_id, "round": round_number, "error_code": reply.error_code}
                    )
                if round_number < max_rounds:
                    offer_price = self.revised_offer(offer_price, reply.counter_price, budget)

            raise RoundCapExceededError(sid, max_rounds)

        except CANDIDATE_ERRORS as e:
            logger.warning(f"Buyer {self.buyer_id} gave up on {listing.listing_id}: {e.message}")
            failure = WorkflowError.from_exception(e, BuyerStep.NEGOTIATE.value)
            state.last_negotiation_error = failure
            state.rejected_listing_ids.append(listing.listing_id)
            state.selected = None
            state.current_offer = None
            if not state.remaining_candidates():
                state.error = failure

    async def _pay(self, state: BuyerState, emit: Emit) -> None:
        candidate = state.selected
        listing = candidate.listing
        recipient = listing.seller_address or candidate.counterpart.address
        if not recipient:
            await self.orchestrator.release(listing.listing_id, self.buyer_id)
            raise PaymentError(f"No settlement recipient for {listing.listing_id}")

        try:
            outcome = await self.orchestrator.execute_settlement(
                listing.listing_id,
                self.buyer_id,
                state.agreed_price,
                listing.currency,
                recipient,
                seller_endpoint=candidate.counterpart.endpoint,
                retry_failed=state.request.retry_failed,
            )
        except ShipmentError as e:
            state.payment = e.payment
            raise

        state.payment = outcome.payment
        state.shipment = outcome.shipment
        emit("payment_confirmed", {
            "payment_id": outcome.payment.payment_id,
            "settlement_ref": outcome.payment.settlement_ref,
            "amount": str(outcome.payment.amount),
            "currency": outcome.payment.currency,
            "tracking_number": outcome.shipment.tracking_number if outcome.shipment else None,
        })

    async def _complete(self, state: BuyerState, emit: Emit) -> None:
        state.completed = True
