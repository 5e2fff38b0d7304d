"""
Negotiation protocol helpers.

WHAT: Build, parse and correlate protocol envelopes
WHY: Both agents share one wire contract; duplicate delivery must not re-apply an offer
HOW: Pydantic validation at the boundary, builders per message kind, round classification per session
"""

from decimal import Decimal
from typing import Any, Literal, TypeVar

from pydantic import ValidationError

from ..models.listing import ListingSummary
from ..models.message import (
    ListingQuery,
    ListingResponse,
    MessageEnvelope,
    NegotiationReply,
    PaymentNotice,
    ProtocolError,
    PurchaseOffer,
    ShipmentNotice,
    TextPart,
)
from ..models.negotiation import NegotiationSession, OfferVerdict, session_key
from ..models.payment import PaymentRecord, ShipmentConfirmation
from ..utils.exceptions import MalformedMessageError
from ..utils.logger import get_logger

logger = get_logger(__name__)

P = TypeVar("P")

RoundStatus = Literal["next", "replay", "conflict", "stale", "over_cap"]


def parse_envelope(data: Any) -> MessageEnvelope:
    """
    Validate a wire message.

    Unknown fields are ignored; missing or invalid required fields raise.

    Raises:
        MalformedMessageError: If data is not a valid envelope
    """
    if isinstance(data, MessageEnvelope):
        return data
    try:
        return MessageEnvelope.model_validate(data)
    except ValidationError as e:
        field_errors = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg")}
            for err in e.errors()
        ]
        logger.warning(f"Malformed protocol message: {field_errors}")
        raise MalformedMessageError("Invalid protocol message", field_errors=field_errors) from e


def expect_payload(envelope: MessageEnvelope, payload_type: type[P]) -> P:
    """Return the payload if it has the expected kind, else raise MalformedMessageError."""
    if not isinstance(envelope.payload, payload_type):
        raise MalformedMessageError(
            f"Expected {payload_type.__name__}, got {envelope.kind}"
        )
    return envelope.payload


def offer_terms(offer: PurchaseOffer) -> str:
    """Price and currency of an offer, as recorded against the round it was answered in."""
    return f"{offer.offer_price} {offer.currency}"


def classify_round(session: NegotiationSession, round_number: int, terms: str | None = None) -> RoundStatus:
    """
    Classify an inbound offer round against a session.

    Args:
        session: Session the offer belongs to
        round_number: Round carried by the offer
        terms: offer_terms() of the inbound offer; None skips the comparison

    Returns:
        "replay" if this round was already answered with the same terms (duplicate delivery),
        "conflict" if this round was already answered for different terms,
        "over_cap" if it exceeds the round cap,
        "next" if it is the next expected round of an open session,
        "stale" otherwise
    """
    if round_number in session.replies:
        recorded = session.offer_terms.get(round_number)
        if terms is None or recorded is None or recorded == terms:
            return "replay"
        return "conflict"
    if round_number > session.max_rounds:
        return "over_cap"
    if session.is_open and round_number == session.round_count + 1:
        return "next"
    return "stale"


def _envelope(role, sender_id, recipient_id, payload, text) -> MessageEnvelope:
    return MessageEnvelope(
        role=role,
        sender_id=sender_id,
        recipient_id=recipient_id,
        kind=payload.kind,
        parts=[TextPart(text=text)],
        payload=payload,
    )


def build_listing_query(buyer_id: str, capability: str | None = None, query: str = "") -> MessageEnvelope:
    return _envelope(
        "buyer", buyer_id, None,
        ListingQuery(capability=capability, query=query),
        query or "Show me your available products",
    )


def build_listing_response(seller_id: str, listings: list[ListingSummary], recipient_id: str | None = None) -> MessageEnvelope:
    if listings:
        lines = [f"- {item.title}: {item.price} {item.currency} (id: {item.listing_id})" for item in listings]
        text = f"I have {len(listings)} product(s) available:\n" + "\n".join(lines)
    else:
        text = "I don't have any products available right now."
    return _envelope("agent", seller_id, recipient_id, ListingResponse(listings=listings), text)


def build_purchase_offer(
    buyer_id: str,
    listing_id: str,
    price: Decimal,
    currency: str,
    round_number: int,
    rationale: str = "",
    buyer_address: str | None = None,
    recipient_id: str | None = None,
) -> MessageEnvelope:
    payload = PurchaseOffer(
        listing_id=listing_id,
        offer_price=price,
        currency=currency,
        buyer_id=buyer_id,
        buyer_address=buyer_address,
        round_number=round_number,
        rationale=rationale,
    )
    text = f"I'd like to offer {payload.offer_price} {payload.currency} for {listing_id}. {rationale}".strip()
    return _envelope("buyer", buyer_id, recipient_id, payload, text)


def build_negotiation_reply(
    seller_id: str,
    offer: PurchaseOffer,
    verdict: OfferVerdict,
    error_code: str | None = None,
) -> MessageEnvelope:
    payload = NegotiationReply(
        listing_id=offer.listing_id,
        session_id=session_key(offer.listing_id, offer.buyer_id),
        round_number=offer.round_number,
        accepted=verdict.action == "accept",
        action=verdict.action,
        counter_price=verdict.counter_price,
        rationale=verdict.message or verdict.reasoning,
        error_code=error_code,
    )
    return _envelope("agent", seller_id, offer.buyer_id, payload, payload.rationale or verdict.action)


def build_rejection(seller_id: str, offer: PurchaseOffer, error_code: str, message: str) -> MessageEnvelope:
    """Reject an offer for a protocol or availability reason rather than on price."""
    verdict = OfferVerdict(action="reject", message=message, reasoning=message, source="fallback")
    return build_negotiation_reply(seller_id, offer, verdict, error_code=error_code)


def build_payment_notice(buyer_id: str, payment: PaymentRecord, recipient_id: str | None = None) -> MessageEnvelope:
    payload = PaymentNotice(
        listing_id=payment.listing_id,
        buyer_id=payment.buyer_id,
        payment_id=payment.payment_id,
        settlement_ref=payment.settlement_ref or "",
        amount=payment.amount,
        currency=payment.currency,
    )
    text = f"Payment of {payment.amount} {payment.currency} sent (ref: {payment.settlement_ref})"
    return _envelope("buyer", buyer_id, recipient_id, payload, text)


def build_shipment_notice(seller_id: str, shipment: ShipmentConfirmation) -> MessageEnvelope:
    payload = ShipmentNotice(
        listing_id=shipment.listing_id,
        buyer_id=shipment.buyer_id,
        shipped=True,
        tracking_number=shipment.tracking_number,
        message=shipment.message,
        estimated_delivery=shipment.estimated_delivery,
    )
    return _envelope("agent", seller_id, shipment.buyer_id, payload, shipment.message)


def build_shipment_failure(seller_id: str, listing_id: str, buyer_id: str, error_code: str, message: str) -> MessageEnvelope:
    payload = ShipmentNotice(
        listing_id=listing_id,
        buyer_id=buyer_id,
        shipped=False,
        message=message,
        error_code=error_code,
    )
    return _envelope("agent", seller_id, buyer_id, payload, message)


def build_error_reply(sender_id: str, error_code: str, message: str, role: str = "agent") -> MessageEnvelope:
    return _envelope(role, sender_id, None, ProtocolError(error_code=error_code, message=message), message)
