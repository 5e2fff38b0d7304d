"""
Prompt templates for the decision oracle.

WHAT: System prompts and rendering helpers for product selection and offer evaluation
WHY: Consistent instructions and a fixed JSON reply shape the oracle parser can validate
HOW: Template strings with context injection, return ChatMessage lists
"""

from decimal import Decimal
from typing import List

from ..llm.types import ChatMessage
from ..models.listing import Listing
from ..models.negotiation import Candidate, Offer, PurchaseConstraints


def render_selection_prompt(
    candidates: List[Candidate],
    constraints: PurchaseConstraints
) -> List[ChatMessage]:
    """
    Render the buyer's product selection prompt.

    WHAT: Ask the model to pick one listing that fits intent and budget
    WHY: Buyer needs a single selection (or none) from discovered candidates
    HOW: System message with rules and JSON shape, user message listing candidates
    """
    budget = f"{constraints.budget} {constraints.currency or ''}".strip() if constraints.budget else "no fixed budget"

    system_prompt = f"""You are a purchasing agent choosing one product for a user.

User request: {constraints.intent}
Budget: {budget}

Rules:
1. Choose the single listing that best matches the request
2. Never choose a listing whose price is far above the budget
3. If nothing matches, choose nothing

Respond ONLY with JSON in this exact format:
{{"listing_id": "<id or null>", "reason": "<one sentence>"}}

Do NOT output <think> tags or any text outside the JSON."""

    lines = []
    for idx, candidate in enumerate(candidates, start=1):
        item = candidate.listing
        condition = f", condition: {item.condition}" if item.condition else ""
        lines.append(
            f"{idx}. id={item.listing_id} | {item.title} | {item.price} {item.currency}"
            f"{condition} | {item.description[:160]}"
        )

    user_prompt = "Available listings:\n" + "\n".join(lines) + "\n\nWhich listing should be purchased?"

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt}
    ]


def render_offer_evaluation_prompt(
    listing: Listing,
    offer: Offer,
    *,
    accept_threshold: float,
    counter_floor: float
) -> List[ChatMessage]:
    """
    Render the seller's offer evaluation prompt.

    WHAT: Ask the model to accept, counter or reject an offer
    WHY: Seller decisions follow a threshold policy but may use judgment in the counter band
    HOW: System message with listing, policy bands and JSON shape; user message with the offer
    """
    ratio = (offer.price / listing.price) if listing.price else Decimal("0")
    accept_at = (listing.price * Decimal(str(accept_threshold))).quantize(Decimal("0.01"))
    floor_at = (listing.price * Decimal(str(counter_floor))).quantize(Decimal("0.01"))
    midpoint = ((listing.price + offer.price) / 2).quantize(Decimal("0.01"))

    system_prompt = f"""You are a seller agent evaluating a purchase offer.

Listing: {listing.title}
Description: {listing.description or 'n/a'}
Asking price: {listing.price} {listing.currency}
Condition: {listing.condition or 'n/a'}

Policy:
- Offers at or above {accept_at} ({accept_threshold:.0%} of asking): accept
- Offers between {floor_at} and {accept_at}: counter, e.g. at {midpoint} (split the difference)
- Offers below {floor_at} ({counter_floor:.0%} of asking): reject

Respond ONLY with JSON in this exact format:
{{"acceptable": true|false, "action": "accept"|"counter"|"reject", "counter_price": <number or null>, "message": "<reply to buyer>", "reasoning": "<short>"}}

Do NOT output <think> tags or any text outside the JSON."""

    user_prompt = (
        f"Buyer {offer.proposer_id} offers {offer.price} {offer.currency} "
        f"({ratio:.1%} of asking) in round {offer.round_number}."
    )
    if offer.rationale:
        user_prompt += f"\nBuyer says: {offer.rationale}"

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt}
    ]


def render_shipment_message(listing: Listing, tracking_number: str) -> str:
    """Shipment confirmation text sent to the buyer."""
    return (
        f"Payment received. Your {listing.title} has been shipped. "
        f"Tracking number: {tracking_number}. Estimated delivery: 2-5 business days."
    )
