"""
Negotiation domain models.

WHAT: Offers, oracle verdicts, sessions and buyer-side selection inputs
WHY: Consistent typing across workflows, oracle and persistence
HOW: Pydantic v2 models; verdicts normalize themselves so downstream code can trust them
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .agent import CounterpartRef
from .listing import ListingSummary, quantize_price


def session_key(listing_id: str, buyer_id: str) -> str:
    """Session correlation key: one session per (listing, buyer) pair."""
    return f"{listing_id}:{buyer_id}"


class Offer(BaseModel):
    """A price proposal for a listing."""

    listing_id: str
    proposer_id: str
    price: Decimal = Field(gt=0)
    currency: str
    rationale: str = ""
    round_number: int = Field(default=1, ge=1)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("price", mode="before")
    @classmethod
    def normalize_price(cls, v):
        return quantize_price(v)


class OfferVerdict(BaseModel):
    """Structured offer evaluation."""

    acceptable: bool = False
    action: Literal["accept", "counter", "reject"]
    counter_price: Decimal | None = None
    message: str = ""
    reasoning: str = ""
    source: Literal["oracle", "fallback"] = "oracle"

    @field_validator("counter_price", mode="before")
    @classmethod
    def normalize_counter(cls, v):
        if v is None or v == "":
            return None
        return quantize_price(v)

    @model_validator(mode="after")
    def reconcile_action(self):
        """acceptable mirrors action; a counter without a positive price is a reject."""
        if self.action == "counter" and (self.counter_price is None or self.counter_price <= 0):
            self.action = "reject"
            self.counter_price = None
        if self.action != "counter":
            self.counter_price = None
        self.acceptable = self.action == "accept"
        return self


class SessionOutcome(str, Enum):
    """Negotiation session outcome values."""
    OPEN = "open"
    AGREED = "agreed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class NegotiationSession(BaseModel):
    """One buyer negotiating one listing."""

    session_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    history: list[Offer] = Field(default_factory=list)
    round_count: int = 0
    max_rounds: int = Field(ge=1)
    outcome: SessionOutcome = SessionOutcome.OPEN
    agreed_price: Decimal | None = None
    # round_number -> serialized reply, for duplicate delivery
    replies: dict[int, dict] = Field(default_factory=dict)
    # round_number -> "price currency" of the offer that reply answered
    offer_terms: dict[int, str] = Field(default_factory=dict)
    opened_at: datetime = Field(default_factory=datetime.utcnow)
    last_activity_at: datetime = Field(default_factory=datetime.utcnow)
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.outcome == SessionOutcome.OPEN

    @property
    def rounds_remaining(self) -> int:
        return max(0, self.max_rounds - self.round_count)

    def close(self, outcome: SessionOutcome, agreed_price: Decimal | None = None) -> None:
        self.outcome = outcome
        self.agreed_price = agreed_price
        self.closed_at = datetime.utcnow()


class PurchaseConstraints(BaseModel):
    """What the buyer wants and can spend."""

    intent: str = Field(min_length=1)
    budget: Decimal | None = Field(default=None, gt=0)
    currency: str | None = None
    # Allow a new settlement attempt after this buyer's previous payment failed
    retry_failed: bool = False

    @field_validator("budget", mode="before")
    @classmethod
    def normalize_budget(cls, v):
        if v is None:
            return v
        return quantize_price(v)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper() or None
        return v


class Candidate(BaseModel):
    """A listing discovered through a counterpart."""

    listing: ListingSummary
    counterpart: CounterpartRef


class Selection(BaseModel):
    """Oracle's choice among candidates."""

    listing_id: str
    reason: str = ""
    source: Literal["oracle", "fallback"] = "oracle"
