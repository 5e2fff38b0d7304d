"""
Listing domain models.

WHAT: Sale listing, its status lifecycle, and create/update payloads
WHY: One typed view of a listing shared by the store, seller workflow and API
HOW: Pydantic v2 models with Decimal prices and an explicit transition table
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator

CENT = Decimal("0.01")


def quantize_price(value) -> Decimal:
    """Normalize any numeric input to a Decimal with two places."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class ListingStatus(str, Enum):
    """Listing status values."""
    DRAFT = "draft"
    ACTIVE = "active"
    RESERVED = "reserved"
    SOLD = "sold"
    CANCELLED = "cancelled"


# Every status edge a listing may take; anything else is rejected by the store
ALLOWED_TRANSITIONS: dict[ListingStatus, frozenset[ListingStatus]] = {
    ListingStatus.DRAFT: frozenset({ListingStatus.ACTIVE, ListingStatus.CANCELLED}),
    ListingStatus.ACTIVE: frozenset({ListingStatus.RESERVED, ListingStatus.CANCELLED}),
    ListingStatus.RESERVED: frozenset({ListingStatus.SOLD, ListingStatus.ACTIVE}),
    ListingStatus.SOLD: frozenset(),
    ListingStatus.CANCELLED: frozenset(),
}


def can_transition(current: ListingStatus, target: ListingStatus) -> bool:
    """Check a status edge against the transition table."""
    return target in ALLOWED_TRANSITIONS[ListingStatus(current)]


Condition = Literal["new", "like-new", "good", "fair", "poor"]


class _PricedModel(BaseModel):
    """Shared price/currency normalization."""

    @field_validator("price", mode="before", check_fields=False)
    @classmethod
    def normalize_price(cls, v):
        if v is None:
            return v
        return quantize_price(v)

    @field_validator("currency", mode="before", check_fields=False)
    @classmethod
    def normalize_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class ListingDraft(_PricedModel):
    """Fields a seller supplies when creating a listing."""

    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    price: Decimal = Field(gt=0)
    currency: str = Field(default="HBAR", pattern=r"^[A-Z]{3,10}$")
    condition: Condition | None = None
    category: str = "general"
    image_url: str | None = None

    def identity_fields(self) -> dict:
        """Fields compared by create_with_id for idempotency."""
        return self.model_dump()


class ListingUpdate(_PricedModel):
    """Partial edit of descriptive fields; status is never edited directly."""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    price: Decimal | None = Field(default=None, gt=0)
    condition: Condition | None = None
    category: str | None = None
    image_url: str | None = None


class Listing(_PricedModel):
    """A stored sale listing."""

    listing_id: str
    title: str
    description: str = ""
    price: Decimal = Field(gt=0)
    currency: str
    condition: Condition | None = None
    category: str = "general"
    image_url: str | None = None
    status: ListingStatus = ListingStatus.DRAFT
    seller_id: str
    seller_address: str | None = None
    reserved_by: str | None = None
    reserved_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_available(self) -> bool:
        return self.status == ListingStatus.ACTIVE

    def summary(self) -> "ListingSummary":
        return ListingSummary(
            listing_id=self.listing_id,
            title=self.title,
            description=self.description,
            price=self.price,
            currency=self.currency,
            condition=self.condition,
            category=self.category,
            seller_id=self.seller_id,
            seller_address=self.seller_address,
        )


class ListingSummary(_PricedModel):
    """Listing as advertised to buyers in a listing_response."""

    listing_id: str
    title: str
    description: str = ""
    price: Decimal = Field(gt=0)
    currency: str
    condition: Condition | None = None
    category: str = "general"
    seller_id: str
    seller_address: str | None = None
