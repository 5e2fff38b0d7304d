"""
Payment and fulfillment models.

WHAT: Payment records keyed by (listing, buyer) and shipment confirmations
WHY: Idempotent settlement and a distinct artifact for post-payment fulfillment
HOW: Pydantic v2 models read from ORM rows
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PaymentStatus(str, Enum):
    """Payment record status values."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PaymentRecord(BaseModel):
    """One settlement attempt for a (listing, buyer) pair."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    listing_id: str
    buyer_id: str
    amount: Decimal
    currency: str
    recipient: str
    settlement_ref: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    failure_reason: str | None = None
    attempts: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def idempotency_key(self) -> str:
        return f"{self.listing_id}:{self.buyer_id}"

    @property
    def is_confirmed(self) -> bool:
        return self.status == PaymentStatus.CONFIRMED


class ShipmentConfirmation(BaseModel):
    """Emitted by the seller once a paid listing is marked sold."""

    listing_id: str
    buyer_id: str
    tracking_number: str
    message: str
    estimated_delivery: str = "2-5 business days"
    shipped_at: datetime = Field(default_factory=datetime.utcnow)


class SettlementOutcome(BaseModel):
    """Result of a settlement: the payment, plus shipment if the seller shipped."""

    payment: PaymentRecord
    shipment: ShipmentConfirmation | None = None
