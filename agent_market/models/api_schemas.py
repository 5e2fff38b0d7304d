"""
Pydantic API schemas for the HTTP endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation at the HTTP boundary, separate from domain models
HOW: Pydantic v2 models with constraints; domain models reused where they already fit
"""

from decimal import Decimal
from typing import Optional, Literal

from pydantic import BaseModel, Field, field_validator

from .listing import ListingDraft
from .negotiation import PurchaseConstraints


# ========== Listings ==========

class ListingCreate(ListingDraft):
    """Create a listing; listing_id is optional and makes the call idempotent."""
    listing_id: Optional[str] = Field(default=None, min_length=1, max_length=100)
    seller_id: Optional[str] = Field(default=None, description="Seller agent; defaults to the configured seller")


# ========== Purchases ==========

class PurchaseRequest(BaseModel):
    """Start a buyer workflow."""
    intent: str = Field(..., min_length=1, max_length=500, description="What the buyer wants")
    budget: Optional[Decimal] = Field(default=None, gt=0, description="Maximum price the buyer will pay")
    currency: Optional[str] = Field(default=None, description="Settlement currency, e.g. HBAR")
    buyer_id: Optional[str] = Field(default=None, min_length=1, max_length=100)
    retry_failed: bool = Field(default=False, description="Retry settlement after a failed payment")

    @field_validator("intent")
    @classmethod
    def strip_intent(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("intent must not be blank")
        return v

    def to_constraints(self) -> PurchaseConstraints:
        return PurchaseConstraints(
            intent=self.intent, budget=self.budget, currency=self.currency, retry_failed=self.retry_failed
        )


# ========== Status ==========

class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    app_name: str
    components: dict
