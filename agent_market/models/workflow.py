"""
Workflow state and result models.

WHAT: Per-run state for buyer and seller workflows, results and stream events
WHY: Each run owns its state; callers only ever receive a copy
HOW: Pydantic v2 models discriminated by step name
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from .listing import Listing, ListingSummary
from .negotiation import Candidate, Offer, OfferVerdict, PurchaseConstraints
from .payment import PaymentRecord, ShipmentConfirmation
from ..utils.exceptions import MarketplaceError


class BuyerStep(str, Enum):
    DISCOVER = "discover"
    SELECT = "select"
    NEGOTIATE = "negotiate"
    PAY = "pay"
    COMPLETE = "complete"
    FAILED = "failed"


class SellerStep(str, Enum):
    LIST = "list"
    WAIT = "wait"
    EVALUATE = "evaluate"
    ACCEPT = "accept"
    SHIP = "ship"
    DONE = "done"
    FAILED = "failed"


class WorkflowError(BaseModel):
    """Typed error attached to a failed workflow."""

    error_type: str
    code: str
    message: str
    step: str
    details: Any = None

    @classmethod
    def from_exception(cls, exc: Exception, step: str) -> "WorkflowError":
        if isinstance(exc, MarketplaceError):
            return cls(
                error_type=type(exc).__name__,
                code=exc.code,
                message=exc.message,
                step=step,
                details=exc.details,
            )
        return cls(
            error_type=type(exc).__name__,
            code="INTERNAL_ERROR",
            message=str(exc) or type(exc).__name__,
            step=step,
        )


class BuyerState(BaseModel):
    """Mutable state of one buyer run."""

    buyer_id: str
    request: PurchaseConstraints
    step: BuyerStep = BuyerStep.DISCOVER
    candidates: list[Candidate] = Field(default_factory=list)
    rejected_listing_ids: list[str] = Field(default_factory=list)
    selected: Candidate | None = None
    current_offer: Offer | None = None
    agreed_price: Decimal | None = None
    negotiation_history: list[dict] = Field(default_factory=list)
    payment: PaymentRecord | None = None
    shipment: ShipmentConfirmation | None = None
    error: WorkflowError | None = None
    last_negotiation_error: WorkflowError | None = None
    completed: bool = False

    def remaining_candidates(self) -> list[Candidate]:
        return [c for c in self.candidates if c.listing.listing_id not in self.rejected_listing_ids]


class SellerState(BaseModel):
    """Mutable state of one seller listing workflow."""

    step: SellerStep = SellerStep.LIST
    listing: Listing | None = None
    pending_offers: list[Offer] = Field(default_factory=list)
    current_offer: Offer | None = None
    verdict: OfferVerdict | None = None
    reply_error_code: str | None = None
    payment_confirmed: bool = False
    payment: PaymentRecord | None = None
    shipment: ShipmentConfirmation | None = None
    error: WorkflowError | None = None


class WorkflowResult(BaseModel):
    """Outcome handed back to the caller of a buyer run."""

    success: bool
    step: BuyerStep
    buyer_id: str
    listing: ListingSummary | None = None
    agreed_price: Decimal | None = None
    settlement_ref: str | None = None
    payment: PaymentRecord | None = None
    shipment: ShipmentConfirmation | None = None
    error: WorkflowError | None = None
    negotiation_history: list[dict] = Field(default_factory=list)

    @classmethod
    def from_state(cls, state: BuyerState) -> "WorkflowResult":
        snapshot = state.model_copy(deep=True)
        return cls(
            success=snapshot.completed and snapshot.error is None,
            step=BuyerStep.FAILED if snapshot.error else snapshot.step,
            buyer_id=snapshot.buyer_id,
            listing=snapshot.selected.listing if snapshot.selected else None,
            agreed_price=snapshot.agreed_price,
            settlement_ref=snapshot.payment.settlement_ref if snapshot.payment else None,
            payment=snapshot.payment,
            shipment=snapshot.shipment,
            error=snapshot.error,
            negotiation_history=snapshot.negotiation_history,
        )


class WorkflowEvent(BaseModel):
    """Progress event emitted by a buyer run."""

    type: Literal[
        "step_started",
        "candidates_found",
        "candidate_selected",
        "offer_sent",
        "reply_received",
        "payment_confirmed",
        "step_failed",
        "workflow_complete",
    ]
    step: str
    data: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
