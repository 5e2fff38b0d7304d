"""
Protocol message models.

WHAT: Message envelope exchanged between buyer and seller agents
WHY: Payloads are validated once at the protocol boundary instead of trusted downstream
HOW: Pydantic v2 envelope with a tagged union payload discriminated by kind
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .listing import ListingSummary, quantize_price


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ListingQuery(_Payload):
    kind: Literal["listing_query"] = "listing_query"
    capability: str | None = None
    query: str = ""


class ListingResponse(_Payload):
    kind: Literal["listing_response"] = "listing_response"
    listings: list[ListingSummary] = Field(default_factory=list)


class PurchaseOffer(_Payload):
    kind: Literal["purchase_offer"] = "purchase_offer"
    listing_id: str = Field(min_length=1)
    offer_price: Decimal = Field(gt=0)
    currency: str = Field(min_length=1)
    buyer_id: str = Field(min_length=1)
    buyer_address: str | None = None
    round_number: int = Field(default=1, ge=1)
    rationale: str = ""

    @field_validator("offer_price", mode="before")
    @classmethod
    def normalize_price(cls, v):
        return quantize_price(v)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class NegotiationReply(_Payload):
    kind: Literal["negotiation_reply"] = "negotiation_reply"
    listing_id: str
    session_id: str
    round_number: int = Field(ge=1)
    accepted: bool
    action: Literal["accept", "counter", "reject"]
    counter_price: Decimal | None = None
    rationale: str = ""
    error_code: str | None = None

    @field_validator("counter_price", mode="before")
    @classmethod
    def normalize_counter(cls, v):
        if v is None:
            return v
        return quantize_price(v)

    @model_validator(mode="after")
    def check_consistency(self):
        if self.accepted != (self.action == "accept"):
            raise ValueError("accepted must be true exactly when action is accept")
        if self.action == "counter" and (self.counter_price is None or self.counter_price <= 0):
            raise ValueError("counter reply requires a positive counter_price")
        return self


class PaymentNotice(_Payload):
    kind: Literal["payment_notice"] = "payment_notice"
    listing_id: str
    buyer_id: str
    payment_id: str
    settlement_ref: str
    amount: Decimal = Field(gt=0)
    currency: str


class ShipmentNotice(_Payload):
    kind: Literal["shipment_notice"] = "shipment_notice"
    listing_id: str
    buyer_id: str
    shipped: bool
    tracking_number: str | None = None
    message: str = ""
    estimated_delivery: str | None = None
    error_code: str | None = None


class ProtocolError(_Payload):
    kind: Literal["protocol_error"] = "protocol_error"
    error_code: str
    message: str = ""


MessagePayload = Annotated[
    Union[
        ListingQuery,
        ListingResponse,
        PurchaseOffer,
        NegotiationReply,
        PaymentNotice,
        ShipmentNotice,
        ProtocolError,
    ],
    Field(discriminator="kind"),
]

MessageKind = Literal[
    "listing_query",
    "listing_response",
    "purchase_offer",
    "negotiation_reply",
    "payment_notice",
    "shipment_notice",
    "protocol_error",
]


class TextPart(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["text"] = "text"
    text: str


class MessageEnvelope(BaseModel):
    """Self-contained request or response between two agents."""

    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: f"msg-{uuid4()}")
    role: Literal["buyer", "agent"]
    sender_id: str = Field(min_length=1)
    recipient_id: str | None = None
    kind: MessageKind
    parts: list[TextPart] = Field(min_length=1)
    payload: MessagePayload
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="before")
    @classmethod
    def fill_payload_kind(cls, data):
        """Let the payload inherit the envelope kind and vice versa."""
        if not isinstance(data, dict):
            return data
        payload = data.get("payload")
        kind = data.get("kind")
        if isinstance(payload, dict):
            if kind and "kind" not in payload:
                data = {**data, "payload": {**payload, "kind": kind}}
            elif not kind and "kind" in payload:
                data = {**data, "kind": payload["kind"]}
        return data

    @model_validator(mode="after")
    def check_kind_matches(self):
        if self.kind != self.payload.kind:
            raise ValueError(f"envelope kind {self.kind} does not match payload kind {self.payload.kind}")
        return self

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.parts)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")
