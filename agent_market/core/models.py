"""
ORM models for marketplace persistence.

WHAT: SQLAlchemy models for listings, payment records and archived sessions
WHY: Listing status is the single shared mutable resource; payments need a uniqueness guarantee
HOW: Declarative models with CHECK constraints, unique constraints and a partial unique index
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum, text
)

from .database import Base
from ..models.listing import ListingStatus
from ..models.negotiation import SessionOutcome
from ..models.payment import PaymentStatus


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ListingRow(Base):
    """
    Listing table - one row per sale listing.

    WHAT: Listing details plus status and reservation holder
    WHY: Compare-and-set on status is how concurrent buyers are serialized
    HOW: status stored by value; reserved_by names the holding session
    """
    __tablename__ = "listings"

    listing_id = Column(String(100), primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    condition = Column(String(20), nullable=True)
    category = Column(String(100), nullable=False, default="general")
    image_url = Column(String(500), nullable=True)
    status = Column(
        SQLEnum(ListingStatus, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=ListingStatus.DRAFT
    )
    seller_id = Column(String(100), nullable=False)
    seller_address = Column(String(100), nullable=True)
    reserved_by = Column(String(250), nullable=True)
    reserved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("price > 0", name="check_listing_price_positive"),
        Index("idx_listings_status", "status"),
        Index("idx_listings_seller", "seller_id"),
    )

    def __repr__(self):
        return f"<ListingRow(listing_id={self.listing_id}, status={self.status})>"


class PaymentRow(Base):
    """
    Payment record table.

    WHAT: One settlement attempt per (listing, buyer)
    WHY: Idempotency key and at-most-one confirmed payment per listing
    HOW: UNIQUE(listing_id, buyer_id) plus a partial unique index on confirmed rows
    """
    __tablename__ = "payment_records"

    payment_id = Column(String(64), primary_key=True)
    listing_id = Column(String(100), ForeignKey("listings.listing_id"), nullable=False)
    buyer_id = Column(String(100), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    recipient = Column(String(100), nullable=False)
    settlement_ref = Column(String(200), nullable=True)
    status = Column(
        SQLEnum(PaymentStatus, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=PaymentStatus.PENDING
    )
    failure_reason = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("listing_id", "buyer_id", name="unique_payment_per_listing_buyer"),
        CheckConstraint("amount > 0", name="check_payment_amount_positive"),
        Index(
            "unique_confirmed_payment_per_listing",
            "listing_id",
            unique=True,
            sqlite_where=text("status = 'confirmed'"),
            postgresql_where=text("status = 'confirmed'"),
        ),
    )

    def __repr__(self):
        return f"<PaymentRow(payment_id={self.payment_id}, status={self.status})>"


class SessionRow(Base):
    """
    Archived negotiation session.

    WHAT: Terminal negotiation sessions with full offer history
    WHY: Sessions leave the seller's memory on a terminal outcome but stay inspectable
    HOW: History stored as JSON
    """
    __tablename__ = "negotiation_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(250), nullable=False)
    listing_id = Column(String(100), nullable=False)
    buyer_id = Column(String(100), nullable=False)
    seller_id = Column(String(100), nullable=False)
    outcome = Column(
        SQLEnum(SessionOutcome, values_callable=_enum_values, native_enum=False),
        nullable=False
    )
    agreed_price = Column(Numeric(18, 2), nullable=True)
    round_count = Column(Integer, nullable=False, default=0)
    max_rounds = Column(Integer, nullable=False)
    history = Column(JSON, nullable=False, default=list)
    opened_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_sessions_listing", "listing_id"),
        Index("idx_sessions_session_id", "session_id"),
    )

    def __repr__(self):
        return f"<SessionRow(session_id={self.session_id}, outcome={self.outcome})>"
