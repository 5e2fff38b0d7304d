"""
Payment record repository.

WHAT: Persist settlement attempts keyed by (listing, buyer)
WHY: Settlement must be idempotent and never confirm two payments for one listing
HOW: SQLAlchemy rows with a unique idempotency key and a confirmed-per-listing check
"""

import threading
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .database import Database
from .models import PaymentRow
from ..models.payment import PaymentRecord, PaymentStatus
from ..utils.exceptions import ConcurrentReservationError, PaymentError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PaymentRepository:
    """Payment records with idempotency and uniqueness guarantees."""

    def __init__(self, db: Database):
        self.db = db
        self._lock = threading.RLock()

    def find(self, listing_id: str, buyer_id: str) -> Optional[PaymentRecord]:
        with self._lock:
            with self.db.session() as s:
                row = s.scalars(
                    select(PaymentRow)
                    .where(PaymentRow.listing_id == listing_id)
                    .where(PaymentRow.buyer_id == buyer_id)
                ).first()
                return PaymentRecord.model_validate(row) if row else None

    def get(self, payment_id: str) -> Optional[PaymentRecord]:
        with self._lock:
            with self.db.session() as s:
                row = s.get(PaymentRow, payment_id)
                return PaymentRecord.model_validate(row) if row else None

    def confirmed_for_listing(self, listing_id: str) -> Optional[PaymentRecord]:
        with self._lock:
            with self.db.session() as s:
                row = s.scalars(
                    select(PaymentRow)
                    .where(PaymentRow.listing_id == listing_id)
                    .where(PaymentRow.status == PaymentStatus.CONFIRMED)
                ).first()
                return PaymentRecord.model_validate(row) if row else None

    def list_for_listing(self, listing_id: str) -> list[PaymentRecord]:
        with self._lock:
            with self.db.session() as s:
                rows = s.scalars(
                    select(PaymentRow)
                    .where(PaymentRow.listing_id == listing_id)
                    .order_by(PaymentRow.created_at)
                )
                return [PaymentRecord.model_validate(row) for row in rows]

    def begin(
        self,
        listing_id: str,
        buyer_id: str,
        amount: Decimal,
        currency: str,
        recipient: str,
        *,
        allow_retry: bool = False
    ) -> PaymentRecord:
        """
        Create (or reopen) the pending record for (listing, buyer).

        WHAT: Start a settlement attempt under the idempotency key
        WHY: A second attempt for the same key needs explicit caller intent
        HOW: Insert; an existing failed record is reset to pending only if allow_retry

        Raises:
            PaymentError: A record already exists and cannot be reopened
        """
        with self._lock:
            with self.db.session() as s:
                row = s.scalars(
                    select(PaymentRow)
                    .where(PaymentRow.listing_id == listing_id)
                    .where(PaymentRow.buyer_id == buyer_id)
                ).first()

                if row is not None:
                    if row.status == PaymentStatus.FAILED and allow_retry:
                        row.status = PaymentStatus.PENDING
                        row.amount = amount
                        row.currency = currency
                        row.recipient = recipient
                        row.settlement_ref = None
                        row.failure_reason = None
                        row.attempts = (row.attempts or 0) + 1
                        row.updated_at = datetime.utcnow()
                        s.flush()
                        logger.info(f"Payment {row.payment_id} reopened for retry (attempt {row.attempts})")
                        return PaymentRecord.model_validate(row)
                    raise PaymentError(
                        f"Payment for {listing_id}:{buyer_id} already {row.status.value}",
                        details={"payment_id": row.payment_id, "status": row.status.value}
                    )

                row = PaymentRow(
                    payment_id=f"pay-{uuid4().hex}",
                    listing_id=listing_id,
                    buyer_id=buyer_id,
                    amount=amount,
                    currency=currency,
                    recipient=recipient,
                    status=PaymentStatus.PENDING,
                )
                s.add(row)
                s.flush()
                record = PaymentRecord.model_validate(row)
        logger.info(f"Payment {record.payment_id} pending: {amount} {currency} for {listing_id} by {buyer_id}")
        return record

    def confirm(self, payment_id: str, settlement_ref: str) -> PaymentRecord:
        """
        pending -> confirmed.

        Raises:
            ConcurrentReservationError: Another payment is already confirmed for the listing
            PaymentError: Record missing or not pending
        """
        with self._lock:
            try:
                with self.db.session() as s:
                    row = s.get(PaymentRow, payment_id)
                    if row is None:
                        raise PaymentError(f"Payment not found: {payment_id}")
                    if row.status == PaymentStatus.CONFIRMED:
                        return PaymentRecord.model_validate(row)
                    if row.status != PaymentStatus.PENDING:
                        raise PaymentError(
                            f"Payment {payment_id} is {row.status.value}, cannot confirm",
                            details={"payment_id": payment_id}
                        )
                    other = s.scalars(
                        select(PaymentRow)
                        .where(PaymentRow.listing_id == row.listing_id)
                        .where(PaymentRow.status == PaymentStatus.CONFIRMED)
                        .where(PaymentRow.payment_id != payment_id)
                    ).first()
                    if other is not None:
                        raise ConcurrentReservationError(row.listing_id, other.buyer_id)
                    row.status = PaymentStatus.CONFIRMED
                    row.settlement_ref = settlement_ref
                    row.updated_at = datetime.utcnow()
                    s.flush()
                    record = PaymentRecord.model_validate(row)
            except IntegrityError as e:
                raise ConcurrentReservationError(payment_id) from e
        logger.info(f"Payment {payment_id} confirmed (ref: {settlement_ref})")
        return record

    def fail(self, payment_id: str, reason: str, settlement_ref: str | None = None) -> PaymentRecord:
        """pending -> failed."""
        with self._lock:
            with self.db.session() as s:
                row = s.get(PaymentRow, payment_id)
                if row is None:
                    raise PaymentError(f"Payment not found: {payment_id}")
                if row.status == PaymentStatus.CONFIRMED:
                    raise PaymentError(f"Payment {payment_id} is confirmed and cannot be failed")
                row.status = PaymentStatus.FAILED
                row.failure_reason = reason
                if settlement_ref:
                    row.settlement_ref = settlement_ref
                row.updated_at = datetime.utcnow()
                s.flush()
                record = PaymentRecord.model_validate(row)
        logger.warning(f"Payment {payment_id} failed: {reason}")
        return record
