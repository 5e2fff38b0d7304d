"""
Concurrency-safe listing store.

WHAT: CRUD and status transitions for sale listings
WHY: A listing is the one resource concurrent buyers race on; transitions must be atomic
HOW: SQLAlchemy rows guarded by a lock, every status change a compare-and-set UPDATE
"""

import threading
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update

from .database import Database
from .models import ListingRow, PaymentRow
from ..models.listing import (
    Listing,
    ListingDraft,
    ListingStatus,
    ListingUpdate,
    can_transition,
)
from ..models.payment import PaymentStatus
from ..utils.exceptions import (
    ConcurrentReservationError,
    InvalidTransitionError,
    ListingConflictError,
    ListingNotFoundError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

EDITABLE_STATUSES = (ListingStatus.DRAFT, ListingStatus.ACTIVE)


def _to_model(row: ListingRow) -> Listing:
    return Listing(
        listing_id=row.listing_id,
        title=row.title,
        description=row.description or "",
        price=row.price,
        currency=row.currency,
        condition=row.condition,
        category=row.category,
        image_url=row.image_url,
        status=row.status,
        seller_id=row.seller_id,
        seller_address=row.seller_address,
        reserved_by=row.reserved_by,
        reserved_at=row.reserved_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ListingStore:
    """
    Listing persistence with atomic status transitions.

    All status changes go through _compare_and_set, which only updates the row
    if it is still in the expected status (and, for reserved rows, still held
    by the expected session). Two racing callers therefore see exactly one
    success and one rejection.
    """

    def __init__(self, db: Database):
        self.db = db
        self._lock = threading.RLock()

    # === CRUD ===

    def create(self, draft: ListingDraft, seller_id: str, seller_address: str | None = None) -> Listing:
        """Create a new draft listing with a generated id."""
        return self._insert(f"listing-{uuid4().hex[:12]}", draft, seller_id, seller_address)

    def create_with_id(
        self,
        listing_id: str,
        draft: ListingDraft,
        seller_id: str,
        seller_address: str | None = None
    ) -> Listing:
        """
        Create a listing under a caller-chosen id, idempotently.

        WHAT: Insert, or return the existing listing if the fields are identical
        WHY: Bootstrap scripts and retries must not duplicate or fail
        HOW: Compare stored descriptive fields against the draft under the lock

        Raises:
            ListingConflictError: Same id already stored with different fields
        """
        with self._lock:
            with self.db.session() as s:
                row = s.get(ListingRow, listing_id)
                if row is not None:
                    existing = _to_model(row)
                    wanted = draft.identity_fields()
                    stored = {key: getattr(existing, key) for key in wanted}
                    stored_seller = existing.seller_id
                    mismatched = [key for key, value in wanted.items() if stored[key] != value]
                    if stored_seller != seller_id:
                        mismatched.append("seller_id")
                    if mismatched:
                        raise ListingConflictError(listing_id, mismatched)
                    logger.debug(f"create_with_id({listing_id}) matched existing listing")
                    return existing
            return self._insert(listing_id, draft, seller_id, seller_address)

    def _insert(self, listing_id: str, draft: ListingDraft, seller_id: str, seller_address: str | None) -> Listing:
        with self._lock:
            with self.db.session() as s:
                row = ListingRow(
                    listing_id=listing_id,
                    title=draft.title,
                    description=draft.description,
                    price=draft.price,
                    currency=draft.currency,
                    condition=draft.condition,
                    category=draft.category,
                    image_url=draft.image_url,
                    status=ListingStatus.DRAFT,
                    seller_id=seller_id,
                    seller_address=seller_address,
                )
                s.add(row)
                s.flush()
                listing = _to_model(row)
        logger.info(f"Listing created: {listing_id} ({draft.title}, {draft.price} {draft.currency})")
        return listing

    def find(self, listing_id: str) -> Optional[Listing]:
        with self._lock:
            with self.db.session() as s:
                row = s.get(ListingRow, listing_id)
                return _to_model(row) if row else None

    def get(self, listing_id: str) -> Listing:
        listing = self.find(listing_id)
        if listing is None:
            raise ListingNotFoundError(listing_id)
        return listing

    def update(self, listing_id: str, changes: ListingUpdate) -> Listing:
        """Edit descriptive fields while the listing is draft or active."""
        values = changes.model_dump(exclude_unset=True, exclude_none=True)
        with self._lock:
            with self.db.session() as s:
                row = s.get(ListingRow, listing_id)
                if row is None:
                    raise ListingNotFoundError(listing_id)
                if row.status not in EDITABLE_STATUSES:
                    raise InvalidTransitionError(listing_id, row.status.value, "update")
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = datetime.utcnow()
                s.flush()
                listing = _to_model(row)
        logger.info(f"Listing updated: {listing_id} ({', '.join(values) or 'no changes'})")
        return listing

    def list_listings(
        self,
        status: ListingStatus | None = None,
        seller_id: str | None = None
    ) -> list[Listing]:
        stmt = select(ListingRow).order_by(ListingRow.created_at, ListingRow.listing_id)
        if status is not None:
            stmt = stmt.where(ListingRow.status == status)
        if seller_id is not None:
            stmt = stmt.where(ListingRow.seller_id == seller_id)
        with self._lock:
            with self.db.session() as s:
                return [_to_model(row) for row in s.scalars(stmt)]

    # === Status transitions ===

    def _compare_and_set(
        self,
        listing_id: str,
        expected: ListingStatus,
        target: ListingStatus,
        *,
        expected_holder: str | None = None,
        **values
    ) -> bool:
        """
        Move listing from expected to target status if it is still there.

        Must be called with self._lock held.

        Returns:
            True if exactly one row changed
        """
        if not can_transition(expected, target):
            raise InvalidTransitionError(listing_id, expected.value, target.value)

        stmt = (
            update(ListingRow)
            .where(ListingRow.listing_id == listing_id)
            .where(ListingRow.status == expected)
        )
        if expected_holder is not None:
            stmt = stmt.where(ListingRow.reserved_by == expected_holder)
        stmt = stmt.values(status=target, updated_at=datetime.utcnow(), **values)

        with self.db.session() as s:
            result = s.execute(stmt)
            return result.rowcount == 1

    def _current(self, listing_id: str) -> Listing:
        with self.db.session() as s:
            row = s.get(ListingRow, listing_id)
            if row is None:
                raise ListingNotFoundError(listing_id)
            return _to_model(row)

    def _transition(self, listing_id: str, target: ListingStatus, **values) -> Listing:
        """Generic guarded transition from whatever the current status is."""
        with self._lock:
            current = self._current(listing_id)
            if not can_transition(current.status, target):
                raise InvalidTransitionError(listing_id, current.status.value, target.value)
            if not self._compare_and_set(listing_id, current.status, target, **values):
                raise InvalidTransitionError(listing_id, current.status.value, target.value)
            listing = self._current(listing_id)
        logger.info(f"Listing {listing_id}: {current.status.value} -> {target.value}")
        return listing

    def publish(self, listing_id: str, seller_address: str | None = None) -> Listing:
        """draft -> active. Publishing an already active listing is a no-op."""
        current = self.get(listing_id)
        if current.status == ListingStatus.ACTIVE:
            return current
        values = {"seller_address": seller_address} if seller_address else {}
        return self._transition(listing_id, ListingStatus.ACTIVE, **values)

    def cancel(self, listing_id: str) -> Listing:
        """draft/active -> cancelled."""
        return self._transition(
            listing_id, ListingStatus.CANCELLED, reserved_by=None, reserved_at=None
        )

    def reserve(self, listing_id: str, holder: str) -> Listing:
        """
        Lock a listing for one session.

        WHAT: active -> reserved with reserved_by=holder
        WHY: At most one session may hold a listing; losers must fail fast
        HOW: Compare-and-set; re-reserving by the same holder is idempotent

        Raises:
            ConcurrentReservationError: Listing held by another session
            InvalidTransitionError: Listing is draft, sold or cancelled
        """
        with self._lock:
            current = self._current(listing_id)
            if current.status == ListingStatus.RESERVED:
                if current.reserved_by == holder:
                    return current
                logger.warning(f"Reservation of {listing_id} by {holder} rejected; held by {current.reserved_by}")
                raise ConcurrentReservationError(listing_id, current.reserved_by)
            if current.status != ListingStatus.ACTIVE:
                raise InvalidTransitionError(listing_id, current.status.value, ListingStatus.RESERVED.value)
            now = datetime.utcnow()
            if not self._compare_and_set(
                listing_id, ListingStatus.ACTIVE, ListingStatus.RESERVED,
                reserved_by=holder, reserved_at=now
            ):
                raise ConcurrentReservationError(listing_id)
            listing = self._current(listing_id)
        logger.info(f"Listing {listing_id} reserved by {holder}")
        return listing

    def release(self, listing_id: str, holder: str) -> Listing:
        """
        reserved -> active, only by the holding session.

        Releasing a listing that is already active is a no-op.
        """
        with self._lock:
            current = self._current(listing_id)
            if current.status == ListingStatus.ACTIVE:
                return current
            if current.status != ListingStatus.RESERVED:
                raise InvalidTransitionError(listing_id, current.status.value, ListingStatus.ACTIVE.value)
            if current.reserved_by != holder:
                raise ConcurrentReservationError(listing_id, current.reserved_by)
            if not self._compare_and_set(
                listing_id, ListingStatus.RESERVED, ListingStatus.ACTIVE,
                expected_holder=holder, reserved_by=None, reserved_at=None
            ):
                raise ConcurrentReservationError(listing_id)
            listing = self._current(listing_id)
        logger.info(f"Listing {listing_id} released by {holder}")
        return listing

    def mark_sold(self, listing_id: str, holder: str) -> Listing:
        """reserved -> sold, only by the holding session."""
        with self._lock:
            current = self._current(listing_id)
            if current.status != ListingStatus.RESERVED:
                raise InvalidTransitionError(listing_id, current.status.value, ListingStatus.SOLD.value)
            if current.reserved_by != holder:
                raise ConcurrentReservationError(listing_id, current.reserved_by)
            if not self._compare_and_set(
                listing_id, ListingStatus.RESERVED, ListingStatus.SOLD, expected_holder=holder
            ):
                raise ConcurrentReservationError(listing_id)
            listing = self._current(listing_id)
        logger.info(f"Listing {listing_id} sold to {holder}")
        return listing

    def release_expired(self, ttl_seconds: int, now: datetime | None = None) -> list[str]:
        """
        Release reservations older than ttl_seconds with no confirmed payment.

        Returns:
            Listing ids moved back to active
        """
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=ttl_seconds)
        released = []
        with self._lock:
            with self.db.session() as s:
                confirmed = select(PaymentRow.listing_id).where(
                    PaymentRow.status == PaymentStatus.CONFIRMED
                )
                stale = s.scalars(
                    select(ListingRow)
                    .where(ListingRow.status == ListingStatus.RESERVED)
                    .where(ListingRow.reserved_at < cutoff)
                    .where(ListingRow.listing_id.not_in(confirmed))
                ).all()
                holders = [(row.listing_id, row.reserved_by) for row in stale]
            for listing_id, holder in holders:
                if self._compare_and_set(
                    listing_id, ListingStatus.RESERVED, ListingStatus.ACTIVE,
                    expected_holder=holder, reserved_by=None, reserved_at=None
                ):
                    released.append(listing_id)
        if released:
            logger.info(f"Released {len(released)} expired reservation(s): {released}")
        return released
