"""
Settlement orchestration.

WHAT: Tie an agreed price to one idempotent payment and a listing reservation
WHY: At most one confirmed payment per listing; failed payments must leave the listing purchasable
HOW: Per-listing lock, the amount checked against the archived agreement, compare-and-set
     reservation before the gateway, release on failure, notify seller on success
"""

import asyncio
from collections import defaultdict
from decimal import Decimal

from ..core.config import Settings
from ..core.listing_store import ListingStore
from ..core.payments import PaymentRepository
from ..core.session_archive import SessionArchive
from ..models.listing import ListingStatus, quantize_price
from ..models.message import ShipmentNotice
from ..models.negotiation import session_key
from ..models.payment import PaymentRecord, PaymentStatus, SettlementOutcome, ShipmentConfirmation
from ..utils.exceptions import (
    ConcurrentReservationError,
    InvalidTransitionError,
    MarketplaceError,
    PaymentError,
    SettlementFailedError,
    ShipmentError,
)
from ..utils.retry import with_timeout
from ..utils.logger import get_logger
from .negotiation_protocol import build_payment_notice, expect_payload
from .settlement import SettlementGateway
from .transport import MessageTransport

logger = get_logger(__name__)


class SettlementOrchestrator:
    """Runs the pay step for buyers."""

    def __init__(
        self,
        *,
        store: ListingStore,
        payments: PaymentRepository,
        archive: SessionArchive,
        gateway: SettlementGateway,
        transport: MessageTransport,
        settings: Settings
    ):
        self.store = store
        self.payments = payments
        self.archive = archive
        self.gateway = gateway
        self.transport = transport
        self.settings = settings
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def execute_settlement(
        self,
        listing_id: str,
        buyer_id: str,
        amount: Decimal,
        currency: str,
        recipient: str,
        *,
        seller_endpoint: str | None = None,
        retry_failed: bool = False
    ) -> SettlementOutcome:
        """
        Pay for a listing exactly once.

        WHAT: Reserve, record, pay, verify, confirm, then notify the seller
        WHY: Concurrent buyers must produce one payment and one deterministic rejection
        HOW: The reservation is taken before any gateway call; any gateway failure
             marks the record failed and releases the reservation

        Args:
            listing_id: Listing being bought
            buyer_id: Buyer identity (with listing_id, the idempotency key)
            amount: Agreed price
            currency: Must equal the listing currency
            recipient: Settlement account of the seller
            seller_endpoint: Where to send the payment notice; skipped if None
            retry_failed: Explicitly allow a new attempt after a failed one

        Returns:
            SettlementOutcome with the confirmed PaymentRecord and the seller's shipment

        Raises:
            ConcurrentReservationError: Listing held or already paid by another session
            PaymentError: No agreement at this amount, gateway failure (reservation released)
                or existing attempt
            ShipmentError: Payment confirmed but the seller could not ship
        """
        holder = session_key(listing_id, buyer_id)

        async with self._locks[listing_id]:
            existing = self.payments.find(listing_id, buyer_id)
            if existing is not None:
                if existing.status == PaymentStatus.CONFIRMED:
                    logger.info(f"Settlement for {holder} already confirmed ({existing.settlement_ref})")
                    record = existing
                elif existing.status == PaymentStatus.PENDING:
                    raise PaymentError(
                        f"Payment for {holder} already in progress",
                        details={"payment_id": existing.payment_id}
                    )
                elif not retry_failed:
                    raise PaymentError(
                        f"Previous payment for {holder} failed; retry must be requested explicitly",
                        details={"payment_id": existing.payment_id, "failure_reason": existing.failure_reason}
                    )
                else:
                    record = None
            else:
                record = None

            if record is None:
                record = await self._settle(listing_id, buyer_id, amount, currency, recipient, retry_failed)

        shipment = None
        if seller_endpoint:
            shipment = await self._notify_seller(record, seller_endpoint)
        return SettlementOutcome(payment=record, shipment=shipment)

    async def _settle(
        self,
        listing_id: str,
        buyer_id: str,
        amount: Decimal,
        currency: str,
        recipient: str,
        retry_failed: bool
    ) -> PaymentRecord:
        holder = session_key(listing_id, buyer_id)
        amount = quantize_price(amount)
        if amount <= 0:
            raise PaymentError(f"Invalid amount: {amount}")

        agreement = self.archive.latest_agreement(holder)
        if agreement is None:
            raise PaymentError(f"No agreed negotiation for {holder}", details={"listing_id": listing_id})
        if agreement.agreed_price != amount:
            logger.warning(f"Settlement for {holder} asked for {amount}, agreed price is {agreement.agreed_price}")
            raise PaymentError(
                f"Amount {amount} does not match the agreed price {agreement.agreed_price}",
                details={"listing_id": listing_id, "agreed_price": str(agreement.agreed_price)}
            )

        other = self.payments.confirmed_for_listing(listing_id)
        if other is not None:
            raise ConcurrentReservationError(listing_id, session_key(listing_id, other.buyer_id))

        try:
            listing = self.store.reserve(listing_id, holder)
        except InvalidTransitionError as e:
            raise PaymentError(
                f"Listing {listing_id} is not purchasable ({e.details['current']})",
                details=e.details
            ) from e

        if listing.currency != currency.upper():
            self.store.release(listing_id, holder)
            raise PaymentError(
                f"Currency {currency} does not match listing currency {listing.currency}",
                details={"listing_id": listing_id}
            )

        try:
            record = self.payments.begin(
                listing_id, buyer_id, amount, listing.currency, recipient, allow_retry=retry_failed
            )
        except MarketplaceError:
            self.store.release(listing_id, holder)
            raise

        memo = f"x402:{listing_id}:{buyer_id}#{record.attempts}"
        timeout = self.settings.SETTLEMENT_TIMEOUT_SECONDS
        transaction_ref = None
        try:
            transaction_ref = await with_timeout(
                self.gateway.pay(recipient, amount, listing.currency, memo),
                timeout,
                "settlement"
            )
            verified = await with_timeout(self.gateway.verify(transaction_ref), timeout, "settlement")
            if not verified:
                raise SettlementFailedError(f"Transfer {transaction_ref} could not be verified")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = e.message if isinstance(e, MarketplaceError) else str(e) or type(e).__name__
            self.payments.fail(record.payment_id, reason, settlement_ref=transaction_ref)
            self._release_quietly(listing_id, holder)
            logger.error(f"Settlement for {holder} failed: {reason}")
            raise PaymentError(
                f"Settlement failed: {reason}",
                details={
                    "payment_id": record.payment_id,
                    "cause": e.code if isinstance(e, MarketplaceError) else type(e).__name__,
                }
            ) from e

        confirmed = self.payments.confirm(record.payment_id, transaction_ref)
        logger.info(f"Settlement for {holder} confirmed: {amount} {listing.currency} (ref: {transaction_ref})")
        return confirmed

    async def release(self, listing_id: str, buyer_id: str) -> None:
        """Give up a reservation this buyer holds without paying; a no-op for any other state."""
        holder = session_key(listing_id, buyer_id)
        async with self._locks[listing_id]:
            listing = self.store.find(listing_id)
            if listing is None or listing.reserved_by != holder:
                return
            self._release_quietly(listing_id, holder)
            logger.info(f"Reservation on {listing_id} released for {holder} without payment")

    def _release_quietly(self, listing_id: str, holder: str) -> None:
        """Release after a failed payment; a listing no longer held is left as is."""
        try:
            self.store.release(listing_id, holder)
        except (ConcurrentReservationError, InvalidTransitionError) as e:
            current = self.store.find(listing_id)
            status = current.status.value if current else "missing"
            logger.warning(f"Could not release {listing_id} for {holder} (status {status}): {e.message}")

    async def _notify_seller(self, payment: PaymentRecord, endpoint: str) -> ShipmentConfirmation:
        """
        Tell the seller the payment is confirmed and collect the shipment.

        Raises:
            ShipmentError: Seller unreachable or could not ship; payment stays confirmed
        """
        try:
            reply = await with_timeout(
                self.transport.send(endpoint, build_payment_notice(payment.buyer_id, payment)),
                self.settings.TRANSPORT_TIMEOUT_SECONDS,
                "transport"
            )
            notice = expect_payload(reply, ShipmentNotice)
        except MarketplaceError as e:
            raise ShipmentError(
                f"Payment confirmed but seller notification failed: {e.message}",
                details={"payment_id": payment.payment_id, "cause": e.code},
                payment=payment
            ) from e

        if not notice.shipped:
            raise ShipmentError(
                f"Payment confirmed but seller could not ship: {notice.message}",
                details={"payment_id": payment.payment_id, "error_code": notice.error_code},
                payment=payment
            )

        listing = self.store.find(payment.listing_id)
        if listing is not None and listing.status != ListingStatus.SOLD:
            logger.warning(f"Seller reported shipment but {payment.listing_id} is {listing.status.value}")

        return ShipmentConfirmation(
            listing_id=notice.listing_id,
            buyer_id=notice.buyer_id,
            tracking_number=notice.tracking_number or "",
            message=notice.message,
            estimated_delivery=notice.estimated_delivery or "2-5 business days",
        )
