"""
Seller agent.

WHAT: Message handler for one seller: listing queries, offers and payment notices
WHY: Buyers only see the seller through the protocol; every message must get an answer
HOW: One SellerWorkflow per listing, serialised by a per-listing asyncio.Lock
"""

import asyncio
from collections import defaultdict

from ..core.config import Settings
from ..core.listing_store import ListingStore
from ..core.payments import PaymentRepository
from ..core.session_archive import SessionArchive
from ..models.agent import AgentCard, AgentSkill
from ..models.listing import Listing, ListingDraft, ListingStatus, ListingUpdate
from ..models.message import ListingQuery, MessageEnvelope, PaymentNotice, PurchaseOffer
from ..services.decision_oracle import DecisionOracle
from ..services.negotiation_protocol import (
    build_error_reply,
    build_listing_response,
    build_rejection,
    build_shipment_failure,
)
from ..utils.exceptions import MarketplaceError
from ..utils.logger import get_logger
from .seller_workflow import LISTING_UNAVAILABLE, SellerWorkflow

logger = get_logger(__name__)

HELP_TEXT = (
    "I sell products. Send a listing_query to see what is available, "
    "a purchase_offer to negotiate, or a payment_notice once you have paid."
)


class SellerAgent:
    """Seller agent that owns the workflows for its listings."""

    def __init__(
        self,
        agent_id: str,
        *,
        store: ListingStore,
        oracle: DecisionOracle,
        payments: PaymentRepository,
        archive: SessionArchive,
        settings: Settings,
        name: str | None = None,
        address: str | None = None
    ):
        self.agent_id = agent_id
        self.name = name or agent_id
        self.address = address
        self.store = store
        self.oracle = oracle
        self.payments = payments
        self.archive = archive
        self.settings = settings

        self._workflows: dict[str, SellerWorkflow] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _new_workflow(self) -> SellerWorkflow:
        return SellerWorkflow(
            self.agent_id,
            store=self.store,
            oracle=self.oracle,
            payments=self.payments,
            archive=self.archive,
            settings=self.settings,
            seller_address=self.address,
        )

    def workflow_for(self, listing_id: str) -> SellerWorkflow | None:
        """Workflow for one of this seller's listings, attached lazily for stored listings."""
        workflow = self._workflows.get(listing_id)
        if workflow is not None:
            return workflow
        listing = self.store.find(listing_id)
        if listing is None or listing.seller_id != self.agent_id:
            return None
        workflow = self._new_workflow()
        workflow.resume(listing)
        self._workflows[listing_id] = workflow
        return workflow

    # === Listing management ===

    async def list_product(self, draft: ListingDraft, listing_id: str | None = None) -> Listing:
        """
        Create and publish a listing.

        Raises:
            ListingConflictError: listing_id already used with different fields
        """
        workflow = self._new_workflow()
        if listing_id is None:
            listing = await workflow.list_product(draft)
        else:
            async with self._locks[listing_id]:
                listing = await workflow.list_product(draft, listing_id)
        self._workflows.setdefault(listing.listing_id, workflow)
        return listing

    async def update_listing(self, listing_id: str, changes: ListingUpdate) -> Listing:
        async with self._locks[listing_id]:
            listing = self.store.update(listing_id, changes)
            workflow = self.workflow_for(listing_id)
            if workflow is not None:
                workflow.state.listing = listing
            return listing

    async def cancel_listing(self, listing_id: str) -> Listing:
        async with self._locks[listing_id]:
            listing = self.store.cancel(listing_id)
            workflow = self.workflow_for(listing_id)
            if workflow is not None:
                workflow.resume(listing)
            return listing

    def active_listings(self) -> list[Listing]:
        return self.store.list_listings(status=ListingStatus.ACTIVE, seller_id=self.agent_id)

    # === Protocol ===

    async def handle_message(self, envelope: MessageEnvelope) -> MessageEnvelope:
        """
        Answer one inbound envelope.

        Never raises: failures become error replies so the buyer always hears back.
        """
        payload = envelope.payload
        logger.info(f"Seller {self.agent_id} received {envelope.kind} from {envelope.sender_id}")
        try:
            if isinstance(payload, ListingQuery):
                listings = [listing.summary() for listing in self.active_listings()]
                return build_listing_response(self.agent_id, listings, recipient_id=envelope.sender_id)
            if isinstance(payload, PurchaseOffer):
                return await self._handle_offer(payload)
            if isinstance(payload, PaymentNotice):
                return await self._handle_payment(payload)
            return build_error_reply(self.agent_id, "unsupported_kind", HELP_TEXT)
        except MarketplaceError as e:
            logger.error(f"Seller {self.agent_id} failed on {envelope.kind}: {e.code} - {e.message}")
            return build_error_reply(self.agent_id, e.code.lower(), e.message)
        except Exception as e:
            logger.error(f"Seller {self.agent_id} unexpected error on {envelope.kind}: {e}", exc_info=True)
            return build_error_reply(self.agent_id, "internal_error", "Something went wrong handling your message.")

    async def _handle_offer(self, offer: PurchaseOffer) -> MessageEnvelope:
        async with self._locks[offer.listing_id]:
            workflow = self.workflow_for(offer.listing_id)
            if workflow is None:
                return build_rejection(
                    self.agent_id, offer, LISTING_UNAVAILABLE, f"I don't have a listing {offer.listing_id}."
                )
            return await workflow.handle_offer(offer)

    async def _handle_payment(self, notice: PaymentNotice) -> MessageEnvelope:
        async with self._locks[notice.listing_id]:
            workflow = self.workflow_for(notice.listing_id)
            if workflow is None:
                return build_shipment_failure(
                    self.agent_id, notice.listing_id, notice.buyer_id,
                    LISTING_UNAVAILABLE, f"I don't have a listing {notice.listing_id}."
                )
            return await workflow.handle_payment(notice)

    def agent_card(self, url: str) -> AgentCard:
        return AgentCard(
            agent_id=self.agent_id,
            name=self.name,
            description="Sells listed products and negotiates price with buyer agents",
            url=url,
            capabilities=[self.settings.CAPABILITY_TAG],
            skills=[
                AgentSkill(
                    id="negotiate_sale",
                    name="Negotiate sale",
                    description="Answer listing queries, evaluate purchase offers and ship after payment",
                    tags=["marketplace", "negotiation"],
                )
            ],
            address=self.address,
        )
