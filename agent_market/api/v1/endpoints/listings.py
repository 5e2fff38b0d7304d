"""
Listing endpoints.

WHAT: Create, read, edit and cancel sale listings; inspect payments and archived sessions
WHY: Sellers manage inventory over HTTP; operators inspect what happened to a listing
HOW: Thin FastAPI handlers over SellerAgent and the stores owned by the registry
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status as http_status

from ....core.registry import AgentRegistry
from ....models.api_schemas import ListingCreate
from ....models.listing import Listing, ListingDraft, ListingStatus, ListingUpdate
from ....models.negotiation import NegotiationSession
from ....models.payment import PaymentRecord
from ....utils.exceptions import ValidationException
from ....utils.logger import get_logger
from ..dependencies import get_registry

logger = get_logger(__name__)

router = APIRouter()


def _seller_for(registry: AgentRegistry, seller_id: Optional[str]):
    agent_id = seller_id or registry.settings.SELLER_AGENT_ID
    seller = registry.get_seller(agent_id)
    if seller is None:
        raise ValidationException(f"Unknown seller agent: {agent_id}")
    return seller


def _draft(body: ListingCreate) -> ListingDraft:
    return ListingDraft.model_validate(body.model_dump(exclude={"listing_id", "seller_id"}))


@router.post("/listings", response_model=Listing, status_code=http_status.HTTP_201_CREATED)
async def create_listing(body: ListingCreate, registry: AgentRegistry = Depends(get_registry)):
    """
    Create and publish a listing.

    With listing_id set, repeating the call with the same fields returns the
    same listing; different fields are a 409.
    """
    seller = _seller_for(registry, body.seller_id)
    listing = await seller.list_product(_draft(body), listing_id=body.listing_id)
    logger.info(f"Listing {listing.listing_id} created via API by {seller.agent_id}")
    return listing


@router.put("/listings/{listing_id}", response_model=Listing)
async def put_listing(listing_id: str, body: ListingCreate, registry: AgentRegistry = Depends(get_registry)):
    """Create a listing under a chosen id (idempotent)."""
    if body.listing_id and body.listing_id != listing_id:
        raise ValidationException("listing_id in body does not match path")
    seller = _seller_for(registry, body.seller_id)
    return await seller.list_product(_draft(body), listing_id=listing_id)


@router.get("/listings", response_model=List[Listing])
async def list_listings(
    status: Optional[ListingStatus] = None,
    seller_id: Optional[str] = None,
    registry: AgentRegistry = Depends(get_registry)
):
    return registry.store.list_listings(status=status, seller_id=seller_id)


@router.get("/listings/{listing_id}", response_model=Listing)
async def get_listing(listing_id: str, registry: AgentRegistry = Depends(get_registry)):
    return registry.store.get(listing_id)


@router.patch("/listings/{listing_id}", response_model=Listing)
async def update_listing(listing_id: str, changes: ListingUpdate, registry: AgentRegistry = Depends(get_registry)):
    """Edit descriptive fields of a draft or active listing."""
    listing = registry.store.get(listing_id)
    seller = _seller_for(registry, listing.seller_id)
    return await seller.update_listing(listing_id, changes)


@router.post("/listings/{listing_id}/cancel", response_model=Listing)
async def cancel_listing(listing_id: str, registry: AgentRegistry = Depends(get_registry)):
    listing = registry.store.get(listing_id)
    seller = _seller_for(registry, listing.seller_id)
    return await seller.cancel_listing(listing_id)


@router.get("/listings/{listing_id}/payments", response_model=List[PaymentRecord])
async def listing_payments(listing_id: str, registry: AgentRegistry = Depends(get_registry)):
    registry.store.get(listing_id)
    return registry.payments.list_for_listing(listing_id)


@router.get("/listings/{listing_id}/sessions", response_model=List[NegotiationSession])
async def listing_sessions(listing_id: str, registry: AgentRegistry = Depends(get_registry)):
    """Archived negotiation sessions for a listing."""
    registry.store.get(listing_id)
    return registry.archive.list_for_listing(listing_id)
