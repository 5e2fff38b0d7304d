"""
API v1 router aggregation.

WHAT: Combine all v1 endpoint routers
WHY: Single place to register all API routes
HOW: Include routers from endpoints with prefixes
"""

from fastapi import APIRouter

from .endpoints import status, listings, purchases, a2a

# Create main v1 router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(
    status.router,
    prefix="/api/v1",
    tags=["status"]
)

api_router.include_router(
    listings.router,
    prefix="/api/v1",
    tags=["listings"]
)

api_router.include_router(
    purchases.router,
    prefix="/api/v1",
    tags=["purchases"]
)

# Agent-to-agent transport lives outside the versioned API; peers address agents by URL
api_router.include_router(
    a2a.router,
    prefix="/api/a2a",
    tags=["a2a"]
)
