"""
Status and health check endpoints.

WHAT: Health monitoring for the decision oracle backend and database
WHY: Quick diagnostics before starting purchases
HOW: FastAPI endpoints calling provider ping and database ping
"""

from fastapi import APIRouter, Depends

from ....core.registry import AgentRegistry
from ....models.api_schemas import HealthResponse
from ....utils.logger import get_logger
from ..dependencies import get_registry

logger = get_logger(__name__)

router = APIRouter()


async def _oracle_status(registry: AgentRegistry) -> dict:
    """Rule-based oracle is always available; an LLM oracle is as available as its provider."""
    if registry.provider is None:
        return {"available": True, "mode": "rules", "base_url": None, "models": None, "error": None}
    try:
        provider_status = await registry.provider.ping()
    except Exception as e:
        logger.error(f"Failed to get LLM status: {e}")
        return {"available": False, "mode": "llm", "base_url": None, "models": None, "error": str(e)}
    return {
        "available": provider_status.available,
        "mode": "llm",
        "base_url": provider_status.base_url,
        "models": provider_status.models,
        "error": provider_status.error,
    }


@router.get("/status")
async def component_status(registry: AgentRegistry = Depends(get_registry)):
    """
    Check oracle backend and database.

    Returns:
        JSON with oracle status, database status and registered sellers
    """
    return {
        "oracle": await _oracle_status(registry),
        "database": registry.db.ping(),
        "sellers": sorted(registry.sellers),
        "settlement_mode": registry.settings.SETTLEMENT_MODE,
        "discovery_mode": registry.settings.DISCOVERY_MODE,
    }


@router.get("/health", response_model=HealthResponse)
async def health_check(registry: AgentRegistry = Depends(get_registry)):
    """
    Overall application health check.

    Healthy when both the oracle backend and the database are up.
    """
    oracle = await _oracle_status(registry)
    database = registry.db.ping()
    healthy = oracle["available"] and database["available"]

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=registry.settings.APP_VERSION,
        app_name=registry.settings.APP_NAME,
        components={
            "oracle": {"available": oracle["available"], "mode": oracle["mode"]},
            "database": {"available": database["available"]},
        },
    )
