"""
Agent-to-agent endpoints.

WHAT: JSON-RPC 2.0 inbound transport and agent cards for hosted agents
WHY: Remote buyers reach local sellers over HTTP with the same envelopes used in-process
HOW: API key check, agent lookup, then dispatch_jsonrpc against the seller's message handler
"""

import secrets
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ....core.registry import AgentRegistry
from ....models.agent import AgentCard
from ....services.transport import (
    AGENT_NOT_FOUND,
    PARSE_ERROR,
    UNAUTHORIZED,
    dispatch_jsonrpc,
    jsonrpc_error,
)
from ....utils.logger import get_logger
from ..dependencies import get_registry

logger = get_logger(__name__)

router = APIRouter()


@router.post("/{agent_id}")
async def receive_message(
    agent_id: str,
    request: Request,
    x_agent_api_key: str | None = Header(default=None),
    registry: AgentRegistry = Depends(get_registry)
) -> dict[str, Any]:
    """
    Handle one JSON-RPC message/send call.

    Errors are JSON-RPC error objects with HTTP 200, as JSON-RPC clients expect.
    """
    try:
        body = await request.json()
    except ValueError:
        return jsonrpc_error(None, PARSE_ERROR, "Parse error")

    request_id = body.get("id") if isinstance(body, dict) else None

    expected_key = registry.settings.A2A_API_KEY
    if expected_key and not secrets.compare_digest(x_agent_api_key or "", expected_key):
        logger.warning(f"Rejected A2A call to {agent_id}: bad API key")
        return jsonrpc_error(request_id, UNAUTHORIZED, "Unauthorized")

    seller = registry.get_seller(agent_id)
    if seller is None:
        return jsonrpc_error(request_id, AGENT_NOT_FOUND, f"Agent not found: {agent_id}")

    return await dispatch_jsonrpc(body, seller.handle_message)


@router.get("/{agent_id}/card", response_model=AgentCard)
async def agent_card(agent_id: str, registry: AgentRegistry = Depends(get_registry)):
    seller = registry.get_seller(agent_id)
    if seller is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Agent not found: {agent_id}")
    return seller.agent_card(registry.seller_endpoint(agent_id))
