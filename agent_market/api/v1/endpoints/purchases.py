"""
Purchase endpoints.

WHAT: Run a buyer workflow, either to completion or as a live event stream
WHY: Callers either want the final result or progress updates for a UI
HOW: BuyerWorkflow.run for the blocking call; EventSourceResponse over run_events for SSE
"""

import asyncio
import json
from datetime import datetime
from typing import AsyncIterator

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from ....core.registry import AgentRegistry
from ....models.api_schemas import PurchaseRequest
from ....models.workflow import WorkflowResult
from ....utils.logger import get_logger
from ..dependencies import get_registry

logger = get_logger(__name__)

router = APIRouter()


@router.post("/purchases", response_model=WorkflowResult)
async def purchase(body: PurchaseRequest, registry: AgentRegistry = Depends(get_registry)):
    """
    Run a buyer workflow to a terminal state.

    Failures are reported in the result (success=false, typed error), not as HTTP errors.
    """
    workflow = registry.create_buyer_workflow(body.buyer_id)
    result = await workflow.run(body.to_constraints())
    logger.info(f"Purchase for {result.buyer_id} finished: success={result.success}")
    return result


async def purchase_event_generator(registry: AgentRegistry, body: PurchaseRequest) -> AsyncIterator[dict]:
    """
    Generate SSE events for one buyer run.

    WHAT: Stream workflow events as they happen
    WHY: Real-time updates to the frontend
    HOW: Yield one SSE event per WorkflowEvent; the last is workflow_complete
    """
    workflow = registry.create_buyer_workflow(body.buyer_id)
    logger.info(f"Starting SSE stream for buyer {workflow.buyer_id}")

    yield {
        "event": "connected",
        "data": json.dumps({
            "type": "connected",
            "buyer_id": workflow.buyer_id,
            "timestamp": datetime.now().isoformat()
        })
    }

    try:
        async for event in workflow.run_events(body.to_constraints()):
            yield {
                "event": event.type,
                "data": event.model_dump_json()
            }
    except asyncio.CancelledError:
        logger.info(f"SSE client for buyer {workflow.buyer_id} disconnected")
        raise
    except Exception as e:
        logger.error(f"Error in SSE stream for buyer {workflow.buyer_id}: {e}")
        yield {
            "event": "error",
            "data": json.dumps({
                "type": "error",
                "error": "STREAM_ERROR",
                "message": str(e),
                "timestamp": datetime.now().isoformat()
            })
        }
    finally:
        logger.info(f"SSE stream ended for buyer {workflow.buyer_id}")


@router.post("/purchases/stream")
async def purchase_stream(body: PurchaseRequest, registry: AgentRegistry = Depends(get_registry)):
    return EventSourceResponse(purchase_event_generator(registry, body))
