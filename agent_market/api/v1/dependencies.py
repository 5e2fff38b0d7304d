"""
Shared FastAPI dependencies.

WHAT: Access to the agent registry from request handlers
WHY: Endpoints use the registry built in the app lifespan instead of module singletons
HOW: Read app.state.registry; fail loudly if the lifespan did not run
"""

from fastapi import Request

from ...core.registry import AgentRegistry


def get_registry(request: Request) -> AgentRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None or not registry.started:
        raise RuntimeError("Agent registry not started")
    return registry
