"""
FastAPI application entry point.

WHAT: Main application setup and wiring
WHY: Initialize all components and routes
HOW: Create FastAPI app, register middleware, routers, handlers; the lifespan owns the agent registry
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .core.config import Settings, settings as default_settings
from .core.registry import AgentRegistry
from .utils.logger import setup_logging, get_logger
from .middleware.error_handler import register_exception_handlers
from .api.v1.router import api_router

logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Explicit settings (tests); defaults to the environment
    """
    settings = settings or default_settings
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        WHAT: Startup and shutdown logic
        WHY: Build the agent registry once, close clients and the database cleanly
        HOW: Async context manager for FastAPI lifespan
        """
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        registry = AgentRegistry(settings).start()
        app.state.registry = registry
        released = registry.store.release_expired(settings.RESERVATION_TTL_SECONDS)
        if released:
            logger.info(f"Released {len(released)} stale reservation(s) on startup")
        logger.info("Application startup complete")

        yield

        logger.info("Shutting down application")
        await registry.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register exception handlers
    register_exception_handlers(app)

    # Include API router
    app.include_router(api_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "agent_market.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.DEBUG
    )
