"""
Global error handling middleware.

WHAT: Translate exceptions to appropriate HTTP responses
WHY: Consistent error responses with proper status codes
HOW: FastAPI exception handlers for marketplace and LLM provider exceptions
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from ..llm.types import (
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderDisabledError,
    ProviderResponseError,
)
from ..utils.exceptions import (
    MarketplaceError,
    ValidationException,
    ListingNotFoundError,
    ListingConflictError,
    InvalidTransitionError,
    ConcurrentReservationError,
    PaymentError,
    ShipmentError,
    ExternalCallTimeoutError,
    OracleUnavailableError,
    SettlementUnavailableError,
    DiscoveryError,
    SelectionError,
    NegotiationError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# First match wins; subclasses before their bases
STATUS_BY_ERROR = [
    (ListingNotFoundError, status.HTTP_404_NOT_FOUND),
    (ListingConflictError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ConcurrentReservationError, status.HTTP_409_CONFLICT),
    (ValidationException, status.HTTP_400_BAD_REQUEST),
    (PaymentError, status.HTTP_402_PAYMENT_REQUIRED),
    (ShipmentError, status.HTTP_502_BAD_GATEWAY),
    (ExternalCallTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (OracleUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SettlementUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DiscoveryError, status.HTTP_404_NOT_FOUND),
    (SelectionError, status.HTTP_404_NOT_FOUND),
    (NegotiationError, status.HTTP_409_CONFLICT),
]


def status_for(exc: MarketplaceError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


async def provider_disabled_handler(request: Request, exc: ProviderDisabledError):
    """
    Handle ProviderDisabledError.

    WHAT: Provider is disabled in config
    WHY: User needs to enable provider or switch to another
    HOW: Return 400 with clear error code
    """
    logger.warning(f"Provider disabled: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "LLM_PROVIDER_DISABLED",
            "message": str(exc),
            "detail": "Check LLM provider configuration"
        }
    )


async def provider_timeout_handler(request: Request, exc: ProviderTimeoutError):
    logger.error(f"Provider timeout: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "LLM_TIMEOUT",
            "message": str(exc),
            "detail": "LLM provider request timed out"
        }
    )


async def provider_unavailable_handler(request: Request, exc: ProviderUnavailableError):
    logger.error(f"Provider unavailable: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "LLM_UNAVAILABLE",
            "message": str(exc),
            "detail": "LLM provider is not reachable. Set ORACLE_MODE=rules to run without one."
        }
    )


async def provider_response_error_handler(request: Request, exc: ProviderResponseError):
    logger.error(f"Provider response error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "error": "LLM_BAD_GATEWAY",
            "message": str(exc),
            "detail": "LLM provider returned an invalid response"
        }
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error: {exc.errors()}")

    # Clean up error details to be JSON serializable
    cleaned_errors = []
    for error in exc.errors():
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            cleaned_error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": cleaned_errors,
            "timestamp": datetime.now().isoformat()
        }
    )


async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
    """
    Handle MarketplaceError and subclasses.

    WHAT: Domain error raised by a store, workflow or gateway
    WHY: Clients branch on the error code, not the message
    HOW: Status code from STATUS_BY_ERROR, body with code, message and details
    """
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"Marketplace error: {exc.code} - {exc.message}")
    else:
        logger.warning(f"Marketplace error: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "timestamp": datetime.now().isoformat()
        }
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    # LLM Provider exceptions
    app.add_exception_handler(ProviderDisabledError, provider_disabled_handler)
    app.add_exception_handler(ProviderTimeoutError, provider_timeout_handler)
    app.add_exception_handler(ProviderUnavailableError, provider_unavailable_handler)
    app.add_exception_handler(ProviderResponseError, provider_response_error_handler)

    # API exceptions
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(MarketplaceError, marketplace_exception_handler)

    logger.info("Exception handlers registered")
