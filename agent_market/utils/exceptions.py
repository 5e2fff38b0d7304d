"""
Marketplace exception taxonomy.

WHAT: Domain-specific exceptions for workflows, stores and gateways
WHY: Workflows attach a typed error to their terminal state; the API maps them to HTTP codes
HOW: Custom exception classes with error codes, messages and structured details
"""

from typing import Optional, List, Dict, Any


class MarketplaceError(Exception):
    """Base class for marketplace business exceptions."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# === Workflow errors ===

class DiscoveryError(MarketplaceError):
    """No counterpart (or no listing) found for the capability tag."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message=message, code="DISCOVERY_FAILED", details=details)


class SelectionError(MarketplaceError):
    """Oracle found no viable candidate."""

    def __init__(self, message: str = "No viable candidate selected", details: Optional[Any] = None):
        super().__init__(message=message, code="NO_SELECTION", details=details)


class NegotiationError(MarketplaceError):
    """Negotiation ended without agreement for this session."""

    def __init__(self, message: str, code: str = "NEGOTIATION_FAILED", details: Optional[Any] = None):
        super().__init__(message=message, code=code, details=details)


class MalformedMessageError(NegotiationError):
    """Protocol message failed validation at the boundary."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            message=message,
            code="MALFORMED_MESSAGE",
            details={"field_errors": field_errors} if field_errors else None
        )


class RoundCapExceededError(NegotiationError):
    """Session reached the round cap without agreement."""

    def __init__(self, session_id: str, max_rounds: int):
        super().__init__(
            message=f"Round cap of {max_rounds} reached without agreement for session {session_id}",
            code="ROUND_CAP_EXCEEDED",
            details={"session_id": session_id, "max_rounds": max_rounds}
        )


class ConcurrentReservationError(MarketplaceError):
    """Listing is held by another session."""

    def __init__(self, listing_id: str, holder: Optional[str] = None):
        super().__init__(
            message=f"Listing {listing_id} is reserved by another session",
            code="CONCURRENT_RESERVATION",
            details={"listing_id": listing_id, "holder": holder}
        )


class PaymentError(MarketplaceError):
    """Settlement attempt failed; the reservation has been released."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message=message, code="PAYMENT_FAILED", details=details)


class ShipmentError(MarketplaceError):
    """Fulfillment failed after a confirmed payment. The payment stays confirmed."""

    def __init__(self, message: str, details: Optional[Any] = None, payment: Any = None):
        super().__init__(message=message, code="SHIPMENT_FAILED", details=details)
        self.payment = payment


# === Store errors ===

class ListingNotFoundError(MarketplaceError):
    """Raised when a listing is not found."""

    def __init__(self, listing_id: str):
        super().__init__(
            message=f"Listing not found: {listing_id}",
            code="LISTING_NOT_FOUND",
            details={"listing_id": listing_id}
        )


class ListingConflictError(MarketplaceError):
    """create_with_id called again with different fields."""

    def __init__(self, listing_id: str, fields: List[str]):
        super().__init__(
            message=f"Listing {listing_id} already exists with different values for: {', '.join(fields)}",
            code="LISTING_CONFLICT",
            details={"listing_id": listing_id, "fields": fields}
        )


class InvalidTransitionError(MarketplaceError):
    """Listing status transition not in the transition table."""

    def __init__(self, listing_id: str, current: str, target: str):
        super().__init__(
            message=f"Listing {listing_id} cannot move from {current} to {target}",
            code="INVALID_TRANSITION",
            details={"listing_id": listing_id, "current": current, "target": target}
        )


# === External collaborator errors ===

class ExternalCallTimeoutError(MarketplaceError):
    """Call to an external collaborator exceeded its timeout."""

    def __init__(self, collaborator: str, timeout: float):
        super().__init__(
            message=f"{collaborator} call timed out after {timeout}s",
            code="EXTERNAL_TIMEOUT",
            details={"collaborator": collaborator, "timeout": timeout}
        )


class OracleUnavailableError(MarketplaceError):
    """Decision oracle backend could not be reached."""

    def __init__(self, message: str):
        super().__init__(message=message, code="ORACLE_UNAVAILABLE")


class SettlementFailedError(MarketplaceError):
    """Gateway definitively refused the transfer (insufficient funds, bad currency)."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message=message, code="SETTLEMENT_FAILED", details=details)


class SettlementUnavailableError(MarketplaceError):
    """Gateway not reachable after retries."""

    def __init__(self, message: str):
        super().__init__(message=message, code="SETTLEMENT_UNAVAILABLE")


class TransportError(MarketplaceError):
    """Peer endpoint could not be reached or returned an error."""

    def __init__(self, endpoint: str, message: str):
        super().__init__(
            message=f"Transport to {endpoint} failed: {message}",
            code="TRANSPORT_FAILED",
            details={"endpoint": endpoint}
        )


class ValidationException(MarketplaceError):
    """Raised for validation errors."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors} if field_errors else None
        )
