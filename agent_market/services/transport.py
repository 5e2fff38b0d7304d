"""
Protocol message transports.

WHAT: Deliver a protocol envelope to a peer and return its reply
WHY: Workflows talk through request/response pairs over any point-to-point channel
HOW: In-process handler map, or JSON-RPC 2.0 "message/send" over HTTP via httpx
"""

from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

import httpx

from ..models.message import MessageEnvelope
from ..utils.exceptions import MalformedMessageError, TransportError
from ..utils.retry import call_with_retry
from ..utils.logger import get_logger
from .negotiation_protocol import parse_envelope

logger = get_logger(__name__)

MessageHandler = Callable[[MessageEnvelope], Awaitable[MessageEnvelope]]

JSONRPC_VERSION = "2.0"
SEND_METHOD = "message/send"

# JSON-RPC 2.0 error codes, plus application codes in the -32000 range
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
UNAUTHORIZED = -32002
AGENT_NOT_FOUND = -32003
INVALID_MESSAGE = -32004


class MessageTransport(Protocol):
    """Point-to-point request/response channel."""

    async def send(self, endpoint: str, envelope: MessageEnvelope) -> MessageEnvelope:
        ...


class InProcessTransport:
    """
    Handler map keyed by endpoint.

    Envelopes are serialized to wire form and parsed back on both legs so
    in-process peers see exactly what an HTTP peer would.
    """

    def __init__(self):
        self._handlers: dict[str, MessageHandler] = {}

    def register(self, endpoint: str, handler: MessageHandler) -> None:
        self._handlers[endpoint] = handler
        logger.info(f"In-process endpoint registered: {endpoint}")

    def unregister(self, endpoint: str) -> None:
        self._handlers.pop(endpoint, None)

    async def send(self, endpoint: str, envelope: MessageEnvelope) -> MessageEnvelope:
        handler = self._handlers.get(endpoint)
        if handler is None:
            raise TransportError(endpoint, "no handler registered")
        logger.debug(f"-> {endpoint}: {envelope.kind} ({envelope.message_id})")
        reply = await handler(parse_envelope(envelope.to_wire()))
        logger.debug(f"<- {endpoint}: {reply.kind} ({reply.message_id})")
        return parse_envelope(reply.to_wire())


def build_jsonrpc_request(envelope: MessageEnvelope, request_id: str | None = None) -> dict:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id or str(uuid4()),
        "method": SEND_METHOD,
        "params": {"message": envelope.to_wire()},
    }


def jsonrpc_error(request_id: Any, code: int, message: str, data: Any = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def jsonrpc_result(request_id: Any, envelope: MessageEnvelope) -> dict:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": {"message": envelope.to_wire()}}


async def dispatch_jsonrpc(body: Any, handler: MessageHandler) -> dict:
    """
    Serve one JSON-RPC request against a message handler.

    WHAT: Validate the JSON-RPC frame, parse the envelope, call the handler
    WHY: Inbound HTTP transport for agents reachable over the network
    HOW: Map each failure to its JSON-RPC error code; never raise
    """
    if not isinstance(body, dict) or body.get("jsonrpc") != JSONRPC_VERSION or "method" not in body:
        return jsonrpc_error(body.get("id") if isinstance(body, dict) else None, INVALID_REQUEST, "Invalid Request")

    request_id = body.get("id")
    if body["method"] != SEND_METHOD:
        return jsonrpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {body['method']}")

    params = body.get("params")
    if not isinstance(params, dict) or "message" not in params:
        return jsonrpc_error(request_id, INVALID_PARAMS, "params.message is required")

    try:
        envelope = parse_envelope(params["message"])
    except MalformedMessageError as e:
        return jsonrpc_error(request_id, INVALID_MESSAGE, e.message, e.details)

    try:
        reply = await handler(envelope)
    except Exception as e:
        logger.error(f"Handler failed for {envelope.kind}: {e}", exc_info=True)
        return jsonrpc_error(request_id, INTERNAL_ERROR, "Internal error")

    return jsonrpc_result(request_id, reply)


class HttpTransport:
    """JSON-RPC 2.0 client for remote agents."""

    def __init__(
        self,
        *,
        api_key: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        client: httpx.AsyncClient | None = None
    ):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-Agent-API-Key"] = api_key
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout), headers=headers)

    async def _post(self, endpoint: str, request: dict) -> httpx.Response:
        response = await self.client.post(endpoint, json=request)
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def send(self, endpoint: str, envelope: MessageEnvelope) -> MessageEnvelope:
        """
        Send an envelope and return the peer's reply.

        Retries reuse the same message_id; the peer deduplicates.

        Raises:
            TransportError: Peer unreachable, HTTP error, or JSON-RPC error
            MalformedMessageError: Reply envelope failed validation
        """
        request = build_jsonrpc_request(envelope)
        try:
            response = await call_with_retry(
                lambda: self._post(endpoint, request),
                retry_on=(httpx.TransportError, httpx.HTTPStatusError),
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                description=f"Send {envelope.kind} to {endpoint}",
            )
        except httpx.HTTPError as e:
            raise TransportError(endpoint, str(e) or type(e).__name__) from e

        if response.status_code >= 400:
            raise TransportError(endpoint, f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(endpoint, "invalid JSON response") from e

        if not isinstance(body, dict):
            raise TransportError(endpoint, "invalid JSON-RPC response")
        if "error" in body:
            error = body["error"] or {}
            raise TransportError(endpoint, f"JSON-RPC error {error.get('code')}: {error.get('message')}")

        result = body.get("result") or {}
        return parse_envelope(result.get("message") if isinstance(result, dict) else None)

    async def close(self):
        await self.client.aclose()
