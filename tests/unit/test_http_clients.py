"""
Unit tests for HTTP collaborators.

WHAT: Test the LLM provider, settlement, discovery and transport clients
WHY: Verify request shape, retry behavior and error mapping without real servers
HOW: Mock HTTP with respx; zero retry delay
"""

import json
from decimal import Decimal

import httpx
import pytest
import respx

from agent_market.llm.openai_compatible import OpenAICompatibleProvider
from agent_market.llm.types import ProviderResponseError, ProviderUnavailableError
from agent_market.models.message import NegotiationReply, PurchaseOffer
from agent_market.models.negotiation import OfferVerdict
from agent_market.services.discovery import HttpDiscoveryGateway
from agent_market.services.negotiation_protocol import (
    build_negotiation_reply,
    build_purchase_offer,
    expect_payload,
)
from agent_market.services.settlement import HttpSettlementGateway
from agent_market.services.transport import HttpTransport, jsonrpc_error, jsonrpc_result
from agent_market.utils.exceptions import (
    DiscoveryError,
    SettlementFailedError,
    SettlementUnavailableError,
    TransportError,
)

LEDGER = "http://ledger.test"
REGISTRY = "http://registry.test"
PEER = "http://peer.test/api/a2a/seller-agent"
LLM = "http://llm.test/v1"


@pytest.mark.unit
class TestOpenAICompatibleProvider:
    """Test chat completion client."""

    def _provider(self, **kwargs):
        return OpenAICompatibleProvider(
            name="lm_studio", base_url=LLM, default_model="test-model", retry_delay=0, **kwargs
        )

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_strips_thinking(self):
        route = respx.post(f"{LLM}/chat/completions").mock(return_value=httpx.Response(200, json={
            "choices": [{"message": {"content": "<think>hmm</think>{\"action\": \"accept\"}"}}],
            "usage": {"total_tokens": 12},
            "model": "test-model",
        }))
        provider = self._provider(api_key="secret")

        result = await provider.generate(
            messages=[{"role": "user", "content": "hi"}], temperature=0.0, max_tokens=64
        )

        assert result.text == '{"action": "accept"}'
        assert route.calls.last.request.headers["Authorization"] == "Bearer secret"
        body = json.loads(route.calls.last.request.content)
        assert body["model"] == "test-model"
        assert body["stream"] is False
        await provider.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_connect_error_after_retries(self):
        route = respx.post(f"{LLM}/chat/completions").mock(side_effect=httpx.ConnectError("refused"))
        provider = self._provider(max_retries=2)

        with pytest.raises(ProviderUnavailableError):
            await provider.generate(messages=[], temperature=0.0, max_tokens=8)

        assert route.call_count == 2
        await provider.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_not_retried(self):
        route = respx.post(f"{LLM}/chat/completions").mock(return_value=httpx.Response(400, text="bad"))
        provider = self._provider()

        with pytest.raises(ProviderResponseError):
            await provider.generate(messages=[], temperature=0.0, max_tokens=8)

        assert route.call_count == 1
        await provider.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_ping_lists_models(self):
        respx.get(f"{LLM}/models").mock(return_value=httpx.Response(200, json={"data": [{"id": "m1"}]}))
        provider = self._provider()

        status = await provider.ping()

        assert status.available is True
        assert status.models == ["m1"]
        await provider.close()


@pytest.mark.unit
class TestHttpSettlementGateway:
    """Test REST ledger client."""

    def _gateway(self):
        return HttpSettlementGateway(LEDGER, api_key="k", max_retries=3, retry_delay=0)

    @pytest.mark.asyncio
    @respx.mock
    async def test_pay_sends_idempotency_key(self):
        route = respx.post(f"{LEDGER}/payments").mock(
            return_value=httpx.Response(201, json={"transaction_ref": "tx-9"})
        )
        gateway = self._gateway()

        ref = await gateway.pay("0.0.2002", Decimal("90"), "hbar", "x402:listing-camera:buyer-1#1")

        assert ref == "tx-9"
        request = route.calls.last.request
        assert request.headers["Idempotency-Key"] == "x402:listing-camera:buyer-1#1"
        assert json.loads(request.content)["amount"] == "90.00"
        assert json.loads(request.content)["currency"] == "HBAR"
        await gateway.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_pay_retries_server_errors_with_same_key(self):
        route = respx.post(f"{LEDGER}/payments").mock(side_effect=[
            httpx.Response(503),
            httpx.Response(200, json={"id": "tx-10"}),
        ])
        gateway = self._gateway()

        assert await gateway.pay("0.0.2002", Decimal("90"), "HBAR", "memo-1") == "tx-10"
        assert route.call_count == 2
        keys = {call.request.headers["Idempotency-Key"] for call in route.calls}
        assert keys == {"memo-1"}
        await gateway.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_pay_refused(self):
        respx.post(f"{LEDGER}/payments").mock(return_value=httpx.Response(402, json={"error": "funds"}))
        gateway = self._gateway()

        with pytest.raises(SettlementFailedError):
            await gateway.pay("0.0.2002", Decimal("90"), "HBAR", "memo")
        await gateway.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_pay_unreachable(self):
        respx.post(f"{LEDGER}/payments").mock(side_effect=httpx.ConnectError("refused"))
        gateway = self._gateway()

        with pytest.raises(SettlementUnavailableError):
            await gateway.pay("0.0.2002", Decimal("90"), "HBAR", "memo")
        await gateway.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_verify_statuses(self):
        respx.get(f"{LEDGER}/payments/tx-ok").mock(return_value=httpx.Response(200, json={"status": "SUCCESS"}))
        respx.get(f"{LEDGER}/payments/tx-pending").mock(return_value=httpx.Response(200, json={"status": "pending"}))
        respx.get(f"{LEDGER}/payments/tx-missing").mock(return_value=httpx.Response(404))
        gateway = self._gateway()

        assert await gateway.verify("tx-ok") is True
        assert await gateway.verify("tx-pending") is False
        assert await gateway.verify("tx-missing") is False
        await gateway.close()


@pytest.mark.unit
class TestHttpDiscoveryGateway:
    """Test registry client."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_lookup_filters_by_capability(self):
        respx.get(f"{REGISTRY}/agents").mock(return_value=httpx.Response(200, json={"agents": [
            {"agent_id": "s1", "name": "Seller", "url": PEER, "capabilities": ["marketplace_seller"]},
            {"agent_id": "s2", "name": "Other", "url": "http://x", "capabilities": ["weather"]},
            {"name": "no id"},
        ]}))
        gateway = HttpDiscoveryGateway(REGISTRY, retry_delay=0)

        counterparts = await gateway.lookup("marketplace_seller")

        assert [c.agent_id for c in counterparts] == ["s1"]
        assert counterparts[0].endpoint == PEER
        await gateway.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_registry_down(self):
        route = respx.get(f"{REGISTRY}/agents").mock(return_value=httpx.Response(500))
        gateway = HttpDiscoveryGateway(REGISTRY, max_retries=2, retry_delay=0)

        with pytest.raises(DiscoveryError):
            await gateway.lookup("marketplace_seller")

        assert route.call_count == 2
        await gateway.close()


@pytest.mark.unit
class TestHttpTransport:
    """Test JSON-RPC client."""

    def _offer(self):
        return build_purchase_offer("buyer-1", "listing-camera", Decimal("90"), "HBAR", 1)

    @pytest.mark.asyncio
    @respx.mock
    async def test_send_returns_parsed_reply(self):
        envelope = self._offer()
        offer = expect_payload(envelope, PurchaseOffer)
        reply = build_negotiation_reply("seller-agent", offer, OfferVerdict(action="accept", message="Deal"))
        route = respx.post(PEER).mock(return_value=httpx.Response(200, json=jsonrpc_result("1", reply)))
        transport = HttpTransport(api_key="peer-key", retry_delay=0)

        result = await transport.send(PEER, envelope)

        assert expect_payload(result, NegotiationReply).accepted is True
        request = route.calls.last.request
        assert request.headers["X-Agent-API-Key"] == "peer-key"
        body = json.loads(request.content)
        assert body["method"] == "message/send"
        assert body["params"]["message"]["message_id"] == envelope.message_id
        await transport.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_jsonrpc_error_raises(self):
        respx.post(PEER).mock(return_value=httpx.Response(200, json=jsonrpc_error("1", -32003, "Agent not found")))
        transport = HttpTransport(retry_delay=0)

        with pytest.raises(TransportError):
            await transport.send(PEER, self._offer())
        await transport.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_unreachable_peer(self):
        route = respx.post(PEER).mock(side_effect=httpx.ConnectError("refused"))
        transport = HttpTransport(max_retries=2, retry_delay=0)

        with pytest.raises(TransportError):
            await transport.send(PEER, self._offer())

        assert route.call_count == 2
        await transport.close()
