"""
Settlement gateways.

WHAT: Execute and verify value transfers from the buyer's account
WHY: Payment is an external collaborator; the orchestrator only needs pay and verify
HOW: In-process ledger for single-process runs and tests, REST ledger client via httpx
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol
from uuid import uuid4

import httpx

from ..models.listing import quantize_price
from ..utils.exceptions import SettlementFailedError, SettlementUnavailableError
from ..utils.retry import call_with_retry
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SettlementGateway(Protocol):
    """Executes and verifies transfers."""

    async def pay(self, recipient: str, amount: Decimal, currency: str, memo: str) -> str:
        """Transfer amount to recipient; returns the transaction reference."""
        ...

    async def verify(self, transaction_ref: str) -> bool:
        """True once the transfer is final."""
        ...


@dataclass
class LedgerTransfer:
    """One transfer on the local ledger."""
    transaction_ref: str
    payer: str
    recipient: str
    amount: Decimal
    currency: str
    memo: str
    created_at: datetime = field(default_factory=datetime.utcnow)


class LocalLedgerGateway:
    """
    In-process ledger with per-account, per-currency balances.

    Transfers are final as soon as pay() returns.
    """

    def __init__(
        self,
        payer: str,
        *,
        opening_balance: Decimal | float = Decimal("0"),
        supported_currencies: set[str] | None = None
    ):
        self.payer = payer
        self.supported_currencies = {c.upper() for c in (supported_currencies or {"HBAR", "USDC"})}
        self._balances: dict[tuple[str, str], Decimal] = {}
        self._transfers: dict[str, LedgerTransfer] = {}
        self._lock = asyncio.Lock()
        for currency in self.supported_currencies:
            self._balances[(payer, currency)] = quantize_price(opening_balance)

    def balance(self, account: str, currency: str) -> Decimal:
        return self._balances.get((account, currency.upper()), Decimal("0.00"))

    def deposit(self, account: str, amount: Decimal | float, currency: str) -> None:
        key = (account, currency.upper())
        self._balances[key] = self.balance(account, currency) + quantize_price(amount)

    def transfers(self) -> list[LedgerTransfer]:
        return list(self._transfers.values())

    async def pay(self, recipient: str, amount: Decimal, currency: str, memo: str) -> str:
        """
        Move funds from the payer to recipient.

        Raises:
            SettlementFailedError: Unsupported currency, non-positive amount or insufficient funds
        """
        currency = currency.upper()
        amount = quantize_price(amount)
        if currency not in self.supported_currencies:
            raise SettlementFailedError(
                f"Unsupported currency: {currency}",
                details={"supported": sorted(self.supported_currencies)}
            )
        if amount <= 0:
            raise SettlementFailedError(f"Invalid amount: {amount}")

        async with self._lock:
            available = self.balance(self.payer, currency)
            if available < amount:
                raise SettlementFailedError(
                    f"Insufficient funds: {available} {currency} available, {amount} required",
                    details={"available": str(available), "required": str(amount)}
                )
            self._balances[(self.payer, currency)] = available - amount
            self.deposit(recipient, amount, currency)
            ref = f"tx-{uuid4().hex}"
            self._transfers[ref] = LedgerTransfer(
                transaction_ref=ref,
                payer=self.payer,
                recipient=recipient,
                amount=amount,
                currency=currency,
                memo=memo,
            )

        logger.info(f"Ledger transfer {ref}: {amount} {currency} {self.payer} -> {recipient} ({memo})")
        return ref

    async def verify(self, transaction_ref: str) -> bool:
        return transaction_ref in self._transfers


class HttpSettlementGateway:
    """
    REST ledger client.

    POST {base_url}/payments with an Idempotency-Key header executes a transfer;
    GET {base_url}/payments/{ref} reports its status.
    """

    FINAL_STATUSES = {"confirmed", "success", "succeeded", "completed"}

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        client: httpx.AsyncClient | None = None
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout), headers=headers)

    async def _post_payment(self, body: dict, idempotency_key: str) -> httpx.Response:
        response = await self.client.post(
            f"{self.base_url}/payments",
            json=body,
            headers={"Idempotency-Key": idempotency_key}
        )
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def pay(self, recipient: str, amount: Decimal, currency: str, memo: str) -> str:
        """
        Execute a transfer.

        Connection failures and 5xx are retried under the same Idempotency-Key;
        a read timeout is not, since the transfer may already have executed.

        Raises:
            SettlementFailedError: Ledger refused the transfer (4xx)
            SettlementUnavailableError: Ledger unreachable or failing
        """
        body = {
            "recipient": recipient,
            "amount": str(quantize_price(amount)),
            "currency": currency.upper(),
            "memo": memo,
        }
        try:
            response = await call_with_retry(
                lambda: self._post_payment(body, memo),
                retry_on=(httpx.ConnectError, httpx.HTTPStatusError),
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                description=f"Settlement pay ({memo})",
            )
        except httpx.HTTPStatusError as e:
            raise SettlementUnavailableError(f"Ledger server error: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SettlementUnavailableError(f"Ledger unreachable: {e}") from e

        if response.status_code >= 400:
            raise SettlementFailedError(
                f"Ledger refused transfer: HTTP {response.status_code}",
                details={"status_code": response.status_code, "body": response.text[:500]}
            )

        try:
            data = response.json()
            ref = data.get("transaction_ref") or data.get("transactionId") or data["id"]
        except (ValueError, KeyError, AttributeError) as e:
            raise SettlementUnavailableError(f"Invalid ledger response: {e}") from e

        logger.info(f"Ledger accepted transfer {ref}: {body['amount']} {body['currency']} -> {recipient}")
        return str(ref)

    async def _get_status(self, transaction_ref: str) -> httpx.Response:
        response = await self.client.get(f"{self.base_url}/payments/{transaction_ref}")
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def verify(self, transaction_ref: str) -> bool:
        """
        Check transfer finality.

        Raises:
            SettlementUnavailableError: Ledger unreachable after retries
        """
        try:
            response = await call_with_retry(
                lambda: self._get_status(transaction_ref),
                retry_on=(httpx.TransportError, httpx.HTTPStatusError),
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                description=f"Settlement verify ({transaction_ref})",
            )
        except httpx.HTTPError as e:
            raise SettlementUnavailableError(f"Ledger unreachable: {e}") from e

        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise SettlementFailedError(f"Verify failed: HTTP {response.status_code}")
        try:
            status = str(response.json().get("status", "")).lower()
        except (ValueError, AttributeError) as e:
            raise SettlementUnavailableError(f"Invalid ledger response: {e}") from e
        return status in self.FINAL_STATUSES

    async def close(self):
        await self.client.aclose()
