"""
KKiaPay client: transaction verification with retries, and refunds.

Sandbox and production differ only in base URL. In sandbox mode a failed
verification falls back to a synthetic SUCCESS with amount 0 so integration
runs can proceed; Settings refuses sandbox mode in production.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable

import httpx

from kivendi.core.config import Settings, mask_secret

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "SUCCESS"


class GatewayError(Exception):
    """Verification or refund could not be completed."""


class NetworkError(GatewayError):
    pass


class ProviderError(GatewayError):
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"provider returned {status}: {body[:200]}")


class MalformedResponse(GatewayError):
    pass


class TransactionNotFound(GatewayError):
    pass


@dataclass
class VerifiedTransaction:
    transaction_id: str
    amount: Decimal
    status: str
    state: str | None = None
    created_at: str | None = None
    performed_at: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    synthetic: bool = False

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_SUCCESS


def _parse_transaction(transaction_id: str, payload: Any) -> VerifiedTransaction:
    if not isinstance(payload, dict):
        raise MalformedResponse("response body is not a JSON object")
    status = payload.get("status")
    if not isinstance(status, str) or not status:
        raise MalformedResponse("response has no status")
    try:
        amount = Decimal(str(payload.get("amount", 0) or 0))
    except InvalidOperation as e:
        raise MalformedResponse(f"bad amount: {payload.get('amount')!r}") from e
    return VerifiedTransaction(
        transaction_id=str(payload.get("transactionId") or transaction_id),
        amount=amount,
        status=status,
        state=payload.get("state"),
        created_at=payload.get("createdAt"),
        performed_at=payload.get("performedAt"),
        raw=payload,
    )


class KKiaPayClient:
    def __init__(
        self,
        private_key: str,
        base_url: str,
        *,
        sandbox: bool = False,
        production: bool = False,
        timeout: float = 10.0,
        verify_budget: float = 30.0,
        attempts: int = 3,
        backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if sandbox and production:
            raise ValueError("KKiaPay sandbox mode is not allowed in production")
        self.sandbox = sandbox
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.verify_budget = verify_budget
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"x-api-key": private_key, "Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "KKiaPayClient":
        logger.info(
            "KKiaPay client: mode=%s base=%s private_key=%s",
            "sandbox" if settings.kkiapay_sandbox else "production",
            settings.kkiapay_base_url,
            mask_secret(settings.kkiapay_private_key),
        )
        return cls(
            settings.kkiapay_private_key,
            settings.kkiapay_base_url,
            sandbox=settings.kkiapay_sandbox,
            production=settings.is_production,
            timeout=settings.kkiapay_timeout_sec,
            verify_budget=settings.kkiapay_verify_budget_sec,
            **kwargs,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _fetch(self, transaction_id: str) -> VerifiedTransaction:
        try:
            resp = await self._client.get(f"/transactions/{transaction_id}")
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {e}") from e
        if resp.status_code == 404:
            raise TransactionNotFound(f"transaction {transaction_id} not found")
        if not resp.is_success:
            raise ProviderError(resp.status_code, resp.text)
        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponse("response body is not JSON") from e
        return _parse_transaction(transaction_id, payload)

    async def _fetch_with_retries(self, transaction_id: str) -> VerifiedTransaction:
        for attempt in range(1, self.attempts + 1):
            try:
                tx = await self._fetch(transaction_id)
                logger.info(
                    "KKiaPay verify %s: attempt %s ok status=%s amount=%s",
                    transaction_id, attempt, tx.status, tx.amount,
                )
                return tx
            except GatewayError as e:
                logger.warning("KKiaPay verify %s: attempt %s/%s failed: %s", transaction_id, attempt, self.attempts, e)
                if attempt >= self.attempts:
                    raise
            await self._sleep(self.backoff * attempt)

    async def verify_transaction(self, transaction_id: str) -> VerifiedTransaction:
        """Fetch the provider's view of a transaction. Raises GatewayError."""
        try:
            return await asyncio.wait_for(self._fetch_with_retries(transaction_id), timeout=self.verify_budget)
        except (GatewayError, asyncio.TimeoutError) as e:
            if not self.sandbox:
                if isinstance(e, GatewayError):
                    raise
                raise NetworkError("verification deadline exceeded") from e
            logger.warning(
                "KKiaPay sandbox: verification of %s failed (%s), using synthetic success",
                transaction_id, repr(e),
            )
        return VerifiedTransaction(
            transaction_id=transaction_id,
            amount=Decimal("0"),
            status=STATUS_SUCCESS,
            state="RECEIVED",
            raw={"transactionId": transaction_id, "status": STATUS_SUCCESS, "sandbox": True},
            synthetic=True,
        )

    async def refund(self, transaction_id: str) -> dict[str, Any]:
        """Single refund request, no retries."""
        if self.sandbox:
            logger.info("KKiaPay sandbox: simulated refund of %s", transaction_id)
            return {"transactionId": transaction_id, "status": "REFUNDED", "sandbox": True}
        try:
            resp = await self._client.post(f"/transactions/{transaction_id}/refund")
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {e}") from e
        if resp.status_code == 404:
            raise TransactionNotFound(f"transaction {transaction_id} not found")
        if not resp.is_success:
            raise ProviderError(resp.status_code, resp.text)
        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponse("refund response is not JSON") from e
        logger.info("KKiaPay refund of %s accepted", transaction_id)
        return payload if isinstance(payload, dict) else {"result": payload}
