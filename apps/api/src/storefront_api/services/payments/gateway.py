"""Payment collaborator used for subscription charges."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Protocol
from uuid import uuid4

import httpx
from loguru import logger

from storefront_api.core.errors import PaymentGatewayError
from storefront_api.core.settings import settings


@dataclass(slots=True)
class ChargeResult:
    """Outcome of a charge attempt that reached the processor."""

    success: bool
    transaction_ref: str | None = None
    failure_reason: str | None = None


class PaymentGateway(Protocol):
    async def charge(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        idempotency_key: str,
        payment_method: str | None = None,
    ) -> ChargeResult:
        ...


class HttpPaymentGateway:
    """Charges customers through the payments service REST API.

    Declines come back as ``ChargeResult(success=False)``; transport errors,
    timeouts, and unexpected responses raise :class:`PaymentGatewayError` so
    callers can leave billing state untouched.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._http_client = http_client

    async def charge(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        idempotency_key: str,
        payment_method: str | None = None,
    ) -> ChargeResult:
        payload: dict[str, Any] = {
            "customerId": customer_id,
            "amount": str(amount),
            "currency": currency,
        }
        if payment_method:
            payload["paymentMethod"] = payment_method
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Idempotency-Key": idempotency_key,
        }

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        close_client = self._http_client is None
        try:
            response = await client.post(f"{self._base_url}/charges", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Payment gateway request failed", customer_id=customer_id, error=str(exc))
            raise PaymentGatewayError(f"Payment gateway unreachable: {exc}") from exc
        finally:
            if close_client:
                await client.aclose()

        if response.status_code == 402:
            body = _safe_json(response)
            return ChargeResult(success=False, failure_reason=str(body.get("failureReason") or "declined"))
        if response.status_code >= 400:
            raise PaymentGatewayError(f"Payment gateway returned HTTP {response.status_code}")

        body = _safe_json(response)
        status = str(body.get("status") or "").lower()
        if status == "succeeded":
            return ChargeResult(success=True, transaction_ref=str(body.get("id") or ""))
        if status == "failed":
            return ChargeResult(success=False, failure_reason=str(body.get("failureReason") or "declined"))
        raise PaymentGatewayError(f"Unexpected payment status: {status or 'missing'}")


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise PaymentGatewayError("Payment gateway returned a non-JSON body") from exc
    return body if isinstance(body, dict) else {}


@dataclass
class StubPaymentGateway:
    """In-process gateway for development and tests.

    Customers listed in ``declined_customers`` are declined; ``error`` is
    raised on every call when set.
    """

    declined_customers: set[str] = field(default_factory=set)
    error: Exception | None = None
    charges: List[dict[str, Any]] = field(default_factory=list)

    async def charge(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        idempotency_key: str,
        payment_method: str | None = None,
    ) -> ChargeResult:
        if self.error is not None:
            raise self.error
        record = {
            "customer_id": customer_id,
            "amount": Decimal(amount),
            "currency": currency,
            "idempotency_key": idempotency_key,
        }
        self.charges.append(record)
        if customer_id in self.declined_customers:
            return ChargeResult(success=False, failure_reason="card_declined")
        return ChargeResult(success=True, transaction_ref=f"stub_{uuid4().hex[:12]}")


def build_payment_gateway() -> PaymentGateway:
    if settings.payment_gateway_base_url:
        return HttpPaymentGateway(
            base_url=settings.payment_gateway_base_url,
            api_key=settings.payment_gateway_api_key,
            timeout_seconds=settings.payment_gateway_timeout_seconds,
        )
    if settings.environment == "development":
        return StubPaymentGateway()
    raise PaymentGatewayError("Payment gateway is not configured")


__all__ = [
    "ChargeResult",
    "HttpPaymentGateway",
    "PaymentGateway",
    "StubPaymentGateway",
    "build_payment_gateway",
]
