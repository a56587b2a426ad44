"""Order lookups needed to award purchase points."""

from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Protocol

import httpx

from storefront_api.core.errors import BadRequestError, NotFoundError
from storefront_api.core.settings import settings


class OrderDirectory(Protocol):
    async def get_order_total(self, order_id: str, customer_id: str) -> Decimal:
        """Total of a completed order placed by ``customer_id``."""
        ...


class HttpOrderDirectory:
    """Reads order totals from the orders service."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._http_client = http_client

    async def get_order_total(self, order_id: str, customer_id: str) -> Decimal:
        headers = {"X-API-Key": self._api_key} if self._api_key else {}
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        close_client = self._http_client is None
        try:
            response = await client.get(f"{self._base_url}/orders/{order_id}", headers=headers)
        finally:
            if close_client:
                await client.aclose()

        if response.status_code == 404:
            raise NotFoundError(f"Order {order_id} not found")
        response.raise_for_status()
        body = response.json()
        owner = str(body.get("customerId") or body.get("userId") or "")
        if owner and owner != customer_id:
            raise BadRequestError(f"Order {order_id} does not belong to customer {customer_id}")
        total = body.get("total")
        if total is None:
            raise BadRequestError(f"Order {order_id} has no total")
        return Decimal(str(total))


class StaticOrderDirectory:
    """Order totals from a fixed mapping."""

    def __init__(self, totals: Mapping[str, Decimal | int | str] | None = None) -> None:
        self._totals = {key: Decimal(str(value)) for key, value in (totals or {}).items()}

    async def get_order_total(self, order_id: str, customer_id: str) -> Decimal:
        try:
            return self._totals[order_id]
        except KeyError as exc:
            raise NotFoundError(f"Order {order_id} not found") from exc


def build_order_directory() -> OrderDirectory:
    if settings.orders_api_base_url:
        return HttpOrderDirectory(
            base_url=settings.orders_api_base_url,
            api_key=settings.orders_api_key,
            timeout_seconds=settings.orders_api_timeout_seconds,
        )
    return StaticOrderDirectory()


__all__ = ["HttpOrderDirectory", "OrderDirectory", "StaticOrderDirectory", "build_order_directory"]
