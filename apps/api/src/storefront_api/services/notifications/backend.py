"""Delivery backends for domain events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Protocol

import httpx

from storefront_api.core.clock import utcnow


@dataclass(slots=True)
class DomainEvent:
    """A fire-and-forget event for downstream email/analytics consumers."""

    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "occurredAt": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


class EventBackend(Protocol):
    async def publish(self, event: DomainEvent) -> None:
        ...


class InMemoryEventBackend:
    """Test backend storing published events in memory."""

    published: List[DomainEvent]

    def __init__(self) -> None:
        self.published = []

    async def publish(self, event: DomainEvent) -> None:
        self.published.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.published]


class WebhookEventBackend:
    """POST each event as JSON to a configured webhook."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._http_client = http_client

    async def publish(self, event: DomainEvent) -> None:
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        close_client = self._http_client is None
        try:
            response = await client.post(self._url, json=event.as_dict())
            response.raise_for_status()
        finally:
            if close_client:
                await client.aclose()


__all__ = ["DomainEvent", "EventBackend", "InMemoryEventBackend", "WebhookEventBackend"]
