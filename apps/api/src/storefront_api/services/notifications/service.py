"""Domain event emission for loyalty and subscription changes."""

from __future__ import annotations

from collections import deque
from typing import Any, Deque, Optional

from loguru import logger

from storefront_api.core.settings import get_settings

from .backend import DomainEvent, EventBackend, WebhookEventBackend


class NotificationService:
    """Emit domain events through a pluggable backend.

    Delivery is fire-and-forget: a failing backend is logged and never
    surfaces to the caller, whose state change has already committed.
    """

    def __init__(self, backend: Optional[EventBackend] = None, *, history_size: int = 100) -> None:
        self._backend = backend if backend is not None else self._build_default_backend()
        self._events: Deque[DomainEvent] = deque(maxlen=history_size)

    @property
    def sent_events(self) -> list[DomainEvent]:
        """Most recent events, oldest first."""

        return list(self._events)

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        event = DomainEvent(name=event_name, payload=payload)
        self._events.append(event)
        logger.info("Domain event emitted", event_name=event_name)
        if self._backend is None:
            return

        try:
            await self._backend.publish(event)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Domain event delivery failed", event_name=event_name, error=str(exc))

    def _build_default_backend(self) -> Optional[EventBackend]:
        settings = get_settings()
        if not settings.event_webhook_url:
            return None
        return WebhookEventBackend(
            url=settings.event_webhook_url,
            timeout_seconds=settings.event_webhook_timeout_seconds,
        )


__all__ = ["NotificationService"]
