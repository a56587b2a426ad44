from .backend import DomainEvent, EventBackend, InMemoryEventBackend, WebhookEventBackend
from .service import NotificationService

__all__ = [
    "DomainEvent",
    "EventBackend",
    "InMemoryEventBackend",
    "NotificationService",
    "WebhookEventBackend",
]
