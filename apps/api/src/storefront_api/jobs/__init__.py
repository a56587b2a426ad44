"""Recurring job entrypoints for loyalty and subscription maintenance."""

__all__ = [
    "loyalty",
    "subscriptions",
]
