"""Typed errors raised by the loyalty and subscription services."""

from __future__ import annotations


class StorefrontError(RuntimeError):
    """Base class for domain errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(StorefrontError):
    status_code = 404


class BadRequestError(StorefrontError):
    status_code = 400


class ValidationError(BadRequestError):
    """Input was well-formed but violates a business rule (e.g. below minimum redemption)."""

    status_code = 422


class InsufficientBalanceError(StorefrontError):
    status_code = 409

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(f"Insufficient points balance: requested {requested}, available {available}")
        self.requested = requested
        self.available = available


class ProgramInactiveError(StorefrontError):
    status_code = 409

    def __init__(self, message: str = "Loyalty program is not active") -> None:
        super().__init__(message)


class InactiveAccountError(StorefrontError):
    status_code = 409

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Loyalty account for customer {customer_id} is inactive")
        self.customer_id = customer_id


class TierConfigurationError(StorefrontError):
    status_code = 500


class InvalidSubscriptionTransitionError(StorefrontError):
    status_code = 409

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition subscription from {current} to {requested}")
        self.current = current
        self.requested = requested


class PaymentFailedError(StorefrontError):
    """The payment collaborator declined the charge."""

    status_code = 402

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(f"Payment declined: {reason or 'unknown reason'}")
        self.reason = reason


class PaymentGatewayError(StorefrontError):
    """The payment collaborator could not be reached or returned garbage."""

    status_code = 502


__all__ = [
    "BadRequestError",
    "InactiveAccountError",
    "InsufficientBalanceError",
    "InvalidSubscriptionTransitionError",
    "NotFoundError",
    "PaymentFailedError",
    "PaymentGatewayError",
    "ProgramInactiveError",
    "StorefrontError",
    "TierConfigurationError",
    "ValidationError",
]
