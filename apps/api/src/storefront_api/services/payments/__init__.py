from .gateway import (
    ChargeResult,
    HttpPaymentGateway,
    PaymentGateway,
    StubPaymentGateway,
    build_payment_gateway,
)

__all__ = [
    "ChargeResult",
    "HttpPaymentGateway",
    "PaymentGateway",
    "StubPaymentGateway",
    "build_payment_gateway",
]
