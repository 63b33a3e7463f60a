"""External service integrations."""

from .pagarme_client import (
    CardDetails,
    ChargeRequest,
    FakePaymentGateway,
    GatewayError,
    GatewayResult,
    GatewayTimeoutError,
    PagarmeClient,
    PaymentGateway,
)

__all__ = [
    "CardDetails",
    "ChargeRequest",
    "FakePaymentGateway",
    "GatewayError",
    "GatewayResult",
    "GatewayTimeoutError",
    "PagarmeClient",
    "PaymentGateway",
]
