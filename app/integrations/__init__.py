"""External integration adapters."""

from .toss import (
    BillingAuthorization,
    BillingGatewayClient,
    CancellationReceipt,
    CardInfo,
    PaymentReceipt,
)

__all__ = [
    "BillingAuthorization",
    "BillingGatewayClient",
    "CancellationReceipt",
    "CardInfo",
    "PaymentReceipt",
]
