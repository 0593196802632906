"""
Domain models for payrecon.
"""
from .gateway import (
    REFUND_STATUS_FULL,
    REFUND_STATUS_PARTIAL,
    GatewayPaymentResponse,
    GatewayStatusResponse,
    RefundOutcome,
)
from .transactions import (
    ALLOWED_TRANSITIONS,
    CreatePaymentRequest,
    LineItem,
    MerchantProfile,
    NewTransaction,
    PaymentCreationResult,
    PaymentOptions,
    PaymentStats,
    StatusBreakdown,
    Transaction,
    TransactionDetails,
    TransactionPage,
    TransactionStatus,
    WebhookResult,
    can_transition,
    from_minor_units,
    to_minor_units,
)

__all__ = [
    "REFUND_STATUS_FULL",
    "REFUND_STATUS_PARTIAL",
    "GatewayPaymentResponse",
    "GatewayStatusResponse",
    "RefundOutcome",
    "ALLOWED_TRANSITIONS",
    "CreatePaymentRequest",
    "LineItem",
    "MerchantProfile",
    "NewTransaction",
    "PaymentCreationResult",
    "PaymentOptions",
    "PaymentStats",
    "StatusBreakdown",
    "Transaction",
    "TransactionDetails",
    "TransactionPage",
    "TransactionStatus",
    "WebhookResult",
    "can_transition",
    "from_minor_units",
    "to_minor_units",
]
