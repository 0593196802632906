"""
Pydantic Transaction Models

Represents persisted payment attempts, merchant input, and the results the
reconciliation engine hands back to the surrounding application.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional
from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    """Closed set of transaction states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    @property
    def is_final(self) -> bool:
        """Completed and failed transactions are never re-queried."""
        return self in (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


ALLOWED_TRANSITIONS: Mapping[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.COMPLETED: frozenset({
        TransactionStatus.REFUNDED,
        TransactionStatus.PARTIALLY_REFUNDED,
    }),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
    TransactionStatus.PARTIALLY_REFUNDED: frozenset(),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


TWO_PLACES = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units (100.50 -> 10050)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(TWO_PLACES)


class LineItem(BaseModel):
    """Itemized line on a payment page. Prices are in major currency units."""

    name: str = Field(min_length=1)
    price: Decimal
    quantity: int = Field(default=1, ge=1)
    includes_vat: bool = True


class MerchantProfile(BaseModel):
    """
    Merchant data resolved by the surrounding application.

    merchant_id, when set, replaces the configured gateway login.
    """

    owner_id: str
    merchant_id: Optional[str] = None
    currency: str = "ILS"
    language: str = "he"
    notifications_url: Optional[str] = None
    success_url: Optional[str] = None
    backlink_url: Optional[str] = None


class PaymentOptions(BaseModel):
    """Optional gateway features for a single payment request."""

    line_items: Optional[List[LineItem]] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_id_number: Optional[str] = None
    max_installments: Optional[int] = None
    fixed_installments: Optional[bool] = None
    expires_at: Optional[datetime] = None
    preauthorize: bool = False
    show_apple_pay: Optional[bool] = None
    show_bit: Optional[bool] = None
    custom_field_1: Optional[str] = None
    custom_field_2: Optional[str] = None
    notifications_url: Optional[str] = None
    success_url: Optional[str] = None
    backlink_url: Optional[str] = None


class CreatePaymentRequest(PaymentOptions):
    """
    Merchant request to create a payment.

    Amount is validated by the engine, not here, so bad amounts surface as
    the engine's ValidationError.
    """

    amount: Decimal
    currency: Optional[str] = None
    description: Optional[str] = None
    cancel_url: Optional[str] = None
    webhook_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def gateway_options(self) -> PaymentOptions:
        """Project the request onto the options the gateway understands."""
        return PaymentOptions(**self.model_dump(include=set(PaymentOptions.model_fields)))


class Transaction(BaseModel):
    """
    One payment attempt.

    Notes:
    - amount is in major units, exact to two decimal places
    - gateway_order_id is generated locally and sent to the gateway
    - gateway_transaction_id is assigned by the gateway and backfilled later
    """

    id: str
    owner_id: str
    gateway_order_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    amount: Decimal = Field(gt=0)
    currency: str = Field(pattern="^[A-Z]{3}$")
    payment_url: str
    status: TransactionStatus = TransactionStatus.PENDING
    description: Optional[str] = None
    line_items: Optional[List[LineItem]] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_id_number: Optional[str] = None
    max_installments: Optional[int] = None
    fixed_installments: bool = False
    expires_at: Optional[datetime] = None
    preauthorize: bool = False
    custom_field_1: Optional[str] = None
    custom_field_2: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    webhook_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    api_key_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "0f8fad5b-d9cb-469f-a165-70867728950e",
                "owner_id": "merchant_001",
                "gateway_order_id": "SB0-1760000000000-k3j9x0a1b",
                "gateway_transaction_id": None,
                "amount": "100.50",
                "currency": "ILS",
                "payment_url": "https://allpay.to/pay/abc",
                "status": "pending",
                "created_at": "2025-10-17T14:35:00Z",
                "updated_at": "2025-10-17T14:35:00Z"
            }
        }
    }


class NewTransaction(BaseModel):
    """Data required to persist a freshly created payment."""

    owner_id: str
    gateway_order_id: str
    amount: Decimal
    currency: str
    payment_url: str
    description: Optional[str] = None
    line_items: Optional[List[LineItem]] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_id_number: Optional[str] = None
    max_installments: Optional[int] = None
    fixed_installments: bool = False
    expires_at: Optional[datetime] = None
    preauthorize: bool = False
    custom_field_1: Optional[str] = None
    custom_field_2: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    webhook_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    api_key_id: Optional[str] = None


class PaymentCreationResult(BaseModel):
    transaction: Transaction
    payment_url: str
    qr_code_data_url: str


class TransactionDetails(BaseModel):
    """Local record plus the gateway's own view of the order."""

    transaction: Transaction
    gateway_details: Optional[Dict[str, Any]] = None


class TransactionPage(BaseModel):
    transactions: List[Transaction]
    total: int
    limit: int
    offset: int


class StatusBreakdown(BaseModel):
    count: int = 0
    amount: Decimal = Decimal("0.00")


class PaymentStats(BaseModel):
    """
    Aggregates for one owner within a date range.

    total_amount sums completed transactions only.
    """

    total_transactions: int = 0
    completed_transactions: int = 0
    failed_transactions: int = 0
    pending_transactions: int = 0
    total_amount: Decimal = Decimal("0.00")
    by_status: Dict[TransactionStatus, StatusBreakdown] = Field(default_factory=dict)


class WebhookResult(BaseModel):
    """Answer returned to the webhook endpoint. Never raised."""

    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None
