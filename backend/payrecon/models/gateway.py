"""
Pydantic Gateway Reply Models

Parsed replies from the payment gateway. Requests are plain signed dicts and
are never persisted.
"""
from typing import Any, Dict, Union
from pydantic import BaseModel, Field

# Gateway refund codes
REFUND_STATUS_FULL = 3
REFUND_STATUS_PARTIAL = 4


class GatewayPaymentResponse(BaseModel):
    """Payment page created by the gateway."""

    payment_url: str
    order_id: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class GatewayStatusResponse(BaseModel):
    """
    Gateway view of an order.

    status is numeric (0 unpaid, 1 paid, 3 refunded, 4 partially refunded)
    or one of the gateway's string codes.
    """

    order_id: str
    status: Union[int, str] = 0
    raw: Dict[str, Any] = Field(default_factory=dict)


class RefundOutcome(BaseModel):
    order_id: str
    status: int
