"""
Mock Payment Gateway

FastAPI application speaking the gateway's signed-JSON wire format.
Mounted in-process through httpx.ASGITransport for end-to-end scenarios.

Endpoints (POST /app/?show=...):
- getpayment: register an order, reply with a payment URL
- paymentstatus: reply with the order's programmed status
- refund: refund a paid order (3 full, 4 partial)

Mock Behavior:
- Every request must carry a valid signature
- New orders start unpaid (status 0); tests program status via set_status()
- fail_next() queues raw HTTP failures per endpoint
- calls counts requests per endpoint, including injected failures
"""
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Union
import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from ..config import Settings, settings as default_settings
from ..services import signature_service

logger = logging.getLogger(__name__)

CREATE = "getpayment"
STATUS = "paymentstatus"
REFUND = "refund"


def _error(code: str, message: str) -> Dict[str, Any]:
    return {"error_code": code, "error_msg": message}


class MockGateway:
    """
    In-memory gateway state plus the FastAPI app serving it.

    Args:
        settings: Supplies the shared API key used for signing
        payment_page_url: Base of the payment URLs handed out
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        payment_page_url: str = "https://mock-gateway.test/pay"
    ):
        self.api_key = (settings or default_settings).gateway_api_key
        self.payment_page_url = payment_page_url
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.calls: Counter = Counter()
        self._failures: Dict[str, List[int]] = defaultdict(list)
        self.app = self._build_app()

    # ========================================================================
    # Test controls
    # ========================================================================

    def set_status(self, order_id: str, status: Union[int, str]) -> None:
        self.orders[order_id]["status"] = status

    def fail_next(self, operation: str, status_code: int = 500, times: int = 1) -> None:
        """Answer the next `times` requests to an endpoint with a bare HTTP error."""
        self._failures[operation].extend([status_code] * times)

    def build_webhook(
        self,
        order_id: str,
        status: Union[int, str],
        transaction_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Signed notification payload, as the gateway would post it."""
        payload: Dict[str, Any] = {"order_id": order_id, "status": status}
        if transaction_id:
            payload["transaction_id"] = transaction_id
        order = self.orders.get(order_id)
        if order:
            payload["amount"] = order["amount"]
            payload["currency"] = order["currency"]
        return signature_service.sign_request(payload, self.api_key)

    # ========================================================================
    # Handlers
    # ========================================================================

    def _create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        order_id = payload.get("order_id")
        if not order_id or not payload.get("amount"):
            return _error("INVALID_REQUEST", "order_id and amount are required")
        if order_id in self.orders:
            return _error("DUPLICATE_ORDER", f"Order {order_id} already exists")

        self.orders[order_id] = {
            "order_id": order_id,
            "amount": payload["amount"],
            "currency": payload.get("currency", "ILS"),
            "items": payload.get("items", []),
            "status": 0,
            "refunded_amount": 0,
        }
        logger.info(f"Mock gateway registered order {order_id} for {payload['amount']}")

        return {"payment_url": f"{self.payment_page_url}/{order_id}", "order_id": order_id}

    def _status(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        order = self.orders.get(payload.get("order_id"))
        if order is None:
            return _error("ORDER_NOT_FOUND", "Order not found")

        return {
            "order_id": order["order_id"],
            "status": order["status"],
            "amount": order["amount"],
            "currency": order["currency"],
        }

    def _refund(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        order = self.orders.get(payload.get("order_id"))
        if order is None:
            return _error("ORDER_NOT_FOUND", "Order not found")
        if str(order["status"]) != "1":
            return _error("NOT_REFUNDABLE", "Order is not paid")

        amount = int(payload.get("amount") or order["amount"])
        order["refunded_amount"] += amount
        order["status"] = 3 if order["refunded_amount"] >= order["amount"] else 4

        return {"order_id": order["order_id"], "status": order["status"]}

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Mock Payment Gateway")
        handlers = {CREATE: self._create, STATUS: self._status, REFUND: self._refund}

        @app.get("/")
        async def health() -> Dict[str, Any]:
            return {"status": "healthy"}

        @app.post("/app/")
        async def api(request: Request, show: str = Query(...)):
            self.calls[show] += 1

            if self._failures[show]:
                status_code = self._failures[show].pop(0)
                return JSONResponse(status_code=status_code, content={"detail": "Injected failure"})

            handler = handlers.get(show)
            if handler is None:
                return JSONResponse(status_code=400, content={"detail": f"Unknown operation: {show}"})

            payload = await request.json()
            if not signature_service.verify(payload, payload.get(signature_service.SIGNATURE_FIELD), self.api_key):
                logger.warning(f"Mock gateway rejected unsigned {show} request")
                return _error("INVALID_SIGN", "Invalid signature")

            return handler(payload)

        return app
