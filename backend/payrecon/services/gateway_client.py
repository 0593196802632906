"""
Gateway Client

Builds signed payment-creation, status and refund requests, sends them with
bounded linear retry, and classifies replies.

Retry policy:
- Network errors and HTTP 5xx are retried, up to gateway_max_attempts
- HTTP 4xx and gateway error envelopes are definitive, never retried
- Delay before attempt k (k >= 2) is retry_base_delay_seconds * k
- Consecutive requests are spaced by rate_limit_delay_seconds

Every public call carries its own soft timeout. When it fires the caller
stops waiting; the HTTP request may still reach the gateway.
"""
import asyncio
import calendar
import logging
import re
import secrets
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

import httpx

from ..config import Settings, settings as default_settings
from ..exceptions import GatewayTimeoutError, ProviderError, ProviderUnavailable
from ..models.gateway import (
    REFUND_STATUS_FULL,
    GatewayPaymentResponse,
    GatewayStatusResponse,
    RefundOutcome,
)
from ..models.transactions import LineItem, MerchantProfile, PaymentOptions, to_minor_units
from . import signature_service

logger = logging.getLogger(__name__)

T = TypeVar("T")

ORDER_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

LANGUAGE_MAP = {
    "he": "HE",
    "en": "EN",
    "ar": "AR",
    "ru": "RU",
}

# Gateway VAT codes
VAT_INCLUDED = 1
VAT_ZERO = 3


def map_language(language: Optional[str]) -> str:
    """Map an internal language code to the gateway's code (AUTO if unknown)."""
    return LANGUAGE_MAP.get((language or "").lower(), "AUTO")


def _wire_price(value: Decimal) -> float:
    return float(value)


def build_items(
    amount: Decimal,
    description: Optional[str],
    line_items: Optional[List[LineItem]]
) -> List[Dict[str, Any]]:
    """
    Build the gateway item list.

    Item prices stay in major units; only the top-level amount is sent in
    minor units.
    """
    if line_items:
        return [
            {
                "name": item.name,
                "price": _wire_price(item.price),
                "qty": item.quantity,
                "vat": VAT_INCLUDED if item.includes_vat else VAT_ZERO,
            }
            for item in line_items
        ]

    return [{
        "name": description or "Payment",
        "price": _wire_price(amount),
        "qty": 1,
        "vat": VAT_INCLUDED,
    }]


class GatewayClient:
    """
    Async client for the payment gateway's signed-JSON API.

    Args:
        http_client: Shared httpx.AsyncClient (owned by the caller)
        settings: Gateway credentials, URLs, retry and timeout policy
        sleep: Awaitable sleep used for backoff and rate limiting
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._http = http_client
        self._settings = settings or default_settings
        self._sleep = sleep
        self._last_request_at: Optional[float] = None
        self._order_id_pattern = re.compile(rf"^{re.escape(self._settings.order_id_prefix)}-(\d+)-")

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self._settings.gateway_user_agent,
        }

    # ========================================================================
    # Order identifiers
    # ========================================================================

    def generate_order_id(self) -> str:
        """
        Generate an order id: {prefix}-{unix_millis}-{9 base36 chars}.

        Collisions are negligible but not impossible; the store rejects a
        duplicate order id.
        """
        suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(9))
        return f"{self._settings.order_id_prefix}-{int(time.time() * 1000)}-{suffix}"

    def parse_order_timestamp(self, order_id: Optional[str]) -> Optional[int]:
        """Return the millisecond timestamp embedded in one of our order ids."""
        if not order_id:
            return None
        match = self._order_id_pattern.match(order_id)
        return int(match.group(1)) if match else None

    # ========================================================================
    # Payment creation
    # ========================================================================

    def build_payment_request(
        self,
        order_id: str,
        amount: Decimal,
        profile: MerchantProfile,
        description: Optional[str] = None,
        options: Optional[PaymentOptions] = None
    ) -> Dict[str, Any]:
        """
        Build the unsigned payment-creation request.

        Args:
            order_id: Generated order identifier
            amount: Total in major units
            profile: Merchant profile (currency, language, callback URLs)
            description: Shown on the synthetic line item
            options: Optional gateway features

        Returns:
            Field map ready for signing
        """
        options = options or PaymentOptions()
        s = self._settings

        if options.expires_at:
            expire = calendar.timegm(options.expires_at.utctimetuple())
        else:
            expire = int(time.time()) + s.default_payment_expiry_seconds

        request: Dict[str, Any] = {
            "login": profile.merchant_id or s.gateway_login,
            "order_id": order_id,
            "items": build_items(amount, description, options.line_items),
            "amount": to_minor_units(amount),
            "currency": profile.currency or "ILS",
            "lang": map_language(profile.language),
            "notifications_url": (
                options.notifications_url
                or profile.notifications_url
                or f"{s.backend_url}/payments/webhook"
            ),
            "success_url": (
                options.success_url
                or profile.success_url
                or f"{s.frontend_url}/payment/success"
            ),
            "backlink_url": (
                options.backlink_url
                or profile.backlink_url
                or f"{s.frontend_url}/payment/failure"
            ),
            "expire": expire,
        }

        if options.customer_name:
            request["client_name"] = options.customer_name
        if options.customer_email:
            request["client_email"] = options.customer_email
        if options.customer_phone:
            request["client_phone"] = options.customer_phone
        if options.customer_id_number:
            request["client_tehudat"] = options.customer_id_number
        if options.max_installments is not None and 1 <= options.max_installments <= 12:
            request["inst"] = options.max_installments
        if options.fixed_installments is not None:
            request["inst_fixed"] = 1 if options.fixed_installments else 0
        if options.preauthorize:
            request["preauthorize"] = True
        if options.show_apple_pay is not None:
            request["show_applepay"] = options.show_apple_pay
        if options.show_bit is not None:
            request["show_bit"] = options.show_bit
        if options.custom_field_1:
            request["add_field_1"] = options.custom_field_1
        if options.custom_field_2:
            request["add_field_2"] = options.custom_field_2

        return request

    async def create_payment(
        self,
        amount: Decimal,
        profile: MerchantProfile,
        description: Optional[str] = None,
        options: Optional[PaymentOptions] = None
    ) -> GatewayPaymentResponse:
        """
        Create a payment page with the gateway.

        Returns:
            GatewayPaymentResponse with the payment URL and generated order id

        Raises:
            ProviderError: Gateway rejected the request or replied without a URL
            ProviderUnavailable: Network/5xx on every attempt
            GatewayTimeoutError: Soft timeout elapsed
        """
        return await self._with_timeout(
            self._create_payment(amount, profile, description, options),
            "payment creation"
        )

    async def _create_payment(
        self,
        amount: Decimal,
        profile: MerchantProfile,
        description: Optional[str],
        options: Optional[PaymentOptions]
    ) -> GatewayPaymentResponse:
        order_id = self.generate_order_id()
        request = self.build_payment_request(order_id, amount, profile, description, options)
        signed = signature_service.sign_request(request, self._settings.gateway_api_key)

        logger.info(f"Creating gateway payment: order={order_id}, amount={request['amount']} (minor units)")
        data = await self._post(self._settings.gateway_payment_url, signed, "create")

        payment_url = data.get("payment_url")
        if not payment_url:
            raise ProviderError(
                data.get("error") or "Gateway did not return a payment URL",
                gateway_code="MISSING_PAYMENT_URL",
                details={"order_id": order_id}
            )

        return GatewayPaymentResponse(payment_url=payment_url, order_id=order_id, raw=data)

    # ========================================================================
    # Status and refunds
    # ========================================================================

    async def get_payment_status(self, order_id: str) -> GatewayStatusResponse:
        """
        Query the gateway's view of an order.

        A GatewayTimeoutError means "status unknown", not a failed payment.
        """
        return await self._with_timeout(self._get_payment_status(order_id), "status check")

    async def _get_payment_status(self, order_id: str) -> GatewayStatusResponse:
        request = {
            "login": self._settings.gateway_login,
            "order_id": order_id,
        }
        signed = signature_service.sign_request(request, self._settings.gateway_api_key)

        data = await self._post(self._settings.gateway_status_url, signed, "status")
        status = data.get("status")
        if status is None or status == "":
            status = 0

        logger.debug(f"Gateway status for order {order_id}: {status}")
        return GatewayStatusResponse(
            order_id=str(data.get("order_id") or order_id),
            status=status,
            raw=data
        )

    async def refund_payment(
        self,
        order_id: str,
        amount: Decimal,
        item_amounts: Optional[List[Decimal]] = None
    ) -> RefundOutcome:
        """
        Refund an order, fully or partially.

        Returns:
            RefundOutcome with status 3 (full) or 4 (partial)
        """
        return await self._with_timeout(
            self._refund_payment(order_id, amount, item_amounts),
            "refund"
        )

    async def _refund_payment(
        self,
        order_id: str,
        amount: Decimal,
        item_amounts: Optional[List[Decimal]]
    ) -> RefundOutcome:
        request: Dict[str, Any] = {
            "login": self._settings.gateway_login,
            "order_id": order_id,
            "amount": to_minor_units(amount),
        }
        if item_amounts:
            request["items"] = [{"amount": to_minor_units(a)} for a in item_amounts]

        signed = signature_service.sign_request(request, self._settings.gateway_api_key)

        logger.info(f"Requesting refund: order={order_id}, amount={request['amount']} (minor units)")
        data = await self._post(self._settings.gateway_refund_url, signed, "refund")

        raw_status = data.get("status")
        if raw_status is None:
            raw_status = REFUND_STATUS_FULL
        try:
            status = int(raw_status)
        except (TypeError, ValueError):
            raise ProviderError(
                f"Unexpected refund status from gateway: {raw_status}",
                gateway_code="INVALID_RESPONSE",
                details={"order_id": order_id}
            )

        return RefundOutcome(order_id=str(data.get("order_id") or order_id), status=status)

    # ========================================================================
    # Webhooks and health
    # ========================================================================

    def validate_webhook_signature(
        self,
        payload: Any,
        received_signature: Optional[str] = None
    ) -> bool:
        """
        Verify a webhook payload. Never raises.

        The explicit signature wins over the payload's own "sign" field.
        """
        try:
            if not isinstance(payload, Mapping):
                return False

            candidate = received_signature or payload.get(signature_service.SIGNATURE_FIELD)
            if not candidate:
                logger.error("No signature provided for webhook validation")
                return False

            return signature_service.verify(payload, candidate, self._settings.gateway_api_key)
        except Exception as e:
            logger.error(f"Error validating webhook signature: {e}")
            return False

    async def health_check(self) -> bool:
        """Best-effort reachability probe. Never raises."""
        timeout = self._settings.health_check_timeout_seconds
        try:
            response = await asyncio.wait_for(
                self._http.get(
                    self._settings.gateway_health_url,
                    headers={"User-Agent": self._settings.gateway_user_agent},
                    timeout=timeout,
                ),
                timeout=timeout,
            )
            return response.is_success
        except Exception as e:
            logger.error(f"Gateway health check failed: {e}")
            return False

    # ========================================================================
    # Transport
    # ========================================================================

    async def _with_timeout(self, coro: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self._settings.gateway_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning(f"Gateway {operation} timed out after {self._settings.gateway_timeout_seconds}s")
            raise GatewayTimeoutError(
                f"Gateway {operation} timeout",
                details={"operation": operation}
            ) from e

    async def _respect_rate_limit(self) -> None:
        delay = self._settings.rate_limit_delay_seconds
        if self._last_request_at is not None and delay > 0:
            wait = self._last_request_at + delay - time.monotonic()
            if wait > 0:
                await self._sleep(wait)
        self._last_request_at = time.monotonic()

    async def _post(self, url: str, payload: Dict[str, Any], operation: str) -> Dict[str, Any]:
        """
        POST a signed payload with bounded linear retry.

        Raises:
            ProviderError: 4xx, error envelope, or unparsable 2xx reply
            ProviderUnavailable: Last network/5xx error once attempts run out
        """
        max_attempts = max(1, self._settings.gateway_max_attempts)
        last_error: Optional[ProviderUnavailable] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await self._sleep(self._settings.retry_base_delay_seconds * attempt)

            await self._respect_rate_limit()

            try:
                response = await self._http.post(url, json=payload, headers=self._headers)
            except httpx.TransportError as e:
                last_error = ProviderUnavailable(
                    f"Network error: {e}",
                    gateway_code="NETWORK_ERROR",
                    details={"operation": operation, "attempts": attempt}
                )
                logger.warning(f"Gateway {operation} network error (attempt {attempt}/{max_attempts}): {e}")
                continue

            if response.status_code >= 500:
                last_error = ProviderUnavailable(
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    gateway_code=f"HTTP_{response.status_code}",
                    http_status=response.status_code,
                    details={"operation": operation, "attempts": attempt}
                )
                logger.warning(
                    f"Gateway {operation} failed with HTTP {response.status_code} "
                    f"(attempt {attempt}/{max_attempts})"
                )
                continue

            return self._parse_response(response, operation)

        logger.error(f"Gateway {operation} failed after {max_attempts} attempts")
        raise last_error

    def _parse_response(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and (data.get("error_code") or data.get("error_msg")):
            code = data.get("error_code") or "GATEWAY_ERROR"
            logger.error(f"Gateway {operation} returned error {code}: {data.get('error_msg')}")
            raise ProviderError(
                data.get("error_msg") or f"Gateway error: {code}",
                gateway_code=str(code),
                http_status=response.status_code,
                details={"operation": operation}
            )

        if response.is_client_error:
            raise ProviderError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                gateway_code=f"HTTP_{response.status_code}",
                http_status=response.status_code,
                details={"operation": operation}
            )

        if not isinstance(data, dict):
            raise ProviderError(
                f"Invalid JSON response from gateway: {response.text[:200]}",
                gateway_code="INVALID_RESPONSE",
                http_status=response.status_code,
                details={"operation": operation}
            )

        return data
