"""
Unit tests for the gateway client.

Wire-level behavior is exercised through httpx.MockTransport.
"""
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List

import httpx
import pytest
import pytest_asyncio

from payrecon.config import Settings
from payrecon.exceptions import GatewayTimeoutError, ProviderError, ProviderUnavailable
from payrecon.models.transactions import LineItem, MerchantProfile, PaymentOptions, TransactionStatus
from payrecon.services import signature_service
from payrecon.services.gateway_client import GatewayClient, build_items, map_language
from payrecon.services.payment_service import PaymentService
from payrecon.services.transaction_store import TransactionStore


class Recorder:
    """MockTransport handler replaying scripted responses."""

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def payload(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


def ok(body: Dict[str, Any]) -> httpx.Response:
    return httpx.Response(200, json=body)


@pytest_asyncio.fixture
async def make_client(test_settings: Settings, sleeper: Any):
    """Build a GatewayClient over a scripted transport."""
    clients: List[httpx.AsyncClient] = []

    def _make(recorder: Callable, settings: Settings = None) -> GatewayClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        clients.append(http)
        return GatewayClient(http, settings or test_settings, sleep=sleeper)

    yield _make

    for http in clients:
        await http.aclose()


class TestHelpers:
    """Test suite for request-building helpers."""

    @pytest.mark.unit
    @pytest.mark.parametrize("language,expected", [
        ("he", "HE"), ("en", "EN"), ("ar", "AR"), ("ru", "RU"),
        ("EN", "EN"), ("fr", "AUTO"), (None, "AUTO"),
    ])
    def test_map_language(self, language: Any, expected: str) -> None:
        """Test internal language codes map to gateway codes."""
        assert map_language(language) == expected

    @pytest.mark.unit
    def test_build_items_synthetic(self) -> None:
        """Test a single synthetic item priced at the total in major units."""
        items = build_items(Decimal("100.50"), None, None)
        assert items == [{"name": "Payment", "price": 100.5, "qty": 1, "vat": 1}]

    @pytest.mark.unit
    def test_build_items_from_line_items(self) -> None:
        """Test line items keep major-unit prices and map VAT codes."""
        items = build_items(Decimal("50.00"), "Order", [
            LineItem(name="Tea", price=Decimal("10.00"), quantity=2),
            LineItem(name="Export", price=Decimal("30.00"), includes_vat=False),
        ])
        assert items == [
            {"name": "Tea", "price": 10.0, "qty": 2, "vat": 1},
            {"name": "Export", "price": 30.0, "qty": 1, "vat": 3},
        ]

    @pytest.mark.unit
    def test_generate_order_id_format(self, test_settings: Settings) -> None:
        """Test order ids follow prefix-millis-9 base36 chars."""
        client = GatewayClient(httpx.AsyncClient(), test_settings)
        order_id = client.generate_order_id()

        prefix, millis, suffix = order_id.split("-")
        assert prefix == "SB0"
        assert millis.isdigit() and len(millis) == 13
        assert len(suffix) == 9 and suffix.isalnum() and suffix == suffix.lower()
        assert client.parse_order_timestamp(order_id) == int(millis)
        assert client.parse_order_timestamp("OTHER-123-abc") is None

    @pytest.mark.unit
    def test_build_payment_request_fields(self, test_settings: Settings) -> None:
        """Test amount in minor units, defaults and optional fields."""
        client = GatewayClient(httpx.AsyncClient(), test_settings)
        profile = MerchantProfile(owner_id="m1", merchant_id="merchant_login", language="en")
        expires_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        options = PaymentOptions(
            customer_name="Dana",
            customer_email="dana@example.com",
            customer_id_number="123456789",
            max_installments=3,
            fixed_installments=True,
            expires_at=expires_at,
            show_bit=True,
            custom_field_1="ref-1",
        )

        request = client.build_payment_request("SB0-1-abc", Decimal("100.50"), profile, "Coffee", options)

        assert request["login"] == "merchant_login"
        assert request["amount"] == 10050
        assert request["items"][0]["price"] == 100.5
        assert request["lang"] == "EN"
        assert request["currency"] == "ILS"
        assert request["expire"] == int(expires_at.timestamp())
        assert request["notifications_url"] == f"{test_settings.backend_url}/payments/webhook"
        assert request["success_url"] == f"{test_settings.frontend_url}/payment/success"
        assert request["backlink_url"] == f"{test_settings.frontend_url}/payment/failure"
        assert request["client_name"] == "Dana"
        assert request["client_email"] == "dana@example.com"
        assert request["client_tehudat"] == "123456789"
        assert request["inst"] == 3
        assert request["inst_fixed"] == 1
        assert request["show_bit"] is True
        assert request["add_field_1"] == "ref-1"
        assert "client_phone" not in request
        assert "preauthorize" not in request

    @pytest.mark.unit
    def test_build_payment_request_drops_out_of_range_installments(self, test_settings: Settings) -> None:
        """Test inst is only sent for 1..12."""
        client = GatewayClient(httpx.AsyncClient(), test_settings)
        profile = MerchantProfile(owner_id="m1")

        request = client.build_payment_request(
            "SB0-1-abc", Decimal("10"), profile, options=PaymentOptions(max_installments=24)
        )

        assert "inst" not in request
        assert request["login"] == "test_login"


class TestGatewayClient:
    """Test suite for GatewayClient transport behavior."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_signs_and_posts(self, make_client: Callable, test_settings: Settings) -> None:
        """Test payment creation posts a signed JSON request."""
        recorder = Recorder([ok({"payment_url": "https://pay.test/1"})])
        client = make_client(recorder)

        result = await client.create_payment(Decimal("100.50"), MerchantProfile(owner_id="m1"), "Coffee")

        assert result.payment_url == "https://pay.test/1"
        assert result.order_id.startswith("SB0-")

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.params["show"] == "getpayment"
        assert request.headers["content-type"] == "application/json"
        assert request.headers["accept"] == "application/json"
        assert request.headers["user-agent"] == test_settings.gateway_user_agent

        payload = recorder.payload()
        assert payload["amount"] == 10050
        assert payload["order_id"] == result.order_id
        assert signature_service.verify(payload, payload["sign"], test_settings.gateway_api_key)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_without_url_is_provider_error(self, make_client: Callable) -> None:
        """Test a success reply lacking payment_url is a ProviderError."""
        client = make_client(Recorder([ok({"status": "ok"})]))

        with pytest.raises(ProviderError) as exc_info:
            await client.create_payment(Decimal("10"), MerchantProfile(owner_id="m1"))

        assert exc_info.value.gateway_code == "MISSING_PAYMENT_URL"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_5xx_with_linear_backoff(self, make_client: Callable, sleeper: Any) -> None:
        """Test two 5xx replies then success succeeds on attempt 3."""
        recorder = Recorder([
            httpx.Response(500),
            httpx.Response(502),
            ok({"payment_url": "https://pay.test/1"}),
        ])
        client = make_client(recorder)

        result = await client.create_payment(Decimal("10"), MerchantProfile(owner_id="m1"))

        assert result.payment_url == "https://pay.test/1"
        assert len(recorder.requests) == 3
        assert sleeper.delays == [2.0, 3.0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_5xx_raises_provider_unavailable(self, make_client: Callable) -> None:
        """Test 5xx on every attempt surfaces ProviderUnavailable tagged with the status."""
        recorder = Recorder([httpx.Response(500) for _ in range(3)])
        client = make_client(recorder)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await client.create_payment(Decimal("10"), MerchantProfile(owner_id="m1"))

        assert exc_info.value.gateway_code == "HTTP_500"
        assert exc_info.value.http_status == 500
        assert len(recorder.requests) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_network_error_retried_then_network_error(self, make_client: Callable) -> None:
        """Test transport errors are retried and tagged NETWORK_ERROR."""
        recorder = Recorder([httpx.ConnectError("refused") for _ in range(3)])
        client = make_client(recorder)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await client.get_payment_status("SB0-1-abc")

        assert exc_info.value.gateway_code == "NETWORK_ERROR"
        assert len(recorder.requests) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_4xx_not_retried(self, make_client: Callable, sleeper: Any) -> None:
        """Test a 4xx reply is definitive."""
        recorder = Recorder([httpx.Response(400, json={"detail": "bad"})])
        client = make_client(recorder)

        with pytest.raises(ProviderError) as exc_info:
            await client.get_payment_status("SB0-1-abc")

        assert exc_info.value.gateway_code == "HTTP_400"
        assert len(recorder.requests) == 1
        assert sleeper.delays == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_envelope_not_retried(self, make_client: Callable) -> None:
        """Test an error_code envelope raises ProviderError with that code."""
        recorder = Recorder([ok({"error_code": "INVALID_SIGN", "error_msg": "Invalid signature"})])
        client = make_client(recorder)

        with pytest.raises(ProviderError) as exc_info:
            await client.create_payment(Decimal("10"), MerchantProfile(owner_id="m1"))

        assert exc_info.value.gateway_code == "INVALID_SIGN"
        assert exc_info.value.message == "Invalid signature"
        assert len(recorder.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unparsable_reply_is_invalid_response(self, make_client: Callable) -> None:
        """Test non-JSON 2xx replies raise INVALID_RESPONSE."""
        client = make_client(Recorder([httpx.Response(200, text="<html>oops</html>")]))

        with pytest.raises(ProviderError) as exc_info:
            await client.get_payment_status("SB0-1-abc")

        assert exc_info.value.gateway_code == "INVALID_RESPONSE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_defaults_to_unpaid(self, make_client: Callable) -> None:
        """Test a status reply without status reports 0."""
        client = make_client(Recorder([ok({"order_id": "SB0-1-abc"})]))

        result = await client.get_payment_status("SB0-1-abc")

        assert result.status == 0
        assert result.raw == {"order_id": "SB0-1-abc"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_sends_minor_units(self, make_client: Callable) -> None:
        """Test refund amount and item amounts go out in minor units."""
        recorder = Recorder([ok({"order_id": "SB0-1-abc", "status": 4})])
        client = make_client(recorder)

        outcome = await client.refund_payment("SB0-1-abc", Decimal("25.50"), [Decimal("25.50")])

        assert outcome.status == 4
        assert recorder.payload()["amount"] == 2550
        assert recorder.payload()["items"] == [{"amount": 2550}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_without_status_defaults_to_full(self, make_client: Callable) -> None:
        """Test a refund reply lacking status is treated as a full refund."""
        client = make_client(Recorder([ok({"order_id": "SB0-1-abc"})]))

        outcome = await client.refund_payment("SB0-1-abc", Decimal("10"))

        assert outcome.status == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply_status", [0, "0"])
    async def test_refund_status_zero_is_kept(self, make_client: Callable, reply_status: Any) -> None:
        """Test an explicit zero refund status is reported, not defaulted to full."""
        client = make_client(Recorder([ok({"order_id": "SB0-1-abc", "status": reply_status})]))

        outcome = await client.refund_payment("SB0-1-abc", Decimal("10"))

        assert outcome.status == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_status_zero_fails_engine_refund(
        self,
        make_client: Callable,
        store: TransactionStore,
        new_transaction: Callable,
        test_settings: Settings
    ) -> None:
        """Test a refund reply with status 0 raises ProviderError and keeps the payment completed."""
        created = await store.create(new_transaction(gateway_order_id="SB0-1760000000000-refund000"))
        await store.update_status(created.id, TransactionStatus.COMPLETED)
        client = make_client(Recorder([ok({"status": 1}), ok({"status": 0})]))
        service = PaymentService(client, store, test_settings, qr_renderer=lambda url: url)

        with pytest.raises(ProviderError) as exc_info:
            await service.refund_payment(created.id, created.owner_id)

        assert exc_info.value.gateway_code == "UNEXPECTED_REFUND_STATUS"
        assert (await store.find_by_id(created.id)).status == TransactionStatus.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_spacing(self, make_client: Callable, test_settings: Settings, sleeper: Any) -> None:
        """Test consecutive requests wait out the rate-limit spacing."""
        settings = test_settings.model_copy(update={"rate_limit_delay_seconds": 60.0})
        client = make_client(Recorder([ok({"status": 0}), ok({"status": 0})]), settings)

        await client.get_payment_status("SB0-1-abc")
        await client.get_payment_status("SB0-1-abc")

        assert len(sleeper.delays) == 1
        assert 0 < sleeper.delays[0] <= 60.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_soft_timeout_raises_gateway_timeout(self, test_settings: Settings) -> None:
        """Test a hung gateway surfaces GatewayTimeoutError."""
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return ok({})

        settings = test_settings.model_copy(update={"gateway_timeout_seconds": 0.05})
        async with httpx.AsyncClient(transport=httpx.MockTransport(hang)) as http:
            client = GatewayClient(http, settings)

            with pytest.raises(GatewayTimeoutError) as exc_info:
                await client.get_payment_status("SB0-1-abc")

        assert exc_info.value.gateway_code == "TIMEOUT"
        assert isinstance(exc_info.value, ProviderUnavailable)


class TestWebhookAndHealth:
    """Test suite for webhook verification and health probing."""

    @pytest.mark.unit
    def test_validate_webhook_signature(self, test_settings: Settings) -> None:
        """Test payload sign field and explicit signature both verify."""
        client = GatewayClient(httpx.AsyncClient(), test_settings)
        payload = signature_service.sign_request(
            {"order_id": "SB0-1-abc", "status": 1}, test_settings.gateway_api_key
        )

        assert client.validate_webhook_signature(payload) is True
        assert client.validate_webhook_signature(payload, payload["sign"]) is True
        assert client.validate_webhook_signature(payload, "f" * 64) is False
        assert client.validate_webhook_signature({"order_id": "SB0-1-abc"}) is False
        assert client.validate_webhook_signature("not a mapping") is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check_ok(self, make_client: Callable) -> None:
        """Test a 2xx health reply is healthy."""
        client = make_client(Recorder([httpx.Response(200, text="ok")]))
        assert await client.health_check() is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check_swallows_errors(self, make_client: Callable) -> None:
        """Test network errors and 5xx report unhealthy without raising."""
        client = make_client(Recorder([httpx.ConnectError("down"), httpx.Response(503)]))

        assert await client.health_check() is False
        assert await client.health_check() is False
