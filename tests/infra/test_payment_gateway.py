# tests/infra/test_payment_gateway.py
"""
Тесты адаптера платёжного шлюза поверх httpx.MockTransport.
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from src.common.errors import GatewayFailureError, SignatureMismatchError, ValidationError
from src.config.loader import GatewaySettings
from src.infra.payment_gateway import RazorpayGateway, compute_signature

SETTINGS = GatewaySettings(
    GATEWAY_BASE_URL="https://gateway.test/v1",
    GATEWAY_KEY_ID="rzp_test",
    GATEWAY_KEY_SECRET="secret",
    GATEWAY_WEBHOOK_SECRET="whsec",
    GATEWAY_PAYOUT_ACCOUNT_NUMBER="2323230000",
)


def make_gateway(handler) -> RazorpayGateway:
    return RazorpayGateway(SETTINGS, transport=httpx.MockTransport(handler))


class TestOrders:
    """Тесты создания заказов."""

    @pytest.mark.asyncio
    async def test_creates_order_in_minor_units(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "GET":
                return httpx.Response(200, json={"items": []})
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": "order_1", "amount": body["amount"], "receipt": body["receipt"]})

        gateway = make_gateway(handler)
        order = await gateway.create_order(Decimal("499.50"), receipt="PAY20250110000001", description="booking")
        await gateway.close()

        assert order.order_id == "order_1"
        assert order.amount == Decimal("499.50")
        assert order.key_id == "rzp_test"
        post = requests[-1]
        assert post.url.path == "/v1/orders"
        assert json.loads(post.content)["amount"] == 49950
        assert post.headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_existing_receipt_reused(self) -> None:
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            assert request.url.params["receipt"] == "PAY20250110000001"
            return httpx.Response(200, json={"items": [
                {"id": "order_old", "amount": 50000, "receipt": "PAY20250110000001"},
            ]})

        gateway = make_gateway(handler)
        order = await gateway.create_order(Decimal("500"), receipt="PAY20250110000001")

        assert order.order_id == "order_old"
        assert methods == ["GET"]

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(GatewayFailureError) as exc_info:
            await gateway.create_order(Decimal("500"), receipt="r")

        assert exc_info.value.retryable is True
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_client_error_not_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"description": "amount too small"}})

        gateway = make_gateway(handler)

        with pytest.raises(GatewayFailureError) as exc_info:
            await gateway.create_order(Decimal("0.5"), receipt="r")

        assert exc_info.value.retryable is False
        assert "amount too small" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayFailureError) as exc_info:
            await gateway.fetch_payment("pay_1")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayFailureError) as exc_info:
            await gateway.fetch_payment("pay_1")

        assert exc_info.value.retryable is True


class TestPaymentsAndPayouts:
    """Тесты статуса платежа, возврата и выплаты."""

    @pytest.mark.asyncio
    async def test_fetch_payment_maps_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1"
            return httpx.Response(200, json={
                "id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 50000,
            })

        payment = await make_gateway(handler).fetch_payment("pay_1")

        assert payment.is_captured
        assert payment.amount == Decimal("500.00")
        assert payment.order_id == "order_1"

    @pytest.mark.asyncio
    async def test_authorized_payment_not_captured(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "pay_1", "status": "authorized", "amount": 50000})

        payment = await make_gateway(handler).fetch_payment("pay_1")
        assert not payment.is_captured

    @pytest.mark.asyncio
    async def test_refund_returns_id(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1/refund"
            assert json.loads(request.content) == {"amount": 20000}
            return httpx.Response(200, json={"id": "rfnd_1"})

        assert await make_gateway(handler).refund("pay_1", Decimal("200")) == "rfnd_1"

    @pytest.mark.asyncio
    async def test_payout_sends_idempotency_key(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"id": "pout_1"})

        payout_id = await make_gateway(handler).payout(Decimal("400"), reference="PAY20250110000007", fund_account_id="fa_1")

        assert payout_id == "pout_1"
        request = captured[0]
        assert request.headers["X-Payout-Idempotency"] == "PAY20250110000007"
        body = json.loads(request.content)
        assert body["fund_account_id"] == "fa_1"
        assert body["amount"] == 40000
        assert body["account_number"] == "2323230000"

    @pytest.mark.asyncio
    async def test_non_json_body_is_retryable(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(GatewayFailureError) as exc_info:
            await gateway.refund("pay_1", Decimal("1"))
        assert exc_info.value.retryable is True


class TestSignatures:
    """Тесты подписей и разбора вебхуков."""

    @pytest.fixture
    def gateway(self) -> RazorpayGateway:
        return make_gateway(lambda request: httpx.Response(200, json={}))

    def test_valid_payment_signature(self, gateway: RazorpayGateway) -> None:
        signature = compute_signature("secret", b"order_1|pay_1")
        gateway.verify_payment_signature("order_1", "pay_1", signature)

    def test_swapped_ids_fail(self, gateway: RazorpayGateway) -> None:
        signature = compute_signature("secret", b"order_1|pay_1")
        with pytest.raises(SignatureMismatchError):
            gateway.verify_payment_signature("pay_1", "order_1", signature)

    def test_empty_signature_fails(self, gateway: RazorpayGateway) -> None:
        with pytest.raises(SignatureMismatchError):
            gateway.verify_payment_signature("order_1", "pay_1", "")

    def test_webhook_signed_with_webhook_secret(self, gateway: RazorpayGateway) -> None:
        body = b'{"event": "payment.captured"}'
        gateway.verify_webhook_signature(body, compute_signature("whsec", body))
        with pytest.raises(SignatureMismatchError):
            gateway.verify_webhook_signature(body, compute_signature("secret", body))

    def test_parse_webhook_entity(self, gateway: RazorpayGateway) -> None:
        body = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 50000,
            }}},
        }).encode()

        event = gateway.parse_webhook(body)

        assert event.event == "payment.captured"
        assert event.payment_id == "pay_1"
        assert event.order_id == "order_1"
        assert event.amount == Decimal("500.00")

    @pytest.mark.parametrize("body", [
        b"not json",
        b'{"event": "payment.captured"}',
        b'{"payload": {}}',
        b"\x80\x81 not utf-8",
        b'{"event": "payment.captured", "payload": {"payment": {"id": "pay_1", "amount": "lots"}}}',
        b"[1, 2]",
    ])
    def test_malformed_webhook_rejected(self, gateway: RazorpayGateway, body: bytes) -> None:
        with pytest.raises(ValidationError):
            gateway.parse_webhook(body)
