# tests/services/test_http_api.py
"""
Тесты HTTP API: аутентификация, отображение ошибок ядра, разбор запросов.
"""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.common.constants import ActorKind, NotificationKind, TokenType
from src.common.errors import (
    AlreadyTerminalError,
    GatewayFailureError,
    InsufficientFundsError,
    NotFoundError,
    SignatureMismatchError,
)
from src.config.loader import AuthSettings, Settings
from src.core.auth.tokens import TokenService
from src.core.notifications.models import Notification
from src.services.api.app import create_app
from tests.fakes import NOW, make_actor

CUSTOMER = make_actor(101)
ADMIN = make_actor(1, ActorKind.ADMIN)


@pytest.fixture
def users() -> AsyncMock:
    actors = {CUSTOMER.id: CUSTOMER, ADMIN.id: ADMIN}
    users = AsyncMock()
    users.get_by_id = AsyncMock(side_effect=lambda user_id: actors.get(user_id))
    return users


@pytest.fixture
def tokens(users: AsyncMock) -> TokenService:
    return TokenService(AuthSettings(JWT_SECRET="api-secret"), users)


@pytest.fixture
def env(tokens: TokenService) -> SimpleNamespace:
    env = SimpleNamespace(
        settings=Settings(),
        db=AsyncMock(),
        redis=AsyncMock(),
        event_bus=AsyncMock(),
        tokens=tokens,
        bookings=AsyncMock(),
        payments=AsyncMock(),
        ledger=AsyncMock(),
        availability=AsyncMock(),
        notifications=AsyncMock(),
        conversations=AsyncMock(),
    )
    for dependency in (env.db, env.redis, env.event_bus):
        dependency.health_check.return_value = True
    return env


@pytest.fixture
def client(env: SimpleNamespace):
    with TestClient(create_app(env)) as client:
        yield client


def auth(tokens: TokenService, actor=CUSTOMER) -> dict[str, str]:
    return {"Authorization": f"Bearer {tokens.issue(actor)}"}


class TestHealthAndAuth:
    """Тесты health и аутентификации."""

    def test_health_all_dependencies(self, client: TestClient) -> None:
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert set(body["dependencies"]) == {"postgres", "redis", "rabbitmq"}

    def test_health_degraded(self, client: TestClient, env) -> None:
        env.event_bus.health_check.return_value = False
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["dependencies"]["rabbitmq"] == "unhealthy"

    def test_missing_token_is_401(self, client: TestClient) -> None:
        response = client.get("/api/v1/wallet")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_refresh_token_not_accepted_as_access(self, client: TestClient, tokens: TokenService) -> None:
        refresh = tokens.issue(CUSTOMER, TokenType.REFRESH)
        response = client.get("/api/v1/wallet", headers={"Authorization": f"Bearer {refresh}"})
        assert response.status_code == 401

    def test_admin_route_forbidden_for_customer(self, client: TestClient, tokens: TokenService) -> None:
        response = client.post("/api/v1/withdrawals/5/approve", headers=auth(tokens))
        assert response.status_code == 403

    def test_refresh_endpoint(self, client: TestClient, tokens: TokenService) -> None:
        refresh = tokens.issue(CUSTOMER, TokenType.REFRESH)

        body = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh}).json()

        assert body["token_type"] == "bearer"
        assert tokens.verify(body["access_token"]).user_id == CUSTOMER.id

    def test_refresh_endpoint_rejects_garbage(self, client: TestClient) -> None:
        response = client.post("/api/v1/auth/refresh", json={"refresh_token": "nope"})
        assert response.status_code == 401

    def test_auth_not_configured_is_503(self, env, tokens: TokenService) -> None:
        header = auth(tokens)
        env.tokens = None
        with TestClient(create_app(env)) as client:
            assert client.get("/api/v1/wallet", headers=header).status_code == 503


class TestErrorMapping:
    """Тесты отображения ошибок ядра в HTTP коды."""

    @pytest.mark.parametrize("error,status,code", [
        (NotFoundError("нет", {"payment_id": 5}), 404, "not_found"),
        (InsufficientFundsError("мало"), 402, "insufficient_funds"),
        (SignatureMismatchError("подпись"), 400, "signature_mismatch"),
        (GatewayFailureError("шлюз", retryable=True), 502, "gateway_failure"),
    ])
    def test_core_errors(self, client: TestClient, env, tokens, error, status, code) -> None:
        env.payments.get_payment.side_effect = error

        response = client.get("/api/v1/payments/5", headers={**auth(tokens), "X-Request-ID": "req-1"})

        assert response.status_code == status
        body = response.json()
        assert body["error_code"] == code
        assert body["request_id"] == "req-1"

    def test_already_terminal_returns_prior_result(self, client: TestClient, env, tokens) -> None:
        env.payments.verify_and_complete.side_effect = AlreadyTerminalError(
            "уже оплачен", result={"id": 5, "status": "completed"},
        )

        response = client.post(
            "/api/v1/payments/5/verify",
            json={"gateway_payment_id": "pay_1", "signature": "sig"},
            headers=auth(tokens),
        )

        assert response.status_code == 200
        assert response.json() == {"id": 5, "status": "completed"}

    def test_request_validation_is_422(self, client: TestClient, tokens) -> None:
        response = client.post("/api/v1/wallet/recharge", json={"amount": "-5"}, headers=auth(tokens))
        assert response.status_code == 422


class TestEndpoints:
    """Тесты разбора запросов и вызова сервисов."""

    def test_webhook_passes_raw_body_and_signature(self, client: TestClient, env) -> None:
        env.payments.handle_webhook.return_value = MagicMock(id=7)
        body = b'{"event": "payment.captured"}'

        response = client.post(
            "/api/v1/payments/webhook",
            content=body,
            headers={"X-Razorpay-Signature": "abc", "Content-Type": "application/json"},
        )

        assert response.json() == {"status": "ok", "payment_id": 7}
        env.payments.handle_webhook.assert_awaited_once_with(body, "abc")

    def test_wallet_balance_and_pagination(self, client: TestClient, env, tokens) -> None:
        env.ledger.balance.return_value = Decimal("150.00")
        env.ledger.entries.return_value = []

        body = client.get("/api/v1/wallet?page=3&page_size=10", headers=auth(tokens)).json()

        assert body == {"user_id": CUSTOMER.id, "balance": "150.00", "entries": []}
        env.ledger.entries.assert_awaited_once_with(CUSTOMER.id, limit=10, offset=20)

    def test_page_size_bounded(self, client: TestClient, tokens) -> None:
        response = client.get("/api/v1/notifications?page_size=500", headers=auth(tokens))
        assert response.status_code == 422

    def test_notifications_list(self, client: TestClient, env, tokens) -> None:
        env.notifications.list_notifications.return_value = [
            Notification(id=1, user_id=CUSTOMER.id, kind=NotificationKind.BOOKING_CONFIRMED,
                         title="t", body="b", created_at=NOW),
        ]

        response = client.get("/api/v1/notifications?unread_only=true&page=2&page_size=5", headers=auth(tokens))

        assert response.json()[0]["kind"] == "booking_confirmed"
        actor, unread_only, page, page_size = env.notifications.list_notifications.await_args.args
        assert (actor.id, unread_only, page, page_size) == (CUSTOMER.id, True, 2, 5)

    def test_booking_filter_by_state(self, client: TestClient, env, tokens) -> None:
        env.bookings.list_customer_bookings.return_value = []

        assert client.get("/api/v1/bookings?state=confirmed", headers=auth(tokens)).json() == []

        args = env.bookings.list_customer_bookings.await_args
        assert args.args[1].value == "confirmed"
        assert args.kwargs == {"limit": 20, "offset": 0}

    def test_unknown_state_rejected(self, client: TestClient, tokens) -> None:
        response = client.get("/api/v1/bookings?state=teleported", headers=auth(tokens))
        assert response.status_code == 422

    def test_admin_assigns_worker(self, client: TestClient, env, tokens) -> None:
        env.bookings.assign_worker.return_value = {"id": 3, "worker_id": 201}

        response = client.post("/api/v1/bookings/9/assign", json={"worker_id": 201}, headers=auth(tokens, ADMIN))

        assert response.json() == {"id": 3, "worker_id": 201}
        admin, booking_id, worker_id = env.bookings.assign_worker.await_args.args
        assert (admin.id, booking_id, worker_id) == (ADMIN.id, 9, 201)

    def test_post_message(self, client: TestClient, env, tokens) -> None:
        env.conversations.post_message.return_value = {"id": 77, "content": "hi"}

        response = client.post("/api/v1/conversations/9/messages", json={"content": "hi"}, headers=auth(tokens))

        assert response.status_code == 201
        assert response.json()["id"] == 77

    def test_availability_by_local_date(self, client: TestClient, env) -> None:
        env.availability.tz = "Asia/Kolkata"
        env.availability.free_slots.return_value = []

        body = client.get("/api/v1/availability/5?date=2025-01-11").json()

        assert body == {"service_id": 5, "date": "2025-01-11", "timezone": "Asia/Kolkata", "slots": []}
