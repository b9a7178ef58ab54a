# src/infra/payment_gateway.py
"""
Адаптер платёжного шлюза (Razorpay-совместимый REST API).

Адаптер не трогает хранилище: только HTTP-вызовы и проверка подписей.
Все вызовы идут через один httpx.AsyncClient с ограничением соединений
и таймаутом. Транспортные ошибки и 5xx считаются повторяемыми.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx

from src.common.errors import GatewayFailureError, SignatureMismatchError, ValidationError
from src.common.logger import log_error, log_warning
from src.common.money import from_minor_units, to_minor_units

if TYPE_CHECKING:
    from src.config.loader import GatewaySettings


# Статус платежа у шлюза, означающий успешное списание
CAPTURED = "captured"


@dataclass
class GatewayOrder:
    """Созданный у шлюза заказ."""
    order_id: str
    key_id: str
    amount: Decimal
    receipt: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayPayment:
    """Состояние платежа у шлюза."""
    payment_id: str
    order_id: str | None
    status: str
    amount: Decimal
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_captured(self) -> bool:
        return self.status == CAPTURED


@dataclass
class WebhookEvent:
    """Разобранное событие вебхука."""
    event: str
    payment_id: str
    order_id: str | None
    status: str
    amount: Decimal
    raw: dict[str, Any] = field(default_factory=dict)


def compute_signature(secret: str, message: bytes) -> str:
    """HMAC-SHA256 в hex."""
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """
    Клиент платёжного шлюза.

    Args:
        config: Секция gateway настроек
        transport: Транспорт httpx (подменяется в тестах)
    """

    def __init__(
        self,
        config: "GatewaySettings",
        currency: str = "INR",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._currency = currency
        self._client = httpx.AsyncClient(
            base_url=config.GATEWAY_BASE_URL,
            auth=(config.GATEWAY_KEY_ID, config.GATEWAY_KEY_SECRET),
            timeout=httpx.Timeout(config.GATEWAY_TIMEOUT),
            limits=httpx.Limits(
                max_connections=config.GATEWAY_MAX_CONNECTIONS,
                max_keepalive_connections=config.GATEWAY_MAX_CONNECTIONS,
            ),
            transport=transport,
        )

    @property
    def key_id(self) -> str:
        return self._config.GATEWAY_KEY_ID

    async def close(self) -> None:
        """Закрывает HTTP клиент."""
        await self._client.aclose()

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """
        Выполняет запрос и приводит сбои к GatewayFailureError.

        Raises:
            GatewayFailureError: retryable для таймаутов, транспорта и 5xx
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            await log_warning(f"Таймаут шлюза {method} {path}: {e}")
            raise GatewayFailureError(f"Таймаут шлюза: {method} {path}", retryable=True) from e
        except httpx.TransportError as e:
            await log_warning(f"Транспортная ошибка шлюза {method} {path}: {e}")
            raise GatewayFailureError(f"Шлюз недоступен: {method} {path}", retryable=True) from e

        if response.status_code >= 500:
            await log_warning(f"Шлюз вернул {response.status_code} на {method} {path}")
            raise GatewayFailureError(
                f"Ошибка шлюза {response.status_code}",
                {"status_code": response.status_code},
                retryable=True,
            )
        if response.status_code >= 400:
            description = _error_description(response)
            await log_error(f"Шлюз отклонил {method} {path}: {response.status_code} {description}")
            raise GatewayFailureError(
                f"Шлюз отклонил запрос: {description}",
                {"status_code": response.status_code},
                retryable=False,
            )

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise GatewayFailureError("Некорректный ответ шлюза", retryable=True) from e

    # =========================================================================
    # ЗАКАЗЫ И ПЛАТЕЖИ
    # =========================================================================

    async def create_order(self, amount: Decimal, receipt: str, description: str = "") -> GatewayOrder:
        """
        Создаёт заказ. Идемпотентен по receipt: существующий заказ
        с тем же receipt возвращается без повторного создания.

        Args:
            amount: Сумма в рупиях
            receipt: Непрозрачная квитанция (референс платежа)
            description: Описание для заметок заказа
        """
        existing = await self._request("GET", "/orders", params={"receipt": receipt})
        for item in existing.get("items", []):
            if item.get("receipt") == receipt:
                return self._to_order(item)

        payload = {
            "amount": to_minor_units(amount),
            "currency": self._currency,
            "receipt": receipt,
            "notes": {"description": description},
        }
        data = await self._request("POST", "/orders", json=payload)
        return self._to_order(data)

    def _to_order(self, data: dict[str, Any]) -> GatewayOrder:
        return GatewayOrder(
            order_id=data["id"],
            key_id=self.key_id,
            amount=from_minor_units(data.get("amount", 0)),
            receipt=data.get("receipt", ""),
            raw=data,
        )

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """Статус и списанная сумма платежа."""
        data = await self._request("GET", f"/payments/{payment_id}")
        return GatewayPayment(
            payment_id=data["id"],
            order_id=data.get("order_id"),
            status=data.get("status", ""),
            amount=from_minor_units(data.get("amount", 0)),
            raw=data,
        )

    async def refund(self, payment_id: str, amount: Decimal) -> str:
        """
        Возврат на исходный источник.

        Returns:
            Идентификатор возврата у шлюза
        """
        data = await self._request(
            "POST",
            f"/payments/{payment_id}/refund",
            json={"amount": to_minor_units(amount)},
        )
        return data["id"]

    async def payout(self, amount: Decimal, reference: str, fund_account_id: str) -> str:
        """
        Выплата исполнителю.

        Args:
            amount: Сумма
            reference: Референс вывода (идемпотентность на стороне шлюза)
            fund_account_id: Счёт получателя

        Returns:
            Идентификатор выплаты
        """
        data = await self._request(
            "POST",
            "/payouts",
            json={
                "account_number": self._config.GATEWAY_PAYOUT_ACCOUNT_NUMBER,
                "fund_account_id": fund_account_id,
                "amount": to_minor_units(amount),
                "currency": self._currency,
                "mode": "IMPS",
                "purpose": "payout",
                "reference_id": reference,
            },
            headers={"X-Payout-Idempotency": reference},
        )
        return data["id"]

    # =========================================================================
    # ПОДПИСИ И ВЕБХУКИ
    # =========================================================================

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> None:
        """
        Проверяет подпись `order_id|payment_id` секретом ключа.

        Raises:
            SignatureMismatchError: Подпись не совпала
        """
        expected = compute_signature(self._config.GATEWAY_KEY_SECRET, f"{order_id}|{payment_id}".encode())
        if not hmac.compare_digest(expected, signature or ""):
            raise SignatureMismatchError(
                "Подпись платежа не совпала",
                {"order_id": order_id, "payment_id": payment_id},
            )

    def verify_webhook_signature(self, body: bytes, signature: str) -> None:
        """
        Проверяет подпись сырого тела вебхука.

        Raises:
            SignatureMismatchError: Подпись не совпала
        """
        expected = compute_signature(self._config.GATEWAY_WEBHOOK_SECRET, body)
        if not hmac.compare_digest(expected, signature or ""):
            raise SignatureMismatchError("Подпись вебхука не совпала")

    def parse_webhook(self, body: bytes) -> WebhookEvent:
        """
        Разбирает тело вебхука.

        Raises:
            ValidationError: Нет обязательных полей
        """
        try:
            data = json.loads(body)
            entity = data["payload"]["payment"]["entity"] if "entity" in data["payload"]["payment"] \
                else data["payload"]["payment"]
            return WebhookEvent(
                event=data["event"],
                payment_id=entity["id"],
                order_id=entity.get("order_id"),
                status=entity.get("status", ""),
                amount=from_minor_units(entity.get("amount", 0)),
                raw=data,
            )
        except (ValueError, KeyError, TypeError) as e:
            # JSONDecodeError и UnicodeDecodeError наследуют ValueError
            raise ValidationError(f"Некорректное тело вебхука: {e}") from e


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("description", response.text)
    except (json.JSONDecodeError, AttributeError):
        return response.text
