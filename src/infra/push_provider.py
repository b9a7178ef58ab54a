# src/infra/push_provider.py
"""
Клиент push-провайдера (FCM-совместимый legacy HTTP API).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from src.config.loader import PushSettings


# Ошибки FCM, означающие, что токен больше не действителен
INVALID_TOKEN_ERRORS = frozenset({"NotRegistered", "InvalidRegistration", "MismatchSenderId"})


class PushError(Exception):
    """Базовая ошибка отправки push."""


class PushTransientError(PushError):
    """Временный сбой: повторить позже."""


class PushTokenInvalidError(PushError):
    """Токен устройства недействителен: отключить."""


class PushProvider:
    """
    Отправка push на один токен устройства.

    Args:
        config: Секция push настроек
        transport: Транспорт httpx (подменяется в тестах)
    """

    def __init__(
        self,
        config: "PushSettings",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.PUSH_TIMEOUT),
            limits=httpx.Limits(max_connections=config.PUSH_MAX_CONNECTIONS),
            headers={"Authorization": f"key={config.PUSH_SERVER_KEY}"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def send(
        self,
        token: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        image_url: str | None = None,
        click_action: str | None = None,
    ) -> str | None:
        """
        Отправляет уведомление.

        Returns:
            message_id провайдера

        Raises:
            PushTransientError: Таймаут, транспорт, 5xx, Unavailable
            PushTokenInvalidError: Токен отклонён провайдером
        """
        notification: dict[str, Any] = {"title": title, "body": body}
        if image_url:
            notification["image"] = image_url
        if click_action:
            notification["click_action"] = click_action

        payload = {
            "to": token,
            "notification": notification,
            # FCM принимает в data только строки
            "data": {k: str(v) for k, v in (data or {}).items()},
        }

        try:
            response = await self._client.post(self._config.PUSH_URL, json=payload)
        except httpx.TimeoutException as e:
            raise PushTransientError(f"Таймаут push-провайдера: {e}") from e
        except httpx.TransportError as e:
            raise PushTransientError(f"Push-провайдер недоступен: {e}") from e

        if response.status_code >= 500:
            raise PushTransientError(f"Push-провайдер вернул {response.status_code}")
        if response.status_code in (400, 401, 403):
            raise PushError(f"Push-провайдер отклонил запрос: {response.status_code}")

        result = (response.json().get("results") or [{}])[0]
        error = result.get("error")
        if error in INVALID_TOKEN_ERRORS:
            raise PushTokenInvalidError(error)
        if error:
            raise PushTransientError(error)
        return result.get("message_id")
