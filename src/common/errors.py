# src/common/errors.py
"""
Ошибки ядра.

Каждая ошибка несёт вид (ErrorKind). HTTP-слой отображает вид
в код ответа детерминированно, сервисы только поднимают исключения.
"""

from __future__ import annotations

from typing import Any

from src.common.constants import ErrorKind


class CoreError(Exception):
    """Базовая ошибка доменных сервисов."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Сериализует ошибку для ответа API."""
        return {
            "error_code": self.kind.value,
            "message": self.message,
            "details": self.details or None,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class ValidationError(CoreError):
    """Некорректный ввод."""
    kind = ErrorKind.VALIDATION


class NotFoundError(CoreError):
    """Сущность не найдена."""
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(CoreError):
    """Недостаточно прав на объект."""
    kind = ErrorKind.FORBIDDEN


class ConflictingTransitionError(CoreError):
    """Машина состояний отклонила переход."""
    kind = ErrorKind.CONFLICTING_TRANSITION


class InsufficientFundsError(CoreError):
    """Списание больше доступного баланса."""
    kind = ErrorKind.INSUFFICIENT_FUNDS


class SignatureMismatchError(CoreError):
    """Подпись шлюза не совпала."""
    kind = ErrorKind.SIGNATURE_MISMATCH


class AmountMismatchError(CoreError):
    """Шлюз подтвердил сумму меньше ожидаемой."""
    kind = ErrorKind.AMOUNT_MISMATCH


class GatewayFailureError(CoreError):
    """Сбой внешнего провайдера."""
    kind = ErrorKind.GATEWAY_FAILURE

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, details)
        self.retryable = retryable


class AlreadyTerminalError(CoreError):
    """
    Повторная операция над завершённым объектом.

    Считается успехом: в `result` лежит ранее полученный результат.
    """
    kind = ErrorKind.ALREADY_TERMINAL

    def __init__(
        self,
        message: str,
        result: Any = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.result = result


class InternalError(CoreError):
    """Нарушен инвариант. Никогда не ретраится молча."""
    kind = ErrorKind.INTERNAL
