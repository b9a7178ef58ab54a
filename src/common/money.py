# src/common/money.py
"""
Денежные суммы: Decimal с двумя знаками после запятой.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from src.common.errors import ValidationError

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Number) -> Decimal:
    """
    Приводит значение к денежному Decimal.

    Args:
        value: Число или строка

    Returns:
        Decimal, округлённый до копеек

    Raises:
        ValidationError: Значение не является числом
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            # float через str, чтобы не тащить двоичный хвост
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Некорректная сумма: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Некорректная сумма: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def require_positive(value: Number, field: str = "amount") -> Decimal:
    """Проверяет, что сумма строго положительна."""
    amount = to_money(value)
    if amount <= ZERO:
        raise ValidationError(f"Сумма должна быть положительной: {field}={amount}", {"field": field})
    return amount


def to_minor_units(value: Number) -> int:
    """Сумма в минимальных единицах валюты (пайсы)."""
    return int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    """Обратное преобразование из пайсов."""
    return to_money(Decimal(int(value)) / 100)
