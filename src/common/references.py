# src/common/references.py
"""
Внешние референсы сущностей: префикс, дата UTC и шесть случайных цифр.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Optional

PAYMENT_PREFIX = "PAY"
BOOKING_PREFIX = "BK"


def make_reference(prefix: str, now: Optional[datetime] = None) -> str:
    """
    Args:
        prefix: PAY или BK
        now: Момент создания (по умолчанию сейчас)

    Returns:
        Строка вида PAY20250101123456
    """
    moment = now or datetime.now(timezone.utc)
    return f"{prefix}{moment:%Y%m%d}{secrets.randbelow(10**6):06d}"
