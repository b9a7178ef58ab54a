# src/core/ledger/__init__.py
"""
Кошелёк: неизменяемая цепочка записей и производный баланс.
"""

from src.core.ledger.models import BalanceDrift, LedgerEntry, LedgerSummary
from src.core.ledger.service import LedgerService

__all__ = [
    "LedgerEntry",
    "LedgerSummary",
    "BalanceDrift",
    "LedgerService",
]
