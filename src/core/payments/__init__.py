"""Платежи, возвраты и выводы средств."""

from src.core.payments.hooks import PaymentHooks
from src.core.payments.models import OrderResult, Payment, PaymentRelation, RefundOutcome
from src.core.payments.service import PaymentService

__all__ = [
    "OrderResult",
    "Payment",
    "PaymentHooks",
    "PaymentRelation",
    "PaymentService",
    "RefundOutcome",
]
