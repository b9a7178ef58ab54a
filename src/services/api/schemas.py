# src/services/api/schemas.py
"""
Модели запросов и ответов HTTP API.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.common.constants import PaymentMethod, RefundDestination


# === AUTH ===

class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


# === BOOKINGS ===

class CreateBookingRequest(BaseModel):
    """Создание бронирования. Для inquiry-услуг время не передаётся."""
    service_id: int
    address_id: int
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    description: Optional[str] = Field(None, max_length=2000)
    payment_method: PaymentMethod = PaymentMethod.GATEWAY


class VerifyPaymentRequest(BaseModel):
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class QuoteRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    notes: Optional[str] = Field(None, max_length=2000)
    ttl_hours: Optional[int] = Field(None, ge=1)


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ScheduleRequest(BaseModel):
    scheduled_start: datetime
    scheduled_end: datetime
    payment_method: PaymentMethod = PaymentMethod.GATEWAY


class AssignWorkerRequest(BaseModel):
    worker_id: int


class WorkStartRequest(BaseModel):
    notes: str = ""
    photos: list[str] = Field(default_factory=list)


class WorkCompleteRequest(BaseModel):
    notes: str = ""
    materials_used: list[str] = Field(default_factory=list)
    photos: list[str] = Field(default_factory=list)


# === PAYMENTS ===

class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    notes: Optional[str] = None
    destination: RefundDestination = RefundDestination.WALLET


class RechargeRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class AdjustRequest(BaseModel):
    """Ручная корректировка: положительная сумма начисляет, отрицательная списывает."""
    user_id: int
    amount: Decimal = Field(..., decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=500)


class SubscriptionPurchaseRequest(BaseModel):
    plan_id: int
    payment_method: PaymentMethod = PaymentMethod.GATEWAY


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    fund_account_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class WalletResponse(BaseModel):
    user_id: int
    balance: Decimal
    entries: list[dict[str, Any]]


# === NOTIFICATIONS ===

class DeviceRequest(BaseModel):
    token: str = Field(..., min_length=1)
    platform: str = "android"


class UnreadCountResponse(BaseModel):
    unread_count: int
