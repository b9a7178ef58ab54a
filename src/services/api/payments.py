# src/services/api/payments.py
"""
Endpoints платежей, кошелька, подписок и выводов.
"""

from __future__ import annotations

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, Header, Request

from src.common.constants import PaymentStatus
from src.core.ledger.service import LedgerService
from src.core.payments.service import PaymentService
from src.services.api.dependencies import (
    CurrentActor,
    CurrentAdmin,
    Page,
    get_ledger_service,
    get_payment_service,
)
from src.services.api.errors import to_jsonable
from src.services.api.schemas import (
    AdjustRequest,
    ReasonRequest,
    RechargeRequest,
    RefundRequest,
    SubscriptionPurchaseRequest,
    VerifyPaymentRequest,
    WalletResponse,
    WithdrawalCreateRequest,
)

router = APIRouter(prefix="/api/v1")

Payments = Annotated[PaymentService, Depends(get_payment_service)]
Ledger = Annotated[LedgerService, Depends(get_ledger_service)]


# === ПЛАТЕЖИ ===

@router.get("/payments/{payment_id}", tags=["Payments"], summary="Платёж")
async def get_payment(payment_id: int, actor: CurrentActor, service: Payments) -> dict[str, Any]:
    return to_jsonable(await service.get_payment(payment_id, actor))


@router.post("/payments/{payment_id}/verify", tags=["Payments"], summary="Подтвердить оплату по подписи")
async def verify_payment(
    payment_id: int,
    request: VerifyPaymentRequest,
    actor: CurrentActor,
    service: Payments,
) -> dict[str, Any]:
    payment = await service.verify_and_complete(
        payment_id,
        request.gateway_payment_id,
        request.signature,
        actor=actor,
    )
    return to_jsonable(payment)


@router.post("/payments/{payment_id}/cancel", tags=["Payments"], summary="Отменить ожидающий платёж")
async def cancel_payment(payment_id: int, actor: CurrentActor, service: Payments) -> dict[str, Any]:
    return to_jsonable(await service.cancel(payment_id, actor))


@router.post("/payments/{payment_id}/refund", tags=["Payments"], summary="Вернуть платёж")
async def refund_payment(
    payment_id: int,
    request: RefundRequest,
    admin: CurrentAdmin,
    service: Payments,
) -> dict[str, Any]:
    outcome = await service.refund(payment_id, request.amount, request.notes, request.destination)
    return {
        "payment": to_jsonable(outcome.payment),
        "destination": outcome.destination.value,
        "amount": str(outcome.amount),
        "ledger_entry_id": outcome.ledger_entry_id,
        "gateway_refund_id": outcome.gateway_refund_id,
    }


@router.post("/payments/webhook", tags=["Payments"], summary="Вебхук платёжного шлюза")
async def payment_webhook(
    request: Request,
    service: Payments,
    x_razorpay_signature: Annotated[str, Header()] = "",
) -> dict[str, Any]:
    """Подпись проверяется по сырому телу запроса."""
    body = await request.body()
    payment = await service.handle_webhook(body, x_razorpay_signature)
    return {"status": "ok", "payment_id": payment.id if payment else None}


# === КОШЕЛЁК ===

@router.get("/wallet", response_model=WalletResponse, tags=["Wallet"], summary="Баланс и история кошелька")
async def get_wallet(
    actor: CurrentActor,
    ledger: Ledger,
    pagination: Page,
) -> WalletResponse:
    entries = await ledger.entries(actor.id, limit=pagination.limit, offset=pagination.offset)
    return WalletResponse(
        user_id=actor.id,
        balance=await ledger.balance(actor.id),
        entries=to_jsonable(entries),
    )


@router.post("/wallet/recharge", status_code=201, tags=["Wallet"], summary="Пополнить кошелёк")
async def recharge_wallet(request: RechargeRequest, actor: CurrentActor, service: Payments) -> dict[str, Any]:
    result = await service.recharge_wallet(actor.id, request.amount)
    return result.to_dict()


@router.post("/wallet/adjust", tags=["Wallet"], summary="Ручная корректировка баланса")
async def adjust_wallet(request: AdjustRequest, admin: CurrentAdmin, service: Payments) -> dict[str, Any]:
    payment, entry = await service.admin_adjust(request.user_id, request.amount, request.reason, admin.id)
    return {"payment": to_jsonable(payment), "ledger_entry": to_jsonable(entry)}


# === ПОДПИСКИ ===

@router.post("/subscriptions/purchase", status_code=201, tags=["Subscriptions"], summary="Купить подписку")
async def purchase_subscription(
    request: SubscriptionPurchaseRequest,
    actor: CurrentActor,
    service: Payments,
) -> dict[str, Any]:
    result = await service.purchase_subscription(actor.id, request.plan_id, request.payment_method)
    return result.to_dict()


# === ВЫВОДЫ ===

@router.post("/withdrawals", status_code=201, tags=["Withdrawals"], summary="Запросить вывод")
async def request_withdrawal(
    request: WithdrawalCreateRequest,
    actor: CurrentActor,
    service: Payments,
) -> dict[str, Any]:
    payment = await service.request_withdrawal(actor, request.amount, request.fund_account_id, request.notes)
    return to_jsonable(payment)


@router.get("/withdrawals", tags=["Withdrawals"], summary="История выводов")
async def list_withdrawals(
    actor: CurrentActor,
    service: Payments,
    pagination: Page,
    status: Optional[PaymentStatus] = None,
) -> list[dict[str, Any]]:
    payments = await service.list_withdrawals(actor, status, limit=pagination.limit, offset=pagination.offset)
    return to_jsonable(payments)


@router.post("/withdrawals/{payment_id}/approve", tags=["Withdrawals"], summary="Одобрить вывод")
async def approve_withdrawal(payment_id: int, admin: CurrentAdmin, service: Payments) -> dict[str, Any]:
    return to_jsonable(await service.approve_withdrawal(payment_id, admin))


@router.post("/withdrawals/{payment_id}/reject", tags=["Withdrawals"], summary="Отклонить вывод")
async def reject_withdrawal(
    payment_id: int,
    request: ReasonRequest,
    admin: CurrentAdmin,
    service: Payments,
) -> dict[str, Any]:
    return to_jsonable(await service.reject_withdrawal(payment_id, admin, request.reason))
