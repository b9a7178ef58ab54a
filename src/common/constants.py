# src/common/constants.py
"""
Общие константы и перечисления домена.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ActorKind(str, Enum):
    """Роли участников маркетплейса."""
    CUSTOMER = "customer"
    WORKER = "worker"
    BROKER = "broker"
    ADMIN = "admin"


class PricingMode(str, Enum):
    """Режим ценообразования услуги."""
    FIXED = "fixed"
    INQUIRY = "inquiry"


class BookingKind(str, Enum):
    """Трек бронирования."""
    REGULAR = "regular"
    INQUIRY = "inquiry"


class BookingState(str, Enum):
    """Состояния бронирования (оба трека)."""
    CREATED = "created"
    HELD = "held"
    INQUIRY_PAID = "inquiry_paid"
    AWAITING_QUOTE = "awaiting_quote"
    QUOTED = "quoted"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    QUOTE_EXPIRED = "quote_expired"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Состояния, занимающие слот (для уникального индекса и расчёта свободных слотов)
SLOT_OCCUPYING_STATES: frozenset[BookingState] = frozenset({
    BookingState.HELD,
    BookingState.SCHEDULED,
    BookingState.CONFIRMED,
    BookingState.ASSIGNED,
    BookingState.IN_PROGRESS,
    BookingState.COMPLETED,
})

TERMINAL_BOOKING_STATES: frozenset[BookingState] = frozenset({
    BookingState.COMPLETED,
    BookingState.CANCELLED,
    BookingState.EXPIRED,
    BookingState.QUOTE_EXPIRED,
})


class QuoteDecision(str, Enum):
    """Решение клиента по смете."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class AssignmentState(str, Enum):
    """Состояния назначения исполнителя."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PaymentKind(str, Enum):
    """Назначение платежа."""
    BOOKING = "booking"
    SUBSCRIPTION = "subscription"
    WALLET_RECHARGE = "wallet_recharge"
    WALLET_DEBIT = "wallet_debit"
    SEGMENT = "segment"
    QUOTE = "quote"
    REFUND = "refund"
    MANUAL = "manual"
    WITHDRAWAL = "withdrawal"


class RelationKind(str, Enum):
    """Сущность, к которой привязан платёж."""
    BOOKING = "booking"
    SUBSCRIPTION_PLAN = "subscription_plan"


class PaymentMethod(str, Enum):
    """Способы оплаты."""
    GATEWAY = "gateway"
    WALLET = "wallet"
    CASH = "cash"
    ADMIN = "admin"


class PaymentStatus(str, Enum):
    """Статусы оплаты."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class RefundDestination(str, Enum):
    """Куда возвращаются средства."""
    WALLET = "wallet"
    SOURCE = "source"


class LedgerEntryKind(str, Enum):
    """Виды записей кошелька."""
    CREDIT = "credit"
    DEBIT = "debit"
    HOLD = "hold"
    RELEASE = "release"
    ADJUST = "adjust"


class NotificationKind(str, Enum):
    """Типы уведомлений."""
    BOOKING_CREATED = "booking_created"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_EXPIRED = "booking_expired"
    HOLD_EXPIRED_REFUNDED = "hold_expired_refunded"
    INQUIRY_PAID = "inquiry_paid"
    QUOTE_REVIEW_STARTED = "quote_review_started"
    QUOTE_PROVIDED = "quote_provided"
    QUOTE_UPDATED = "quote_updated"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    QUOTE_EXPIRED = "quote_expired"
    NEW_ASSIGNMENT = "new_assignment"
    ASSIGNMENT_ACCEPTED = "assignment_accepted"
    ASSIGNMENT_REJECTED = "assignment_rejected"
    WORK_STARTED = "work_started"
    WORK_COMPLETED = "work_completed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REFUNDED = "payment_refunded"
    WALLET_TRANSACTION = "wallet_transaction"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    WITHDRAWAL_PENDING_REMINDER = "withdrawal_pending_reminder"
    BALANCE_DRIFT = "balance_drift"
    NEW_MESSAGE = "new_message"


class PresenceScopeKind(str, Enum):
    """Виды областей рассылки хаба присутствия."""
    USER_NOTIFICATIONS = "user_notifications"
    ADMIN_NOTIFICATIONS = "admin_notifications"
    CONVERSATION = "conversation"
    USER_MONITOR = "user_monitor"


class TokenType(str, Enum):
    """Типы JWT токенов."""
    ACCESS = "access"
    REFRESH = "refresh"


class ErrorKind(str, Enum):
    """Виды ошибок ядра."""
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICTING_TRANSITION = "conflicting_transition"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SIGNATURE_MISMATCH = "signature_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    GATEWAY_FAILURE = "gateway_failure"
    ALREADY_TERMINAL = "already_terminal"
    INTERNAL = "internal"
