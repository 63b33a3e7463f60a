# backend/marketplace/core/enums.py
"""
Core enums for the marketplace settlement engine.

Status values are persisted as lowercase strings and double as the
public API representation.
"""

from enum import Enum


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.ACCEPTED, BookingStatus.DECLINED, BookingStatus.CANCELLED}
    ),
    BookingStatus.ACCEPTED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.DECLINED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


class PaymentStatus(str, Enum):
    """Payment lifecycle statuses."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    RELEASED = "released"


UNSETTLED_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


class PaymentMethodType(str, Enum):
    CREDIT_CARD = "credit_card"
    PIX = "pix"
    BOLETO = "boleto"


class WithdrawalStatus(str, Enum):
    """Withdrawal lifecycle statuses."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_WITHDRAWAL_STATUSES = frozenset({WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING})

WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.PROCESSING}),
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED}),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
}


class ServiceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PriceType(str, Enum):
    FIXED = "fixed"
    HOURLY = "hourly"


class NotificationType(str, Enum):
    NEW_BOOKING = "new_booking"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_DECLINED = "booking_declined"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_AUTO_CANCELLED = "booking_auto_cancelled"
    BOOKING_REMINDER = "booking_reminder"
    REVIEW_REQUEST = "review_request"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    REFUND_PROCESSED = "refund_processed"
    BOOKING_REFUNDED = "booking_refunded"
    FUNDS_AVAILABLE = "funds_available"
    PAYMENT_DISPUTED = "payment_disputed"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"


# Actor id recorded when the scheduler acts instead of a person.
SYSTEM_ACTOR = "system"
