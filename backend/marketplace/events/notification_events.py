"""
Notification requests produced by state transitions.

Services never talk to a delivery channel directly. Each operation
returns a ``Transition`` carrying its result and the notifications it
wants sent; the dispatcher hands them to the sink after commit.
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, Generic, List, TypeVar

from ..core.enums import NotificationType

T = TypeVar("T")


@dataclass(frozen=True)
class NotificationRequest:
    """One message for one user."""

    user_id: str
    type: NotificationType
    title: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        return payload


@dataclass
class Transition(Generic[T]):
    """Result of a state-machine operation plus the notifications it emits."""

    result: T
    notifications: List[NotificationRequest] = field(default_factory=list)

    def notify(self, request: NotificationRequest) -> "Transition[T]":
        self.notifications.append(request)
        return self


def _money(amount: Decimal) -> str:
    return f"R$ {Decimal(amount):.2f}"


def new_booking(provider_id: str, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        provider_id,
        NotificationType.NEW_BOOKING,
        "New Booking Request",
        f"You have a new booking request for {service_title}",
    )


def booking_accepted(client_id: str, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        client_id,
        NotificationType.BOOKING_ACCEPTED,
        "Booking Accepted",
        f"Your booking for {service_title} has been accepted",
    )


def booking_declined(client_id: str, service_title: str, reason: str | None) -> NotificationRequest:
    message = f"Your booking for {service_title} has been declined"
    if reason:
        message = f"{message}: {reason}"
    return NotificationRequest(client_id, NotificationType.BOOKING_DECLINED, "Booking Declined", message)


def review_request(client_id: str, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        client_id,
        NotificationType.REVIEW_REQUEST,
        "Service Completed",
        f"{service_title} was completed. Please leave a review",
    )


def booking_cancelled(user_id: str, service_title: str, reason: str | None) -> NotificationRequest:
    message = f"The booking for {service_title} has been cancelled"
    if reason:
        message = f"{message}: {reason}"
    return NotificationRequest(
        user_id, NotificationType.BOOKING_CANCELLED, "Booking Cancelled", message
    )


def booking_auto_cancelled(user_id: str, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        user_id,
        NotificationType.BOOKING_AUTO_CANCELLED,
        "Booking Cancelled",
        f"The booking for {service_title} was cancelled because the provider did not respond",
    )


def booking_reminder(user_id: str, service_title: str, when: str) -> NotificationRequest:
    return NotificationRequest(
        user_id,
        NotificationType.BOOKING_REMINDER,
        "Booking Reminder",
        f"Reminder: {service_title} is scheduled for {when}",
    )


def payment_received(provider_id: str, amount: Decimal, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        provider_id,
        NotificationType.PAYMENT_RECEIVED,
        "Payment Received",
        f"Payment of {_money(amount)} received for {service_title}",
    )


def payment_failed(client_id: str, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        client_id,
        NotificationType.PAYMENT_FAILED,
        "Payment Failed",
        f"The payment for {service_title} could not be processed",
    )


def refund_processed(client_id: str, amount: Decimal) -> NotificationRequest:
    return NotificationRequest(
        client_id,
        NotificationType.REFUND_PROCESSED,
        "Refund Processed",
        f"A refund of {_money(amount)} has been processed",
    )


def booking_refunded(provider_id: str, amount: Decimal, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        provider_id,
        NotificationType.BOOKING_REFUNDED,
        "Booking Refunded",
        f"{_money(amount)} was refunded to the client for {service_title}",
    )


def funds_available(provider_id: str, amount: Decimal) -> NotificationRequest:
    return NotificationRequest(
        provider_id,
        NotificationType.FUNDS_AVAILABLE,
        "Funds Available",
        f"{_money(amount)} is now available for withdrawal",
    )


def payment_disputed(user_id: str, service_title: str) -> NotificationRequest:
    return NotificationRequest(
        user_id,
        NotificationType.PAYMENT_DISPUTED,
        "Payment Under Dispute",
        f"The payment for {service_title} is under review and funds are on hold",
    )


def withdrawal_requested(user_id: str, amount: Decimal) -> NotificationRequest:
    return NotificationRequest(
        user_id,
        NotificationType.WITHDRAWAL_REQUESTED,
        "Withdrawal Requested",
        f"Your withdrawal of {_money(amount)} is being processed",
    )


def withdrawal_completed(user_id: str, amount: Decimal) -> NotificationRequest:
    return NotificationRequest(
        user_id,
        NotificationType.WITHDRAWAL_COMPLETED,
        "Withdrawal Completed",
        f"Your withdrawal of {_money(amount)} has been transferred",
    )


def withdrawal_failed(user_id: str, amount: Decimal) -> NotificationRequest:
    return NotificationRequest(
        user_id,
        NotificationType.WITHDRAWAL_FAILED,
        "Withdrawal Failed",
        f"Your withdrawal of {_money(amount)} failed and the amount was returned to your balance",
    )
