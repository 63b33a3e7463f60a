# backend/marketplace/services/booking_service.py
"""
Booking Service for the marketplace.

Handles the booking lifecycle:
- Creating bookings with their pending payment
- Reserving per-day service capacity atomically
- Accept / decline by the provider
- Completion (starts the escrow hold) and cancellation (refund by notice)

Cancellation and decline may refund a captured payment. Those use the
3-phase pattern so no database lock is held during the gateway call. The
payment's refund claim is taken before the gateway call, so only one of
two racing cancellations can refund.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
import math
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    BOOKING_TRANSITIONS,
    SYSTEM_ACTOR,
    UNSETTLED_PAYMENT_STATUSES,
    BookingStatus,
    PaymentStatus,
    PriceType,
    ServiceStatus,
)
from ..core.exceptions import (
    BusinessRuleException,
    CapacityExhaustedException,
    ConflictException,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    ValidationException,
)
from ..core.ledger import (
    FULL_REFUND,
    compute_escrow_release_date,
    compute_fees,
    compute_refund_amount,
    compute_refund_percentage,
    hours_until,
    to_money,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..events import notification_events as events
from ..events.notification_events import Transition
from ..integrations.pagarme_client import PaymentGateway
from ..models.booking import Booking
from ..models.payment import Payment
from ..models.service import Service
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import BookingCreate
from .base import BaseService
from .payment_service import claim_and_refund

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = "provider no-response"

_UNSETTLED = {status.value for status in UNSETTLED_PAYMENT_STATUSES}


def booking_day_key(booking_date: datetime) -> str:
    """Calendar day (UTC) a booking counts against for capacity."""
    return ensure_utc(booking_date).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class _RefundPlan:
    """What phase 1 decided about the linked payment."""

    payment_id: Optional[str]
    payment_status: Optional[str]
    refund_amount: Decimal


class BookingService(BaseService):
    """
    Service layer for the booking state machine.

        pending -> accepted | declined | cancelled
        accepted -> completed | cancelled

    Every operation returns a ``Transition`` whose notifications are sent by
    the caller once the transaction has committed.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        fee_rate: Optional[Decimal] = None,
        escrow_hold_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.fee_rate = fee_rate if fee_rate is not None else settings.platform_fee_rate
        self.escrow_hold_days = escrow_hold_days or settings.escrow_hold_days
        self.clock = clock
        self.repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.service_repository = RepositoryFactory.create_service_repository(db)

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_utc(now) if now is not None else self.clock()

    @staticmethod
    def _is_lock_error(exc: OperationalError) -> bool:
        orig = getattr(exc, "orig", None)
        pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if pgcode in ("40P01", "40001", "55P03"):
            return True
        message = str(exc).lower()
        return "deadlock detected" in message or "database is locked" in message

    @staticmethod
    def _ensure_transition(booking: Booking, target: BookingStatus) -> None:
        current = BookingStatus(booking.status)
        if target not in BOOKING_TRANSITIONS[current]:
            raise InvalidStateException(
                f"Cannot move booking from {current.value} to {target.value}",
                current_status=current.value,
                details={"booking_id": booking.id, "target_status": target.value},
            )

    def _load(self, booking_id: str) -> Booking:
        booking = self.repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    def _lock(self, booking_id: str) -> Booking:
        booking = self.repository.get_for_update(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    @staticmethod
    def _title(booking: Booking) -> str:
        return booking.service.title if booking.service is not None else "your booking"

    def _calculate_total_price(
        self, service: Service, booking_date: datetime, end_date: Optional[datetime]
    ) -> Decimal:
        price = to_money(service.price)
        if service.price_type != PriceType.HOURLY.value or end_date is None:
            return price
        hours = math.ceil((end_date - booking_date).total_seconds() / 3600)
        return to_money(price * hours)

    def _release_slot(self, booking: Booking) -> None:
        if not booking.holds_capacity_slot:
            return
        self.service_repository.release_day_slot(
            booking.service_id, booking_day_key(booking.booking_date)
        )
        booking.holds_capacity_slot = False

    def _reserve_capacity(self, service: Service, day: str) -> bool:
        """Take a day slot inside the current transaction; False if uncapped."""
        if service.max_bookings is None:
            return False
        try:
            reserved = self.service_repository.reserve_day_slot(
                service.id, day, service.max_bookings
            )
        except OperationalError as exc:
            if not self._is_lock_error(exc):
                raise
            self.logger.warning("Lock contention reserving %s on %s", service.id, day)
            raise ConflictException(
                "Booking could not be reserved because of concurrent requests. Please retry.",
                details={"service_id": service.id, "booking_day": day},
            ) from exc
        if not reserved:
            raise CapacityExhaustedException(service.id, day, service.max_bookings)
        return True

    # ----------------------------------------------------------------- create
    @BaseService.measure_operation("create_booking")
    def create_booking(
        self, client_id: str, data: BookingCreate, now: Optional[datetime] = None
    ) -> Transition[Booking]:
        """
        Create a pending booking and its pending payment.

        Raises:
            ValidationException: Date in the past or end before start
            NotFoundException: Service does not exist
            InvalidStateException: Service is not accepting bookings
            BusinessRuleException: Provider booking their own service
            CapacityExhaustedException: Day already at ``max_bookings``
        """
        now = self._now(now)
        booking_date = ensure_utc(data.booking_date)
        end_date = ensure_utc(data.end_date)
        if booking_date <= now:
            raise ValidationException("Booking date must be in the future")
        if end_date is not None and end_date <= booking_date:
            raise ValidationException("Booking end must be after its start")

        service = self.service_repository.get_by_id(data.service_id, load_relationships=False)
        if service is None:
            raise NotFoundException("Service not found", details={"service_id": data.service_id})
        if service.status != ServiceStatus.ACTIVE.value:
            raise InvalidStateException(
                "Service is not accepting bookings", current_status=service.status
            )
        if service.provider_id == client_id:
            raise BusinessRuleException(
                "You cannot book your own service", code="INVALID_OPERATION"
            )

        total_price = self._calculate_total_price(service, booking_date, end_date)
        service_fee, net_amount = compute_fees(total_price, self.fee_rate)
        day = booking_day_key(booking_date)

        with self.transaction():
            holds_slot = self._reserve_capacity(service, day)
            booking = self.repository.create(
                service_id=service.id,
                client_id=client_id,
                provider_id=service.provider_id,
                booking_date=booking_date,
                end_date=end_date,
                total_price=total_price,
                status=BookingStatus.PENDING.value,
                notes=data.notes,
                address=data.address,
                holds_capacity_slot=holds_slot,
                created_at=now,
            )
            payment = self.payment_repository.create(
                booking_id=booking.id,
                amount=total_price,
                service_fee=service_fee,
                net_amount=net_amount,
                status=PaymentStatus.PENDING.value,
                created_at=now,
            )
            self.service_repository.increment_booking_count(service.id)
            booking.payment = payment

        self.log_operation(
            "create_booking",
            booking_id=booking.id,
            service_id=service.id,
            total_price=str(total_price),
        )
        return Transition(booking, [events.new_booking(service.provider_id, service.title)])

    # ----------------------------------------------------------------- accept
    @BaseService.measure_operation("accept_booking")
    def accept_booking(
        self, booking_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> Transition[Booking]:
        now = self._now(now)
        with self.transaction():
            booking = self._lock(booking_id)
            if booking.provider_id != actor_id:
                raise ForbiddenException("Only the provider can accept this booking")
            self._ensure_transition(booking, BookingStatus.ACCEPTED)
            booking.status = BookingStatus.ACCEPTED.value
            booking.accepted_at = now
            booking.updated_at = now

        self.log_operation("accept_booking", booking_id=booking_id)
        return Transition(booking, [events.booking_accepted(booking.client_id, self._title(booking))])

    # ---------------------------------------------------------------- decline
    @BaseService.measure_operation("decline_booking")
    def decline_booking(
        self,
        booking_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition[Booking]:
        """
        Decline a pending booking.

        An uncaptured payment is marked failed. A payment that was already
        captured is refunded in full.
        """
        now = self._now(now)

        # ========== PHASE 1: Read/validate ==========
        booking = self._load(booking_id)
        if booking.provider_id != actor_id:
            raise ForbiddenException("Only the provider can decline this booking")
        self._ensure_transition(booking, BookingStatus.DECLINED)
        plan = self._plan_refund(booking, FULL_REFUND)

        # ========== PHASE 2: Gateway refund (no transaction) ==========
        self._execute_refund(booking, plan, reason or "Booking declined by provider", now)

        # ========== PHASE 3: Write results ==========
        with self.transaction():
            booking = self._lock(booking_id)
            self._ensure_transition(booking, BookingStatus.DECLINED)
            self._finalize_payment(booking, plan, now, failure_reason="Booking declined")
            booking.status = BookingStatus.DECLINED.value
            booking.cancellation_reason = reason
            booking.cancelled_by = actor_id
            booking.updated_at = now
            self.service_repository.decrement_booking_count(booking.service_id)
            self._release_slot(booking)

        self.log_operation("decline_booking", booking_id=booking_id)
        return Transition(
            booking, [events.booking_declined(booking.client_id, self._title(booking), reason)]
        )

    # ----------------------------------------------------------- update status
    @BaseService.measure_operation("update_booking_status")
    def update_status(
        self,
        booking_id: str,
        actor_id: str,
        target: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition[Booking]:
        """
        Complete or cancel an active booking.

        Args:
            booking_id: Booking to update
            actor_id: Acting user id, or ``"system"`` for scheduler cancellations
            target: ``"completed"`` or ``"cancelled"``
            reason: Optional cancellation reason
            now: Override the clock

        Raises:
            ValidationException: Unsupported target status
            ForbiddenException: Actor may not perform this change
            InvalidStateException: Current status does not allow it
        """
        if target == BookingStatus.COMPLETED.value:
            return self._complete(booking_id, actor_id, self._now(now))
        if target == BookingStatus.CANCELLED.value:
            return self._cancel(booking_id, actor_id, reason, self._now(now))
        raise ValidationException(
            "Status can only be updated to completed or cancelled", details={"status": target}
        )

    def _complete(self, booking_id: str, actor_id: str, now: datetime) -> Transition[Booking]:
        with self.transaction():
            booking = self._lock(booking_id)
            if booking.provider_id != actor_id:
                raise ForbiddenException("Only the provider can complete this booking")
            self._ensure_transition(booking, BookingStatus.COMPLETED)

            payment = self.payment_repository.get_by_booking_id(booking.id, for_update=True)
            if payment is None:
                raise NotFoundException("Payment not found", details={"booking_id": booking.id})
            if payment.status not in (PaymentStatus.PAID.value, *_UNSETTLED):
                raise InvalidStateException(
                    "Booking cannot be completed with this payment state",
                    current_status=payment.status,
                    details={"payment_id": payment.id},
                )

            escrow_date = compute_escrow_release_date(now, self.escrow_hold_days)
            held_until = ensure_utc(payment.escrow_release_date)
            if held_until is not None and held_until > escrow_date:
                # Keep a longer dispute hold
                escrow_date = held_until

            payment.status = PaymentStatus.PAID.value
            payment.escrow_release_date = escrow_date
            payment.updated_at = now
            booking.status = BookingStatus.COMPLETED.value
            booking.completed_at = now
            booking.updated_at = now
            self._release_slot(booking)

        self.log_operation(
            "complete_booking",
            booking_id=booking_id,
            escrow_release_date=escrow_date.isoformat(),
        )
        return Transition(booking, [events.review_request(booking.client_id, self._title(booking))])

    def _cancel(
        self, booking_id: str, actor_id: str, reason: Optional[str], now: datetime
    ) -> Transition[Booking]:
        is_system = actor_id == SYSTEM_ACTOR

        # ========== PHASE 1: Read/validate ==========
        booking = self._load(booking_id)
        if not (is_system or booking.is_participant(actor_id)):
            raise ForbiddenException("You don't have permission to cancel this booking")
        self._ensure_transition(booking, BookingStatus.CANCELLED)

        if is_system:
            fraction = FULL_REFUND
        else:
            fraction = compute_refund_percentage(
                hours_until(ensure_utc(booking.booking_date), now)
            )
        plan = self._plan_refund(booking, fraction)

        # ========== PHASE 2: Gateway refund (no transaction) ==========
        self._execute_refund(booking, plan, reason or "Booking cancelled", now)

        # ========== PHASE 3: Write results ==========
        with self.transaction():
            booking = self._lock(booking_id)
            self._ensure_transition(booking, BookingStatus.CANCELLED)
            self._finalize_payment(booking, plan, now, failure_reason="Booking cancelled")
            booking.status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = reason
            booking.cancelled_by = actor_id
            booking.cancelled_at = now
            booking.updated_at = now
            self.service_repository.decrement_booking_count(booking.service_id)
            self._release_slot(booking)

        self.log_operation(
            "cancel_booking",
            booking_id=booking_id,
            cancelled_by=actor_id,
            refund_amount=str(plan.refund_amount),
        )
        return Transition(booking, self._cancellation_notifications(booking, actor_id, reason, plan))

    def _cancellation_notifications(
        self, booking: Booking, actor_id: str, reason: Optional[str], plan: _RefundPlan
    ) -> List[events.NotificationRequest]:
        title = self._title(booking)
        if actor_id == SYSTEM_ACTOR:
            requests = [
                events.booking_auto_cancelled(booking.client_id, title),
                events.booking_auto_cancelled(booking.provider_id, title),
            ]
        elif actor_id == booking.client_id:
            requests = [events.booking_cancelled(booking.provider_id, title, reason)]
        else:
            requests = [events.booking_cancelled(booking.client_id, title, reason)]
        if plan.refund_amount > 0:
            requests.append(events.refund_processed(booking.client_id, plan.refund_amount))
        return requests

    # -------------------------------------------------------- refund helpers
    def _plan_refund(self, booking: Booking, fraction: Decimal) -> _RefundPlan:
        payment = booking.payment
        if payment is None:
            return _RefundPlan(None, None, Decimal("0.00"))
        refund_amount = Decimal("0.00")
        if payment.status == PaymentStatus.PAID.value:
            refund_amount = compute_refund_amount(payment.amount, fraction)
        return _RefundPlan(payment.id, payment.status, refund_amount)

    def _execute_refund(
        self, booking: Booking, plan: _RefundPlan, reason: str, now: datetime
    ) -> None:
        if plan.refund_amount <= 0:
            return
        claim_and_refund(
            self,
            self.payment_repository,
            self.gateway,
            booking.payment,
            plan.refund_amount,
            reason,
            now,
        )

    def _finalize_payment(
        self, booking: Booking, plan: _RefundPlan, now: datetime, *, failure_reason: str
    ) -> None:
        if plan.payment_id is None:
            return
        payment: Optional[Payment] = self.payment_repository.get_for_update(plan.payment_id)
        if payment is None:
            return

        if plan.refund_amount > 0:
            if payment.status != PaymentStatus.PAID.value:
                self.logger.error(
                    "Payment %s refunded at the gateway but is now %s locally",
                    payment.id,
                    payment.status,
                )
                raise ConflictException(
                    "Payment was updated concurrently", details={"payment_id": payment.id}
                )
            payment.status = PaymentStatus.REFUNDED.value
            payment.refund_amount = plan.refund_amount
            payment.refunded_at = now
            payment.refund_claimed_at = None
            payment.updated_at = now
            return

        if payment.status in _UNSETTLED:
            payment.status = PaymentStatus.FAILED.value
            payment.failure_reason = failure_reason
            payment.updated_at = now
        elif payment.status == PaymentStatus.PAID.value and plan.payment_status != payment.status:
            # Captured after phase 1 decided there was nothing to refund
            raise ConflictException(
                "Payment was captured while the booking was being cancelled. Please retry.",
                details={"payment_id": payment.id},
            )

    # ------------------------------------------------------------------ reads
    @BaseService.measure_operation("get_booking")
    def get_booking(self, booking_id: str, actor_id: str) -> Booking:
        booking = self._load(booking_id)
        if not booking.is_participant(actor_id):
            raise ForbiddenException("You don't have access to this booking")
        return booking

    @BaseService.measure_operation("list_bookings")
    def list_bookings(
        self,
        actor_id: str,
        *,
        role: str = "client",
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Booking], int]:
        if role not in ("client", "provider"):
            raise ValidationException("role must be client or provider", details={"role": role})
        if status is not None:
            try:
                BookingStatus(status)
            except ValueError as exc:
                raise ValidationException(
                    "Unknown booking status", details={"status": status}
                ) from exc
        if page < 1 or per_page < 1 or per_page > 100:
            raise ValidationException("Invalid pagination parameters")
        return self.repository.list_for_user(
            actor_id,
            as_provider=role == "provider",
            status=status,
            page=page,
            per_page=per_page,
        )
