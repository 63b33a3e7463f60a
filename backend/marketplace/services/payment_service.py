# backend/marketplace/services/payment_service.py
"""
Payment state machine.

    pending -> processing | paid | failed
    processing -> paid | failed
    paid -> released   (scheduler or admin, after escrow)
    paid -> refunded   (cancellation or explicit refund request)

Gateway calls never run inside a database transaction. Each operation
validates first, calls the gateway, then re-reads and writes in a fresh
transaction. Transitions that must happen at most once are conditional
updates, so a concurrent caller that loses the race changes nothing.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    SYSTEM_ACTOR,
    UNSETTLED_PAYMENT_STATUSES,
    BookingStatus,
    PaymentMethodType,
    PaymentStatus,
)
from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidStateException,
    NotEligibleException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)
from ..core.ledger import (
    compute_refund_amount,
    compute_refund_percentage,
    hours_until,
    to_minor_units,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..events import notification_events as events
from ..events.notification_events import Transition
from ..integrations.pagarme_client import (
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_REFUNDED,
    CardDetails,
    ChargeRequest,
    GatewayError,
    GatewayResult,
    GatewayTimeoutError,
    PaymentGateway,
)
from ..models.booking import Booking
from ..models.payment import Payment
from ..repositories.factory import RepositoryFactory
from ..repositories.payment_repository import PaymentRepository
from ..schemas.payment import PaymentProcessRequest
from .base import BaseService

logger = logging.getLogger(__name__)

_UNSETTLED = [status.value for status in UNSETTLED_PAYMENT_STATUSES]

_ARTIFACT_FIELDS = (
    "pix_code",
    "pix_qr_code",
    "pix_expires_at",
    "boleto_url",
    "boleto_barcode",
    "boleto_due_date",
)


def refund_through_gateway(
    gateway: PaymentGateway, payment: Payment, amount: Decimal, reason: str
) -> None:
    """
    Refund ``amount`` of ``payment`` at the gateway.

    Returns only when the refund is confirmed. A timeout is followed by a
    status check and only a definitive ``refunded`` answer counts as success.
    Anything else raises ``PaymentProcessingException`` so the caller leaves
    local state untouched and the request can be retried.
    """
    transaction_id = payment.gateway_transaction_id
    if not transaction_id:
        logger.warning(
            "Payment %s has no gateway transaction; refund of %s recorded locally only",
            payment.id,
            amount,
        )
        return

    try:
        result = gateway.refund(
            transaction_id,
            to_minor_units(amount),
            reason,
            idempotency_key=f"{payment.id}:refund",
        )
    except GatewayTimeoutError:
        logger.warning(
            "Refund for payment %s timed out; re-checking gateway status", payment.id
        )
        try:
            status = gateway.check_status(transaction_id)
        except GatewayError as exc:
            raise PaymentProcessingException(
                "Refund outcome could not be confirmed. Please retry.",
                retryable=True,
                details={"payment_id": payment.id},
            ) from exc
        if status.status != STATUS_REFUNDED:
            raise PaymentProcessingException(
                "Refund outcome could not be confirmed. Please retry.",
                retryable=True,
                details={"payment_id": payment.id, "gateway_status": status.status},
            )
        logger.info("Refund for payment %s confirmed after timeout", payment.id)
        return
    except GatewayError as exc:
        logger.error("Gateway refund failed for payment %s: %s", payment.id, exc)
        raise PaymentProcessingException(
            "Refund failed at the payment gateway. Please retry.",
            retryable=True,
            details={"payment_id": payment.id},
        ) from exc

    if result.status == STATUS_FAILED:
        raise PaymentProcessingException(
            "Refund was rejected by the payment gateway.",
            retryable=True,
            details={"payment_id": payment.id},
        )


def claim_and_refund(
    service: BaseService,
    payments: PaymentRepository,
    gateway: PaymentGateway,
    payment: Payment,
    amount: Decimal,
    reason: str,
    now: datetime,
) -> None:
    """
    Take the payment's refund claim, then refund at the gateway.

    The claim is committed before the gateway call, so a second caller racing
    on the same payment gets ``ConflictException`` instead of a second refund.
    A failed gateway call gives the claim back. On success the claim stays set
    until the caller records the refund.
    """
    stale_before = now - timedelta(seconds=settings.refund_claim_ttl_seconds)
    with service.transaction():
        claimed = payments.claim_refund(payment.id, now, stale_before)
    if not claimed:
        logger.warning("Refund for payment %s already in progress; not retrying", payment.id)
        raise ConflictException(
            "A refund for this payment is already in progress",
            details={"payment_id": payment.id},
        )

    try:
        refund_through_gateway(gateway, payment, amount, reason)
    except PaymentProcessingException:
        with service.transaction():
            payments.release_refund_claim(payment.id)
        raise


@dataclass(frozen=True)
class ProviderEarnings:
    total_earnings: Decimal
    available_balance: Decimal
    pending_escrow: Decimal
    total_withdrawn: Decimal


@dataclass(frozen=True)
class PendingReleases:
    """Held payments of completed bookings, as seen at ``as_of``."""

    payments: List[Payment]
    total_net_amount: Decimal
    as_of: datetime


@dataclass(frozen=True)
class EscrowStats:
    total_in_escrow: Decimal
    ready_for_release: Decimal
    total_released: Decimal


EARNINGS_HISTORY_BUCKETS = ("pending", "released", "disputed")


class PaymentService(BaseService):
    """Capture, reconciliation, refund, escrow release and dispute freeze."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        escrow_hold_days: Optional[int] = None,
        dispute_hold_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.escrow_hold_days = escrow_hold_days or settings.escrow_hold_days
        self.dispute_hold_days = dispute_hold_days or settings.dispute_hold_days
        self.clock = clock
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.withdrawal_repository = RepositoryFactory.create_withdrawal_repository(db)

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_utc(now) if now is not None else self.clock()

    def _get_payment(self, payment_id: str) -> Payment:
        payment = self.payment_repository.get_by_id(payment_id, load_relationships=False)
        if payment is None:
            raise NotFoundException("Payment not found", details={"payment_id": payment_id})
        return payment

    def _lock_payment(self, payment_id: str) -> Payment:
        payment = self.payment_repository.get_for_update(payment_id)
        if payment is None:
            raise NotFoundException("Payment not found", details={"payment_id": payment_id})
        return payment

    def _booking_for(self, payment: Payment) -> Booking:
        booking = self.booking_repository.get_by_id(payment.booking_id, load_relationships=False)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": payment.booking_id})
        return booking

    # ------------------------------------------------------------------ capture
    @BaseService.measure_operation("process_payment")
    def process_payment(
        self, actor_id: str, request: PaymentProcessRequest
    ) -> Transition[Payment]:
        """
        Charge the client for a pending booking.

        A gateway error or timeout marks the payment failed, commits that,
        and raises ``PaymentProcessingException``.
        """
        booking = self.booking_repository.get_by_id(request.booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": request.booking_id})
        if booking.client_id != actor_id:
            raise ForbiddenException("Only the client can pay for this booking")
        if booking.status != BookingStatus.PENDING.value:
            raise InvalidStateException(
                "Only pending bookings can be paid", current_status=booking.status
            )
        payment = booking.payment
        if payment is None:
            raise NotFoundException("Payment not found", details={"booking_id": booking.id})
        if payment.status != PaymentStatus.PENDING.value or payment.gateway_transaction_id:
            raise InvalidStateException(
                "Payment has already been submitted", current_status=payment.status
            )

        client = self.user_repository.get_by_id(booking.client_id, load_relationships=False)
        charge = ChargeRequest(
            amount_minor=to_minor_units(payment.amount),
            description=booking.service.title if booking.service else "Marketplace booking",
            reference=payment.id,
            customer_name=request.boleto.full_name if request.boleto else client.name,
            customer_email=client.email,
            customer_document=request.boleto.cpf if request.boleto else None,
            billing_address=request.billing_address.model_dump(),
        )
        payment_id = payment.id
        service_title = charge.description

        self.log_operation("process_payment", payment_id=payment_id, method=request.method)
        try:
            result = self._submit_charge(request, charge)
        except GatewayError as exc:
            reason = "Gateway timeout" if isinstance(exc, GatewayTimeoutError) else str(exc)
            with self.transaction():
                self.payment_repository.transition_status(
                    payment_id,
                    [PaymentStatus.PENDING.value],
                    PaymentStatus.FAILED.value,
                    payment_method=request.method,
                    failure_reason=reason,
                    updated_at=self.clock(),
                )
            self.logger.error("Payment %s failed at the gateway: %s", payment_id, exc)
            raise PaymentProcessingException(
                retryable=isinstance(exc, GatewayTimeoutError),
                details={"payment_id": payment_id},
            ) from exc

        transition: Transition[Payment]
        with self.transaction():
            payment = self._lock_payment(payment_id)
            if payment.status != PaymentStatus.PENDING.value:
                self.logger.error(
                    "Payment %s changed to %s while charge %s was in flight",
                    payment_id,
                    payment.status,
                    result.transaction_id,
                )
                raise ConflictException(
                    "Payment was updated concurrently",
                    details={"payment_id": payment_id, "transaction_id": result.transaction_id},
                )
            payment.payment_method = request.method
            payment.gateway_transaction_id = result.transaction_id
            self._store_artifacts(payment, result.artifacts)
            payment.updated_at = self.clock()
            transition = Transition(payment)

            if result.status == STATUS_PAID:
                payment.status = PaymentStatus.PAID.value
                transition.notify(
                    events.payment_received(booking.provider_id, payment.amount, service_title)
                )
            elif result.status == STATUS_PENDING:
                payment.status = PaymentStatus.PENDING.value
            elif result.status == STATUS_PROCESSING:
                payment.status = PaymentStatus.PROCESSING.value
            else:
                payment.status = PaymentStatus.FAILED.value
                payment.failure_reason = f"Gateway status {result.status}"

        if payment.status == PaymentStatus.FAILED.value:
            raise PaymentProcessingException(
                "Payment was declined by the gateway",
                details={"payment_id": payment_id, "gateway_status": result.status},
            )
        return transition

    def _submit_charge(self, request: PaymentProcessRequest, charge: ChargeRequest) -> GatewayResult:
        if request.method == PaymentMethodType.CREDIT_CARD.value:
            card_info = request.credit_card
            card = CardDetails(
                number=card_info.number,
                holder_name=card_info.holder_name,
                exp_month=card_info.expiry_month,
                exp_year=card_info.expiry_year,
                cvv=card_info.cvv,
                installments=card_info.installments,
            )
            return self.gateway.capture_card(charge, card)
        if request.method == PaymentMethodType.PIX.value:
            return self.gateway.generate_pix(charge)
        return self.gateway.generate_boleto(charge)

    @staticmethod
    def _store_artifacts(payment: Payment, artifacts: Dict[str, Any]) -> None:
        for name in _ARTIFACT_FIELDS:
            if name in artifacts:
                setattr(payment, name, artifacts[name])

    # ------------------------------------------------------------- reconcile
    @BaseService.measure_operation("check_payment_status")
    def check_status(self, payment_id: str, actor_id: str) -> Transition[Payment]:
        """Return the payment, polling the gateway first if it is still unsettled."""
        payment = self._get_payment(payment_id)
        booking = self._booking_for(payment)
        if not booking.is_participant(actor_id):
            raise ForbiddenException("Not a participant in this booking")

        if payment.status not in _UNSETTLED or not payment.gateway_transaction_id:
            return Transition(payment)

        try:
            result = self.gateway.check_status(payment.gateway_transaction_id)
        except GatewayError as exc:
            self.logger.warning("Status check failed for payment %s: %s", payment_id, exc)
            return Transition(payment)

        return self._reconcile(payment_id, booking, result.status)

    def _reconcile(self, payment_id: str, booking: Booking, gateway_status: str) -> Transition[Payment]:
        transition_to_paid = False
        transition_to_failed = False
        with self.transaction():
            now = self.clock()
            if gateway_status == STATUS_PAID:
                transition_to_paid = self.payment_repository.transition_status(
                    payment_id, _UNSETTLED, PaymentStatus.PAID.value, updated_at=now
                )
            elif gateway_status == STATUS_FAILED:
                transition_to_failed = self.payment_repository.transition_status(
                    payment_id,
                    _UNSETTLED,
                    PaymentStatus.FAILED.value,
                    failure_reason="Gateway reported failure",
                    updated_at=now,
                )
            elif gateway_status == STATUS_PROCESSING:
                self.payment_repository.transition_status(
                    payment_id,
                    [PaymentStatus.PENDING.value],
                    PaymentStatus.PROCESSING.value,
                    updated_at=now,
                )
            payment = self._lock_payment(payment_id)

        transition = Transition(payment)
        title = booking.service.title if booking.service else "your service"
        if transition_to_paid:
            transition.notify(events.payment_received(booking.provider_id, payment.amount, title))
        elif transition_to_failed:
            transition.notify(events.payment_failed(booking.client_id, title))
        return transition

    # ---------------------------------------------------------------- refund
    @BaseService.measure_operation("request_refund")
    def request_refund(
        self,
        payment_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Transition[Payment]:
        """Refund a paid payment whose booking was cancelled, by notice given."""
        now = self._now(now)
        payment = self._get_payment(payment_id)
        booking = self._booking_for(payment)
        if booking.client_id != actor_id:
            raise ForbiddenException("Only the client can request a refund")
        if booking.status != BookingStatus.CANCELLED.value:
            raise InvalidStateException(
                "Refunds require a cancelled booking", current_status=booking.status
            )
        if payment.status != PaymentStatus.PAID.value:
            raise InvalidStateException(
                "Only paid payments can be refunded", current_status=payment.status
            )

        fraction = compute_refund_percentage(hours_until(ensure_utc(booking.booking_date), now))
        amount = compute_refund_amount(payment.amount, fraction)
        if amount <= 0:
            raise NotEligibleException(
                "Cancellation was too close to the service start for a refund",
                details={"payment_id": payment_id, "refund_fraction": str(fraction)},
            )

        claim_and_refund(
            self, self.payment_repository, self.gateway, payment, amount, reason, now
        )

        with self.transaction():
            refunded = self.payment_repository.transition_status(
                payment_id,
                [PaymentStatus.PAID.value],
                PaymentStatus.REFUNDED.value,
                refund_amount=amount,
                refunded_at=now,
                refund_claimed_at=None,
                updated_at=now,
            )
            if not refunded:
                self.logger.error(
                    "Payment %s refunded at the gateway but changed state locally", payment_id
                )
                raise ConflictException(
                    "Payment was updated concurrently", details={"payment_id": payment_id}
                )
            payment = self._lock_payment(payment_id)

        self.log_operation("request_refund", payment_id=payment_id, refund_amount=str(amount))
        title = booking.service.title if booking.service else "your booking"
        return Transition(
            payment,
            [
                events.refund_processed(booking.client_id, amount),
                events.booking_refunded(booking.provider_id, amount, title),
            ],
        )

    # --------------------------------------------------------------- release
    @BaseService.measure_operation("release_funds")
    def release_funds(self, payment_id: str, now: Optional[datetime] = None) -> Transition[Payment]:
        """
        Settle the net amount to the provider once escrow has matured.

        Calling this on an already released payment is a no-op success.
        """
        now = self._now(now)
        with self.transaction():
            payment = self._lock_payment(payment_id)
            if payment.released_at is not None:
                return Transition(payment)

            booking = self._booking_for(payment)
            if payment.status != PaymentStatus.PAID.value:
                raise InvalidStateException(
                    "Only paid payments can be released", current_status=payment.status
                )
            if booking.status != BookingStatus.COMPLETED.value:
                raise InvalidStateException(
                    "Funds are released only for completed bookings",
                    current_status=booking.status,
                )
            escrow_date = ensure_utc(payment.escrow_release_date)
            if escrow_date is None or escrow_date > now:
                raise InvalidStateException(
                    "Escrow hold has not elapsed",
                    details={
                        "escrow_release_date": escrow_date.isoformat() if escrow_date else None
                    },
                )

            if not self.payment_repository.mark_released(payment_id, now):
                # Lost the race to a concurrent release
                self.db.refresh(payment)
                if payment.released_at is not None:
                    return Transition(payment)
                raise ConflictException(
                    "Payment could not be released", details={"payment_id": payment_id}
                )
            if payment.net_amount > 0:
                self.user_repository.credit_balance(booking.provider_id, payment.net_amount)
            self.db.refresh(payment)

        self.log_operation(
            "release_funds",
            payment_id=payment_id,
            provider_id=booking.provider_id,
            net_amount=str(payment.net_amount),
        )
        return Transition(payment, [events.funds_available(booking.provider_id, payment.net_amount)])

    # --------------------------------------------------------------- dispute
    @BaseService.measure_operation("freeze_for_dispute")
    def freeze_for_dispute(
        self,
        payment_id: str,
        actor_id: str,
        reason: str,
        *,
        actor_is_admin: bool = False,
        now: Optional[datetime] = None,
    ) -> Transition[Payment]:
        """Hold escrow for ``dispute_hold_days`` more days pending manual resolution."""
        now = self._now(now)
        with self.transaction():
            payment = self._lock_payment(payment_id)
            booking = self._booking_for(payment)
            if not (actor_is_admin or actor_id == SYSTEM_ACTOR or booking.is_participant(actor_id)):
                raise ForbiddenException("Not allowed to dispute this payment")
            if payment.released_at is not None:
                raise InvalidStateException(
                    "Released payments cannot be disputed", current_status=payment.status
                )
            if payment.status != PaymentStatus.PAID.value:
                raise InvalidStateException(
                    "Only captured payments can be disputed", current_status=payment.status
                )
            if payment.disputed_at is not None:
                raise ConflictException(
                    "Payment is already under dispute", details={"payment_id": payment_id}
                )

            payment.escrow_release_date = now + timedelta(days=self.dispute_hold_days)
            payment.disputed_at = now
            payment.dispute_reason = reason
            payment.disputed_by = actor_id
            payment.updated_at = now

        self.logger.warning(
            "Payment %s disputed by %s; escrow held until %s for manual resolution: %s",
            payment_id,
            actor_id,
            payment.escrow_release_date.isoformat(),
            reason,
            extra={"payment_id": payment_id, "booking_id": booking.id},
        )
        title = booking.service.title if booking.service else "your booking"
        return Transition(
            payment,
            [
                events.payment_disputed(booking.client_id, title),
                events.payment_disputed(booking.provider_id, title),
            ],
        )

    # -------------------------------------------------------------- earnings
    @BaseService.measure_operation("get_provider_earnings")
    def get_provider_earnings(self, provider_id: str) -> ProviderEarnings:
        self._require_provider(provider_id)
        return ProviderEarnings(
            total_earnings=self.payment_repository.sum_net_for_provider(
                provider_id, [PaymentStatus.RELEASED.value]
            ),
            available_balance=self.user_repository.get_balance(provider_id),
            pending_escrow=self.payment_repository.sum_net_for_provider(
                provider_id, [PaymentStatus.PAID.value]
            ),
            total_withdrawn=self.withdrawal_repository.total_completed(provider_id),
        )

    def _require_provider(self, user_id: str) -> None:
        user = self.user_repository.get_by_id(user_id, load_relationships=False)
        if user is None:
            raise NotFoundException("User not found")
        if not user.is_provider:
            raise ForbiddenException("Only providers have earnings")

    @BaseService.measure_operation("get_earnings_history")
    def get_earnings_history(
        self,
        provider_id: str,
        *,
        bucket: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Payment], int]:
        """
        Page through the provider's captured payments, newest first.

        Args:
            provider_id: Provider whose bookings were paid
            bucket: ``pending``, ``released`` or ``disputed``; all captured
                payments when omitted
            page: 1-based page number
            per_page: Page size, at most 100

        Raises:
            ValidationException: Unknown bucket or bad pagination
            ForbiddenException: The user is not a provider
        """
        if bucket is not None and bucket not in EARNINGS_HISTORY_BUCKETS:
            raise ValidationException(
                "Unknown earnings filter",
                details={"status": bucket, "allowed": list(EARNINGS_HISTORY_BUCKETS)},
            )
        if page < 1 or per_page < 1 or per_page > 100:
            raise ValidationException("Invalid pagination parameters")
        self._require_provider(provider_id)
        return self.payment_repository.list_earnings_for_provider(
            provider_id, bucket=bucket, page=page, per_page=per_page
        )

    @BaseService.measure_operation("get_pending_releases")
    def get_pending_releases(
        self, provider_id: str, now: Optional[datetime] = None
    ) -> PendingReleases:
        """Completed bookings whose funds are still in escrow, soonest release first."""
        now = self._now(now)
        self._require_provider(provider_id)
        payments = self.payment_repository.list_pending_releases(provider_id)
        total = sum((payment.net_amount for payment in payments), Decimal("0.00"))
        return PendingReleases(payments=payments, total_net_amount=total, as_of=now)

    @BaseService.measure_operation("get_escrow_stats")
    def get_escrow_stats(self, now: Optional[datetime] = None) -> EscrowStats:
        totals = self.payment_repository.escrow_totals(self._now(now))
        return EscrowStats(**totals)

    # --------------------------------------------------------------- webhook
    @BaseService.measure_operation("handle_gateway_event")
    def handle_gateway_event(
        self, event_type: str, data: Dict[str, Any]
    ) -> Transition[Optional[Payment]]:
        """Reconcile a Pagar.me charge webhook with the local payment."""
        transaction_id = str(data.get("id") or "")
        payment = (
            self.payment_repository.get_by_gateway_transaction_id(transaction_id)
            if transaction_id
            else None
        )
        if payment is None:
            self.logger.warning(
                "Ignoring %s for unknown transaction %s", event_type, transaction_id or "<none>"
            )
            return Transition(None)

        booking = self._booking_for(payment)
        if event_type == "charge.paid":
            return self._reconcile(payment.id, booking, STATUS_PAID)
        if event_type == "charge.payment_failed":
            return self._reconcile(payment.id, booking, STATUS_FAILED)
        if event_type == "charge.refunded":
            if payment.status != PaymentStatus.REFUNDED.value:
                self.logger.warning(
                    "Gateway reports refund for payment %s in status %s; manual review needed",
                    payment.id,
                    payment.status,
                )
            return Transition(payment)

        self.logger.debug("Unhandled gateway event %s", event_type)
        return Transition(payment)
