from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
import logging

import pytest

from marketplace.core.enums import BookingStatus, NotificationType, PaymentStatus
from marketplace.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidStateException,
    NotEligibleException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)
from marketplace.core.timezone_utils import ensure_utc
from marketplace.integrations.pagarme_client import GatewayError, GatewayTimeoutError
from marketplace.models.booking import Booking
from marketplace.models.payment import Payment

from tests.helpers import UNKNOWN_ID, boleto_payment, card_payment, pix_payment


def _payment_for(db, booking: Booking) -> Payment:
    return db.query(Payment).filter_by(booking_id=booking.id).one()


class TestProcessPayment:
    def test_card_capture_marks_paid_and_notifies_provider(
        self, make_booking, payment_service, client, provider, gateway
    ) -> None:
        booking = make_booking()

        transition = payment_service.process_payment(client.id, card_payment(booking.id))

        payment = transition.result
        assert payment.status == PaymentStatus.PAID.value
        assert payment.payment_method == "credit_card"
        assert payment.gateway_transaction_id.startswith("ch_fake_")
        assert gateway.calls_for("capture_card")[0]["amount_minor"] == 20000
        assert [(n.user_id, n.type) for n in transition.notifications] == [
            (provider.id, NotificationType.PAYMENT_RECEIVED)
        ]

    def test_pix_returns_pending_payment_with_code(
        self, make_booking, payment_service, client
    ) -> None:
        booking = make_booking()

        transition = payment_service.process_payment(client.id, pix_payment(booking.id))

        payment = transition.result
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.pix_code
        assert payment.pix_qr_code
        assert payment.pix_expires_at is not None
        assert transition.notifications == []

    def test_boleto_returns_pending_payment_with_barcode(
        self, make_booking, payment_service, client
    ) -> None:
        booking = make_booking()

        payment = payment_service.process_payment(client.id, boleto_payment(booking.id)).result

        assert payment.status == PaymentStatus.PENDING.value
        assert payment.boleto_barcode
        assert payment.boleto_url.endswith(".pdf")

    def test_processing_status_is_kept(self, make_booking, payment_service, client, gateway) -> None:
        gateway.capture_status = "processing"
        booking = make_booking()

        payment = payment_service.process_payment(client.id, card_payment(booking.id)).result

        assert payment.status == PaymentStatus.PROCESSING.value

    def test_gateway_error_marks_payment_failed(
        self, make_booking, payment_service, client, gateway, db
    ) -> None:
        booking = make_booking()
        gateway.fail_with["capture_card"] = GatewayError("declined", status_code=402)

        with pytest.raises(PaymentProcessingException) as exc_info:
            payment_service.process_payment(client.id, card_payment(booking.id))

        assert exc_info.value.retryable is False
        payment = _payment_for(db, booking)
        db.refresh(payment)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "declined"

    def test_gateway_timeout_is_retryable(
        self, make_booking, payment_service, client, gateway, db
    ) -> None:
        booking = make_booking()
        gateway.fail_with["capture_card"] = GatewayTimeoutError("timed out")

        with pytest.raises(PaymentProcessingException) as exc_info:
            payment_service.process_payment(client.id, card_payment(booking.id))

        assert exc_info.value.retryable is True
        payment = _payment_for(db, booking)
        db.refresh(payment)
        assert payment.status == PaymentStatus.FAILED.value

    def test_declined_capture_raises_after_recording_failure(
        self, make_booking, payment_service, client, gateway, db
    ) -> None:
        gateway.capture_status = "failed"
        booking = make_booking()

        with pytest.raises(PaymentProcessingException):
            payment_service.process_payment(client.id, card_payment(booking.id))

        assert _payment_for(db, booking).status == PaymentStatus.FAILED.value

    def test_payment_cannot_be_submitted_twice(self, make_booking, payment_service, client) -> None:
        booking = make_booking()
        payment_service.process_payment(client.id, pix_payment(booking.id))

        with pytest.raises(InvalidStateException):
            payment_service.process_payment(client.id, card_payment(booking.id))

    def test_only_the_client_pays(self, make_booking, payment_service, provider) -> None:
        booking = make_booking()
        with pytest.raises(ForbiddenException):
            payment_service.process_payment(provider.id, card_payment(booking.id))

    def test_accepted_booking_cannot_be_paid(
        self, make_booking, booking_service, payment_service, client, provider
    ) -> None:
        booking = make_booking()
        booking_service.accept_booking(booking.id, provider.id)
        with pytest.raises(InvalidStateException):
            payment_service.process_payment(client.id, card_payment(booking.id))

    def test_unknown_booking(self, payment_service, client) -> None:
        with pytest.raises(NotFoundException):
            payment_service.process_payment(client.id, card_payment(UNKNOWN_ID))


class TestCheckStatus:
    def test_settled_pix_is_reconciled_once(
        self, make_booking, payment_service, client, provider, gateway
    ) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result
        gateway.statuses[payment.gateway_transaction_id] = "paid"

        first = payment_service.check_status(payment.id, client.id)
        second = payment_service.check_status(payment.id, provider.id)

        assert first.result.status == PaymentStatus.PAID.value
        assert [n.type for n in first.notifications] == [NotificationType.PAYMENT_RECEIVED]
        assert second.notifications == []

    def test_gateway_error_returns_local_state(
        self, make_booking, payment_service, client, gateway
    ) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result
        gateway.fail_with["check_status"] = GatewayError("unavailable", status_code=503)

        transition = payment_service.check_status(payment.id, client.id)

        assert transition.result.status == PaymentStatus.PENDING.value

    def test_outsider_cannot_read(self, make_booking, payment_service, client, user_factory) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result
        with pytest.raises(ForbiddenException):
            payment_service.check_status(payment.id, user_factory().id)


class TestRequestRefund:
    def _cancelled_paid(self, db, paid_accepted_booking, starts_in: timedelta) -> Booking:
        booking = paid_accepted_booking(starts_in=starts_in)
        booking.status = BookingStatus.CANCELLED.value
        db.commit()
        return booking

    def test_refund_by_notice_given(
        self, db, paid_accepted_booking, payment_service, client, provider, gateway
    ) -> None:
        booking = self._cancelled_paid(db, paid_accepted_booking, timedelta(hours=10))
        payment = _payment_for(db, booking)

        transition = payment_service.request_refund(payment.id, client.id, "Changed plans")

        assert transition.result.status == PaymentStatus.REFUNDED.value
        assert transition.result.refund_amount == Decimal("100.00")
        assert gateway.calls_for("refund")[0]["amount_minor"] == 10000
        assert [(n.user_id, n.type) for n in transition.notifications] == [
            (client.id, NotificationType.REFUND_PROCESSED),
            (provider.id, NotificationType.BOOKING_REFUNDED),
        ]

    def test_late_cancellation_is_not_eligible(
        self, db, paid_accepted_booking, payment_service, client, gateway
    ) -> None:
        booking = self._cancelled_paid(db, paid_accepted_booking, timedelta(hours=1))
        payment = _payment_for(db, booking)

        with pytest.raises(NotEligibleException):
            payment_service.request_refund(payment.id, client.id, "Too late")
        assert gateway.calls_for("refund") == []

    def test_refund_requires_cancelled_booking(
        self, db, paid_accepted_booking, payment_service, client
    ) -> None:
        booking = paid_accepted_booking()
        payment = _payment_for(db, booking)
        with pytest.raises(InvalidStateException):
            payment_service.request_refund(payment.id, client.id, "Not cancelled")

    def test_only_client_requests_refund(
        self, db, paid_accepted_booking, payment_service, provider
    ) -> None:
        booking = self._cancelled_paid(db, paid_accepted_booking, timedelta(days=3))
        payment = _payment_for(db, booking)
        with pytest.raises(ForbiddenException):
            payment_service.request_refund(payment.id, provider.id, "Not mine")

    def test_refund_is_keyed_by_payment(
        self, db, paid_accepted_booking, payment_service, client, gateway
    ) -> None:
        booking = self._cancelled_paid(db, paid_accepted_booking, timedelta(days=3))
        payment = _payment_for(db, booking)

        payment_service.request_refund(payment.id, client.id, "Changed plans")

        assert gateway.calls_for("refund")[0]["idempotency_key"] == f"{payment.id}:refund"
        db.refresh(payment)
        assert payment.refund_claimed_at is None

    def test_refund_in_flight_conflicts(
        self, db, paid_accepted_booking, payment_service, client, gateway, now
    ) -> None:
        booking = self._cancelled_paid(db, paid_accepted_booking, timedelta(days=3))
        payment = _payment_for(db, booking)
        payment.refund_claimed_at = now - timedelta(seconds=30)
        db.commit()

        with pytest.raises(ConflictException):
            payment_service.request_refund(payment.id, client.id, "Double click")

        assert gateway.calls_for("refund") == []
        db.refresh(payment)
        assert payment.status == PaymentStatus.PAID.value

    def test_abandoned_claim_is_taken_over(
        self, db, paid_accepted_booking, payment_service, client, gateway, now
    ) -> None:
        booking = self._cancelled_paid(db, paid_accepted_booking, timedelta(days=3))
        payment = _payment_for(db, booking)
        payment.refund_claimed_at = now - timedelta(hours=1)
        db.commit()

        transition = payment_service.request_refund(payment.id, client.id, "Retry")

        assert transition.result.status == PaymentStatus.REFUNDED.value
        assert len(gateway.calls_for("refund")) == 1

    def test_gateway_failure_gives_the_claim_back(
        self, db, paid_accepted_booking, payment_service, client, gateway
    ) -> None:
        booking = self._cancelled_paid(db, paid_accepted_booking, timedelta(days=3))
        payment = _payment_for(db, booking)
        gateway.fail_with["refund"] = GatewayError("acquirer unavailable")

        with pytest.raises(PaymentProcessingException):
            payment_service.request_refund(payment.id, client.id, "Changed plans")
        db.refresh(payment)
        assert payment.refund_claimed_at is None

        retried = payment_service.request_refund(payment.id, client.id, "Changed plans")

        assert retried.result.status == PaymentStatus.REFUNDED.value
        assert len(gateway.calls_for("refund")) == 2


class TestReleaseFunds:
    def test_release_after_escrow_credits_provider(
        self, db, completed_booking, payment_service, provider, now
    ) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)

        transition = payment_service.release_funds(payment.id, now=now + timedelta(days=15))

        assert transition.result.status == PaymentStatus.RELEASED.value
        assert transition.result.released_at is not None
        db.refresh(provider)
        assert provider.account_balance == Decimal("180.00")
        assert [(n.user_id, n.type) for n in transition.notifications] == [
            (provider.id, NotificationType.FUNDS_AVAILABLE)
        ]

    def test_second_release_is_a_noop(
        self, db, completed_booking, payment_service, provider, now
    ) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        payment_service.release_funds(payment.id, now=now + timedelta(days=15))

        again = payment_service.release_funds(payment.id, now=now + timedelta(days=16))

        assert again.notifications == []
        db.refresh(provider)
        assert provider.account_balance == Decimal("180.00")

    def test_release_before_escrow_elapses(
        self, db, completed_booking, payment_service, now
    ) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        with pytest.raises(InvalidStateException):
            payment_service.release_funds(payment.id, now=now + timedelta(days=14, hours=23))

    def test_release_requires_completed_booking(
        self, db, paid_accepted_booking, payment_service, now
    ) -> None:
        booking = paid_accepted_booking()
        payment = _payment_for(db, booking)
        with pytest.raises(InvalidStateException):
            payment_service.release_funds(payment.id, now=now + timedelta(days=30))

    def test_unknown_payment(self, payment_service) -> None:
        with pytest.raises(NotFoundException):
            payment_service.release_funds(UNKNOWN_ID)


class TestDispute:
    def test_dispute_extends_escrow_and_notifies_both(
        self, db, completed_booking, payment_service, client, provider, now, caplog
    ) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        disputed_at = now + timedelta(days=5)

        with caplog.at_level(logging.WARNING):
            transition = payment_service.freeze_for_dispute(
                payment.id, client.id, "Service not delivered", now=disputed_at
            )

        assert transition.result.disputed_at is not None
        assert ensure_utc(transition.result.escrow_release_date) == disputed_at + timedelta(days=30)
        assert {n.user_id for n in transition.notifications} == {client.id, provider.id}
        assert "manual resolution" in caplog.text

    def test_disputed_payment_is_held_past_original_date(
        self, db, completed_booking, payment_service, client, now
    ) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        payment_service.freeze_for_dispute(payment.id, client.id, "Damage", now=now + timedelta(days=1))

        with pytest.raises(InvalidStateException):
            payment_service.release_funds(payment.id, now=now + timedelta(days=15))

        released = payment_service.release_funds(payment.id, now=now + timedelta(days=31))
        assert released.result.status == PaymentStatus.RELEASED.value

    def test_second_dispute_conflicts(self, db, completed_booking, payment_service, client) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        payment_service.freeze_for_dispute(payment.id, client.id, "First")
        with pytest.raises(ConflictException):
            payment_service.freeze_for_dispute(payment.id, client.id, "Second")

    def test_outsider_cannot_dispute(
        self, db, completed_booking, payment_service, user_factory
    ) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        with pytest.raises(ForbiddenException):
            payment_service.freeze_for_dispute(payment.id, user_factory().id, "Nope")

    def test_admin_may_dispute(self, db, completed_booking, payment_service) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        transition = payment_service.freeze_for_dispute(
            payment.id, "system", "Chargeback opened", actor_is_admin=True
        )
        assert transition.result.disputed_by == "system"

    def test_released_payment_cannot_be_disputed(
        self, db, completed_booking, payment_service, client, now
    ) -> None:
        booking = completed_booking()
        payment = _payment_for(db, booking)
        payment_service.release_funds(payment.id, now=now + timedelta(days=15))
        with pytest.raises(InvalidStateException):
            payment_service.freeze_for_dispute(payment.id, client.id, "Too late")


class TestEarnings:
    def test_earnings_split_by_settlement_state(
        self, db, completed_booking, payment_service, provider, now
    ) -> None:
        first = completed_booking()
        completed_booking()
        payment_service.release_funds(_payment_for(db, first).id, now=now + timedelta(days=15))

        earnings = payment_service.get_provider_earnings(provider.id)

        assert earnings.total_earnings == Decimal("180.00")
        assert earnings.available_balance == Decimal("180.00")
        assert earnings.pending_escrow == Decimal("180.00")
        assert earnings.total_withdrawn == Decimal("0.00")

    def test_clients_have_no_earnings(self, payment_service, client) -> None:
        with pytest.raises(ForbiddenException):
            payment_service.get_provider_earnings(client.id)


class TestEarningsHistory:
    @pytest.fixture
    def settled_mix(self, db, completed_booking, payment_service, client, now):
        """One released, one disputed and one held payment for the same provider."""
        released, disputed, held = (_payment_for(db, completed_booking()) for _ in range(3))
        payment_service.release_funds(released.id, now=now + timedelta(days=15))
        payment_service.freeze_for_dispute(disputed.id, client.id, "Damage")
        return released, disputed, held

    def test_all_captured_payments_by_default(
        self, settled_mix, payment_service, provider
    ) -> None:
        items, total = payment_service.get_earnings_history(provider.id)

        assert total == 3
        assert {p.id for p in items} == {p.id for p in settled_mix}

    @pytest.mark.parametrize(
        ("bucket", "index"), [("released", 0), ("disputed", 1), ("pending", 2)]
    )
    def test_bucket_filter(self, settled_mix, payment_service, provider, bucket, index) -> None:
        items, total = payment_service.get_earnings_history(provider.id, bucket=bucket)

        assert total == 1
        assert items[0].id == settled_mix[index].id

    def test_refunded_payments_are_not_earnings(
        self, db, paid_accepted_booking, booking_service, payment_service, client, provider
    ) -> None:
        booking = paid_accepted_booking()
        booking_service.update_status(booking.id, client.id, "cancelled")

        items, total = payment_service.get_earnings_history(provider.id)

        assert (items, total) == ([], 0)

    def test_pages(self, settled_mix, payment_service, provider) -> None:
        first, total = payment_service.get_earnings_history(provider.id, per_page=2)
        second, _ = payment_service.get_earnings_history(provider.id, page=2, per_page=2)

        assert total == 3
        assert len(first) == 2
        assert len(second) == 1
        assert {p.id for p in first + second} == {p.id for p in settled_mix}

    def test_unknown_bucket(self, payment_service, provider) -> None:
        with pytest.raises(ValidationException):
            payment_service.get_earnings_history(provider.id, bucket="refunded")

    def test_clients_have_no_history(self, payment_service, client) -> None:
        with pytest.raises(ForbiddenException):
            payment_service.get_earnings_history(client.id)


class TestPendingReleases:
    def test_soonest_release_first_with_total(
        self, db, completed_booking, paid_accepted_booking, payment_service, provider, now
    ) -> None:
        later = _payment_for(db, completed_booking())
        matured = _payment_for(db, completed_booking())
        matured.escrow_release_date = now - timedelta(minutes=1)
        db.commit()
        paid_accepted_booking()

        pending = payment_service.get_pending_releases(provider.id)

        assert [p.id for p in pending.payments] == [matured.id, later.id]
        assert pending.total_net_amount == Decimal("360.00")
        assert pending.as_of == now

    def test_released_payments_drop_out(
        self, db, completed_booking, payment_service, provider, now
    ) -> None:
        payment = _payment_for(db, completed_booking())
        payment_service.release_funds(payment.id, now=now + timedelta(days=15))

        assert payment_service.get_pending_releases(provider.id).payments == []


class TestEscrowStats:
    def test_platform_totals(self, db, completed_booking, payment_service, now) -> None:
        released, matured, held = (_payment_for(db, completed_booking()) for _ in range(3))
        payment_service.release_funds(released.id, now=now + timedelta(days=15))
        matured.escrow_release_date = now - timedelta(minutes=1)
        db.commit()

        stats = payment_service.get_escrow_stats()

        assert stats.total_in_escrow == Decimal("360.00")
        assert stats.ready_for_release == Decimal("180.00")
        assert stats.total_released == Decimal("180.00")


class TestGatewayEvents:
    def test_charge_paid_settles_pending_payment(
        self, make_booking, payment_service, client, provider
    ) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result

        transition = payment_service.handle_gateway_event(
            "charge.paid", {"id": payment.gateway_transaction_id}
        )

        assert transition.result.status == PaymentStatus.PAID.value
        assert transition.notifications[0].user_id == provider.id

    def test_charge_failed_marks_failed(self, make_booking, payment_service, client) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result

        transition = payment_service.handle_gateway_event(
            "charge.payment_failed", {"id": payment.gateway_transaction_id}
        )

        assert transition.result.status == PaymentStatus.FAILED.value

    def test_charge_failed_tells_the_client(self, make_booking, payment_service, client) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result

        transition = payment_service.handle_gateway_event(
            "charge.payment_failed", {"id": payment.gateway_transaction_id}
        )

        assert [(n.user_id, n.type) for n in transition.notifications] == [
            (client.id, NotificationType.PAYMENT_FAILED)
        ]

    def test_duplicate_failed_event_notifies_once(
        self, make_booking, payment_service, client
    ) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result
        data = {"id": payment.gateway_transaction_id}

        payment_service.handle_gateway_event("charge.payment_failed", data)
        duplicate = payment_service.handle_gateway_event("charge.payment_failed", data)

        assert duplicate.notifications == []

    def test_duplicate_paid_event_notifies_once(
        self, make_booking, payment_service, client
    ) -> None:
        booking = make_booking()
        payment = payment_service.process_payment(client.id, pix_payment(booking.id)).result
        data = {"id": payment.gateway_transaction_id}

        payment_service.handle_gateway_event("charge.paid", data)
        duplicate = payment_service.handle_gateway_event("charge.paid", data)

        assert duplicate.notifications == []

    def test_unknown_transaction_is_ignored(self, payment_service) -> None:
        transition = payment_service.handle_gateway_event("charge.paid", {"id": "ch_unknown"})
        assert transition.result is None
        assert transition.notifications == []
