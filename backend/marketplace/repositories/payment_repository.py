# backend/marketplace/repositories/payment_repository.py
"""
Payment repository.

Status changes that must happen at most once (release, reconcile to paid)
are conditional UPDATEs whose row count tells the caller whether this
call performed the transition.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session, joinedload

from ..core.enums import BookingStatus, PaymentStatus
from ..core.exceptions import RepositoryException
from ..core.ledger import to_money
from ..models.booking import Booking
from ..models.payment import Payment
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PaymentRepository(BaseRepository[Payment]):
    def __init__(self, db: Session):
        super().__init__(db, Payment)

    def get_by_booking_id(self, booking_id: str, *, for_update: bool = False) -> Optional[Payment]:
        query = self.db.query(Payment).filter(Payment.booking_id == booking_id)
        if for_update:
            query = query.populate_existing().with_for_update()
        try:
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error("Error getting payment for booking %s: %s", booking_id, e)
            raise RepositoryException(f"Failed to retrieve payment: {e}") from e

    def get_by_gateway_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        return self.find_one_by(gateway_transaction_id=transaction_id)

    def transition_status(
        self,
        payment_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> bool:
        """
        Move the payment to ``to_status`` only if it is still in ``from_statuses``.

        Returns True when this call performed the transition.
        """
        try:
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status.in_(list(from_statuses)))
                .values(status=to_status, **fields)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error transitioning payment %s to %s: %s", payment_id, to_status, e)
            raise RepositoryException(f"Failed to update payment status: {e}") from e
        return bool(result.rowcount)

    def mark_released(self, payment_id: str, now: datetime) -> bool:
        """
        Set ``released_at`` and status ``released`` if the release predicate holds.

        Returns False when another caller already released the payment or the
        predicate no longer matches.
        """
        try:
            result = self.db.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.released_at.is_(None),
                    Payment.status == PaymentStatus.PAID.value,
                    Payment.escrow_release_date.is_not(None),
                    Payment.escrow_release_date <= now,
                )
                .values(
                    status=PaymentStatus.RELEASED.value,
                    released_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error releasing payment %s: %s", payment_id, e)
            raise RepositoryException(f"Failed to release payment: {e}") from e
        return bool(result.rowcount)

    def claim_refund(self, payment_id: str, now: datetime, stale_before: datetime) -> bool:
        """
        Mark a paid payment as having a refund in flight.

        Only one caller can hold the claim. A claim taken before
        ``stale_before`` counts as abandoned and can be taken over.
        """
        try:
            result = self.db.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.status == PaymentStatus.PAID.value,
                    or_(
                        Payment.refund_claimed_at.is_(None),
                        Payment.refund_claimed_at < stale_before,
                    ),
                )
                .values(refund_claimed_at=now)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error claiming refund for payment %s: %s", payment_id, e)
            raise RepositoryException(f"Failed to claim refund: {e}") from e
        return bool(result.rowcount)

    def release_refund_claim(self, payment_id: str) -> None:
        try:
            self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id)
                .values(refund_claimed_at=None)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error releasing refund claim for payment %s: %s", payment_id, e)
            raise RepositoryException(f"Failed to release refund claim: {e}") from e

    def find_release_candidate_ids(self, now: datetime) -> List[str]:
        """Payments matching the release predicate, earliest escrow date first."""
        try:
            rows = (
                self.db.query(Payment.id)
                .join(Booking, Booking.id == Payment.booking_id)
                .filter(
                    Payment.status == PaymentStatus.PAID.value,
                    Payment.released_at.is_(None),
                    Payment.escrow_release_date.is_not(None),
                    Payment.escrow_release_date <= now,
                    Booking.status == BookingStatus.COMPLETED.value,
                )
                .order_by(Payment.escrow_release_date.asc(), Payment.id.asc())
                .all()
            )
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            self.logger.error("Error selecting release candidates: %s", e)
            raise RepositoryException(f"Failed to select release candidates: {e}") from e

    # ------------------------------------------------------------ earnings
    def sum_net_for_provider(self, provider_id: str, statuses: Iterable[str]) -> Decimal:
        """Sum of ``net_amount`` over the provider's payments in ``statuses``."""
        try:
            total = (
                self.db.query(func.coalesce(func.sum(Payment.net_amount), 0))
                .join(Booking, Booking.id == Payment.booking_id)
                .filter(Booking.provider_id == provider_id, Payment.status.in_(list(statuses)))
                .scalar()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error summing earnings for %s: %s", provider_id, e)
            raise RepositoryException(f"Failed to compute earnings: {e}") from e
        return to_money(total or 0)

    def _provider_payments(self, provider_id: str) -> Query:
        return (
            self.db.query(Payment)
            .join(Booking, Booking.id == Payment.booking_id)
            .filter(Booking.provider_id == provider_id)
        )

    def list_earnings_for_provider(
        self,
        provider_id: str,
        *,
        bucket: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Payment], int]:
        """
        One page of the provider's captured payments, newest first, plus the total.

        ``bucket`` narrows the page to ``pending`` (held, undisputed),
        ``released`` or ``disputed`` (held under a dispute freeze).
        """
        try:
            query = self._provider_payments(provider_id)
            if bucket == "pending":
                query = query.filter(
                    Payment.status == PaymentStatus.PAID.value, Payment.disputed_at.is_(None)
                )
            elif bucket == "released":
                query = query.filter(Payment.status == PaymentStatus.RELEASED.value)
            elif bucket == "disputed":
                query = query.filter(
                    Payment.status == PaymentStatus.PAID.value, Payment.disputed_at.is_not(None)
                )
            else:
                query = query.filter(
                    Payment.status.in_([PaymentStatus.PAID.value, PaymentStatus.RELEASED.value])
                )

            total = query.count()
            items = (
                query.options(
                    joinedload(Payment.booking).joinedload(Booking.service),
                    joinedload(Payment.booking).joinedload(Booking.client),
                )
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
            return items, total
        except SQLAlchemyError as e:
            self.logger.error("Error listing earnings for %s: %s", provider_id, e)
            raise RepositoryException(f"Failed to list earnings: {e}") from e

    def list_pending_releases(self, provider_id: str) -> List[Payment]:
        """Held payments of completed bookings, soonest escrow release first."""
        try:
            return (
                self._provider_payments(provider_id)
                .filter(
                    Payment.status == PaymentStatus.PAID.value,
                    Payment.released_at.is_(None),
                    Payment.escrow_release_date.is_not(None),
                    Booking.status == BookingStatus.COMPLETED.value,
                )
                .options(joinedload(Payment.booking).joinedload(Booking.service))
                .order_by(Payment.escrow_release_date.asc(), Payment.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing pending releases for %s: %s", provider_id, e)
            raise RepositoryException(f"Failed to list pending releases: {e}") from e

    def escrow_totals(self, now: datetime) -> Dict[str, Decimal]:
        """Platform-wide net amounts held, releasable at ``now`` and released."""
        net_sum = func.coalesce(func.sum(Payment.net_amount), 0)
        try:
            held = (
                self.db.query(net_sum)
                .filter(Payment.status == PaymentStatus.PAID.value, Payment.released_at.is_(None))
                .scalar()
            )
            ready = (
                self.db.query(net_sum)
                .join(Booking, Booking.id == Payment.booking_id)
                .filter(
                    Payment.status == PaymentStatus.PAID.value,
                    Payment.released_at.is_(None),
                    Payment.escrow_release_date.is_not(None),
                    Payment.escrow_release_date <= now,
                    Booking.status == BookingStatus.COMPLETED.value,
                )
                .scalar()
            )
            released = (
                self.db.query(net_sum)
                .filter(Payment.status == PaymentStatus.RELEASED.value)
                .scalar()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error computing escrow totals: %s", e)
            raise RepositoryException(f"Failed to compute escrow totals: {e}") from e
        return {
            "total_in_escrow": to_money(held or 0),
            "ready_for_release": to_money(ready or 0),
            "total_released": to_money(released or 0),
        }
