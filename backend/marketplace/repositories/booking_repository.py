# backend/marketplace/repositories/booking_repository.py
"""
Booking repository.

Listing and scheduler candidate queries. State changes are made by the
booking service on rows locked with ``get_for_update``.
"""

from datetime import datetime
import logging
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session, joinedload

from ..core.enums import BookingStatus
from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def _apply_eager_loading(self, query: Query) -> Query:
        return query.options(joinedload(Booking.payment), joinedload(Booking.service))

    def list_for_user(
        self,
        user_id: str,
        *,
        as_provider: bool,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Booking], int]:
        """Return one page of the user's bookings, newest first, plus the total."""
        try:
            query = self._build_query()
            if as_provider:
                query = query.filter(Booking.provider_id == user_id)
            else:
                query = query.filter(Booking.client_id == user_id)
            if status:
                query = query.filter(Booking.status == status)

            total = query.count()
            items = (
                self._apply_eager_loading(query)
                .order_by(Booking.created_at.desc(), Booking.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
            return items, total
        except SQLAlchemyError as e:
            self.logger.error("Error listing bookings for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to list bookings: {e}") from e

    def find_stale_pending_ids(self, created_before: datetime) -> List[str]:
        """Pending bookings created before the cutoff, oldest first."""
        try:
            rows = (
                self.db.query(Booking.id)
                .filter(
                    Booking.status == BookingStatus.PENDING.value,
                    Booking.created_at < created_before,
                )
                .order_by(Booking.created_at.asc())
                .all()
            )
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            self.logger.error("Error selecting stale pending bookings: %s", e)
            raise RepositoryException(f"Failed to select stale bookings: {e}") from e

    def find_accepted_starting_between(self, start: datetime, end: datetime) -> List[Booking]:
        """Accepted bookings with ``start < booking_date <= end``."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.status == BookingStatus.ACCEPTED.value,
                    Booking.booking_date > start,
                    Booking.booking_date <= end,
                )
                .order_by(Booking.booking_date.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error selecting upcoming bookings: %s", e)
            raise RepositoryException(f"Failed to select upcoming bookings: {e}") from e

    def mark_reminder_sent(self, booking_id: str, now: datetime) -> bool:
        """Stamp ``reminder_sent_at`` once; False if it was already set."""
        try:
            result = self.db.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.reminder_sent_at.is_(None))
                .values(reminder_sent_at=now)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error stamping reminder for booking %s: %s", booking_id, e)
            raise RepositoryException(f"Failed to record reminder: {e}") from e
        return bool(result.rowcount)
