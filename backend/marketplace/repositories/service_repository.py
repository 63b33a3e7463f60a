# backend/marketplace/repositories/service_repository.py
"""
Repository for services and their per-day capacity counters.

Capacity is enforced with a conditional increment on the
``service_day_capacity`` row instead of counting bookings and inserting,
so two concurrent requests for the last slot cannot both succeed.
"""

from __future__ import annotations

import logging

from sqlalchemy import insert, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import ulid

from ..core.exceptions import RepositoryException
from ..models.service import Service, ServiceDayCapacity
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ServiceRepository(BaseRepository[Service]):
    """Data access for services, booking counters and day capacity."""

    def __init__(self, db: Session):
        super().__init__(db, Service)

    # ------------------------------------------------------------ capacity
    def ensure_day_capacity_row(self, service_id: str, booking_day: str) -> None:
        """Insert the capacity row for ``(service_id, booking_day)`` unless present."""
        values = {
            "id": str(ulid.ULID()),
            "service_id": service_id,
            "booking_day": booking_day,
            "reserved_count": 0,
        }
        try:
            if self.dialect_name == "postgresql":
                stmt = (
                    pg_insert(ServiceDayCapacity)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["service_id", "booking_day"])
                )
            else:
                stmt = insert(ServiceDayCapacity).values(**values).prefix_with("OR IGNORE")
            self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error(
                "Error creating capacity row for service %s on %s: %s", service_id, booking_day, e
            )
            raise

    def reserve_day_slot(self, service_id: str, booking_day: str, max_bookings: int) -> bool:
        """
        Take one slot for the day if fewer than ``max_bookings`` are reserved.

        Returns False when the day is full. Lock errors propagate so the
        caller can surface them as a conflict.
        """
        self.ensure_day_capacity_row(service_id, booking_day)
        result = self.db.execute(
            update(ServiceDayCapacity)
            .where(
                ServiceDayCapacity.service_id == service_id,
                ServiceDayCapacity.booking_day == booking_day,
                ServiceDayCapacity.reserved_count < max_bookings,
            )
            .values(reserved_count=ServiceDayCapacity.reserved_count + 1)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def release_day_slot(self, service_id: str, booking_day: str) -> None:
        """Give a reserved slot back; never drops below zero."""
        try:
            self.db.execute(
                update(ServiceDayCapacity)
                .where(
                    ServiceDayCapacity.service_id == service_id,
                    ServiceDayCapacity.booking_day == booking_day,
                    ServiceDayCapacity.reserved_count > 0,
                )
                .values(reserved_count=ServiceDayCapacity.reserved_count - 1)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error releasing slot for service %s: %s", service_id, e)
            raise RepositoryException(f"Failed to release capacity: {e}") from e

    def get_reserved_count(self, service_id: str, booking_day: str) -> int:
        row = (
            self.db.query(ServiceDayCapacity.reserved_count)
            .filter(
                ServiceDayCapacity.service_id == service_id,
                ServiceDayCapacity.booking_day == booking_day,
            )
            .scalar()
        )
        return int(row or 0)

    # ------------------------------------------------------------ counters
    def increment_booking_count(self, service_id: str) -> None:
        self._adjust_booking_count(service_id, 1)

    def decrement_booking_count(self, service_id: str) -> None:
        self._adjust_booking_count(service_id, -1)

    def _adjust_booking_count(self, service_id: str, delta: int) -> None:
        stmt = update(Service).where(Service.id == service_id)
        if delta < 0:
            stmt = stmt.where(Service.booking_count >= -delta)
        try:
            self.db.execute(
                stmt.values(booking_count=Service.booking_count + delta).execution_options(
                    synchronize_session=False
                )
            )
        except SQLAlchemyError as e:
            self.logger.error("Error adjusting booking count for %s: %s", service_id, e)
            raise RepositoryException(f"Failed to adjust booking count: {e}") from e
