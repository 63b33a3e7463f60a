# backend/marketplace/models/booking.py
"""
Booking model.

A booking is one reservation of a service by a client from the service's
provider. Bookings are never deleted; terminal states (declined,
completed, cancelled) are kept for history.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import BookingStatus
from ..core.timezone_utils import utc_now
from ..database import Base


class Booking(Base):
    """Reservation record linking a client, a provider and a service."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    service_id = Column(String(26), ForeignKey("services.id"), nullable=False, index=True)
    client_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)

    booking_date = Column(DateTime(timezone=True), nullable=False, index=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    total_price = Column(Numeric(10, 2), nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    notes = Column(Text, nullable=True)
    address = Column(Text, nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    # User id of the actor, or "system" for scheduler cancellations
    cancelled_by = Column(String(26), nullable=True)

    # True while this booking occupies a service_day_capacity slot
    holds_capacity_slot = Column(Boolean, nullable=False, default=False)
    reminder_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    service = relationship("Service", foreign_keys=[service_id])
    client = relationship("User", foreign_keys=[client_id])
    provider = relationship("User", foreign_keys=[provider_id])
    payment = relationship("Payment", back_populates="booking", uselist=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
        CheckConstraint("client_id <> provider_id", name="ck_bookings_client_not_provider"),
        CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_bookings_completed_at",
        ),
        Index("ix_bookings_status_created_at", "status", "created_at"),
    )

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.provider_id)

    def __repr__(self) -> str:
        return f"<Booking {self.id} status={self.status}>"
