# backend/marketplace/models/service.py
"""
Service offered by a provider, plus its per-day capacity counters.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import PriceType, ServiceStatus
from ..core.timezone_utils import utc_now
from ..database import Base


class Service(Base):
    """
    A bookable service.

    ``max_bookings`` is a per-calendar-day cap; ``None`` means unlimited.
    ``booking_count`` is a running counter of bookings that are still open.
    """

    __tablename__ = "services"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    provider_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    price_type = Column(String(20), nullable=False, default=PriceType.FIXED.value)
    status = Column(String(20), nullable=False, default=ServiceStatus.ACTIVE.value)
    max_bookings = Column(Integer, nullable=True)
    booking_count = Column(Integer, nullable=False, default=0)
    location = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    provider = relationship("User", foreign_keys=[provider_id])

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_services_price_non_negative"),
        CheckConstraint("price_type IN ('fixed', 'hourly')", name="ck_services_price_type"),
        CheckConstraint("status IN ('active', 'inactive')", name="ck_services_status"),
        CheckConstraint(
            "max_bookings IS NULL OR max_bookings > 0", name="ck_services_max_bookings_positive"
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ServiceStatus.ACTIVE.value

    @property
    def is_hourly(self) -> bool:
        return self.price_type == PriceType.HOURLY.value


class ServiceDayCapacity(Base):
    """
    Reserved booking slots for one service on one calendar day (UTC).

    A slot is taken with a conditional increment guarded by the service's
    ``max_bookings`` and given back when the booking reaches a terminal state.
    """

    __tablename__ = "service_day_capacity"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    service_id = Column(
        String(26), ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True
    )
    booking_day = Column(String(10), nullable=False)
    reserved_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("service_id", "booking_day", name="uq_service_day_capacity"),
        CheckConstraint("reserved_count >= 0", name="ck_service_day_capacity_non_negative"),
    )
