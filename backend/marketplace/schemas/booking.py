# backend/marketplace/schemas/booking.py
"""
Booking schemas.

Booking times are full timestamps. Naive values are interpreted as UTC.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import Field, field_validator

from ..core.timezone_utils import ensure_utc
from .base import Money, StandardizedModel, StrictRequestModel
from .payment import PaymentResponse


class BookingCreate(StrictRequestModel):
    """Request a booking of a service."""

    service_id: str = Field(..., description="Service being booked")
    booking_date: datetime = Field(..., description="Start of the booked service")
    end_date: Optional[datetime] = Field(
        None, description="End of the booked service; required to price hourly services by duration"
    )
    notes: Optional[str] = Field(None, max_length=1000)
    address: Optional[str] = Field(None, max_length=500)

    @field_validator("booking_date", "end_date")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class BookingDecline(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=500)


class BookingStatusUpdate(StrictRequestModel):
    """Move an active booking to completed or cancelled."""

    status: Literal["completed", "cancelled"]
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(StandardizedModel):
    id: str
    service_id: str
    client_id: str
    provider_id: str
    booking_date: datetime
    end_date: Optional[datetime] = None
    total_price: Money
    status: str
    notes: Optional[str] = None
    address: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    created_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    payment: Optional[PaymentResponse] = None
