# backend/marketplace/models/payment.py
"""
Payment model.

Exactly one payment exists per booking. Money columns are stored as
decimal currency; conversion to centavos happens at the gateway boundary.
"""

from sqlalchemy import (
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

from ..core.enums import PaymentStatus
from ..core.timezone_utils import utc_now
from ..database import Base


class Payment(Base):
    """
    Monetary side of a booking.

    Attributes:
        amount: Gross amount charged to the client
        service_fee: Platform fee
        net_amount: Amount settled to the provider (amount - service_fee)
        escrow_release_date: Earliest release moment, set on completion
        released_at: Set exactly once when funds are credited to the provider
        refund_claimed_at: Set while a gateway refund is in flight; cleared when it settles
    """

    __tablename__ = "payments"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26), ForeignKey("bookings.id"), nullable=False, unique=True, index=True
    )

    amount = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), nullable=False)
    net_amount = Column(Numeric(10, 2), nullable=False)

    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_method = Column(String(20), nullable=True)
    gateway_transaction_id = Column(String(255), nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)

    # PIX artifacts
    pix_code = Column(Text, nullable=True)
    pix_qr_code = Column(Text, nullable=True)
    pix_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Boleto artifacts
    boleto_url = Column(Text, nullable=True)
    boleto_barcode = Column(String(255), nullable=True)
    boleto_due_date = Column(DateTime(timezone=True), nullable=True)

    escrow_release_date = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)

    refund_amount = Column(Numeric(10, 2), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_claimed_at = Column(DateTime(timezone=True), nullable=True)

    disputed_at = Column(DateTime(timezone=True), nullable=True)
    dispute_reason = Column(Text, nullable=True)
    disputed_by = Column(String(26), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)

    booking = relationship("Booking", back_populates="payment")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'paid', 'failed', 'refunded', 'released')",
            name="ck_payments_status",
        ),
        CheckConstraint(
            "released_at IS NULL OR status = 'released'", name="ck_payments_released_at"
        ),
        Index("ix_payments_status_escrow_release_date", "status", "escrow_release_date"),
    )

    def __repr__(self) -> str:
        return f"<Payment {self.id} status={self.status} amount={self.amount}>"
