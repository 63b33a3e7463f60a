# backend/marketplace/schemas/payment.py
"""
Payment schemas.

Card data is passed straight through to the gateway and never persisted.
"""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import Field, model_validator

from ..core.timezone_utils import ensure_utc
from .base import Money, StandardizedModel, StrictRequestModel


class BillingAddress(StrictRequestModel):
    street: str = Field(..., min_length=1)
    number: str = Field(..., min_length=1)
    complement: Optional[str] = None
    neighborhood: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=2, max_length=2)
    zip_code: str = Field(..., pattern=r"^\d{5}-?\d{3}$")


class CreditCardInfo(StrictRequestModel):
    number: str = Field(..., pattern=r"^\d{13,19}$")
    holder_name: str = Field(..., min_length=1)
    expiry_month: int = Field(..., ge=1, le=12)
    expiry_year: int = Field(..., ge=2000, le=2100)
    cvv: str = Field(..., pattern=r"^\d{3,4}$")
    installments: int = Field(1, ge=1, le=12)


class BoletoInfo(StrictRequestModel):
    cpf: str = Field(..., pattern=r"^\d{11}$")
    full_name: str = Field(..., min_length=1)


class PaymentProcessRequest(StrictRequestModel):
    """Capture the payment for a pending booking."""

    booking_id: str
    method: Literal["credit_card", "pix", "boleto"]
    credit_card: Optional[CreditCardInfo] = None
    boleto: Optional[BoletoInfo] = None
    billing_address: BillingAddress

    @model_validator(mode="after")
    def _method_details(self) -> "PaymentProcessRequest":
        if self.method == "credit_card" and self.credit_card is None:
            raise ValueError("credit_card details are required for card payments")
        if self.method == "boleto" and self.boleto is None:
            raise ValueError("boleto details are required for boleto payments")
        return self


class RefundRequest(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=500)


class DisputeRequest(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PaymentResponse(StandardizedModel):
    id: str
    booking_id: str
    amount: Money
    service_fee: Money
    net_amount: Money
    status: str
    payment_method: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    pix_code: Optional[str] = None
    pix_qr_code: Optional[str] = None
    pix_expires_at: Optional[datetime] = None
    boleto_url: Optional[str] = None
    boleto_barcode: Optional[str] = None
    boleto_due_date: Optional[datetime] = None
    escrow_release_date: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refund_amount: Optional[Money] = None
    refunded_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    created_at: datetime


class EarningsResponse(StandardizedModel):
    total_earnings: Money
    available_balance: Money
    pending_escrow: Money
    total_withdrawn: Money


class EarningsHistoryItem(StandardizedModel):
    """One captured payment as it counts toward the provider's earnings."""

    payment_id: str
    booking_id: str
    service_title: Optional[str] = None
    client_name: Optional[str] = None
    booking_date: datetime
    amount: Money
    service_fee: Money
    net_amount: Money
    status: str
    escrow_release_date: Optional[datetime] = None
    released_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_payment(cls, payment: Any) -> "EarningsHistoryItem":
        booking = payment.booking
        return cls(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            service_title=booking.service.title if booking.service else None,
            client_name=booking.client.name if booking.client else None,
            booking_date=booking.booking_date,
            amount=payment.amount,
            service_fee=payment.service_fee,
            net_amount=payment.net_amount,
            status=payment.status,
            escrow_release_date=payment.escrow_release_date,
            released_at=payment.released_at,
            disputed_at=payment.disputed_at,
            created_at=payment.created_at,
        )


class PendingReleaseItem(StandardizedModel):
    payment_id: str
    booking_id: str
    service_title: Optional[str] = None
    net_amount: Money
    escrow_release_date: datetime
    disputed: bool
    ready_for_release: bool = Field(
        description="Escrow has elapsed; the next daily run will credit the balance"
    )


class PendingReleasesResponse(StandardizedModel):
    count: int
    total_net_amount: Money
    items: List[PendingReleaseItem]

    @classmethod
    def from_result(cls, result: Any) -> "PendingReleasesResponse":
        items = [
            PendingReleaseItem(
                payment_id=payment.id,
                booking_id=payment.booking_id,
                service_title=payment.booking.service.title if payment.booking.service else None,
                net_amount=payment.net_amount,
                escrow_release_date=payment.escrow_release_date,
                disputed=payment.disputed_at is not None,
                ready_for_release=ensure_utc(payment.escrow_release_date) <= result.as_of,
            )
            for payment in result.payments
        ]
        return cls(count=len(items), total_net_amount=result.total_net_amount, items=items)


class EscrowStatsResponse(StandardizedModel):
    total_in_escrow: Money
    ready_for_release: Money
    total_released: Money
