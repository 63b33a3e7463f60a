"""Request builders and test doubles shared across the suite."""

from __future__ import annotations

from typing import Dict, List

from marketplace.schemas.payment import (
    BillingAddress,
    BoletoInfo,
    CreditCardInfo,
    PaymentProcessRequest,
)

UNKNOWN_ID = "01HZZZZZZZZZZZZZZZZZZZZZZZ"

ADMIN_TOKEN = "admin-test-token"
CRON_TOKEN = "cron-test-token"
WEBHOOK_SECRET = "whsec_test"


class RecordingSink:
    """Notification sink that keeps every emitted message in memory."""

    def __init__(self) -> None:
        self.emitted: List[Dict[str, str]] = []

    def emit(self, user_id: str, type: str, title: str, message: str) -> None:
        self.emitted.append({"user_id": user_id, "type": type, "title": title, "message": message})

    def types_for(self, user_id: str) -> List[str]:
        return [item["type"] for item in self.emitted if item["user_id"] == user_id]


def billing_address() -> BillingAddress:
    return BillingAddress(
        street="Rua Augusta",
        number="100",
        neighborhood="Consolação",
        city="São Paulo",
        state="SP",
        zip_code="01305-000",
    )


def card_payment(booking_id: str) -> PaymentProcessRequest:
    return PaymentProcessRequest(
        booking_id=booking_id,
        method="credit_card",
        credit_card=CreditCardInfo(
            number="4111111111111111",
            holder_name="Ana Souza",
            expiry_month=12,
            expiry_year=2030,
            cvv="123",
        ),
        billing_address=billing_address(),
    )


def pix_payment(booking_id: str) -> PaymentProcessRequest:
    return PaymentProcessRequest(
        booking_id=booking_id, method="pix", billing_address=billing_address()
    )


def boleto_payment(booking_id: str) -> PaymentProcessRequest:
    return PaymentProcessRequest(
        booking_id=booking_id,
        method="boleto",
        boleto=BoletoInfo(cpf="12345678901", full_name="Ana Souza"),
        billing_address=billing_address(),
    )


def as_user(user) -> Dict[str, str]:
    """Identity header the upstream gateway would set."""
    return {"X-User-ID": user.id}


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
