# backend/marketplace/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected.
"""

from functools import lru_cache
import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.config import settings
from ...integrations import FakePaymentGateway, PagarmeClient, PaymentGateway
from ...services.booking_service import BookingService
from ...services.notification_service import DatabaseNotificationSink, NotificationDispatcher
from ...services.payment_service import PaymentService
from ...services.settlement_scheduler import SettlementScheduler
from ...services.withdrawal_service import WithdrawalService
from .database import get_db

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def build_payment_gateway() -> PaymentGateway:
    """
    Build the process-wide payment gateway.

    ``settings.use_fake_gateway`` selects the in-memory gateway. A missing
    Pagar.me key falls back to it outside production.
    """
    logger.info(
        "Payment gateway selection",
        extra={"environment": settings.environment, "use_fake_gateway": settings.use_fake_gateway},
    )
    if settings.use_fake_gateway:
        return FakePaymentGateway()
    try:
        return PagarmeClient(
            secret_key=settings.pagarme_secret_key or "",
            base_url=settings.pagarme_api_url,
            timeout=settings.gateway_timeout_seconds,
        )
    except ValueError as exc:  # Missing secret key
        if settings.environment == "production":
            raise
        logger.warning(
            "Falling back to FakePaymentGateway due to configuration error",
            extra={"error": str(exc), "environment": settings.environment},
        )
        return FakePaymentGateway()


def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway()


def get_notification_dispatcher(db: Session = Depends(get_db)) -> NotificationDispatcher:
    """Dispatcher writing in-app notification rows."""
    return NotificationDispatcher(DatabaseNotificationSink(db))


def get_booking_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> BookingService:
    """Get BookingService instance with proper dependencies."""
    return BookingService(db, gateway)


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentService:
    return PaymentService(db, gateway)


def get_withdrawal_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> WithdrawalService:
    return WithdrawalService(db, gateway)


def get_settlement_scheduler(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> SettlementScheduler:
    return SettlementScheduler(db, gateway, dispatcher)
