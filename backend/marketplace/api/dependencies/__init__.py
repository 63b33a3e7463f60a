# backend/marketplace/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import get_current_user, require_admin, require_cron_secret
from .database import get_db
from .services import (
    get_booking_service,
    get_notification_dispatcher,
    get_payment_gateway,
    get_payment_service,
    get_settlement_scheduler,
    get_withdrawal_service,
)

__all__ = [
    # Auth
    "get_current_user",
    "require_admin",
    "require_cron_secret",
    # Database
    "get_db",
    # Services
    "get_booking_service",
    "get_notification_dispatcher",
    "get_payment_gateway",
    "get_payment_service",
    "get_settlement_scheduler",
    "get_withdrawal_service",
]
