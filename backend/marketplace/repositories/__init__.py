"""
Repository layer for the marketplace.

Repositories own data access; services own transactions.
"""

from .base_repository import BaseRepository, IntegrityViolation
from .booking_repository import BookingRepository
from .factory import RepositoryFactory
from .notification_repository import NotificationRepository
from .payment_repository import PaymentRepository
from .service_repository import ServiceRepository
from .user_repository import UserRepository
from .withdrawal_repository import BankAccountRepository, WithdrawalRepository

__all__ = [
    "BankAccountRepository",
    "BaseRepository",
    "BookingRepository",
    "IntegrityViolation",
    "NotificationRepository",
    "PaymentRepository",
    "RepositoryFactory",
    "ServiceRepository",
    "UserRepository",
    "WithdrawalRepository",
]
