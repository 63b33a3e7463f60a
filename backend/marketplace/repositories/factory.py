# backend/marketplace/repositories/factory.py
"""
Repository Factory for the marketplace.

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from .base_repository import BaseRepository

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .notification_repository import NotificationRepository
    from .payment_repository import PaymentRepository
    from .service_repository import ServiceRepository
    from .user_repository import UserRepository
    from .withdrawal_repository import BankAccountRepository, WithdrawalRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation to ensure consistent initialization
    and makes it easy to swap implementations if needed.
    """

    @staticmethod
    def create_base_repository(db: Session, model) -> BaseRepository:
        """Create a generic base repository for any model."""
        return BaseRepository(db, model)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> "PaymentRepository":
        from .payment_repository import PaymentRepository

        return PaymentRepository(db)

    @staticmethod
    def create_service_repository(db: Session) -> "ServiceRepository":
        from .service_repository import ServiceRepository

        return ServiceRepository(db)

    @staticmethod
    def create_user_repository(db: Session) -> "UserRepository":
        from .user_repository import UserRepository

        return UserRepository(db)

    @staticmethod
    def create_withdrawal_repository(db: Session) -> "WithdrawalRepository":
        from .withdrawal_repository import WithdrawalRepository

        return WithdrawalRepository(db)

    @staticmethod
    def create_bank_account_repository(db: Session) -> "BankAccountRepository":
        from .withdrawal_repository import BankAccountRepository

        return BankAccountRepository(db)

    @staticmethod
    def create_notification_repository(db: Session) -> "NotificationRepository":
        from .notification_repository import NotificationRepository

        return NotificationRepository(db)
