# backend/marketplace/repositories/user_repository.py
"""
User repository.

The provider balance is shared mutable state. ``credit_balance`` and
``debit_balance`` are the only writers and each is a single SQL statement,
so concurrent releases and withdrawals never lose an update.
"""

from decimal import Decimal
import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.ledger import to_money
from ..models.user import User
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_balance(self, user_id: str) -> Decimal:
        try:
            value = self.db.query(User.account_balance).filter(User.id == user_id).scalar()
        except SQLAlchemyError as e:
            self.logger.error("Error reading balance for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to read balance: {e}") from e
        return to_money(value or 0)

    def credit_balance(self, user_id: str, amount: Decimal) -> None:
        """Add ``amount`` to the user's balance."""
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        try:
            result = self.db.execute(
                update(User)
                .where(User.id == user_id)
                .values(account_balance=User.account_balance + amount)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error crediting %s to %s: %s", amount, user_id, e)
            raise RepositoryException(f"Failed to credit balance: {e}") from e
        if not result.rowcount:
            raise RepositoryException(f"User {user_id} not found for balance credit")
        self.logger.info("Credited %s to user %s", amount, user_id)

    def debit_balance(self, user_id: str, amount: Decimal) -> bool:
        """
        Subtract ``amount`` if the balance covers it.

        Returns False, leaving the balance untouched, when funds are insufficient.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError("debit amount must be positive")
        try:
            result = self.db.execute(
                update(User)
                .where(User.id == user_id, User.account_balance >= amount)
                .values(account_balance=User.account_balance - amount)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error debiting %s from %s: %s", amount, user_id, e)
            raise RepositoryException(f"Failed to debit balance: {e}") from e
        debited = bool(result.rowcount)
        if debited:
            self.logger.info("Debited %s from user %s", amount, user_id)
        return debited
