# backend/marketplace/repositories/withdrawal_repository.py
"""
Withdrawal and bank account repositories.
"""

from decimal import Decimal
import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import OPEN_WITHDRAWAL_STATUSES, WithdrawalStatus
from ..core.exceptions import RepositoryException
from ..core.ledger import to_money
from ..models.withdrawal import BankAccount, Withdrawal
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

_OPEN = [status.value for status in OPEN_WITHDRAWAL_STATUSES]


class WithdrawalRepository(BaseRepository[Withdrawal]):
    def __init__(self, db: Session):
        super().__init__(db, Withdrawal)

    def has_open_for_user(self, user_id: str) -> bool:
        return (
            self.db.query(Withdrawal.id)
            .filter(Withdrawal.user_id == user_id, Withdrawal.status.in_(_OPEN))
            .first()
            is not None
        )

    def has_open_for_bank_account(self, bank_account_id: str) -> bool:
        return (
            self.db.query(Withdrawal.id)
            .filter(Withdrawal.bank_account_id == bank_account_id, Withdrawal.status.in_(_OPEN))
            .first()
            is not None
        )

    def get_by_transfer_id(self, transfer_id: str) -> Optional[Withdrawal]:
        return self.find_one_by(transfer_id=transfer_id)

    def list_for_user(
        self, user_id: str, page: int = 1, per_page: int = 20
    ) -> Tuple[List[Withdrawal], int]:
        try:
            query = self.db.query(Withdrawal).filter(Withdrawal.user_id == user_id)
            total = query.count()
            items = (
                query.order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
            return items, total
        except SQLAlchemyError as e:
            self.logger.error("Error listing withdrawals for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to list withdrawals: {e}") from e

    def total_completed(self, user_id: str) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(Withdrawal.amount), 0))
            .filter(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.COMPLETED.value,
            )
            .scalar()
        )
        return to_money(total or 0)


class BankAccountRepository(BaseRepository[BankAccount]):
    def __init__(self, db: Session):
        super().__init__(db, BankAccount)

    def get_owned(self, bank_account_id: str, user_id: str) -> Optional[BankAccount]:
        return self.find_one_by(id=bank_account_id, user_id=user_id)

    def list_for_user(self, user_id: str) -> List[BankAccount]:
        """Default account first, then newest."""
        return (
            self.db.query(BankAccount)
            .filter(BankAccount.user_id == user_id)
            .order_by(
                BankAccount.is_default.desc(),
                BankAccount.created_at.desc(),
                BankAccount.id.desc(),
            )
            .all()
        )

    def oldest_for_user(self, user_id: str) -> Optional[BankAccount]:
        return (
            self.db.query(BankAccount)
            .filter(BankAccount.user_id == user_id)
            .order_by(BankAccount.created_at.asc(), BankAccount.id.asc())
            .first()
        )

    def clear_default(self, user_id: str) -> None:
        try:
            self.db.execute(
                update(BankAccount)
                .where(BankAccount.user_id == user_id, BankAccount.is_default.is_(True))
                .values(is_default=False)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self.logger.error("Error clearing default bank account for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to clear default bank account: {e}") from e
