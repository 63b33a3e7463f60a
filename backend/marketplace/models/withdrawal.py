# backend/marketplace/models/withdrawal.py
"""
Withdrawal and bank account models.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import WithdrawalStatus
from ..core.timezone_utils import utc_now
from ..database import Base

OPEN_WITHDRAWAL_PREDICATE = text("status IN ('pending', 'processing')")


class BankAccount(Base):
    """Destination account for withdrawals, owned by exactly one user."""

    __tablename__ = "bank_accounts"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    bank_name = Column(String(120), nullable=False)
    account_type = Column(String(20), nullable=False)
    account_number = Column(String(30), nullable=False)
    agency_number = Column(String(10), nullable=False)
    holder_name = Column(String(255), nullable=False)
    holder_cpf = Column(String(11), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "agency_number", "account_number", name="uq_bank_accounts_user_account"
        ),
        CheckConstraint(
            "account_type IN ('checking', 'savings')", name="ck_bank_accounts_account_type"
        ),
    )


class Withdrawal(Base):
    """
    A provider's request to transfer settled balance to a bank account.

    The balance is debited when the row is created. A partial unique index
    allows at most one open (pending or processing) withdrawal per user.
    """

    __tablename__ = "withdrawals"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    bank_account_id = Column(
        String(26), ForeignKey("bank_accounts.id", ondelete="SET NULL"), nullable=True
    )
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=WithdrawalStatus.PENDING.value)
    transfer_id = Column(String(255), nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)

    bank_account = relationship("BankAccount")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawals_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_withdrawals_status",
        ),
        Index(
            "uq_withdrawals_one_open_per_user",
            "user_id",
            unique=True,
            sqlite_where=OPEN_WITHDRAWAL_PREDICATE,
            postgresql_where=OPEN_WITHDRAWAL_PREDICATE,
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status in (WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value)
