# backend/marketplace/models/user.py
"""
User model for the marketplace.

Clients and providers share this table; ``is_provider`` marks users who
offer services. ``account_balance`` is the provider's withdrawable
balance and is only ever changed through ``UserRepository.credit_balance``
and ``UserRepository.debit_balance``.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Numeric, String
import ulid

from ..core.timezone_utils import utc_now
from ..database import Base


class User(Base):
    """
    Marketplace participant.

    Attributes:
        id: ULID primary key
        email: Unique email address
        name: Display name
        phone: Optional phone number
        is_provider: Whether the user may offer services and withdraw funds
        account_balance: Settled funds available for withdrawal
        created_at: Account creation timestamp
    """

    __tablename__ = "users"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(30), nullable=True)
    is_provider = Column(Boolean, nullable=False, default=False)
    account_balance = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("account_balance >= 0", name="ck_users_account_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<User {self.id} provider={self.is_provider}>"
