# backend/marketplace/services/withdrawal_service.py
"""
Provider withdrawals and bank accounts.

    pending -> processing -> completed | failed

The balance is debited when the withdrawal is requested. ``failed`` is the
only compensating path and credits the amount back exactly once, in the
same transaction as the status change.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import WITHDRAWAL_TRANSITIONS, WithdrawalStatus
from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)
from ..core.ledger import to_minor_units, to_money
from ..core.timezone_utils import ensure_utc, utc_now
from ..events import notification_events as events
from ..events.notification_events import Transition
from ..integrations.pagarme_client import (
    GatewayError,
    GatewayTimeoutError,
    PaymentGateway,
    normalize_transfer_status,
)
from ..models.withdrawal import BankAccount, Withdrawal
from ..repositories.base_repository import IntegrityViolation
from ..repositories.factory import RepositoryFactory
from ..schemas.withdrawal import BankAccountCreate
from .base import BaseService

logger = logging.getLogger(__name__)

_TRANSFER_EVENTS = {
    "transfer.created": WithdrawalStatus.PROCESSING,
    "transfer.pending": WithdrawalStatus.PROCESSING,
    "transfer.processing": WithdrawalStatus.PROCESSING,
    "transfer.paid": WithdrawalStatus.COMPLETED,
    "transfer.transferred": WithdrawalStatus.COMPLETED,
    "transfer.failed": WithdrawalStatus.FAILED,
    "transfer.canceled": WithdrawalStatus.FAILED,
}


class WithdrawalService(BaseService):
    """Withdrawal requests, transfer status callbacks and bank accounts."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        minimum_amount: Optional[Decimal] = None,
        maximum_amount: Optional[Decimal] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.minimum_amount = to_money(minimum_amount or settings.minimum_withdrawal_amount)
        self.maximum_amount = to_money(maximum_amount or settings.maximum_withdrawal_amount)
        self.clock = clock
        self.repository = RepositoryFactory.create_withdrawal_repository(db)
        self.bank_account_repository = RepositoryFactory.create_bank_account_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_utc(now) if now is not None else self.clock()

    # ---------------------------------------------------------------- request
    @BaseService.measure_operation("request_withdrawal")
    def request_withdrawal(
        self, user_id: str, amount: Decimal, bank_account_id: str
    ) -> Transition[Withdrawal]:
        """
        Debit the balance and open a pending withdrawal.

        Raises:
            ValidationException: Amount out of bounds or above the balance
            NotFoundException: Bank account does not belong to the user
            ConflictException: Another withdrawal is still open
        """
        amount = to_money(amount)
        if amount < self.minimum_amount:
            raise ValidationException(
                f"Minimum withdrawal amount is R$ {self.minimum_amount:.2f}",
                details={"amount": str(amount), "minimum": str(self.minimum_amount)},
            )
        if amount > self.maximum_amount:
            raise ValidationException(
                f"Maximum withdrawal amount is R$ {self.maximum_amount:.2f}",
                details={"amount": str(amount), "maximum": str(self.maximum_amount)},
            )
        if self.bank_account_repository.get_owned(bank_account_id, user_id) is None:
            raise NotFoundException(
                "Bank account not found", details={"bank_account_id": bank_account_id}
            )

        try:
            with self.transaction():
                if self.repository.has_open_for_user(user_id):
                    raise ConflictException(
                        "A withdrawal is already in progress", details={"user_id": user_id}
                    )
                if not self.user_repository.debit_balance(user_id, amount):
                    raise ValidationException(
                        "Withdrawal amount exceeds available balance",
                        details={"amount": str(amount)},
                    )
                withdrawal = self.repository.create(
                    user_id=user_id,
                    bank_account_id=bank_account_id,
                    amount=amount,
                    status=WithdrawalStatus.PENDING.value,
                    created_at=self.clock(),
                )
        except IntegrityViolation as exc:
            # The partial unique index caught a concurrent request; the debit was rolled back
            raise ConflictException(
                "A withdrawal is already in progress", details={"user_id": user_id}
            ) from exc

        self.log_operation(
            "request_withdrawal", withdrawal_id=withdrawal.id, user_id=user_id, amount=str(amount)
        )
        return Transition(withdrawal, [events.withdrawal_requested(user_id, amount)])

    # --------------------------------------------------------------- transfer
    @BaseService.measure_operation("submit_transfer")
    def submit_transfer(self, withdrawal_id: str) -> Transition[Withdrawal]:
        """
        Hand a pending withdrawal to the gateway transfer capability.

        A timeout leaves the withdrawal pending for the next attempt. The
        withdrawal id is the idempotency key, so a retry cannot pay twice.
        """
        withdrawal = self.repository.get_by_id(withdrawal_id, load_relationships=False)
        if withdrawal is None:
            raise NotFoundException("Withdrawal not found", details={"withdrawal_id": withdrawal_id})
        if withdrawal.status != WithdrawalStatus.PENDING.value:
            raise InvalidStateException(
                "Only pending withdrawals can be submitted", current_status=withdrawal.status
            )
        account = self.bank_account_repository.get_by_id(
            withdrawal.bank_account_id, load_relationships=False
        )
        if account is None:
            raise NotFoundException(
                "Bank account not found", details={"bank_account_id": withdrawal.bank_account_id}
            )

        try:
            result = self.gateway.create_transfer(
                withdrawal.id, to_minor_units(withdrawal.amount), self._bank_payload(account)
            )
        except GatewayTimeoutError:
            self.logger.warning("Transfer for withdrawal %s timed out; left pending", withdrawal_id)
            return Transition(withdrawal)
        except GatewayError as exc:
            self.logger.error("Transfer for withdrawal %s rejected: %s", withdrawal_id, exc)
            raise PaymentProcessingException(
                "Transfer could not be started. Please retry.",
                retryable=True,
                details={"withdrawal_id": withdrawal_id},
            ) from exc

        with self.transaction():
            withdrawal = self._lock(withdrawal_id)
            withdrawal.transfer_id = result.transaction_id or None
        return self.update_transfer_status(
            withdrawal_id,
            result.status,
            failure_reason="Transfer rejected by gateway" if result.status == "failed" else None,
        )

    @staticmethod
    def _bank_payload(account: BankAccount) -> Dict[str, Any]:
        return {
            "holder_name": account.holder_name,
            "holder_document": account.holder_cpf,
            "bank": account.bank_name,
            "branch_number": account.agency_number,
            "account_number": account.account_number,
            "type": account.account_type,
        }

    def _lock(self, withdrawal_id: str) -> Withdrawal:
        withdrawal = self.repository.get_for_update(withdrawal_id)
        if withdrawal is None:
            raise NotFoundException("Withdrawal not found", details={"withdrawal_id": withdrawal_id})
        return withdrawal

    @BaseService.measure_operation("update_transfer_status")
    def update_transfer_status(
        self,
        withdrawal_id: str,
        status: str,
        failure_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition[Withdrawal]:
        """
        Apply a transfer status reported by the gateway.

        Repeating the current status is a no-op. A terminal status reported
        for a pending withdrawal passes through ``processing``.
        """
        try:
            target = WithdrawalStatus(status)
        except ValueError as exc:
            raise ValidationException(
                "Unknown transfer status", details={"status": status}
            ) from exc
        now = self._now(now)

        with self.transaction():
            withdrawal = self._lock(withdrawal_id)
            current = WithdrawalStatus(withdrawal.status)
            if current == target:
                return Transition(withdrawal)

            if current == WithdrawalStatus.PENDING and target != WithdrawalStatus.PROCESSING:
                current = WithdrawalStatus.PROCESSING
            if target not in WITHDRAWAL_TRANSITIONS[current]:
                raise InvalidStateException(
                    f"Cannot move withdrawal from {withdrawal.status} to {target.value}",
                    current_status=withdrawal.status,
                    details={"withdrawal_id": withdrawal_id},
                )

            withdrawal.status = target.value
            withdrawal.updated_at = now
            transition = Transition(withdrawal)
            if target == WithdrawalStatus.COMPLETED:
                withdrawal.processed_at = now
                transition.notify(events.withdrawal_completed(withdrawal.user_id, withdrawal.amount))
            elif target == WithdrawalStatus.FAILED:
                withdrawal.processed_at = now
                withdrawal.failure_reason = failure_reason or "Transfer failed"
                self.user_repository.credit_balance(withdrawal.user_id, withdrawal.amount)
                transition.notify(events.withdrawal_failed(withdrawal.user_id, withdrawal.amount))

        self.log_operation(
            "update_transfer_status", withdrawal_id=withdrawal_id, status=target.value
        )
        if target == WithdrawalStatus.FAILED:
            self.logger.warning(
                "Withdrawal %s failed; %s credited back to %s",
                withdrawal_id,
                withdrawal.amount,
                withdrawal.user_id,
            )
        return transition

    @BaseService.measure_operation("handle_transfer_event")
    def handle_transfer_event(
        self, event_type: str, data: Dict[str, Any]
    ) -> Transition[Optional[Withdrawal]]:
        """Reconcile a Pagar.me transfer webhook with the local withdrawal."""
        transfer_id = str(data.get("id") or "")
        withdrawal = self.repository.get_by_transfer_id(transfer_id) if transfer_id else None
        if withdrawal is None:
            reference = (data.get("metadata") or {}).get("withdrawal_id")
            if reference:
                withdrawal = self.repository.get_by_id(reference, load_relationships=False)
        if withdrawal is None:
            self.logger.warning(
                "Ignoring %s for unknown transfer %s", event_type, transfer_id or "<none>"
            )
            return Transition(None)

        target = _TRANSFER_EVENTS.get(event_type)
        if target is None:
            target = WithdrawalStatus(normalize_transfer_status(data.get("status")))
        if target == WithdrawalStatus.PENDING:
            return Transition(withdrawal)
        return self.update_transfer_status(
            withdrawal.id,
            target.value,
            failure_reason=data.get("failure_reason") or data.get("status_reason"),
        )

    # ------------------------------------------------------------------ reads
    @BaseService.measure_operation("list_withdrawals")
    def list_withdrawals(
        self, user_id: str, page: int = 1, per_page: int = 20
    ) -> Tuple[List[Withdrawal], int]:
        if page < 1 or per_page < 1 or per_page > 100:
            raise ValidationException("Invalid pagination parameters")
        return self.repository.list_for_user(user_id, page=page, per_page=per_page)

    # ---------------------------------------------------------- bank accounts
    @BaseService.measure_operation("add_bank_account")
    def add_bank_account(self, user_id: str, data: BankAccountCreate) -> BankAccount:
        """Register a payout account. The first account becomes the default."""
        user = self.user_repository.get_by_id(user_id, load_relationships=False)
        if user is None:
            raise NotFoundException("User not found")
        if not user.is_provider:
            raise ForbiddenException("Only providers can register bank accounts")

        try:
            with self.transaction():
                existing = self.bank_account_repository.list_for_user(user_id)
                is_default = data.is_default or not existing
                if is_default and existing:
                    self.bank_account_repository.clear_default(user_id)
                account = self.bank_account_repository.create(
                    user_id=user_id,
                    bank_name=data.bank_name,
                    account_type=data.account_type,
                    account_number=data.account_number,
                    agency_number=data.agency_number,
                    holder_name=data.holder_name,
                    holder_cpf=data.holder_cpf,
                    is_default=is_default,
                    created_at=self.clock(),
                )
        except IntegrityViolation as exc:
            raise ConflictException("Bank account already registered") from exc

        self.log_operation("add_bank_account", bank_account_id=account.id, user_id=user_id)
        return account

    @BaseService.measure_operation("list_bank_accounts")
    def list_bank_accounts(self, user_id: str) -> List[BankAccount]:
        return self.bank_account_repository.list_for_user(user_id)

    @BaseService.measure_operation("delete_bank_account")
    def delete_bank_account(self, bank_account_id: str, user_id: str) -> Optional[BankAccount]:
        """
        Delete a payout account.

        Returns the account promoted to default, if any.

        Raises:
            NotFoundException: Account missing or not the user's
            ConflictException: An open withdrawal references the account
        """
        promoted: Optional[BankAccount] = None
        with self.transaction():
            account = self.bank_account_repository.get_owned(bank_account_id, user_id)
            if account is None:
                raise NotFoundException(
                    "Bank account not found", details={"bank_account_id": bank_account_id}
                )
            if self.repository.has_open_for_bank_account(bank_account_id):
                raise ConflictException(
                    "Bank account has a withdrawal in progress",
                    details={"bank_account_id": bank_account_id},
                )
            was_default = account.is_default
            self.bank_account_repository.delete(bank_account_id)
            if was_default:
                promoted = self.bank_account_repository.oldest_for_user(user_id)
                if promoted is not None:
                    promoted.is_default = True

        self.log_operation(
            "delete_bank_account",
            bank_account_id=bank_account_id,
            promoted_id=promoted.id if promoted else None,
        )
        return promoted
