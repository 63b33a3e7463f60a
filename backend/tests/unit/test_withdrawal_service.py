from __future__ import annotations

from decimal import Decimal

import pytest

from marketplace.core.enums import NotificationType, WithdrawalStatus
from marketplace.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    PaymentProcessingException,
    ValidationException,
)
from marketplace.integrations.pagarme_client import GatewayError, GatewayTimeoutError
from marketplace.schemas.withdrawal import BankAccountCreate

from tests.helpers import UNKNOWN_ID


@pytest.fixture
def funded_provider(user_factory):
    return user_factory(provider=True, balance=Decimal("500.00"))


@pytest.fixture
def account(bank_account_factory, funded_provider):
    return bank_account_factory(funded_provider)


def _balance(db, user) -> Decimal:
    db.refresh(user)
    return user.account_balance


def _account_data(**overrides) -> BankAccountCreate:
    payload = {
        "bank_name": "Itau",
        "account_type": "checking",
        "account_number": "98765-4",
        "agency_number": "0420",
        "holder_name": "Maria Lima",
        "holder_cpf": "98765432100",
    }
    payload.update(overrides)
    return BankAccountCreate(**payload)


class TestRequestWithdrawal:
    def test_request_debits_balance(self, db, withdrawal_service, funded_provider, account) -> None:
        transition = withdrawal_service.request_withdrawal(
            funded_provider.id, Decimal("150.00"), account.id
        )

        withdrawal = transition.result
        assert withdrawal.status == WithdrawalStatus.PENDING.value
        assert withdrawal.amount == Decimal("150.00")
        assert _balance(db, funded_provider) == Decimal("350.00")
        assert [n.type for n in transition.notifications] == [
            NotificationType.WITHDRAWAL_REQUESTED
        ]

    @pytest.mark.parametrize("amount", [Decimal("9.99"), Decimal("10000.01")])
    def test_amount_bounds(self, db, withdrawal_service, funded_provider, account, amount) -> None:
        with pytest.raises(ValidationException):
            withdrawal_service.request_withdrawal(funded_provider.id, amount, account.id)
        assert _balance(db, funded_provider) == Decimal("500.00")

    def test_amount_above_balance(self, db, withdrawal_service, funded_provider, account) -> None:
        with pytest.raises(ValidationException):
            withdrawal_service.request_withdrawal(funded_provider.id, Decimal("500.01"), account.id)
        assert _balance(db, funded_provider) == Decimal("500.00")

    def test_whole_balance_can_be_withdrawn(
        self, db, withdrawal_service, funded_provider, account
    ) -> None:
        withdrawal_service.request_withdrawal(funded_provider.id, Decimal("500.00"), account.id)
        assert _balance(db, funded_provider) == Decimal("0.00")

    def test_foreign_bank_account(
        self, withdrawal_service, funded_provider, bank_account_factory, user_factory
    ) -> None:
        other = bank_account_factory(user_factory(provider=True))
        with pytest.raises(NotFoundException):
            withdrawal_service.request_withdrawal(funded_provider.id, Decimal("50.00"), other.id)

    def test_one_open_withdrawal_per_user(
        self, db, withdrawal_service, funded_provider, account
    ) -> None:
        withdrawal_service.request_withdrawal(funded_provider.id, Decimal("100.00"), account.id)

        with pytest.raises(ConflictException):
            withdrawal_service.request_withdrawal(funded_provider.id, Decimal("100.00"), account.id)
        assert _balance(db, funded_provider) == Decimal("400.00")

    def test_new_request_allowed_after_completion(
        self, db, withdrawal_service, funded_provider, account
    ) -> None:
        first = withdrawal_service.request_withdrawal(
            funded_provider.id, Decimal("100.00"), account.id
        ).result
        withdrawal_service.update_transfer_status(first.id, "completed")

        second = withdrawal_service.request_withdrawal(
            funded_provider.id, Decimal("100.00"), account.id
        ).result

        assert second.status == WithdrawalStatus.PENDING.value
        assert _balance(db, funded_provider) == Decimal("300.00")


class TestTransfers:
    @pytest.fixture
    def withdrawal(self, withdrawal_service, funded_provider, account):
        return withdrawal_service.request_withdrawal(
            funded_provider.id, Decimal("200.00"), account.id
        ).result

    def test_submit_moves_to_processing(self, withdrawal_service, withdrawal, gateway) -> None:
        transition = withdrawal_service.submit_transfer(withdrawal.id)

        assert transition.result.status == WithdrawalStatus.PROCESSING.value
        assert transition.result.transfer_id.startswith("tr_fake_")
        call = gateway.calls_for("create_transfer")[0]
        assert call == {"reference": withdrawal.id, "amount_minor": 20000}

    def test_submit_timeout_leaves_pending(self, withdrawal_service, withdrawal, gateway) -> None:
        gateway.fail_with["create_transfer"] = GatewayTimeoutError("timed out")

        transition = withdrawal_service.submit_transfer(withdrawal.id)

        assert transition.result.status == WithdrawalStatus.PENDING.value
        assert transition.notifications == []

    def test_submit_rejected_is_retryable(self, withdrawal_service, withdrawal, gateway) -> None:
        gateway.fail_with["create_transfer"] = GatewayError("bad account", status_code=422)

        with pytest.raises(PaymentProcessingException) as exc_info:
            withdrawal_service.submit_transfer(withdrawal.id)
        assert exc_info.value.retryable is True

    def test_submit_requires_pending(self, withdrawal_service, withdrawal) -> None:
        withdrawal_service.submit_transfer(withdrawal.id)
        with pytest.raises(InvalidStateException):
            withdrawal_service.submit_transfer(withdrawal.id)

    def test_completed(self, db, withdrawal_service, withdrawal, funded_provider) -> None:
        withdrawal_service.submit_transfer(withdrawal.id)

        transition = withdrawal_service.update_transfer_status(withdrawal.id, "completed")

        assert transition.result.status == WithdrawalStatus.COMPLETED.value
        assert transition.result.processed_at is not None
        assert [n.type for n in transition.notifications] == [
            NotificationType.WITHDRAWAL_COMPLETED
        ]
        assert _balance(db, funded_provider) == Decimal("300.00")

    def test_failed_credits_back_once(
        self, db, withdrawal_service, withdrawal, funded_provider
    ) -> None:
        withdrawal_service.submit_transfer(withdrawal.id)

        failed = withdrawal_service.update_transfer_status(
            withdrawal.id, "failed", failure_reason="Account closed"
        )
        repeated = withdrawal_service.update_transfer_status(withdrawal.id, "failed")

        assert failed.result.status == WithdrawalStatus.FAILED.value
        assert failed.result.failure_reason == "Account closed"
        assert [n.type for n in failed.notifications] == [NotificationType.WITHDRAWAL_FAILED]
        assert repeated.notifications == []
        assert _balance(db, funded_provider) == Decimal("500.00")

    def test_pending_can_complete_directly(self, withdrawal_service, withdrawal) -> None:
        transition = withdrawal_service.update_transfer_status(withdrawal.id, "completed")
        assert transition.result.status == WithdrawalStatus.COMPLETED.value

    def test_completed_cannot_fail(self, db, withdrawal_service, withdrawal, funded_provider) -> None:
        withdrawal_service.update_transfer_status(withdrawal.id, "completed")

        with pytest.raises(InvalidStateException):
            withdrawal_service.update_transfer_status(withdrawal.id, "failed")
        assert _balance(db, funded_provider) == Decimal("300.00")

    def test_unknown_status(self, withdrawal_service, withdrawal) -> None:
        with pytest.raises(ValidationException):
            withdrawal_service.update_transfer_status(withdrawal.id, "lost")

    def test_transfer_event_by_transfer_id(self, withdrawal_service, withdrawal) -> None:
        submitted = withdrawal_service.submit_transfer(withdrawal.id).result

        transition = withdrawal_service.handle_transfer_event(
            "transfer.paid", {"id": submitted.transfer_id}
        )

        assert transition.result.status == WithdrawalStatus.COMPLETED.value

    def test_transfer_event_by_metadata(
        self, db, withdrawal_service, withdrawal, funded_provider
    ) -> None:
        transition = withdrawal_service.handle_transfer_event(
            "transfer.failed",
            {"id": "tr_unrecorded", "metadata": {"withdrawal_id": withdrawal.id}},
        )

        assert transition.result.status == WithdrawalStatus.FAILED.value
        assert _balance(db, funded_provider) == Decimal("500.00")

    def test_transfer_event_for_unknown_withdrawal(self, withdrawal_service) -> None:
        transition = withdrawal_service.handle_transfer_event("transfer.paid", {"id": "tr_nope"})
        assert transition.result is None

    def test_list_withdrawals(self, withdrawal_service, withdrawal, funded_provider) -> None:
        items, total = withdrawal_service.list_withdrawals(funded_provider.id)
        assert total == 1
        assert [w.id for w in items] == [withdrawal.id]

    def test_list_rejects_bad_pagination(self, withdrawal_service, funded_provider) -> None:
        with pytest.raises(ValidationException):
            withdrawal_service.list_withdrawals(funded_provider.id, page=0)


class TestBankAccounts:
    def test_first_account_becomes_default(self, withdrawal_service, provider) -> None:
        account = withdrawal_service.add_bank_account(provider.id, _account_data())
        assert account.is_default is True

    def test_new_default_replaces_old(self, db, withdrawal_service, provider) -> None:
        first = withdrawal_service.add_bank_account(provider.id, _account_data())
        second = withdrawal_service.add_bank_account(
            provider.id, _account_data(account_number="11111-1", is_default=True)
        )

        db.refresh(first)
        assert first.is_default is False
        assert second.is_default is True
        assert withdrawal_service.list_bank_accounts(provider.id)[0].id == second.id

    def test_duplicate_account_conflicts(self, withdrawal_service, provider) -> None:
        withdrawal_service.add_bank_account(provider.id, _account_data())
        with pytest.raises(ConflictException):
            withdrawal_service.add_bank_account(provider.id, _account_data())

    def test_clients_cannot_register_accounts(self, withdrawal_service, client) -> None:
        with pytest.raises(ForbiddenException):
            withdrawal_service.add_bank_account(client.id, _account_data())

    def test_deleting_default_promotes_oldest(
        self, withdrawal_service, provider, bank_account_factory
    ) -> None:
        default = bank_account_factory(provider)
        oldest = bank_account_factory(provider, is_default=False)
        bank_account_factory(provider, is_default=False)

        promoted = withdrawal_service.delete_bank_account(default.id, provider.id)

        assert promoted.id == oldest.id
        assert promoted.is_default is True
        assert len(withdrawal_service.list_bank_accounts(provider.id)) == 2

    def test_deleting_non_default_promotes_nothing(
        self, withdrawal_service, provider, bank_account_factory
    ) -> None:
        bank_account_factory(provider)
        other = bank_account_factory(provider, is_default=False)

        assert withdrawal_service.delete_bank_account(other.id, provider.id) is None

    def test_account_with_open_withdrawal_cannot_be_deleted(
        self, withdrawal_service, funded_provider, account
    ) -> None:
        withdrawal_service.request_withdrawal(funded_provider.id, Decimal("50.00"), account.id)
        with pytest.raises(ConflictException):
            withdrawal_service.delete_bank_account(account.id, funded_provider.id)

    def test_foreign_account_is_not_found(self, withdrawal_service, account, provider) -> None:
        with pytest.raises(NotFoundException):
            withdrawal_service.delete_bank_account(account.id, provider.id)

    def test_unknown_account(self, withdrawal_service, provider) -> None:
        with pytest.raises(NotFoundException):
            withdrawal_service.delete_bank_account(UNKNOWN_ID, provider.id)
