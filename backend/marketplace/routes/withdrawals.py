# backend/marketplace/routes/withdrawals.py
"""
Withdrawal and bank account routes.

Endpoints:
    POST /                              → Request a withdrawal (provider)
    GET /                               → List withdrawals, newest first
    POST /bank-accounts                 → Register a payout account
    GET /bank-accounts                  → List payout accounts, default first
    DELETE /bank-accounts/{account_id}  → Remove a payout account
    POST /{withdrawal_id}/submit        → Start the gateway transfer (admin)
    POST /{withdrawal_id}/status        → Record a transfer status (admin)
"""

import asyncio
import logging
from typing import List, NoReturn

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from ..api.dependencies import (
    get_current_user,
    get_notification_dispatcher,
    get_withdrawal_service,
    require_admin,
)
from ..core.exceptions import DomainException
from ..events.notification_events import Transition
from ..models.user import User
from ..models.withdrawal import Withdrawal
from ..schemas.base_responses import DeleteResponse, PaginatedResponse
from ..schemas.withdrawal import (
    BankAccountCreate,
    BankAccountResponse,
    TransferStatusUpdate,
    WithdrawalCreate,
    WithdrawalResponse,
)
from ..services.notification_service import NotificationDispatcher
from ..services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["withdrawals"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


async def _respond(
    transition: Transition[Withdrawal], dispatcher: NotificationDispatcher
) -> WithdrawalResponse:
    await asyncio.to_thread(dispatcher.dispatch, transition.notifications)
    return WithdrawalResponse.model_validate(transition.result)


# =============================================================================
# Static routes first (before dynamic routes with path parameters)
# =============================================================================


@router.post(
    "",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Amount out of bounds or above balance"},
        409: {"description": "Another withdrawal is in progress"},
    },
)
async def request_withdrawal(
    payload: WithdrawalCreate = Body(...),
    current_user: User = Depends(get_current_user),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> WithdrawalResponse:
    try:
        transition = await asyncio.to_thread(
            withdrawal_service.request_withdrawal,
            current_user.id,
            payload.amount,
            payload.bank_account_id,
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("", response_model=PaginatedResponse[WithdrawalResponse])
async def list_withdrawals(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
) -> PaginatedResponse[WithdrawalResponse]:
    try:
        items, total = await asyncio.to_thread(
            withdrawal_service.list_withdrawals, current_user.id, page, per_page
        )
        return PaginatedResponse[WithdrawalResponse].build(
            [WithdrawalResponse.model_validate(item) for item in items], total, page, per_page
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/bank-accounts",
    response_model=BankAccountResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_bank_account(
    payload: BankAccountCreate = Body(...),
    current_user: User = Depends(get_current_user),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
) -> BankAccountResponse:
    try:
        account = await asyncio.to_thread(
            withdrawal_service.add_bank_account, current_user.id, payload
        )
        return BankAccountResponse.model_validate(account)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/bank-accounts", response_model=List[BankAccountResponse])
async def list_bank_accounts(
    current_user: User = Depends(get_current_user),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
) -> List[BankAccountResponse]:
    try:
        accounts = await asyncio.to_thread(withdrawal_service.list_bank_accounts, current_user.id)
        return [BankAccountResponse.model_validate(account) for account in accounts]
    except DomainException as e:
        handle_domain_exception(e)


@router.delete("/bank-accounts/{account_id}", response_model=DeleteResponse)
async def delete_bank_account(
    account_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    current_user: User = Depends(get_current_user),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
) -> DeleteResponse:
    try:
        promoted = await asyncio.to_thread(
            withdrawal_service.delete_bank_account, account_id, current_user.id
        )
        message = "Bank account deleted"
        if promoted is not None:
            message = f"Bank account deleted; {promoted.id} is now the default"
        return DeleteResponse(message=message)
    except DomainException as e:
        handle_domain_exception(e)


# =============================================================================
# Admin transfer controls
# =============================================================================


@router.post(
    "/{withdrawal_id}/submit",
    response_model=WithdrawalResponse,
    dependencies=[Depends(require_admin)],
)
async def submit_transfer(
    withdrawal_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> WithdrawalResponse:
    try:
        transition = await asyncio.to_thread(withdrawal_service.submit_transfer, withdrawal_id)
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{withdrawal_id}/status",
    response_model=WithdrawalResponse,
    dependencies=[Depends(require_admin)],
)
async def update_transfer_status(
    payload: TransferStatusUpdate,
    withdrawal_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> WithdrawalResponse:
    try:
        transition = await asyncio.to_thread(
            withdrawal_service.update_transfer_status,
            withdrawal_id,
            payload.status,
            payload.failure_reason,
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)
