# backend/marketplace/routes/payments.py
"""
Payment routes.

Endpoints:
    POST /process                  → Capture payment for a pending booking (client)
    GET /earnings                  → Provider earnings summary
    GET /earnings/history          → Provider's captured payments, filterable by escrow state
    GET /earnings/pending-releases → Held payments of completed bookings with release dates
    GET /escrow/stats              → Platform-wide escrow totals (admin)
    GET /{payment_id}/status       → Payment status, reconciled with the gateway
    POST /{payment_id}/refund      → Refund a cancelled booking's payment (client)
    POST /{payment_id}/dispute     → Freeze escrow pending manual resolution
    POST /{payment_id}/release     → Release escrow to the provider (admin)
"""

import asyncio
import logging
from typing import Literal, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from ..api.dependencies import (
    get_current_user,
    get_notification_dispatcher,
    get_payment_service,
    require_admin,
)
from ..core.enums import SYSTEM_ACTOR
from ..core.exceptions import DomainException
from ..events.notification_events import Transition
from ..models.payment import Payment
from ..models.user import User
from ..schemas.base_responses import PaginatedResponse
from ..schemas.payment import (
    DisputeRequest,
    EarningsHistoryItem,
    EarningsResponse,
    EscrowStatsResponse,
    PaymentProcessRequest,
    PaymentResponse,
    PendingReleasesResponse,
    RefundRequest,
)
from ..services.notification_service import NotificationDispatcher
from ..services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


async def _respond(
    transition: Transition[Payment], dispatcher: NotificationDispatcher
) -> PaymentResponse:
    await asyncio.to_thread(dispatcher.dispatch, transition.notifications)
    return PaymentResponse.model_validate(transition.result)


@router.post(
    "/process",
    response_model=PaymentResponse,
    responses={
        409: {"description": "Booking or payment not in a payable state"},
        502: {"description": "Payment failed at the gateway"},
    },
)
async def process_payment(
    payload: PaymentProcessRequest = Body(...),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentResponse:
    """
    Capture payment for a booking by card, PIX or boleto.

    PIX and boleto return pending payments carrying the code or barcode the
    client needs; settlement is reported later by webhook or status polling.
    """
    try:
        transition = await asyncio.to_thread(
            payment_service.process_payment, current_user.id, payload
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/earnings", response_model=EarningsResponse)
async def get_earnings(
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> EarningsResponse:
    try:
        earnings = await asyncio.to_thread(payment_service.get_provider_earnings, current_user.id)
        return EarningsResponse.model_validate(earnings)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/earnings/history", response_model=PaginatedResponse[EarningsHistoryItem])
async def get_earnings_history(
    status_filter: Optional[Literal["pending", "released", "disputed"]] = Query(
        None, alias="status"
    ),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> PaginatedResponse[EarningsHistoryItem]:
    """List the provider's captured payments, newest first."""
    try:
        items, total = await asyncio.to_thread(
            lambda: payment_service.get_earnings_history(
                current_user.id, bucket=status_filter, page=page, per_page=per_page
            )
        )
        return PaginatedResponse[EarningsHistoryItem].build(
            [EarningsHistoryItem.from_payment(item) for item in items], total, page, per_page
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/earnings/pending-releases", response_model=PendingReleasesResponse)
async def get_pending_releases(
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> PendingReleasesResponse:
    try:
        result = await asyncio.to_thread(payment_service.get_pending_releases, current_user.id)
        return PendingReleasesResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.get(
    "/escrow/stats",
    response_model=EscrowStatsResponse,
    dependencies=[Depends(require_admin)],
)
async def get_escrow_stats(
    payment_service: PaymentService = Depends(get_payment_service),
) -> EscrowStatsResponse:
    try:
        stats = await asyncio.to_thread(payment_service.get_escrow_stats)
        return EscrowStatsResponse.model_validate(stats)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{payment_id}/status", response_model=PaymentResponse)
async def get_payment_status(
    payment_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentResponse:
    try:
        transition = await asyncio.to_thread(
            payment_service.check_status, payment_id, current_user.id
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    responses={
        422: {"description": "Cancellation too late for a refund"},
        502: {"description": "Gateway refund failed; retry later"},
    },
)
async def request_refund(
    payload: RefundRequest,
    payment_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentResponse:
    try:
        transition = await asyncio.to_thread(
            payment_service.request_refund, payment_id, current_user.id, payload.reason
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{payment_id}/dispute", response_model=PaymentResponse)
async def dispute_payment(
    payload: DisputeRequest,
    payment_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentResponse:
    """Hold the escrow while a booking participant's dispute is reviewed."""
    try:
        transition = await asyncio.to_thread(
            payment_service.freeze_for_dispute, payment_id, current_user.id, payload.reason
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{payment_id}/release",
    response_model=PaymentResponse,
    dependencies=[Depends(require_admin)],
)
async def release_payment(
    payment_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payment_service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentResponse:
    """Release matured escrow to the provider outside the daily run."""
    try:
        logger.info("Admin escrow release requested", extra={"payment_id": payment_id})
        transition = await asyncio.to_thread(payment_service.release_funds, payment_id)
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{payment_id}/admin-dispute",
    response_model=PaymentResponse,
    dependencies=[Depends(require_admin)],
)
async def admin_dispute_payment(
    payload: DisputeRequest,
    payment_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payment_service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> PaymentResponse:
    """Freeze escrow on behalf of the platform."""
    try:
        transition = await asyncio.to_thread(
            lambda: payment_service.freeze_for_dispute(
                payment_id, SYSTEM_ACTOR, payload.reason, actor_is_admin=True
            )
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)
