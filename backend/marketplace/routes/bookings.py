# backend/marketplace/routes/bookings.py
"""
Booking routes.

Endpoints:
    POST /                       → Create a booking (client)
    GET /                        → List the caller's bookings
    GET /{booking_id}            → Get one booking (participant)
    POST /{booking_id}/accept    → Accept a pending booking (provider)
    POST /{booking_id}/decline   → Decline a pending booking (provider)
    POST /{booking_id}/status    → Complete or cancel an active booking

All business logic delegated to BookingService. Notifications are sent
after the service has committed.
"""

import asyncio
import logging
from typing import Literal, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from ..api.dependencies import (
    get_booking_service,
    get_current_user,
    get_notification_dispatcher,
)
from ..core.exceptions import DomainException
from ..events.notification_events import Transition
from ..models.booking import Booking
from ..models.user import User
from ..schemas.base_responses import PaginatedResponse
from ..schemas.booking import BookingCreate, BookingDecline, BookingResponse, BookingStatusUpdate
from ..services.booking_service import BookingService
from ..services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


async def _respond(
    transition: Transition[Booking], dispatcher: NotificationDispatcher
) -> BookingResponse:
    await asyncio.to_thread(dispatcher.dispatch, transition.notifications)
    return BookingResponse.model_validate(transition.result)


@router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"description": "Service not found"},
        409: {"description": "Service inactive or fully booked for the day"},
        422: {"description": "Cannot book your own service"},
    },
)
async def create_booking(
    booking_data: BookingCreate = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> BookingResponse:
    """Create a pending booking and its pending payment."""
    try:
        transition = await asyncio.to_thread(
            booking_service.create_booking, current_user.id, booking_data
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("", response_model=PaginatedResponse[BookingResponse])
async def list_bookings(
    role: Literal["client", "provider"] = Query("client"),
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> PaginatedResponse[BookingResponse]:
    """List the caller's bookings as client or provider, newest first."""
    try:
        items, total = await asyncio.to_thread(
            booking_service.list_bookings,
            current_user.id,
            role=role,
            status=status_filter,
            page=page,
            per_page=per_page,
        )
        return PaginatedResponse[BookingResponse].build(
            [BookingResponse.model_validate(item) for item in items], total, page, per_page
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(booking_service.get_booking, booking_id, current_user.id)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> BookingResponse:
    try:
        transition = await asyncio.to_thread(
            booking_service.accept_booking, booking_id, current_user.id
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: Optional[BookingDecline] = Body(None),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> BookingResponse:
    try:
        transition = await asyncio.to_thread(
            booking_service.decline_booking,
            booking_id,
            current_user.id,
            payload.reason if payload else None,
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/status",
    response_model=BookingResponse,
    responses={
        409: {"description": "Transition not allowed from the current status"},
        502: {"description": "Refund could not be completed at the gateway"},
    },
)
async def update_booking_status(
    payload: BookingStatusUpdate,
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> BookingResponse:
    """Complete (provider) or cancel (either party) an active booking."""
    try:
        transition = await asyncio.to_thread(
            booking_service.update_status,
            booking_id,
            current_user.id,
            payload.status,
            payload.reason,
        )
        return await _respond(transition, dispatcher)
    except DomainException as e:
        handle_domain_exception(e)
