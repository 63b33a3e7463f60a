# backend/marketplace/routes/webhooks.py
"""
Pagar.me webhook endpoint.

Charge events reconcile payments; transfer events advance withdrawals.
Every delivery must carry a valid ``x-hub-signature-256`` HMAC of the raw
body. Unknown transactions are acknowledged so the gateway stops retrying.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ..api.dependencies import (
    get_notification_dispatcher,
    get_payment_service,
    get_withdrawal_service,
)
from ..core.config import settings
from ..core.exceptions import DomainException
from ..integrations.pagarme_client import verify_webhook_signature
from ..schemas.webhook import WebhookAckResponse
from ..services.notification_service import NotificationDispatcher
from ..services.payment_service import PaymentService
from ..services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _require_signature(body: bytes, signature: Optional[str]) -> None:
    secret = settings.pagarme_webhook_secret
    if secret is None or not secret.get_secret_value():
        logger.error("Pagar.me webhook secret is not configured; rejecting delivery")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook receiver not configured",
        )
    if not verify_webhook_signature(body, signature, secret.get_secret_value()):
        logger.warning("Rejected Pagar.me webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


def _parse_event(body: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook payload"
        ) from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event type")
    return event


@router.post("/pagarme", response_model=WebhookAckResponse)
async def pagarme_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="x-hub-signature-256"),
    payment_service: PaymentService = Depends(get_payment_service),
    withdrawal_service: WithdrawalService = Depends(get_withdrawal_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> WebhookAckResponse:
    body = await request.body()
    _require_signature(body, signature)
    event = _parse_event(body)
    event_type: str = event["type"]
    data = event.get("data") or {}

    if event_type.startswith("charge."):
        handler = payment_service.handle_gateway_event
    elif event_type.startswith("transfer."):
        handler = withdrawal_service.handle_transfer_event
    else:
        logger.debug("Ignoring Pagar.me event %s", event_type)
        return WebhookAckResponse(event=event_type)

    try:
        transition = await asyncio.to_thread(handler, event_type, data)
    except DomainException as exc:
        # State no longer allows the reported change; acknowledge so the gateway stops retrying
        logger.warning(
            "Pagar.me event %s not applied: %s",
            event_type,
            exc.message,
            extra={"event_id": event.get("id"), "code": exc.code},
        )
        return WebhookAckResponse(event=event_type)

    await asyncio.to_thread(dispatcher.dispatch, transition.notifications)
    return WebhookAckResponse(handled=transition.result is not None, event=event_type)
