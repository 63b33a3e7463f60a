"""
TestClient wiring: the app runs against the test session, fake gateway and
recording sink, with every service on the frozen clock.
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from pydantic import SecretStr
import pytest

from marketplace.api.dependencies import (
    get_booking_service,
    get_db,
    get_notification_dispatcher,
    get_payment_gateway,
    get_payment_service,
    get_settlement_scheduler,
    get_withdrawal_service,
)
from marketplace.core.config import settings
from marketplace.main import create_app

from tests.helpers import ADMIN_TOKEN, CRON_TOKEN, WEBHOOK_SECRET


@pytest.fixture
def api(
    db,
    gateway,
    dispatcher,
    booking_service,
    payment_service,
    withdrawal_service,
    scheduler,
):
    app = create_app()
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_booking_service] = lambda: booking_service
    app.dependency_overrides[get_payment_service] = lambda: payment_service
    app.dependency_overrides[get_withdrawal_service] = lambda: withdrawal_service
    app.dependency_overrides[get_settlement_scheduler] = lambda: scheduler
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def privileged_tokens(monkeypatch):
    monkeypatch.setattr(settings, "admin_api_token", SecretStr(ADMIN_TOKEN))
    monkeypatch.setattr(settings, "cron_secret", SecretStr(CRON_TOKEN))
    monkeypatch.setattr(settings, "pagarme_webhook_secret", SecretStr(WEBHOOK_SECRET))
