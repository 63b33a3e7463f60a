# backend/tests/conftest.py
"""
Shared fixtures for the marketplace test suite.

Every test gets a fresh in-memory SQLite database, a FakePaymentGateway and
a recording notification sink. Time is frozen at ``NOW`` and passed to the
services explicitly, so nothing here depends on the wall clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import os
from typing import Any, Callable, Optional

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("USE_FAKE_GATEWAY", "true")

import pytest  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from marketplace.core.enums import PriceType, ServiceStatus  # noqa: E402
from marketplace.database import Base, build_engine  # noqa: E402
from marketplace.integrations.pagarme_client import FakePaymentGateway  # noqa: E402
import marketplace.models  # noqa: E402,F401
from marketplace.models.service import Service  # noqa: E402
from marketplace.models.user import User  # noqa: E402
from marketplace.models.withdrawal import BankAccount  # noqa: E402
from marketplace.schemas.booking import BookingCreate  # noqa: E402
from marketplace.services.booking_service import BookingService  # noqa: E402
from marketplace.services.notification_service import NotificationDispatcher  # noqa: E402
from marketplace.services.payment_service import PaymentService  # noqa: E402
from marketplace.services.settlement_scheduler import SettlementScheduler  # noqa: E402
from marketplace.services.withdrawal_service import WithdrawalService  # noqa: E402
from tests.helpers import RecordingSink, card_payment  # noqa: E402

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def engine():
    test_engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db(engine) -> Session:
    TestingSessionLocal = sessionmaker(
        autocommit=False, autoflush=False, bind=engine, expire_on_commit=False
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(sink: RecordingSink) -> NotificationDispatcher:
    return NotificationDispatcher(sink)


@pytest.fixture
def clock(now: datetime) -> Callable[[], datetime]:
    return lambda: now


@pytest.fixture
def booking_service(db: Session, gateway: FakePaymentGateway, clock) -> BookingService:
    return BookingService(db, gateway, fee_rate=Decimal("0.10"), escrow_hold_days=15, clock=clock)


@pytest.fixture
def payment_service(db: Session, gateway: FakePaymentGateway, clock) -> PaymentService:
    return PaymentService(db, gateway, escrow_hold_days=15, dispute_hold_days=30, clock=clock)


@pytest.fixture
def withdrawal_service(db: Session, gateway: FakePaymentGateway, clock) -> WithdrawalService:
    return WithdrawalService(
        db,
        gateway,
        minimum_amount=Decimal("10.00"),
        maximum_amount=Decimal("10000.00"),
        clock=clock,
    )


@pytest.fixture
def scheduler(
    db: Session, gateway: FakePaymentGateway, dispatcher: NotificationDispatcher, clock
) -> SettlementScheduler:
    return SettlementScheduler(db, gateway, dispatcher, clock=clock)


@pytest.fixture
def user_factory(db: Session) -> Callable[..., User]:
    counter = {"n": 0}

    def _create(
        *, provider: bool = False, balance: Decimal = Decimal("0.00"), name: Optional[str] = None
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=f"user{n}@example.com",
            name=name or ("Provider" if provider else "Client") + f" {n}",
            is_provider=provider,
            account_balance=balance,
        )
        db.add(user)
        db.commit()
        return user

    return _create


@pytest.fixture
def service_factory(db: Session) -> Callable[..., Service]:
    def _create(
        provider: User,
        *,
        price: Decimal = Decimal("200.00"),
        price_type: str = PriceType.FIXED.value,
        max_bookings: Optional[int] = None,
        status: str = ServiceStatus.ACTIVE.value,
        title: str = "Deep cleaning",
    ) -> Service:
        service = Service(
            provider_id=provider.id,
            title=title,
            price=price,
            price_type=price_type,
            max_bookings=max_bookings,
            status=status,
        )
        db.add(service)
        db.commit()
        return service

    return _create


@pytest.fixture
def bank_account_factory(db: Session) -> Callable[..., BankAccount]:
    counter = {"n": 0}

    def _create(user: User, *, is_default: bool = True, **overrides: Any) -> BankAccount:
        counter["n"] += 1
        account = BankAccount(
            user_id=user.id,
            bank_name=overrides.get("bank_name", "Banco do Brasil"),
            account_type=overrides.get("account_type", "checking"),
            account_number=overrides.get("account_number", f"12345-{counter['n']}"),
            agency_number=overrides.get("agency_number", "0001"),
            holder_name=overrides.get("holder_name", user.name),
            holder_cpf=overrides.get("holder_cpf", "12345678901"),
            is_default=is_default,
            created_at=overrides.get("created_at", NOW + timedelta(seconds=counter["n"])),
        )
        db.add(account)
        db.commit()
        return account

    return _create


@pytest.fixture
def provider(user_factory) -> User:
    return user_factory(provider=True)


@pytest.fixture
def client(user_factory) -> User:
    return user_factory()


@pytest.fixture
def service(service_factory, provider: User) -> Service:
    return service_factory(provider)


@pytest.fixture
def make_booking(booking_service: BookingService, service: Service, client: User, now: datetime):
    """Create a pending booking starting ``starts_in`` after NOW."""

    def _create(
        *,
        starts_in: timedelta = timedelta(days=3),
        for_service: Optional[Service] = None,
        for_client: Optional[User] = None,
        created_at: Optional[datetime] = None,
    ):
        target = for_service or service
        booker = for_client or client
        return booking_service.create_booking(
            booker.id,
            BookingCreate(service_id=target.id, booking_date=now + starts_in),
            now=created_at or now,
        ).result

    return _create


@pytest.fixture
def paid_accepted_booking(
    make_booking, booking_service: BookingService, payment_service: PaymentService, client, provider
):
    """Booking that has been paid by card and accepted by the provider."""

    def _create(*, starts_in: timedelta = timedelta(days=3)):
        booking = make_booking(starts_in=starts_in)
        payment_service.process_payment(client.id, card_payment(booking.id))
        booking_service.accept_booking(booking.id, provider.id)
        return booking

    return _create


@pytest.fixture
def completed_booking(paid_accepted_booking, booking_service: BookingService, provider, now):
    """Paid booking completed at NOW; escrow matures at NOW + 15 days."""

    def _create():
        booking = paid_accepted_booking()
        booking_service.update_status(booking.id, provider.id, "completed", now=now)
        return booking

    return _create
