"""
Pytest configuration and fixtures for Property Unlock tests
"""

import pytest
from datetime import datetime, timedelta, UTC
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from src.database.models import Base, PaymentStatus, Property, User
from src.services.deal_code_ledger import DealCodeLedger
from src.services.exchange_rate_service import ExchangeRate
from src.services.payment_gateways import (
    GatewayDispatch,
    GatewayRegistry,
    GatewayReferenceUnknown,
    PawaPayGateway,
    XentriPayGateway,
)
from src.services.unlock_orchestrator import UnlockOrchestrator


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_RATE = Decimal("1300")


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


# ===========================
# TIME
# ===========================


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


# ===========================
# ENTITIES
# ===========================


@pytest.fixture
async def host(db_session) -> User:
    user = User(
        email="host@example.com",
        first_name="Grace",
        last_name="Uwase",
        phone="+250788000111",
        profile_image="https://cdn.example.com/host.jpg",
        preferred_contact_method="whatsapp",
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def guest(db_session) -> User:
    user = User(email="guest@example.com", first_name="Eric", last_name="Mugisha", phone="0788123123")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def other_guest(db_session) -> User:
    user = User(email="other@example.com", first_name="Aline", last_name="Ingabire")
    db_session.add(user)
    await db_session.commit()
    return user


async def _property(session, host: User, **kwargs) -> Property:
    values = dict(
        name="Kacyiru Garden Apartment",
        location="Kacyiru, Kigali",
        full_address="KG 7 Ave 12, Kacyiru, Kigali",
        latitude=-1.9355,
        longitude=30.0830,
        price_per_month=Decimal("250"),
        host_id=host.id,
    )
    values.update(kwargs)
    property_ = Property(**values)
    session.add(property_)
    await session.commit()
    return property_


@pytest.fixture
async def monthly_property(db_session, host) -> Property:
    """$250/month: below the fee tier threshold"""
    return await _property(db_session, host)


@pytest.fixture
async def premium_property(db_session, host) -> Property:
    """$500/month: at or above the fee tier threshold"""
    return await _property(
        db_session, host, name="Nyarutarama Villa", full_address="KG 9 Ave 3, Nyarutarama",
        price_per_month=Decimal("500"),
    )


@pytest.fixture
async def nightly_property(db_session, host) -> Property:
    return await _property(
        db_session, host, name="Lake Kivu Cabin", price_per_month=None, price_per_night=Decimal("60"),
    )


# ===========================
# COLLABORATORS
# ===========================


class StaticRateProvider:
    def __init__(self, rate: Decimal = TEST_RATE, source: str = "live"):
        self.rate = rate
        self.source = source
        self.calls = 0

    async def get_rate(self, base: str = "USD", quote: str = "RWF") -> ExchangeRate:
        self.calls += 1
        return ExchangeRate(
            base=base, quote=quote, rate=self.rate, as_of=datetime.now(UTC), source=self.source
        )


class GatewayScript:
    """What a fake gateway answers: a dispatch result or an error, and a polled status"""

    def __init__(self):
        self.dispatch_error: Optional[Exception] = None
        self.dispatch_result: Optional[GatewayDispatch] = None
        self.polled_status: Optional[PaymentStatus] = None
        self.poll_error: Optional[Exception] = None
        self.charges: List = []
        self.polls: List[str] = []


class FakePawaPay(PawaPayGateway):
    def __init__(self):
        super().__init__(api_url="https://pawapay.test", api_token="test-token")
        self.script = GatewayScript()

    async def dispatch(self, charge):
        self.script.charges.append(charge)
        if self.script.dispatch_error:
            raise self.script.dispatch_error
        return self.script.dispatch_result or GatewayDispatch(
            status=PaymentStatus.SUBMITTED, provider_reference=charge.reference
        )

    async def fetch_status(self, reference):
        self.script.polls.append(reference)
        if self.script.poll_error:
            raise self.script.poll_error
        return self.script.polled_status


class FakeXentriPay(XentriPayGateway):
    def __init__(self):
        super().__init__(base_url="https://xentripay.test", api_key="test-key")
        self.script = GatewayScript()

    async def dispatch(self, charge):
        self.script.charges.append(charge)
        if self.script.dispatch_error:
            raise self.script.dispatch_error
        return self.script.dispatch_result or GatewayDispatch(
            status=PaymentStatus.PENDING,
            provider_reference=f"XP-{len(self.script.charges)}",
            payment_url="https://xentripay.test/pay/abc",
        )

    async def fetch_status(self, reference):
        self.script.polls.append(reference)
        if self.script.poll_error:
            raise self.script.poll_error
        if self.script.polled_status is None:
            raise GatewayReferenceUnknown(reference)
        return self.script.polled_status


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.completed = []
        self.cancelled = []
        self.bookings = []

    async def notify_unlock_completed(self, unlock, property_, guest):
        self.completed.append(unlock.unlock_id)
        if self.fail:
            raise RuntimeError("mail provider down")
        return True

    async def notify_unlock_cancelled(self, unlock, property_, guest, host, refund_amount, deal_code):
        self.cancelled.append((unlock.unlock_id, refund_amount, deal_code.code if deal_code else None))
        if self.fail:
            raise RuntimeError("mail provider down")
        return True

    async def notify_booking_created(self, booking, property_, guest, payment_url):
        self.bookings.append((booking.id, payment_url))
        if self.fail:
            raise RuntimeError("mail provider down")
        return True


@pytest.fixture
def rate_provider() -> StaticRateProvider:
    return StaticRateProvider()


@pytest.fixture
def momo_gateway() -> FakePawaPay:
    return FakePawaPay()


@pytest.fixture
def card_gateway() -> FakeXentriPay:
    return FakeXentriPay()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


@pytest.fixture
def ledger(clock) -> DealCodeLedger:
    return DealCodeLedger(clock=clock)


@pytest.fixture
def orchestrator(rate_provider, momo_gateway, card_gateway, ledger, notifier, clock) -> UnlockOrchestrator:
    return UnlockOrchestrator(
        rate_provider=rate_provider,
        gateways=GatewayRegistry.of(momo_gateway, card_gateway),
        ledger=ledger,
        notifier=notifier,
        frontend_url="https://jambolush.test",
        currency="RWF",
        clock=clock,
    )
