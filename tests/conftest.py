"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A controllable clock
- Fake Redis
- Test data factories (users with funded wallets, parkings, services, bookings)
"""
import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import Response
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from parkwash.api.dependencies.clock import get_clock
from parkwash.core.config import settings
from parkwash.db.database import Base, get_db, atomic
from parkwash.db.models.user import User, UserRole
from parkwash.db.models.parking import Parking, Slot
from parkwash.db.models.parking_booking import ParkingBooking, ParkingBookingStatus
from parkwash.db.models.service_order import Service, ServiceOrder, ServiceOrderStatus
from parkwash.db.models.wallet_transaction import WalletTransaction, TransactionType, TransactionStatus
from parkwash.domain.services.wallet_service import WalletLedger
from parkwash.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# 2025-04-10 10:00 UTC; every test starts here unless it moves the clock
T0 = datetime(2025, 4, 10, 10, 0, 0)

ADMIN_KEY = "test-admin-key"


class FakeClock:
    """Settable clock; ``advance`` moves it forward"""

    def __init__(self, at: datetime = T0) -> None:
        self.at = at

    def now(self) -> datetime:
        return self.at

    def set(self, at: datetime) -> None:
        self.at = at

    def advance(self, **kwargs) -> datetime:
        self.at = self.at + timedelta(**kwargs)
        return self.at


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, clock: FakeClock):
    """Create test client with database and clock overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    transport = ASGITransport(app=app)
    with patch.object(settings, "ADMIN_API_KEY", ADMIN_KEY):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-API-Key": ADMIN_KEY}


# ============================================================================
# Mock External Services
# ============================================================================

@pytest.fixture
def mock_mail_gateway():
    """Mock mail gateway responses"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_response = MagicMock(spec=Response)
        mock_response.status_code = 202
        mock_response.json.return_value = {"queued": True}

        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=mock_response)
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)

        mock_client.return_value = mock_instance

        yield mock_instance


# ============================================================================
# Test Data Factories
# ============================================================================

_email_counter = 0
_seed_counter = itertools.count(1)


def _next_email() -> str:
    global _email_counter
    _email_counter += 1
    return f"user{_email_counter}@example.com"


async def seed_balance(db: AsyncSession, user_id: int, amount, clock=None) -> None:
    """Credit a wallet the way an approved topup does: transaction row plus ledger entry"""
    ledger = WalletLedger(db, clock or FakeClock())
    reference = f"seed:{user_id}:{next(_seed_counter)}"
    amount = Decimal(str(amount))
    async with atomic(db):
        balance_after = await ledger.apply_delta(user_id, amount, reference)
        db.add(WalletTransaction(
            reference=reference,
            user_id=user_id,
            type=TransactionType.TOPUP,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            payment_method="bkash",
            balance_after=balance_after,
            created_at=T0,
        ))


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users, optionally with a funded wallet"""
    async def _create_user(
        name: str = "Test User",
        email: str | None = None,
        role: UserRole = UserRole.CUSTOMER,
        balance=0,
    ) -> User:
        user = User(
            name=name,
            email=email or _next_email(),
            role=role,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        if balance:
            await seed_balance(db_session, user.id, balance)
            await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def parking_factory(db_session: AsyncSession):
    """Factory for a parking with ``slots`` free slots"""
    async def _create_parking(
        name: str = "Central Parking",
        price_per_hour=Decimal("60.00"),
        slots: int = 2,
    ) -> tuple[Parking, list[Slot]]:
        parking = Parking(name=name, price_per_hour=Decimal(str(price_per_hour)))
        db_session.add(parking)
        await db_session.flush()
        created = [
            Slot(parking_id=parking.id, slot_code=f"A{i + 1}", type="car", _available=True)
            for i in range(slots)
        ]
        db_session.add_all(created)
        await db_session.commit()
        return parking, created

    return _create_parking


@pytest.fixture
def service_factory(db_session: AsyncSession):
    async def _create_service(
        name: str = "Full Wash",
        price=Decimal("500.00"),
        duration: str | None = "45 min",
    ) -> Service:
        service = Service(name=name, price=Decimal(str(price)), duration=duration)
        db_session.add(service)
        await db_session.commit()
        await db_session.refresh(service)
        return service

    return _create_service


@pytest.fixture
def booking_factory(db_session: AsyncSession):
    """
    Insert a parking booking directly in a given status.

    Live statuses also mark the slot as taken, as the state machine would.
    """
    async def _create_booking(
        user: User,
        slot: Slot,
        status: ParkingBookingStatus = ParkingBookingStatus.CONFIRMED,
        hours: int = 1,
        price_per_hour=Decimal("60.00"),
        created_at: datetime = T0,
        end_time: datetime | None = None,
        extra_charges=Decimal("0.00"),
        extra_minutes: int = 0,
    ) -> ParkingBooking:
        booking = ParkingBooking(
            user_id=user.id,
            parking_id=slot.parking_id,
            slot_id=slot.id,
            _status=status,
            hours=hours,
            total_price=Decimal(str(price_per_hour)) * hours,
            extra_charges=Decimal(str(extra_charges)),
            extra_minutes=extra_minutes,
            end_time=end_time or created_at + timedelta(hours=hours),
            created_at=created_at,
            updated_at=created_at,
        )
        db_session.add(booking)
        if status in (
            ParkingBookingStatus.CONFIRMED,
            ParkingBookingStatus.ACTIVE,
            ParkingBookingStatus.CHECKOUT_REQUESTED,
            ParkingBookingStatus.CHECKOUT_PAID,
        ):
            slot._available = False
        await db_session.commit()
        await db_session.refresh(booking)
        return booking

    return _create_booking


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Insert a service order directly in a given status"""
    async def _create_order(
        user: User,
        service: Service,
        status: ServiceOrderStatus = ServiceOrderStatus.CONFIRMED,
        booking_time: datetime = T0 + timedelta(hours=1),
        scheduled_in_progress_at: datetime | None = None,
        scheduled_completed_at: datetime | None = None,
    ) -> ServiceOrder:
        order = ServiceOrder(
            user_id=user.id,
            service_id=service.id,
            _status=status,
            price=service.price,
            booking_time=booking_time,
            scheduled_in_progress_at=scheduled_in_progress_at,
            scheduled_completed_at=scheduled_completed_at,
            created_at=T0,
            updated_at=T0,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def customer(user_factory) -> User:
    """Customer with 1000.00 in the wallet"""
    return await user_factory(name="Rahim", balance=Decimal("1000.00"))


@pytest.fixture
async def staff(user_factory) -> User:
    return await user_factory(name="Desk Staff", role=UserRole.STAFF)


@pytest.fixture
async def parking(parking_factory) -> tuple[Parking, list[Slot]]:
    return await parking_factory()


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """In-memory Redis replacement with the subset of commands the app uses."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (expiry in seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("parkwash.core.redis_client.get_redis", _get_fake_redis):
        yield _fake
