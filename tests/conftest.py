import asyncio
import inspect
import sys
import uuid
from datetime import date
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import anyio
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.domain.availability.db_models import AvailabilitySlot
from app.domain.bookings import db_models as booking_db_models  # noqa: F401
from app.domain.notifications import db_models as notification_db_models  # noqa: F401
from app.domain.payments import db_models as payment_db_models  # noqa: F401
from app.domain.tours.db_models import Tour
from app.domain.travelers.db_models import Traveler
from app.domain.travelers.service import AuthenticatedActor
from app.infra.auth import create_access_token
from app.infra.db import Base, get_db_session
from app.main import app
from app.settings import settings

RESTORED_SETTINGS = (
    "testing",
    "app_env",
    "auth_secret_key",
    "stripe_secret_key",
    "stripe_webhook_secret",
    "stripe_webhook_allow_unverified",
    "effects_enabled",
    "reservation_max_attempts",
    "reservation_retry_backoff_seconds",
    "metrics_token",
    "email_mode",
)


class RecordingEffects:
    """EffectsDispatcher double that remembers every call."""

    def __init__(self) -> None:
        self.confirmed: list[str] = []
        self.cancelled: list[tuple[str, str | None]] = []
        self.anomalies: list[tuple[str, str]] = []

    async def on_confirmed(self, booking) -> None:
        self.confirmed.append(booking.booking_id)

    async def on_cancelled(self, booking, actor_id=None) -> None:
        self.cancelled.append((booking.booking_id, actor_id))

    async def on_payment_anomaly(self, booking, reason) -> None:
        self.anomalies.append((booking.booking_id, reason))


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {name: getattr(settings, name) for name in RESTORED_SETTINGS}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.email_mode = "off"
    settings.reservation_retry_backoff_seconds = 0
    app.state.stripe_client = None
    app.state.effects_dispatcher = None
    yield
    app.state.stripe_client = None
    app.state.effects_dispatcher = None


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    rate_limiter = getattr(app.state, "rate_limiter", None)
    reset = getattr(rate_limiter, "reset", None) if rate_limiter else None
    if reset and inspect.iscoroutinefunction(reset):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(reset())
        else:
            anyio.from_thread.run(reset)
    yield


@pytest.fixture()
def client(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def recording_effects():
    effects = RecordingEffects()
    app.state.effects_dispatcher = effects
    return effects


@pytest.fixture()
def seed_traveler(async_session_maker):
    def _seed(email: str | None = None, role: str = "traveler") -> AuthenticatedActor:
        address = email or f"{uuid.uuid4().hex[:8]}@example.com"

        async def _insert() -> AuthenticatedActor:
            async with async_session_maker() as session:
                traveler = Traveler(email=address, name=address.split("@")[0], role=role)
                session.add(traveler)
                await session.commit()
                return AuthenticatedActor(id=traveler.traveler_id, role=role, email=address)

        return asyncio.run(_insert())

    return _seed


@pytest.fixture()
def seed_tour(async_session_maker):
    def _seed(
        owner_id: str | None,
        guided_price: str = "50.00",
        title: str = "Old Town Walk",
        default_group_size: int = 10,
        addon_prices: dict | None = None,
    ) -> str:
        async def _insert() -> str:
            async with async_session_maker() as session:
                tour = Tour(
                    title=title,
                    owner_id=owner_id,
                    guided_price=Decimal(guided_price),
                    currency="USD",
                    default_group_size=default_group_size,
                    meeting_point="Main square fountain",
                    meeting_time="09:30",
                    addon_prices=addon_prices or {},
                )
                session.add(tour)
                await session.commit()
                return tour.tour_id

        return asyncio.run(_insert())

    return _seed


@pytest.fixture()
def seed_slot(async_session_maker):
    def _seed(
        tour_id: str,
        slot_date: date,
        max_group_size: int = 10,
        booked_spots: int = 0,
        custom_price: str | None = None,
        is_blocked: bool = False,
        is_available: bool = True,
    ) -> str:
        async def _insert() -> str:
            async with async_session_maker() as session:
                slot = AvailabilitySlot(
                    tour_id=tour_id,
                    date=slot_date,
                    max_group_size=max_group_size,
                    booked_spots=booked_spots,
                    custom_price=Decimal(custom_price) if custom_price is not None else None,
                    is_blocked=is_blocked,
                    is_available=is_available,
                )
                session.add(slot)
                await session.commit()
                return slot.slot_id

        return asyncio.run(_insert())

    return _seed


@pytest.fixture()
def auth_headers():
    def _headers(actor: AuthenticatedActor) -> dict[str, str]:
        token = create_access_token(actor.id, actor.role, 30, settings, email=actor.email)
        return {"Authorization": f"Bearer {token}"}

    return _headers
