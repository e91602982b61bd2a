"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database, an httpx client over the
ASGI app, seeded users / performer / service, and a recording transport
in place of the Celery notification transport.
"""

import os
import tempfile
import uuid
from datetime import timedelta
from decimal import Decimal

os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.gettempdir()}/booking_test_{os.getpid()}.db",
)
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import shared.models.models  # noqa: F401
from config.database import AsyncSessionLocal, Base, engine
from main import app
from services.notification.service import NotificationTransport, get_notification_transport
from shared.models.models import (
    Booking,
    BookingStatus,
    PerformerProfile,
    PerformerService,
    Service,
    User,
    UserRole,
)
from shared.utils.dates import utcnow
from shared.utils.money import compute_deposit, compute_total
from shared.utils.security import create_access_token


# ── Helpers ───────────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def cron_headers() -> dict:
    return {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}


class RecordingTransport(NotificationTransport):
    """Keeps delivered notifications in memory instead of enqueueing SMS / email."""

    def __init__(self):
        self.delivered = []

    async def deliver(self, recipient, notification, reference=None):
        self.delivered.append((recipient.id, notification.type, reference))

    def types_for(self, user_id) -> list:
        return [t for uid, t, _ in self.delivered if uid == user_id]


async def make_booking(
    db,
    client_user: User,
    performer_profile: PerformerProfile,
    service: Service,
    status: BookingStatus = BookingStatus.PENDING_DEPOSIT,
    scheduled_in: timedelta = timedelta(days=7),
    duration_minutes: int = 120,
    **overrides,
) -> Booking:
    """Insert a booking directly, bypassing the lifecycle (for setting up a given state)."""
    total = compute_total(service.base_price, duration_minutes)
    booking = Booking(
        reference_code=f"BK-TEST-{uuid.uuid4().hex[:6].upper()}",
        client_id=client_user.id,
        performer_id=performer_profile.id,
        service_id=service.id,
        scheduled_at=utcnow() + scheduled_in,
        duration_minutes=duration_minutes,
        venue="12 Harbour St, Sydney",
        hourly_rate=service.base_price,
        total_amount=total,
        deposit_percent=Decimal("15"),
        deposit_amount=compute_deposit(total, 15),
        status=status,
        **overrides,
    )
    db.add(booking)
    await db.commit()
    await db.refresh(booking)
    return booking


# ── Database / App ────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def reset_database():
    """Drop and recreate the schema for an isolated test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    app.dependency_overrides.clear()
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture
async def client(transport: RecordingTransport):
    app.dependency_overrides[get_notification_transport] = lambda: transport
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ── Parties ───────────────────────────────────────────────────────────────────

async def _make_user(db, role: UserRole, email: str, name: str, phone=None) -> User:
    user = User(email=email, name=name, phone=phone, role=role)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def client_user(db) -> User:
    return await _make_user(db, UserRole.CLIENT, "alex@example.com", "Alex Client", "0412345678")


@pytest_asyncio.fixture
async def other_client(db) -> User:
    return await _make_user(db, UserRole.CLIENT, "sam@example.com", "Sam Client")


@pytest_asyncio.fixture
async def performer_user(db) -> User:
    return await _make_user(db, UserRole.PERFORMER, "dj@example.com", "Jordan Performer")


@pytest_asyncio.fixture
async def other_performer_user(db) -> User:
    return await _make_user(db, UserRole.PERFORMER, "band@example.com", "Riley Performer")


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await _make_user(db, UserRole.ADMIN, "admin@example.com", "Admin")


# ── Catalogue ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def performer_profile(db, performer_user: User) -> PerformerProfile:
    profile = PerformerProfile(user_id=performer_user.id, stage_name="DJ Jordan")
    db.add(profile)
    await db.commit()
    await db.refresh(profile)
    return profile


@pytest_asyncio.fixture
async def other_performer_profile(db, other_performer_user: User) -> PerformerProfile:
    profile = PerformerProfile(user_id=other_performer_user.id, stage_name="The Rileys")
    db.add(profile)
    await db.commit()
    await db.refresh(profile)
    return profile


@pytest_asyncio.fixture
async def service(db) -> Service:
    svc = Service(name="DJ Set", description="Two turntables", base_price=Decimal("100.00"))
    db.add(svc)
    await db.commit()
    await db.refresh(svc)
    return svc


@pytest_asyncio.fixture
async def performer_service(db, performer_profile: PerformerProfile, service: Service) -> PerformerService:
    offering = PerformerService(performer_id=performer_profile.id, service_id=service.id)
    db.add(offering)
    await db.commit()
    await db.refresh(offering)
    return offering
