"""
tests/test_cron.py
HTTP-triggered maintenance: auth on the cron secret and the batch results.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import BookingStatus
from shared.utils.dates import utcnow
from tests.conftest import cron_headers, make_booking


@pytest.mark.asyncio
async def test_cron_requires_secret(client: AsyncClient):
    assert (await client.post("/cron/cleanup")).status_code == 401
    response = await client.post("/cron/reminders", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cron_cleanup_sweeps_stale_bookings(
    client: AsyncClient, client_user, performer_profile, service, db: AsyncSession
):
    stale = await make_booking(
        db, client_user, performer_profile, service, created_at=utcnow() - timedelta(hours=30)
    )

    response = await client.post("/cron/cleanup", headers=cron_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["results"]["stale_bookings"]["cancelled"] == 1
    assert set(data["results"]) == {"stale_bookings", "completed_bookings", "notifications", "audit_logs"}

    await db.refresh(stale)
    assert stale.status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_cron_reminders(
    client: AsyncClient, client_user, performer_user, performer_profile, service, transport, db: AsyncSession
):
    await make_booking(
        db, client_user, performer_profile, service,
        status=BookingStatus.CONFIRMED, scheduled_in=timedelta(hours=24),
    )

    response = await client.post("/cron/reminders", headers=cron_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["results"]["booking_reminders"]["processed"] == 1
    assert data["results"]["payment_reminders"]["processed"] == 0
    assert transport.types_for(performer_user.id) == ["BOOKING_REMINDER"]
