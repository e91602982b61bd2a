"""
tests/test_lifecycle.py
Engine-level tests for BookingLifecycle: the full happy path, transition
guards, terminal immutability, money checks, denylist, and the conditional
update that turns a lost race into a Conflict.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from config.database import AsyncSessionLocal
from services.booking.lifecycle import BookingLifecycle, BookingSchedule, generate_reference_code
from services.notification.service import Notifier
from shared.models.models import (
    AuditLog,
    Booking,
    BookingStatus,
    DenyListEntry,
    Notification,
    NotificationType,
    Payment,
    PaymentStatus,
    PaymentType,
    User,
)
from shared.utils.dates import utcnow
from shared.utils.errors import (
    Blocked,
    Conflict,
    Forbidden,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationError,
)
from tests.conftest import make_booking


def _lifecycle(db, transport, clock=None) -> BookingLifecycle:
    return BookingLifecycle(db, notifier=Notifier(transport=transport), clock=clock or utcnow)


def _schedule(days: int = 7, minutes: int = 120) -> BookingSchedule:
    return BookingSchedule(scheduled_at=utcnow() + timedelta(days=days), duration_minutes=minutes)


async def _audit_actions(db, entity_id=None) -> list:
    query = select(AuditLog.action).order_by(AuditLog.created_at)
    if entity_id is not None:
        query = query.where(AuditLog.entity_id == str(entity_id))
    return list((await db.execute(query)).scalars())


# ── Happy path ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_lifecycle_to_completed(
    db, transport, client_user, performer_user, admin_user, performer_profile, service, performer_service
):
    """200.00 at 15% → deposit 30.00, balance 170.00, ends COMPLETED."""
    engine = _lifecycle(db, transport)

    booking = await engine.create_booking(
        client_user, performer_profile.id, service.id, _schedule(), venue="12 Harbour St, Sydney"
    )
    assert booking.status == BookingStatus.PENDING_DEPOSIT
    assert booking.reference_code.startswith("BK-")
    assert booking.total_amount == Decimal("200.00")
    assert booking.deposit_amount == Decimal("30.00")
    assert NotificationType.BOOKING_CREATED in transport.types_for(performer_user.id)

    deposit = await engine.upload_deposit(booking.id, client_user, Decimal("30.00"), "https://receipts/1.png")
    assert deposit.type == PaymentType.DEPOSIT
    assert deposit.status == PaymentStatus.UPLOADED
    assert deposit.reference == booking.reference_code
    booking = await db.get(Booking, booking.id)
    assert booking.status == BookingStatus.PENDING_APPROVAL
    assert NotificationType.DEPOSIT_UPLOADED in transport.types_for(admin_user.id)

    deposit = await engine.verify_payment(deposit.id, admin_user, verified=True)
    assert deposit.status == PaymentStatus.VERIFIED
    booking = await db.get(Booking, booking.id)
    assert booking.deposit_paid is True
    assert booking.status == BookingStatus.PENDING_APPROVAL

    booking = await engine.admin_decide(booking.id, admin_user, approved=True)
    assert booking.status == BookingStatus.APPROVED
    assert booking.approved_at is not None

    booking = await engine.performer_respond(booking.id, performer_user, accepted=True)
    assert booking.status == BookingStatus.CONFIRMED
    assert NotificationType.BOOKING_CONFIRMED in transport.types_for(client_user.id)

    balance = await engine.upload_balance(booking.id, client_user, Decimal("170.00"), "https://receipts/2.png")
    assert balance.type == PaymentType.BALANCE
    await engine.verify_payment(balance.id, admin_user, verified=True)
    booking = await db.get(Booking, booking.id)
    assert booking.balance_paid is True

    after_event = _lifecycle(db, transport, clock=lambda: utcnow() + timedelta(days=8))
    booking = await after_event.complete_booking(booking.id, admin_user)
    assert booking.status == BookingStatus.COMPLETED

    actions = await _audit_actions(db, booking.id)
    for expected in ("BOOKING_CREATED", "BOOKING_APPROVED", "BOOKING_CONFIRMED", "BOOKING_COMPLETED"):
        assert expected in actions


@pytest.mark.asyncio
async def test_create_uses_performer_deposit_override(
    db, transport, client_user, performer_profile, service, performer_service
):
    performer_profile.deposit_percent = Decimal("20")
    await db.commit()

    booking = await _lifecycle(db, transport).create_booking(
        client_user, performer_profile.id, service.id, _schedule(), venue="Town Hall"
    )
    assert booking.deposit_percent == Decimal("20")
    assert booking.deposit_amount == Decimal("40.00")


@pytest.mark.asyncio
async def test_create_uses_custom_price_and_referral(
    db, transport, client_user, performer_profile, service, performer_service
):
    performer_service.custom_price = Decimal("150.00")
    await db.commit()

    booking = await _lifecycle(db, transport).create_booking(
        client_user, performer_profile.id, service.id, _schedule(minutes=60),
        venue="Town Hall", referral_percent=Decimal("10"),
    )
    assert booking.total_amount == Decimal("150.00")
    assert booking.deposit_amount == Decimal("22.50")
    assert booking.referral_amount == Decimal("15.00")


# ── Create validation ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_rejects_past_date(db, transport, client_user, performer_profile, service, performer_service):
    schedule = BookingSchedule(scheduled_at=utcnow() - timedelta(hours=1), duration_minutes=60)
    with pytest.raises(ValidationError):
        await _lifecycle(db, transport).create_booking(
            client_user, performer_profile.id, service.id, schedule, venue="Town Hall"
        )


@pytest.mark.asyncio
async def test_create_requires_offering(db, transport, client_user, performer_profile, service):
    with pytest.raises(ValidationError, match="does not offer"):
        await _lifecycle(db, transport).create_booking(
            client_user, performer_profile.id, service.id, _schedule(), venue="Town Hall"
        )


@pytest.mark.asyncio
async def test_create_unknown_performer(db, transport, client_user, service):
    with pytest.raises(NotFound):
        await _lifecycle(db, transport).create_booking(
            client_user, uuid.uuid4(), service.id, _schedule(), venue="Town Hall"
        )


@pytest.mark.asyncio
async def test_only_clients_create_bookings(
    db, transport, performer_user, performer_profile, service, performer_service
):
    engine = _lifecycle(db, transport)
    with pytest.raises(Forbidden):
        await engine.create_booking(performer_user, performer_profile.id, service.id, _schedule(), venue="Hall")
    with pytest.raises(Unauthorized):
        await engine.create_booking(None, performer_profile.id, service.id, _schedule(), venue="Hall")


# ── Denylist ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_denylisted_email_is_blocked(
    db, transport, client_user, performer_profile, service, performer_service
):
    db.add(DenyListEntry(email="alex@example.com", reason="Chargeback fraud in March"))
    await db.commit()

    with pytest.raises(Blocked) as exc_info:
        await _lifecycle(db, transport).create_booking(
            client_user, performer_profile.id, service.id, _schedule(), venue="Town Hall"
        )
    assert "fraud" not in exc_info.value.message.lower()
    assert exc_info.value.code == "BLOCKED"

    assert await db.scalar(select(func.count(Booking.id))) == 0
    blocked = (await db.execute(select(AuditLog).where(AuditLog.action == "BOOKING_BLOCKED"))).scalars().all()
    assert len(blocked) == 1
    assert blocked[0].is_security is True
    assert blocked[0].actor_id == client_user.id


@pytest.mark.asyncio
async def test_denylisted_phone_is_blocked(
    db, transport, client_user, performer_profile, service, performer_service
):
    db.add(DenyListEntry(phone="0412345678", reason="Abusive to staff"))
    await db.commit()

    with pytest.raises(Blocked):
        await _lifecycle(db, transport).create_booking(
            client_user, performer_profile.id, service.id, _schedule(), venue="Town Hall"
        )


@pytest.mark.asyncio
async def test_inactive_denylist_entry_is_ignored(
    db, transport, client_user, performer_profile, service, performer_service
):
    db.add(DenyListEntry(email="alex@example.com", reason="Resolved", is_active=False))
    await db.commit()

    booking = await _lifecycle(db, transport).create_booking(
        client_user, performer_profile.id, service.id, _schedule(), venue="Town Hall"
    )
    assert booking.status == BookingStatus.PENDING_DEPOSIT


# ── Deposit upload ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deposit_amount_mismatch_rejected(db, transport, client_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service)

    with pytest.raises(ValidationError) as exc_info:
        await _lifecycle(db, transport).upload_deposit(booking.id, client_user, Decimal("25.00"), "receipt.png")
    assert "Expected $30.00" in exc_info.value.message

    refreshed = await db.get(Booking, booking.id)
    assert refreshed.status == BookingStatus.PENDING_DEPOSIT
    assert await db.scalar(select(func.count(Payment.id))) == 0
    assert "DEPOSIT_UPLOAD_FAILED" in await _audit_actions(db, booking.id)


@pytest.mark.asyncio
async def test_deposit_within_one_cent_accepted(db, transport, client_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service)
    payment = await _lifecycle(db, transport).upload_deposit(
        booking.id, client_user, Decimal("30.01"), "receipt.png", reference="PAYID-123"
    )
    assert payment.amount == Decimal("30.01")
    assert payment.reference == "PAYID-123"


@pytest.mark.asyncio
async def test_deposit_requires_receipt(db, transport, client_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service)
    with pytest.raises(ValidationError):
        await _lifecycle(db, transport).upload_deposit(booking.id, client_user, Decimal("30.00"), "   ")


@pytest.mark.asyncio
async def test_deposit_by_other_client_forbidden(db, transport, client_user, other_client, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service)
    with pytest.raises(Forbidden):
        await _lifecycle(db, transport).upload_deposit(booking.id, other_client, Decimal("30.00"), "receipt.png")

    failed = (await db.execute(
        select(AuditLog).where(AuditLog.action == "DEPOSIT_UPLOAD_FAILED")
    )).scalars().one()
    assert failed.is_security is True


# ── Transition guards ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cannot_skip_states(
    db, transport, client_user, performer_user, admin_user, performer_profile, service
):
    engine = _lifecycle(db, transport)
    booking = await make_booking(db, client_user, performer_profile, service)

    with pytest.raises(InvalidState):
        await engine.admin_decide(booking.id, admin_user, approved=True)
    with pytest.raises(InvalidState):
        await engine.performer_respond(booking.id, performer_user, accepted=True)
    with pytest.raises(InvalidState):
        await engine.complete_booking(booking.id, admin_user)

    pending_approval = await make_booking(
        db, client_user, performer_profile, service, status=BookingStatus.PENDING_APPROVAL
    )
    with pytest.raises(InvalidState):
        await engine.performer_respond(pending_approval.id, performer_user, accepted=True)

    assert (await db.get(Booking, booking.id)).status == BookingStatus.PENDING_DEPOSIT
    assert (await db.get(Booking, pending_approval.id)).status == BookingStatus.PENDING_APPROVAL


@pytest.mark.parametrize("terminal", [BookingStatus.CANCELLED, BookingStatus.REJECTED, BookingStatus.COMPLETED])
@pytest.mark.asyncio
async def test_terminal_bookings_are_immutable(
    db, transport, client_user, performer_user, admin_user, performer_profile, service, terminal
):
    engine = _lifecycle(db, transport)
    booking = await make_booking(db, client_user, performer_profile, service, status=terminal)

    with pytest.raises(InvalidState):
        await engine.cancel_booking(booking.id, admin_user, "Changed my mind")
    with pytest.raises(InvalidState):
        await engine.admin_decide(booking.id, admin_user, approved=True)
    with pytest.raises(InvalidState):
        await engine.performer_respond(booking.id, performer_user, accepted=True)
    with pytest.raises(InvalidState):
        await engine.upload_deposit(booking.id, client_user, Decimal("30.00"), "receipt.png")
    with pytest.raises(InvalidState):
        await engine.complete_booking(booking.id, admin_user)

    assert (await db.get(Booking, booking.id)).status == terminal


@pytest.mark.asyncio
async def test_verify_on_terminal_booking_rejected(db, transport, client_user, admin_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.CANCELLED)
    payment = Payment(
        booking_id=booking.id, payer_id=client_user.id, type=PaymentType.DEPOSIT,
        amount=Decimal("30.00"), status=PaymentStatus.UPLOADED,
    )
    db.add(payment)
    await db.commit()

    with pytest.raises(InvalidState):
        await _lifecycle(db, transport).verify_payment(payment.id, admin_user, verified=True)


async def _pending_deposit(db, client_user, booking) -> Payment:
    payment = Payment(
        booking_id=booking.id, payer_id=client_user.id, type=PaymentType.DEPOSIT,
        amount=Decimal("30.00"), status=PaymentStatus.UPLOADED, receipt_url="receipt.png",
    )
    db.add(payment)
    await db.commit()
    return payment


@pytest.mark.asyncio
async def test_admin_reject_fails_unreviewed_deposit(
    db, transport, client_user, admin_user, performer_profile, service
):
    engine = _lifecycle(db, transport)
    booking = await make_booking(db, client_user, performer_profile, service)
    payment = await engine.upload_deposit(booking.id, client_user, Decimal("30.00"), "receipt.png")

    await engine.admin_decide(booking.id, admin_user, approved=False, notes="Receipt unreadable")

    await db.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    assert payment.notes == "Receipt unreadable"
    with pytest.raises(InvalidState):
        await engine.verify_payment(payment.id, admin_user, verified=False)
    queue = await db.scalar(
        select(func.count(Payment.id)).where(Payment.status == PaymentStatus.UPLOADED)
    )
    assert queue == 0


@pytest.mark.asyncio
async def test_performer_reject_fails_unreviewed_deposit(
    db, transport, client_user, performer_user, performer_profile, service
):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.APPROVED)
    payment = await _pending_deposit(db, client_user, booking)

    await _lifecycle(db, transport).performer_respond(booking.id, performer_user, accepted=False)

    await db.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    assert payment.notes == "Rejected by performer"


@pytest.mark.asyncio
async def test_cancel_fails_unreviewed_payments_only(
    db, transport, client_user, admin_user, performer_profile, service
):
    booking = await make_booking(
        db, client_user, performer_profile, service, status=BookingStatus.CONFIRMED, deposit_paid=True
    )
    verified = Payment(
        booking_id=booking.id, payer_id=client_user.id, type=PaymentType.DEPOSIT,
        amount=Decimal("30.00"), status=PaymentStatus.VERIFIED,
    )
    db.add(verified)
    balance = Payment(
        booking_id=booking.id, payer_id=client_user.id, type=PaymentType.BALANCE,
        amount=Decimal("170.00"), status=PaymentStatus.UPLOADED,
    )
    db.add(balance)
    await db.commit()

    await _lifecycle(db, transport).cancel_booking(booking.id, admin_user, "Venue closed")

    await db.refresh(balance)
    await db.refresh(verified)
    assert balance.status == PaymentStatus.FAILED
    assert balance.notes == "Venue closed"
    assert verified.status == PaymentStatus.VERIFIED


# ── Concurrency ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stale_admin_decision_raises_conflict(
    db, transport, client_user, admin_user, performer_profile, service
):
    """Second admin acted on a snapshot taken before the first decision committed."""
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.PENDING_APPROVAL)

    async with AsyncSessionLocal() as other_db:
        other_admin = await other_db.get(User, admin_user.id)
        stale = await other_db.get(Booking, booking.id)
        assert stale.status == BookingStatus.PENDING_APPROVAL

        await _lifecycle(db, transport).admin_decide(booking.id, admin_user, approved=True)

        with pytest.raises(Conflict):
            await _lifecycle(other_db, transport).admin_decide(booking.id, other_admin, approved=False)

    async with AsyncSessionLocal() as fresh:
        final = await fresh.get(Booking, booking.id)
        assert final.status == BookingStatus.APPROVED
        assert final.cancellation_reason is None


@pytest.mark.asyncio
async def test_second_decision_sees_invalid_state(db, transport, client_user, admin_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.PENDING_APPROVAL)
    engine = _lifecycle(db, transport)

    await engine.admin_decide(booking.id, admin_user, approved=True)
    with pytest.raises((Conflict, InvalidState)):
        await engine.admin_decide(booking.id, admin_user, approved=False)


# ── Decisions ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_reject_records_reason(
    db, transport, client_user, performer_user, admin_user, performer_profile, service
):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.PENDING_APPROVAL)
    booking = await _lifecycle(db, transport).admin_decide(booking.id, admin_user, approved=False, notes="Receipt unreadable")

    assert booking.status == BookingStatus.REJECTED
    assert booking.cancellation_reason == "Receipt unreadable"
    assert booking.cancelled_by == "ADMIN"
    assert NotificationType.BOOKING_CANCELLED in transport.types_for(client_user.id)
    assert NotificationType.BOOKING_CANCELLED in transport.types_for(performer_user.id)


@pytest.mark.asyncio
async def test_performer_reject_notifies_client(
    db, transport, client_user, performer_user, performer_profile, service
):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.APPROVED)
    booking = await _lifecycle(db, transport).performer_respond(
        booking.id, performer_user, accepted=False, notes="unavailable"
    )

    assert booking.status == BookingStatus.REJECTED
    assert booking.cancellation_reason == "unavailable"
    assert booking.cancelled_by == "PERFORMER"

    notes = (await db.execute(
        select(Notification).where(Notification.user_id == client_user.id)
    )).scalars().all()
    assert len(notes) == 1
    assert notes[0].type == NotificationType.BOOKING_CANCELLED
    assert "unavailable" in notes[0].message
    assert notes[0].related_entity_id == str(booking.id)


@pytest.mark.asyncio
async def test_unassigned_performer_forbidden(
    db, transport, client_user, other_performer_user, other_performer_profile, performer_profile, service
):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.APPROVED)

    with pytest.raises(Forbidden):
        await _lifecycle(db, transport).performer_respond(booking.id, other_performer_user, accepted=True)

    failed = (await db.execute(
        select(AuditLog).where(AuditLog.action == "BOOKING_RESPONSE_FAILED")
    )).scalars().one()
    assert failed.is_security is True
    assert failed.actor_id == other_performer_user.id


@pytest.mark.asyncio
async def test_performer_without_profile_not_found(db, transport, client_user, performer_profile, service, other_performer_user):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.APPROVED)
    with pytest.raises(NotFound):
        await _lifecycle(db, transport).performer_respond(booking.id, other_performer_user, accepted=True)


# ── Payments ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rejected_deposit_alerts_client(db, transport, client_user, admin_user, performer_profile, service):
    engine = _lifecycle(db, transport)
    booking = await make_booking(db, client_user, performer_profile, service)
    payment = await engine.upload_deposit(booking.id, client_user, Decimal("30.00"), "receipt.png")

    payment = await engine.verify_payment(payment.id, admin_user, verified=False, notes="Amount not received")
    assert payment.status == PaymentStatus.FAILED
    assert payment.verified_by_id == admin_user.id
    assert (await db.get(Booking, booking.id)).deposit_paid is False
    assert NotificationType.SYSTEM_ALERT in transport.types_for(client_user.id)

    with pytest.raises(InvalidState):
        await engine.verify_payment(payment.id, admin_user, verified=True)


@pytest.mark.asyncio
async def test_balance_requires_verified_deposit(db, transport, client_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.CONFIRMED)
    with pytest.raises(InvalidState, match="Deposit"):
        await _lifecycle(db, transport).upload_balance(booking.id, client_user, Decimal("170.00"), "receipt.png")


@pytest.mark.asyncio
async def test_balance_amount_is_total_minus_verified_deposits(
    db, transport, client_user, performer_profile, service
):
    booking = await make_booking(
        db, client_user, performer_profile, service, status=BookingStatus.CONFIRMED, deposit_paid=True
    )
    db.add(Payment(
        booking_id=booking.id, payer_id=client_user.id, type=PaymentType.DEPOSIT,
        amount=Decimal("30.00"), status=PaymentStatus.VERIFIED,
    ))
    await db.commit()

    engine = _lifecycle(db, transport)
    with pytest.raises(ValidationError, match="Expected \\$170.00"):
        await engine.upload_balance(booking.id, client_user, Decimal("200.00"), "receipt.png")

    payment = await engine.upload_balance(booking.id, client_user, Decimal("170.00"), "receipt.png")
    assert payment.status == PaymentStatus.UPLOADED

    with pytest.raises(InvalidState, match="awaiting verification"):
        await engine.upload_balance(booking.id, client_user, Decimal("170.00"), "receipt.png")


# ── Cancellation & completion ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_client_cancels_own_booking(
    db, transport, client_user, performer_user, performer_profile, service
):
    booking = await make_booking(db, client_user, performer_profile, service)
    booking = await _lifecycle(db, transport).cancel_booking(booking.id, client_user, "  Wedding postponed  ")

    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancelled_by == "CLIENT"
    assert booking.cancellation_reason == "Wedding postponed"
    assert NotificationType.BOOKING_CANCELLED in transport.types_for(performer_user.id)
    assert transport.types_for(client_user.id) == []


@pytest.mark.asyncio
async def test_admin_cancel_notifies_client(db, transport, client_user, admin_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.CONFIRMED)
    booking = await _lifecycle(db, transport).cancel_booking(booking.id, admin_user, "Venue closed")

    assert booking.cancelled_by == "ADMIN"
    assert NotificationType.BOOKING_CANCELLED in transport.types_for(client_user.id)


@pytest.mark.asyncio
async def test_cancel_permissions(
    db, transport, client_user, other_client, performer_user, performer_profile, service
):
    engine = _lifecycle(db, transport)
    booking = await make_booking(db, client_user, performer_profile, service)

    with pytest.raises(Forbidden):
        await engine.cancel_booking(booking.id, other_client, "Not mine")
    with pytest.raises(Forbidden):
        await engine.cancel_booking(booking.id, performer_user, "Performers cannot cancel")
    with pytest.raises(ValidationError):
        await engine.cancel_booking(booking.id, client_user, "   ")


@pytest.mark.asyncio
async def test_complete_waits_for_event_end(db, transport, client_user, admin_user, performer_profile, service):
    booking = await make_booking(db, client_user, performer_profile, service, status=BookingStatus.CONFIRMED)
    with pytest.raises(ValidationError, match="not finished"):
        await _lifecycle(db, transport).complete_booking(booking.id, admin_user)


def test_reference_codes_are_unique_and_prefixed():
    now = utcnow()
    codes = {generate_reference_code(now) for _ in range(50)}
    assert len(codes) > 1
    assert all(code.startswith("BK-") and len(code.split("-")) == 3 for code in codes)
