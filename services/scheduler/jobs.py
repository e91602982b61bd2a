"""
services/scheduler/jobs.py
Idempotent maintenance jobs, run by Celery beat and the /cron endpoints.

Sweeps pick candidate ids first, then drive each booking through the
lifecycle engine on its own. One booking failing is recorded and the
sweep moves on; bookings already processed stay committed.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.audit.service import AuditRecorder
from services.booking.lifecycle import BOOKING, BookingLifecycle
from services.notification.service import Notifier
from shared.models.models import (
    AuditAction,
    AuditLog,
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    Payment,
    PaymentStatus,
    PaymentType,
    PerformerProfile,
)
from shared.utils.dates import as_utc, utcnow
from shared.utils.errors import BookingError
from shared.utils.money import compute_balance, to_decimal

logger = logging.getLogger(__name__)

REMINDER_DEDUP_HOURS = 26


@dataclass
class SweepResult:
    cancelled_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"cancelled": self.cancelled_count, "errors": self.errors, "success": self.success}


@dataclass
class PurgeResult:
    deleted_count: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"deleted": self.deleted_count, "errors": self.errors, "success": not self.errors}


@dataclass
class JobResult:
    processed_count: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"processed": self.processed_count, "errors": self.errors, "success": not self.errors}


# ── Stale-state sweep ─────────────────────────────────────────

async def sweep_stale_bookings(
    db: AsyncSession,
    threshold_hours: Optional[int] = None,
    notifier: Optional[Notifier] = None,
) -> SweepResult:
    """Cancel PENDING_DEPOSIT bookings older than the threshold with no deposit on file."""
    threshold_hours = threshold_hours or settings.STALE_BOOKING_HOURS
    cutoff = utcnow() - timedelta(hours=threshold_hours)
    result = SweepResult()

    has_payment = exists().where(
        Payment.booking_id == Booking.id,
        Payment.status.in_([PaymentStatus.UPLOADED, PaymentStatus.VERIFIED]),
    )
    rows = await db.execute(
        select(Booking.id, Booking.reference_code)
        .where(
            Booking.status == BookingStatus.PENDING_DEPOSIT,
            Booking.deposit_paid.is_(False),
            Booking.created_at < cutoff,
            ~has_payment,
        )
        .order_by(Booking.created_at)
    )
    candidates = rows.all()
    logger.info(f"Stale sweep: {len(candidates)} candidate(s) older than {threshold_hours}h")

    lifecycle = BookingLifecycle(db, notifier=notifier)
    for booking_id, reference_code in candidates:
        try:
            await lifecycle.cancel_stale_booking(booking_id, threshold_hours)
            result.cancelled_count += 1
        except (BookingError, SQLAlchemyError) as e:
            await db.rollback()
            logger.warning(f"Stale sweep skipped {reference_code}: {e}")
            result.errors.append(f"Failed to cancel booking {reference_code}: {e}")

    logger.info(f"Stale sweep done: {result.cancelled_count} cancelled, {len(result.errors)} error(s)")
    return result


# ── Retention ─────────────────────────────────────────────────

async def purge_old_notifications(db: AsyncSession, days: Optional[int] = None) -> PurgeResult:
    """Delete read notifications older than `days`."""
    days = days or settings.NOTIFICATION_RETENTION_DAYS
    cutoff = utcnow() - timedelta(days=days)
    result = PurgeResult()
    try:
        deleted = await db.execute(
            delete(Notification).where(
                Notification.is_read.is_(True),
                Notification.created_at < cutoff,
            )
        )
        await db.commit()
        result.deleted_count = deleted.rowcount or 0
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Notification purge failed")
        result.errors.append(f"Failed to purge notifications: {e}")
        return result

    if result.deleted_count:
        await AuditRecorder().record(
            actor_id=None,
            action=AuditAction.CLEANUP_NOTIFICATIONS,
            entity_type="notification",
            changes={"deleted": result.deleted_count, "older_than_days": days},
        )
    logger.info(f"Purged {result.deleted_count} read notification(s) older than {days}d")
    return result


async def purge_old_audit_logs(db: AsyncSession, days: Optional[int] = None) -> PurgeResult:
    """Delete audit entries older than `days`. Security entries are kept."""
    days = days or settings.AUDIT_RETENTION_DAYS
    cutoff = utcnow() - timedelta(days=days)
    result = PurgeResult()
    try:
        deleted = await db.execute(
            delete(AuditLog).where(
                AuditLog.created_at < cutoff,
                AuditLog.is_security.is_(False),
            )
        )
        await db.commit()
        result.deleted_count = deleted.rowcount or 0
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Audit log purge failed")
        result.errors.append(f"Failed to purge audit logs: {e}")
        return result

    if result.deleted_count:
        await AuditRecorder().record(
            actor_id=None,
            action=AuditAction.CLEANUP_AUDIT_LOGS,
            entity_type="audit_log",
            changes={"deleted": result.deleted_count, "older_than_days": days},
        )
    logger.info(f"Purged {result.deleted_count} audit log(s) older than {days}d")
    return result


# ── Completion ────────────────────────────────────────────────

async def complete_finished_bookings(db: AsyncSession, notifier: Optional[Notifier] = None) -> JobResult:
    """System completion of CONFIRMED bookings whose event has ended. Off unless AUTO_COMPLETE_BOOKINGS."""
    result = JobResult()
    if not settings.AUTO_COMPLETE_BOOKINGS:
        return result

    now = utcnow()
    rows = await db.execute(
        select(Booking.id, Booking.reference_code, Booking.scheduled_at, Booking.duration_minutes)
        .where(Booking.status == BookingStatus.CONFIRMED, Booking.scheduled_at < now)
    )
    finished = [
        (booking_id, ref)
        for booking_id, ref, scheduled_at, duration in rows.all()
        if as_utc(scheduled_at) + timedelta(minutes=duration) <= now
    ]

    lifecycle = BookingLifecycle(db, notifier=notifier)
    for booking_id, reference_code in finished:
        try:
            await lifecycle.complete_booking(booking_id)
            result.processed_count += 1
        except (BookingError, SQLAlchemyError) as e:
            await db.rollback()
            result.errors.append(f"Failed to complete booking {reference_code}: {e}")
    return result


# ── Reminders ─────────────────────────────────────────────────

async def _reminder_sent_recently(db: AsyncSession, booking_id, notification_type: NotificationType) -> bool:
    since = utcnow() - timedelta(hours=REMINDER_DEDUP_HOURS)
    found = await db.scalar(
        select(Notification.id).where(
            Notification.type == notification_type,
            Notification.related_entity_type == BOOKING,
            Notification.related_entity_id == str(booking_id),
            Notification.created_at >= since,
        ).limit(1)
    )
    return found is not None


async def send_booking_reminders(db: AsyncSession, notifier: Optional[Notifier] = None) -> JobResult:
    """Remind client and performer of CONFIRMED bookings starting in 23–25 hours."""
    notifier = notifier or Notifier()
    now = utcnow()
    result = JobResult()

    rows = await db.execute(
        select(Booking, PerformerProfile.user_id, PerformerProfile.stage_name)
        .join(PerformerProfile, PerformerProfile.id == Booking.performer_id)
        .where(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.scheduled_at >= now + timedelta(hours=23),
            Booking.scheduled_at <= now + timedelta(hours=25),
        )
    )
    for booking, performer_user_id, stage_name in rows.all():
        if await _reminder_sent_recently(db, booking.id, NotificationType.BOOKING_REMINDER):
            continue
        when = f"{as_utc(booking.scheduled_at):%d %b %Y %H:%M} UTC"
        sent = await notifier.notify_many(
            [booking.client_id, performer_user_id],
            NotificationType.BOOKING_REMINDER,
            "Booking Tomorrow",
            f"Reminder: booking {booking.reference_code} with {stage_name} is on {when} at {booking.venue}.",
            related_entity_type=BOOKING,
            related_entity_id=booking.id,
            reference=booking.reference_code,
        )
        if sent:
            result.processed_count += 1
        else:
            result.errors.append(f"No reminder delivered for booking {booking.reference_code}")

    if result.processed_count:
        await AuditRecorder().record(
            actor_id=None,
            action=AuditAction.REMINDER_SENT,
            entity_type=BOOKING,
            changes={"kind": "booking", "count": result.processed_count},
        )
    return result


async def send_payment_reminders(db: AsyncSession, notifier: Optional[Notifier] = None) -> JobResult:
    """Remind clients with an outstanding balance on events 2–4 days out."""
    notifier = notifier or Notifier()
    now = utcnow()
    result = JobResult()

    rows = await db.execute(
        select(Booking).where(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.deposit_paid.is_(True),
            Booking.balance_paid.is_(False),
            Booking.scheduled_at >= now + timedelta(days=2),
            Booking.scheduled_at <= now + timedelta(days=4),
        )
    )
    for booking in rows.scalars().all():
        if await _reminder_sent_recently(db, booking.id, NotificationType.PAYMENT_REMINDER):
            continue
        deposits = await db.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.booking_id == booking.id,
                Payment.type == PaymentType.DEPOSIT,
                Payment.status == PaymentStatus.VERIFIED,
            )
        )
        balance = compute_balance(booking.total_amount, to_decimal(deposits or 0))
        if balance <= 0:
            continue
        notification = await notifier.notify(
            booking.client_id,
            NotificationType.PAYMENT_REMINDER,
            "Balance Payment Due",
            f"The remaining balance of ${balance:.2f} for booking {booking.reference_code} "
            f"is due before the event. Pay to PayID {settings.PAYID_ADDRESS}.",
            related_entity_type=BOOKING,
            related_entity_id=booking.id,
            reference=booking.reference_code,
        )
        if notification is not None:
            result.processed_count += 1
        else:
            result.errors.append(f"No payment reminder delivered for booking {booking.reference_code}")

    if result.processed_count:
        await AuditRecorder().record(
            actor_id=None,
            action=AuditAction.REMINDER_SENT,
            entity_type=BOOKING,
            changes={"kind": "payment", "count": result.processed_count},
        )
    return result


# ── Batches ───────────────────────────────────────────────────

async def run_cleanup(db: AsyncSession, notifier: Optional[Notifier] = None) -> dict:
    return {
        "stale_bookings": (await sweep_stale_bookings(db, notifier=notifier)).to_dict(),
        "completed_bookings": (await complete_finished_bookings(db, notifier=notifier)).to_dict(),
        "notifications": (await purge_old_notifications(db)).to_dict(),
        "audit_logs": (await purge_old_audit_logs(db)).to_dict(),
    }


async def run_reminders(db: AsyncSession, notifier: Optional[Notifier] = None) -> dict:
    return {
        "booking_reminders": (await send_booking_reminders(db, notifier)).to_dict(),
        "payment_reminders": (await send_payment_reminders(db, notifier)).to_dict(),
    }
