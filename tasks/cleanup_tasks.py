"""
tasks/cleanup_tasks.py
Celery beat tasks for booking hygiene:
- Auto-cancel PENDING_DEPOSIT bookings with no deposit after STALE_BOOKING_HOURS
- Auto-complete finished bookings (only when AUTO_COMPLETE_BOOKINGS is on)
- Retention purges for read notifications and non-security audit logs

All tasks are idempotent and hold a Redis lock while running, so
overlapping beat ticks or multiple workers never double-process.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from config.database import engine, get_db_context
from config.redis_client import close_redis, init_redis
from services.notification.service import CeleryTransport, Notifier
from services.scheduler import jobs
from services.scheduler.locking import JobSkipped, run_with_lock
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

Job = Callable[[AsyncSession, Notifier], Awaitable[dict]]


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _run_locked(name: str, job: Job) -> dict:
    try:
        await init_redis()
    except Exception as e:
        logger.warning(f"Redis unavailable for '{name}': {e}")
        await close_redis()

    try:
        async with get_db_context() as db:
            notifier = Notifier(transport=CeleryTransport())
            return await run_with_lock(name, lambda: job(db, notifier))
    except JobSkipped:
        return {"skipped": True}
    finally:
        await close_redis()
        # Each asyncio.run() gets a fresh loop; pooled connections can't cross it
        await engine.dispose()


def run_job(name: str, job: Job) -> dict:
    """Run an async maintenance job from a sync Celery worker."""
    result = asyncio.run(_run_locked(name, job))
    logger.info(f"{name}: {result}")
    return result


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3)
def cancel_stale_bookings(self):
    """Beat task: hourly. PENDING_DEPOSIT older than the threshold with no payment → CANCELLED."""
    async def job(db, notifier):
        return (await jobs.sweep_stale_bookings(db, notifier=notifier)).to_dict()

    try:
        return run_job("stale-bookings", job)
    except Exception as e:
        logger.exception(f"cancel_stale_bookings failed: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task
def complete_finished_bookings():
    """Beat task: hourly. No-op unless AUTO_COMPLETE_BOOKINGS is enabled."""
    async def job(db, notifier):
        return (await jobs.complete_finished_bookings(db, notifier=notifier)).to_dict()

    return run_job("complete-bookings", job)


@celery_app.task
def purge_expired_records():
    """Beat task: nightly. Read notifications after 30d, audit logs after 90d (security kept)."""
    async def job(db, notifier):
        return {
            "notifications": (await jobs.purge_old_notifications(db)).to_dict(),
            "audit_logs": (await jobs.purge_old_audit_logs(db)).to_dict(),
        }

    return run_job("retention", job)
