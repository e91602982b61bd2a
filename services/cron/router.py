"""
services/cron/router.py
HTTP triggers for the maintenance jobs, for hosts that schedule by URL
instead of running Celery beat. Guarded by `Authorization: Bearer <CRON_SECRET>`.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.dependencies import get_notifier
from services.notification.service import Notifier
from services.scheduler.jobs import run_cleanup, run_reminders
from services.scheduler.locking import JobSkipped, run_with_lock
from shared.middleware.auth import get_optional_redis
from shared.utils.dates import utcnow
from shared.utils.security import verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    if not verify_cron_secret(authorization):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/cleanup", dependencies=[Depends(require_cron_secret)])
async def cleanup(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    redis=Depends(get_optional_redis),
):
    """Stale-booking sweep, optional auto-completion, and retention purges."""
    try:
        results = await run_with_lock("cron:cleanup", lambda: run_cleanup(db, notifier), client=redis)
    except JobSkipped:
        return {"success": True, "skipped": True, "timestamp": utcnow().isoformat()}

    success = all(r["success"] for r in results.values())
    if not success:
        logger.warning(f"Cleanup finished with errors: {results}")
    return {"success": success, "results": results, "timestamp": utcnow().isoformat()}


@router.post("/reminders", dependencies=[Depends(require_cron_secret)])
async def reminders(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    redis=Depends(get_optional_redis),
):
    """Booking reminders (23–25h out) and balance reminders (2–4 days out)."""
    try:
        results = await run_with_lock("cron:reminders", lambda: run_reminders(db, notifier), client=redis)
    except JobSkipped:
        return {"success": True, "skipped": True, "timestamp": utcnow().isoformat()}

    return {
        "success": all(r["success"] for r in results.values()),
        "results": results,
        "timestamp": utcnow().isoformat(),
    }
