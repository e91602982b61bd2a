"""
tasks/reminder_tasks.py
Celery beat tasks that nudge clients and performers ahead of an event.
De-duplicated against recent notifications, so re-running is harmless.
"""

import logging

from services.scheduler import jobs
from tasks.celery_app import celery_app
from tasks.cleanup_tasks import run_job

logger = logging.getLogger(__name__)


@celery_app.task
def send_booking_reminders():
    """
    Beat task: runs every hour.
    Reminds both parties of CONFIRMED bookings starting 23–25 hours from now.
    """
    async def job(db, notifier):
        return (await jobs.send_booking_reminders(db, notifier)).to_dict()

    return run_job("booking-reminders", job)


@celery_app.task
def send_payment_reminders():
    """
    Beat task: runs daily.
    Reminds clients with a verified deposit and an unpaid balance 2–4 days before the event.
    """
    async def job(db, notifier):
        return (await jobs.send_payment_reminders(db, notifier)).to_dict()

    return run_job("payment-reminders", job)
