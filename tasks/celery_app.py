"""
tasks/celery_app.py
Celery application instance shared by the task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "performer_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.cleanup_tasks",
        "tasks.reminder_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Australia/Sydney",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    # This prevents task loss if worker dies mid-execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    # Retry: max 3 retries with exponential backoff
    task_max_retries=3,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.send_sms": {"rate_limit": "10/s"},
        "tasks.notification_tasks.send_email": {"rate_limit": "20/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.cleanup_tasks.*": {"queue": "default"},
        "tasks.reminder_tasks.*": {"queue": "default"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Cancel PENDING_DEPOSIT bookings with no deposit after STALE_BOOKING_HOURS
    "cancel-stale-bookings": {
        "task": "tasks.cleanup_tasks.cancel_stale_bookings",
        "schedule": crontab(minute=5),  # every hour
    },

    # Complete CONFIRMED bookings whose event has ended (if enabled)
    "complete-finished-bookings": {
        "task": "tasks.cleanup_tasks.complete_finished_bookings",
        "schedule": crontab(minute=15),
    },

    # Retention: read notifications (30d) and non-security audit logs (90d)
    "purge-expired-records": {
        "task": "tasks.cleanup_tasks.purge_expired_records",
        "schedule": crontab(hour=2, minute=0),  # 02:00 Sydney time
    },

    # Booking reminders 23–25 hours before the event
    "send-booking-reminders": {
        "task": "tasks.reminder_tasks.send_booking_reminders",
        "schedule": crontab(minute=0),  # top of every hour
    },

    # Balance reminders 2–4 days before the event
    "send-payment-reminders": {
        "task": "tasks.reminder_tasks.send_payment_reminders",
        "schedule": crontab(hour=9, minute=0),  # 09:00 Sydney time
    },
}
