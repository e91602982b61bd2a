"""
tasks/notification_tasks.py
Celery tasks for out-of-band notification delivery (SMS + email).

The in-app Notification row is written synchronously by the Notifier;
these tasks only push it to external channels and flag what was sent.
Failures in one channel never block the other.

Usage:
    from tasks.notification_tasks import send_sms
    send_sms.delay(user.phone, body, str(notification.id))
"""

import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy import update

from config.database import get_db_context
from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _normalize_phone(phone: str) -> str:
    """Local AU numbers (04xx...) → E.164."""
    phone = phone.replace(" ", "")
    if phone.startswith("+"):
        return phone
    if phone.startswith("0"):
        return f"+61{phone[1:]}"
    return f"+61{phone}"


def _send_sms(phone: str, body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    try:
        from twilio.rest import Client
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(
            body=body,
            from_=settings.TWILIO_FROM_NUMBER,
            to=_normalize_phone(phone),
        )
        return True
    except Exception as e:
        logger.warning(f"SMS send failed: {e}")
        return False


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Templates ──────────────────────────────────────────────────────────────────

# SMS copy per notification type; types not listed here are email / in-app only
SMS_TEMPLATES = {
    "BOOKING_CREATED": "New booking request {reference}. Log in to review.",
    "BOOKING_APPROVED": "Booking {reference} was approved and is awaiting performer confirmation.",
    "BOOKING_CONFIRMED": "Booking {reference} is CONFIRMED!",
    "BOOKING_CANCELLED": "Booking {reference} was cancelled. See your account for details.",
    "DEPOSIT_VERIFIED": "Deposit for booking {reference} has been verified.",
    "BOOKING_REMINDER": "Reminder: booking {reference} is scheduled for tomorrow.",
    "PAYMENT_REMINDER": "Reminder: the balance for booking {reference} is due before the event.",
}


def render_sms(notification_type: str, title: str, reference: Optional[str]) -> Optional[str]:
    template = SMS_TEMPLATES.get(notification_type)
    if template is None:
        return None
    body = template.replace("{reference}", reference or "")
    return f"{settings.EMAIL_FROM_NAME}: {body}" if reference else f"{settings.EMAIL_FROM_NAME}: {title}"


def render_email(title: str, message: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #1F2937; padding: 20px; border-radius: 8px 8px 0 0; text-align: center;">
            <h1 style="color: white; margin: 0;">{settings.EMAIL_FROM_NAME}</h1>
        </div>
        <div style="background: white; padding: 24px; border: 1px solid #eee; border-radius: 0 0 8px 8px;">
            <h2 style="color: #333;">{title}</h2>
            <p style="color: #666; line-height: 1.6;">{message}</p>
            <p style="color: #999; font-size: 12px; margin-top: 24px;">
                <a href="{settings.FRONTEND_URL}">Open your account</a>
            </p>
        </div>
    </div>
    """


# ── Delivery bookkeeping ───────────────────────────────────────────────────────

async def _mark_delivered(notification_id: str, channel: str) -> None:
    from shared.models.models import Notification

    async with get_db_context() as db:
        await db.execute(
            update(Notification)
            .where(Notification.id == uuid.UUID(notification_id))
            .values(**{channel: True})
        )


def _record_delivery(notification_id: Optional[str], channel: str) -> None:
    if not notification_id:
        return
    try:
        asyncio.run(_mark_delivered(notification_id, channel))
    except Exception as e:
        logger.warning(f"Could not flag notification {notification_id} as {channel}: {e}")


# ── Channel Tasks ──────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=120)
def send_sms(self, phone: str, body: str, notification_id: Optional[str] = None):
    """Send a single SMS via Twilio with retry on failure."""
    success = _send_sms(phone, body)
    if not success:
        raise self.retry(countdown=120 * (2 ** self.request.retries))
    _record_delivery(notification_id, "sent_sms")


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_email(self, to_email: str, subject: str, html_body: str, notification_id: Optional[str] = None):
    """Send a transactional email via Resend with retry on failure."""
    success = _send_email(to_email, subject, html_body)
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    _record_delivery(notification_id, "sent_email")
