"""
services/notification/service.py
Notifier: writes the in-app Notification row, then hands it to a transport
for SMS / email. Never raises into the caller; a failed notification is
logged and the booking transition that triggered it stands.
"""

import asyncio
import logging
import uuid
from typing import Iterable, Optional

from pybreaker import CircuitBreaker, CircuitBreakerError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from config.database import AsyncSessionLocal
from shared.models.models import Notification, NotificationType, User, UserRole
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)


# ── Transports ────────────────────────────────────────────────

class NotificationTransport:
    """Out-of-band delivery of an already-persisted notification."""

    async def deliver(self, recipient: User, notification: Notification, reference: Optional[str] = None) -> None:
        raise NotImplementedError


class NullTransport(NotificationTransport):
    """In-app only."""

    async def deliver(self, recipient: User, notification: Notification, reference: Optional[str] = None) -> None:
        logger.debug(f"Notification {notification.id} stored in-app only")


class CeleryTransport(NotificationTransport):
    """Enqueue SMS / email Celery tasks behind a circuit breaker on the broker."""

    def __init__(self, breaker: Optional[CircuitBreaker] = None):
        self.breaker = breaker or circuit_breaker_manager.get_breaker("celery_broker")

    async def deliver(self, recipient: User, notification: Notification, reference: Optional[str] = None) -> None:
        from tasks.notification_tasks import render_email, render_sms, send_email, send_sms

        notification_id = str(notification.id)
        sms_body = render_sms(notification.type.value, notification.title, reference)
        if recipient.phone and sms_body:
            await asyncio.to_thread(self._enqueue, send_sms, recipient.phone, sms_body, notification_id)
        if recipient.email:
            await asyncio.to_thread(
                self._enqueue,
                send_email,
                recipient.email,
                notification.title,
                render_email(notification.title, notification.message),
                notification_id,
            )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        retry=retry_if_not_exception_type(CircuitBreakerError),
        reraise=True,
    )
    def _enqueue(self, task, *args):
        return self.breaker.call(task.delay, *args)


def get_notification_transport() -> NotificationTransport:
    """FastAPI dependency; overridden in tests."""
    return CeleryTransport()


# ── Notifier ──────────────────────────────────────────────────

class Notifier:
    def __init__(
        self,
        transport: Optional[NotificationTransport] = None,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        self.transport = transport or NullTransport()
        self.session_factory = session_factory

    async def notify(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[uuid.UUID] = None,
        reference: Optional[str] = None,
    ) -> Optional[Notification]:
        try:
            async with self.session_factory() as session:
                recipient = await session.get(User, user_id)
                if recipient is None or not recipient.is_active:
                    logger.warning(f"Skipping {type.value} notification: user {user_id} missing or inactive")
                    return None

                notification = Notification(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    related_entity_type=related_entity_type,
                    related_entity_id=str(related_entity_id) if related_entity_id else None,
                )
                session.add(notification)
                await session.commit()
        except Exception:
            logger.exception(f"Failed to store {type.value} notification for user {user_id}")
            return None

        try:
            await self.transport.deliver(recipient, notification, reference)
        except Exception:
            logger.exception(f"Delivery of notification {notification.id} failed")
        return notification

    async def notify_many(
        self,
        user_ids: Iterable[Optional[uuid.UUID]],
        type: NotificationType,
        title: str,
        message: str,
        **kwargs,
    ) -> list[Notification]:
        """One notify() per distinct recipient; each failure is isolated."""
        sent = []
        seen = set()
        for user_id in user_ids:
            if user_id is None or user_id in seen:
                continue
            seen.add(user_id)
            notification = await self.notify(user_id, type, title, message, **kwargs)
            if notification is not None:
                sent.append(notification)
        return sent

    async def notify_admins(self, type: NotificationType, title: str, message: str, **kwargs) -> list[Notification]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(User.id).where(User.role == UserRole.ADMIN, User.is_active.is_(True))
                )
                admin_ids = list(result.scalars())
        except Exception:
            logger.exception("Failed to load admin recipients")
            return []

        if not admin_ids:
            logger.warning(f"No active admins to receive {type.value} notification")
        return await self.notify_many(admin_ids, type, title, message, **kwargs)
