"""
services/booking/dependencies.py
FastAPI wiring for the lifecycle engine.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.lifecycle import BookingLifecycle, RequestContext
from services.notification.service import NotificationTransport, Notifier, get_notification_transport
from shared.utils.security import get_client_ip, get_user_agent


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(ip_address=get_client_ip(request), user_agent=get_user_agent(request))


def get_notifier(transport: NotificationTransport = Depends(get_notification_transport)) -> Notifier:
    return Notifier(transport=transport)


def get_lifecycle(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> BookingLifecycle:
    return BookingLifecycle(db, notifier=notifier)
