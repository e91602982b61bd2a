"""
shared/middleware/permissions.py
Single (role, action) → allowed table used by every lifecycle entry point.
Ownership checks (is this *your* booking?) stay in the engine; this only
answers whether the role may attempt the action at all.
"""

from enum import Enum
from typing import Optional

from shared.models.models import UserRole
from shared.utils.errors import Forbidden, Unauthorized


class Action(str, Enum):
    CREATE_BOOKING = "create_booking"
    UPLOAD_PAYMENT = "upload_payment"
    DECIDE_BOOKING = "decide_booking"
    RESPOND_BOOKING = "respond_booking"
    VERIFY_PAYMENT = "verify_payment"
    CANCEL_BOOKING = "cancel_booking"
    COMPLETE_BOOKING = "complete_booking"
    VIEW_BOOKING = "view_booking"
    MANAGE_DENYLIST = "manage_denylist"
    VIEW_AUDIT_LOG = "view_audit_log"
    REVIEW_PAYMENTS = "review_payments"
    VIEW_APPROVAL_QUEUE = "view_approval_queue"


PERMISSIONS: dict[Action, frozenset[UserRole]] = {
    Action.CREATE_BOOKING: frozenset({UserRole.CLIENT}),
    Action.UPLOAD_PAYMENT: frozenset({UserRole.CLIENT}),
    Action.DECIDE_BOOKING: frozenset({UserRole.ADMIN}),
    Action.RESPOND_BOOKING: frozenset({UserRole.PERFORMER}),
    Action.VERIFY_PAYMENT: frozenset({UserRole.ADMIN}),
    Action.CANCEL_BOOKING: frozenset({UserRole.CLIENT, UserRole.ADMIN}),
    Action.COMPLETE_BOOKING: frozenset({UserRole.ADMIN}),
    Action.VIEW_BOOKING: frozenset({UserRole.CLIENT, UserRole.PERFORMER, UserRole.ADMIN}),
    Action.MANAGE_DENYLIST: frozenset({UserRole.ADMIN}),
    Action.VIEW_AUDIT_LOG: frozenset({UserRole.ADMIN}),
    Action.REVIEW_PAYMENTS: frozenset({UserRole.ADMIN}),
    Action.VIEW_APPROVAL_QUEUE: frozenset({UserRole.ADMIN}),
}


def is_allowed(role: Optional[UserRole], action: Action) -> bool:
    if role is None:
        return False
    return role in PERMISSIONS.get(action, frozenset())


def ensure_allowed(role: Optional[UserRole], action: Action) -> None:
    """Raise Unauthorized for an anonymous caller, Forbidden for the wrong role."""
    if role is None:
        raise Unauthorized()
    if not is_allowed(role, action):
        allowed = sorted(r.value for r in PERMISSIONS.get(action, frozenset()))
        raise Forbidden(f"Required role: {allowed}")
