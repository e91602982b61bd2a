"""
services/audit/service.py
Append-only audit trail.

record() writes in its own session so a failing audit insert can never
roll back (or expire) the caller's already-committed transition.
Failures are logged and swallowed.
"""

import json
import logging
import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import AsyncSessionLocal
from shared.models.models import AuditAction, AuditLog

logger = logging.getLogger(__name__)

SECURITY_ACTIONS = frozenset({AuditAction.BOOKING_BLOCKED.value})


def _jsonable(changes: Optional[dict]) -> Optional[dict]:
    if changes is None:
        return None
    # Decimals, UUIDs and datetimes become strings
    return json.loads(json.dumps(changes, default=str))


class AuditRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory

    async def record(
        self,
        actor_id: Optional[uuid.UUID],
        action: str,
        entity_type: str,
        entity_id: Optional[Any] = None,
        changes: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        is_security: bool = False,
    ) -> Optional[AuditLog]:
        action = action.value if isinstance(action, AuditAction) else action
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            changes=_jsonable(changes),
            ip_address=ip_address,
            user_agent=user_agent,
            is_security=is_security or action in SECURITY_ACTIONS,
        )
        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to write audit entry %s for %s %s", action, entity_type, entity_id
            )
            return None
        return entry
