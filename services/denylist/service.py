"""
services/denylist/service.py
Denylist lookup: is this email / phone barred from transacting?
The real reason is logged, never returned to the end caller.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import DenyListEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DenylistResult:
    blocked: bool
    reason: Optional[str] = None
    entry_id: Optional[str] = None


NOT_BLOCKED = DenylistResult(blocked=False)


def normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email and email.strip() else None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit() or ch == "+")
    return digits or None


class DenylistChecker:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def check(self, email: Optional[str] = None, phone: Optional[str] = None) -> DenylistResult:
        """OR-match either identifier against active entries."""
        email = normalize_email(email)
        phone = normalize_phone(phone)
        if not email and not phone:
            return NOT_BLOCKED

        conditions = []
        if email:
            conditions.append(DenyListEntry.email == email)
        if phone:
            conditions.append(DenyListEntry.phone == phone)

        result = await self.db.execute(
            select(DenyListEntry)
            .where(DenyListEntry.is_active.is_(True), or_(*conditions))
            .limit(1)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            return NOT_BLOCKED

        logger.warning(
            "Denylist match for email=%s phone=%s (entry %s): %s",
            email, phone, entry.id, entry.reason,
        )
        return DenylistResult(blocked=True, reason=entry.reason, entry_id=str(entry.id))


# ── Admin maintenance ─────────────────────────────────────────

async def add_entry(
    db: AsyncSession,
    reason: str,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    created_by_id=None,
) -> DenyListEntry:
    entry = DenyListEntry(
        email=normalize_email(email),
        phone=normalize_phone(phone),
        reason=reason,
        created_by_id=created_by_id,
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    logger.info(f"Denylist entry {entry.id} added by {created_by_id}")
    return entry


async def deactivate_entry(db: AsyncSession, entry_id) -> Optional[DenyListEntry]:
    """Soft delete; the row stays for the record."""
    entry = await db.get(DenyListEntry, entry_id)
    if entry is None:
        return None
    entry.is_active = False
    await db.commit()
    await db.refresh(entry)
    return entry
