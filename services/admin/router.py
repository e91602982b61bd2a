"""
services/admin/router.py
Admin-only endpoints: approval queue, audit log, and the denylist.

Mutations here are recorded through the AuditRecorder before returning.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.audit.service import AuditRecorder
from services.booking.dependencies import get_request_context
from services.booking.lifecycle import RequestContext
from services.denylist.service import add_entry, deactivate_entry
from shared.middleware.auth import CapabilityRequired
from shared.middleware.permissions import Action
from shared.models.models import (
    AuditAction,
    AuditLog,
    Booking,
    BookingStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    User,
)
from shared.schemas.schemas import (
    AuditLogResponse,
    BookingResponse,
    DenyListCreateRequest,
    DenyListEntryResponse,
    PaginatedResponse,
    PaymentResponse,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Approval Queue ─────────────────────────────────────────────────────────────

@router.get("/bookings/pending")
async def get_pending_bookings(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(CapabilityRequired(Action.VIEW_APPROVAL_QUEUE)),
    db: AsyncSession = Depends(get_db),
):
    """Bookings awaiting an admin decision, oldest first, with the deposit receipt under review."""
    query = (
        select(Booking, Payment)
        .outerjoin(
            Payment,
            (Payment.booking_id == Booking.id)
            & (Payment.type == PaymentType.DEPOSIT)
            & (Payment.status == PaymentStatus.UPLOADED),
        )
        .where(Booking.status == BookingStatus.PENDING_APPROVAL)
        .order_by(Booking.created_at.asc())
    )

    total = await db.scalar(
        select(func.count(Booking.id)).where(Booking.status == BookingStatus.PENDING_APPROVAL)
    )
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            {
                "booking": BookingResponse.model_validate(booking).model_dump(mode="json"),
                "deposit": PaymentResponse.model_validate(payment).model_dump(mode="json") if payment else None,
            }
            for booking, payment in result.all()
        ],
        "total": total or 0,
        "page": page,
        "page_size": page_size,
    }


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs", response_model=PaginatedResponse)
async def get_audit_logs(
    action: str = Query(None, description="Filter by action tag e.g. BOOKING_APPROVED"),
    entity_type: str = Query(None),
    entity_id: str = Query(None),
    security_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(CapabilityRequired(Action.VIEW_AUDIT_LOG)),
    db: AsyncSession = Depends(get_db),
):
    """Append-only audit trail, newest first."""
    query = select(AuditLog)
    if action:
        query = query.where(AuditLog.action == action.upper())
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.where(AuditLog.entity_id == entity_id)
    if security_only:
        query = query.where(AuditLog.is_security.is_(True))

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(AuditLog.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )

    return PaginatedResponse(
        items=[AuditLogResponse.model_validate(log) for log in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


# ── Denylist ──────────────────────────────────────────────────────────────────

@router.post("/denylist", response_model=DenyListEntryResponse, status_code=status.HTTP_201_CREATED)
async def add_denylist_entry(
    data: DenyListCreateRequest,
    current_user: User = Depends(CapabilityRequired(Action.MANAGE_DENYLIST)),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    """Bar an email and/or phone from creating bookings. The reason stays internal."""
    entry = await add_entry(
        db, reason=data.reason, email=data.email, phone=data.phone, created_by_id=current_user.id
    )
    await AuditRecorder().record(
        actor_id=current_user.id,
        action=AuditAction.DENYLIST_ADDED,
        entity_type="denylist",
        entity_id=entry.id,
        changes={"email": entry.email, "phone": entry.phone},
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        is_security=True,
    )
    return DenyListEntryResponse.model_validate(entry)


@router.delete("/denylist/{entry_id}", response_model=DenyListEntryResponse)
async def remove_denylist_entry(
    entry_id: UUID,
    current_user: User = Depends(CapabilityRequired(Action.MANAGE_DENYLIST)),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
):
    """Deactivate an entry. Kept for the record, no longer matched."""
    entry = await deactivate_entry(db, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Denylist entry not found")

    await AuditRecorder().record(
        actor_id=current_user.id,
        action=AuditAction.DENYLIST_REMOVED,
        entity_type="denylist",
        entity_id=entry.id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        is_security=True,
    )
    return DenyListEntryResponse.model_validate(entry)
