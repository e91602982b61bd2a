"""
services/booking/router.py
Booking endpoints. Every state change goes through BookingLifecycle;
this module only parses requests, scopes reads, and shapes responses.
States: PENDING_DEPOSIT → PENDING_APPROVAL → APPROVED → CONFIRMED → COMPLETED
        (REJECTED | CANCELLED from any non-terminal state)
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.dependencies import get_lifecycle, get_request_context
from services.booking.lifecycle import BookingLifecycle, BookingSchedule, RequestContext
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, BookingStatus, PerformerProfile, User, UserRole
from shared.schemas.schemas import (
    AdminDecisionRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    PerformerResponseRequest,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_booking_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


async def _performer_profile_id(user: User, db: AsyncSession) -> Optional[UUID]:
    return await db.scalar(select(PerformerProfile.id).where(PerformerProfile.user_id == user.id))


# ── Lifecycle ─────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """Client requests a performer for a service. Starts in PENDING_DEPOSIT."""
    booking = await lifecycle.create_booking(
        client=current_user,
        performer_id=data.performer_id,
        service_id=data.service_id,
        schedule=BookingSchedule(scheduled_at=data.scheduled_at, duration_minutes=data.duration_minutes),
        venue=data.venue,
        special_requests=data.special_requests,
        referral_percent=data.referral_percent,
        context=context,
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/admin-approve", response_model=BookingResponse)
async def admin_decide(
    booking_id: UUID,
    data: AdminDecisionRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """Admin approves or rejects a booking whose deposit receipt is in. PENDING_APPROVAL → APPROVED | REJECTED."""
    booking = await lifecycle.admin_decide(
        booking_id, current_user, approved=data.approved, notes=data.notes, context=context
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/performer-respond", response_model=BookingResponse)
async def performer_respond(
    booking_id: UUID,
    data: PerformerResponseRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """Assigned performer accepts or rejects. APPROVED → CONFIRMED | REJECTED."""
    booking = await lifecycle.performer_respond(
        booking_id, current_user, accepted=data.accepted, notes=data.notes, context=context
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """Client cancels their own booking, or an admin cancels any non-terminal booking."""
    booking = await lifecycle.cancel_booking(booking_id, current_user, data.reason, context=context)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """Admin marks a confirmed booking completed after the event. CONFIRMED → COMPLETED."""
    booking = await lifecycle.complete_booking(booking_id, current_user, context=context)
    return BookingResponse.model_validate(booking)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get booking details. Client sees own, performer sees assigned, admin sees all."""
    booking = await _get_booking_or_404(booking_id, db)

    if current_user.role == UserRole.CLIENT and booking.client_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized")
    elif current_user.role == UserRole.PERFORMER:
        if booking.performer_id != await _performer_profile_id(current_user, db):
            raise HTTPException(status_code=403, detail="Not authorized")

    return BookingResponse.model_validate(booking)


@router.get("", response_model=list[BookingResponse])
async def list_my_bookings(
    status_filter: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List bookings visible to the caller. Admins see everything."""
    query = select(Booking)
    if current_user.role == UserRole.PERFORMER:
        profile_id = await _performer_profile_id(current_user, db)
        if not profile_id:
            return []
        query = query.where(Booking.performer_id == profile_id)
    elif current_user.role == UserRole.CLIENT:
        query = query.where(Booking.client_id == current_user.id)

    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")

    query = query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [BookingResponse.model_validate(b) for b in result.scalars().all()]
