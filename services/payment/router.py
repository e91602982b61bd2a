"""
services/payment/router.py
Manual payment reconciliation: clients upload PayID / bank transfer
receipts, admins verify or reject them against the booking.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.dependencies import get_lifecycle, get_request_context
from services.booking.lifecycle import BookingLifecycle, RequestContext
from shared.middleware.auth import CapabilityRequired, get_current_user
from shared.middleware.permissions import Action
from shared.models.models import Payment, PaymentStatus, PaymentType, User
from shared.schemas.schemas import PaymentResponse, PaymentUploadRequest, PaymentVerifyRequest

router = APIRouter(prefix="/payments", tags=["Payments"])


# ── Client Uploads ────────────────────────────────────────────

@router.post("/{booking_id}/deposit", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def upload_deposit(
    booking_id: UUID,
    data: PaymentUploadRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """
    Client submits the deposit receipt. The amount must match the booking's
    deposit (±0.01). Moves the booking PENDING_DEPOSIT → PENDING_APPROVAL.
    A second upload is refused once the booking has left PENDING_DEPOSIT.
    """
    payment = await lifecycle.upload_deposit(
        booking_id,
        current_user,
        amount=data.amount,
        receipt_ref=data.receipt_url,
        reference=data.reference,
        method=data.method,
        notes=data.notes,
        context=context,
    )
    return PaymentResponse.model_validate(payment)


@router.post("/{booking_id}/balance", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def upload_balance(
    booking_id: UUID,
    data: PaymentUploadRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """Client submits the remaining balance (total − verified deposits) for a confirmed booking."""
    payment = await lifecycle.upload_balance(
        booking_id,
        current_user,
        amount=data.amount,
        receipt_ref=data.receipt_url,
        reference=data.reference,
        method=data.method,
        notes=data.notes,
        context=context,
    )
    return PaymentResponse.model_validate(payment)


# ── Admin Verification ────────────────────────────────────────

@router.post("/{payment_id}/verify", response_model=PaymentResponse)
async def verify_payment(
    payment_id: UUID,
    data: PaymentVerifyRequest,
    current_user: User = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    context: RequestContext = Depends(get_request_context),
):
    """Admin marks an uploaded payment VERIFIED (sets deposit_paid / balance_paid) or FAILED."""
    payment = await lifecycle.verify_payment(
        payment_id, current_user, verified=data.verified, notes=data.notes, context=context
    )
    return PaymentResponse.model_validate(payment)


@router.get("", response_model=list[PaymentResponse])
async def list_payments(
    status_filter: str = Query(PaymentStatus.UPLOADED.value, description="UPLOADED | VERIFIED | FAILED"),
    type_filter: str = Query(None, description="DEPOSIT | BALANCE | REFERRAL"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(CapabilityRequired(Action.REVIEW_PAYMENTS)),
    db: AsyncSession = Depends(get_db),
):
    """Admin review queue. Defaults to receipts awaiting verification, oldest first."""
    try:
        query = select(Payment).where(Payment.status == PaymentStatus(status_filter))
        if type_filter:
            query = query.where(Payment.type == PaymentType(type_filter))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payment status or type filter")

    query = query.order_by(Payment.created_at.asc()).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [PaymentResponse.model_validate(p) for p in result.scalars().all()]


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/me", response_model=list[PaymentResponse])
async def my_payment_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's payment history."""
    result = await db.execute(
        select(Payment)
        .where(Payment.payer_id == current_user.id)
        .order_by(Payment.created_at.desc())
        .limit(50)
    )
    payments = result.scalars().all()
    return [PaymentResponse.model_validate(p) for p in payments]
