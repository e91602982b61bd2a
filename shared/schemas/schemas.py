"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import PaymentMethod


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    performer_id: uuid.UUID
    service_id: uuid.UUID
    scheduled_at: datetime
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    venue: str = Field(..., min_length=3, max_length=500)
    special_requests: Optional[str] = Field(None, max_length=1000)
    referral_percent: Optional[Decimal] = Field(None, ge=0, le=100)

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("Scheduled time must be in the future")
        return v


class BookingResponse(BaseSchema):
    id: uuid.UUID
    reference_code: str
    client_id: uuid.UUID
    performer_id: uuid.UUID
    service_id: uuid.UUID
    scheduled_at: datetime
    duration_minutes: int
    venue: str
    special_requests: Optional[str]
    currency: str
    hourly_rate: Decimal
    total_amount: Decimal
    deposit_percent: Decimal
    deposit_amount: Decimal
    referral_percent: Optional[Decimal]
    referral_amount: Optional[Decimal]
    status: str
    deposit_paid: bool
    balance_paid: bool
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    deposit_verified_at: Optional[datetime]
    approved_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class AdminDecisionRequest(BaseSchema):
    approved: bool
    notes: Optional[str] = Field(None, max_length=1000)


class PerformerResponseRequest(BaseSchema):
    accepted: bool
    notes: Optional[str] = Field(None, max_length=1000)


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


# ── Payment ───────────────────────────────────────────────────

class PaymentUploadRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    receipt_url: str = Field(..., min_length=1, max_length=2000)
    reference: Optional[str] = Field(None, max_length=255)
    method: PaymentMethod = PaymentMethod.PAYID
    notes: Optional[str] = Field(None, max_length=1000)


class PaymentVerifyRequest(BaseSchema):
    verified: bool
    notes: Optional[str] = Field(None, max_length=1000)


class PaymentResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    payer_id: uuid.UUID
    type: str
    method: str
    amount: Decimal
    reference: Optional[str]
    receipt_url: Optional[str]
    notes: Optional[str]
    status: str
    verified_by_id: Optional[uuid.UUID]
    verified_at: Optional[datetime]
    created_at: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    message: str
    related_entity_type: Optional[str]
    related_entity_id: Optional[str]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


# ── Admin ─────────────────────────────────────────────────────

class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    actor_id: Optional[uuid.UUID]
    action: str
    entity_type: str
    entity_id: Optional[str]
    changes: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    is_security: bool
    created_at: datetime


class DenyListCreateRequest(BaseSchema):
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=r"^\+?\d{8,15}$")
    reason: str = Field(..., min_length=3, max_length=1000)

    @model_validator(mode="after")
    def require_identifier(self):
        if not self.email and not self.phone:
            raise ValueError("Provide an email or a phone number")
        return self


class DenyListEntryResponse(BaseSchema):
    id: uuid.UUID
    email: Optional[str]
    phone: Optional[str]
    reason: str
    is_active: bool
    created_by_id: Optional[uuid.UUID]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
