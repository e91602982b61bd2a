"""
shared/models/models.py
All SQLAlchemy ORM models for the Performer Booking Platform.
UUID primary keys throughout; portable types so the same models run
on PostgreSQL (production) and SQLite (tests).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base
from shared.utils.dates import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CLIENT = "CLIENT"
    PERFORMER = "PERFORMER"
    ADMIN = "ADMIN"


class BookingStatus(str, PyEnum):
    PENDING_DEPOSIT = "PENDING_DEPOSIT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
)


class PaymentType(str, PyEnum):
    DEPOSIT = "DEPOSIT"
    BALANCE = "BALANCE"
    REFERRAL = "REFERRAL"


class PaymentMethod(str, PyEnum):
    PAYID = "PAYID"
    BANK_TRANSFER = "BANK_TRANSFER"


class PaymentStatus(str, PyEnum):
    UPLOADED = "UPLOADED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


class NotificationType(str, PyEnum):
    BOOKING_CREATED = "BOOKING_CREATED"
    DEPOSIT_UPLOADED = "DEPOSIT_UPLOADED"
    PAYMENT_UPLOADED = "PAYMENT_UPLOADED"
    BOOKING_APPROVED = "BOOKING_APPROVED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    DEPOSIT_VERIFIED = "DEPOSIT_VERIFIED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    BOOKING_REMINDER = "BOOKING_REMINDER"
    PAYMENT_REMINDER = "PAYMENT_REMINDER"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class AuditAction(str, PyEnum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_BLOCKED = "BOOKING_BLOCKED"
    BOOKING_CREATE_FAILED = "BOOKING_CREATE_FAILED"
    DEPOSIT_UPLOADED = "DEPOSIT_UPLOADED"
    DEPOSIT_UPLOAD_FAILED = "DEPOSIT_UPLOAD_FAILED"
    BALANCE_UPLOADED = "BALANCE_UPLOADED"
    BALANCE_UPLOAD_FAILED = "BALANCE_UPLOAD_FAILED"
    BOOKING_APPROVED = "BOOKING_APPROVED"
    BOOKING_REJECTED = "BOOKING_REJECTED"
    BOOKING_DECISION_FAILED = "BOOKING_DECISION_FAILED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_RESPONSE_FAILED = "BOOKING_RESPONSE_FAILED"
    DEPOSIT_VERIFIED = "DEPOSIT_VERIFIED"
    DEPOSIT_REJECTED = "DEPOSIT_REJECTED"
    BALANCE_VERIFIED = "BALANCE_VERIFIED"
    BALANCE_REJECTED = "BALANCE_REJECTED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    PAYMENT_VERIFY_FAILED = "PAYMENT_VERIFY_FAILED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_CANCEL_FAILED = "BOOKING_CANCEL_FAILED"
    AUTO_CANCELLED_STALE = "AUTO_CANCELLED_STALE"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    BOOKING_COMPLETE_FAILED = "BOOKING_COMPLETE_FAILED"
    REMINDER_SENT = "REMINDER_SENT"
    DENYLIST_ADDED = "DENYLIST_ADDED"
    DENYLIST_REMOVED = "DENYLIST_REMOVED"
    CLEANUP_NOTIFICATIONS = "CLEANUP_NOTIFICATIONS"
    CLEANUP_AUDIT_LOGS = "CLEANUP_AUDIT_LOGS"


# ── Mixins ────────────────────────────────────────────────────

class UUIDPrimaryKeyMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


# ── Parties & Catalogue ───────────────────────────────────────

class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Account of a client, performer, or admin."""
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.CLIENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class PerformerProfile(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Performer's public profile. One per performer user."""
    __tablename__ = "performer_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    stage_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Overrides the service / platform default when set
    deposit_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Service(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Catalogue of bookable services, priced per hour."""
    __tablename__ = "services"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    deposit_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PerformerService(UUIDPrimaryKeyMixin, Base):
    """Which services a performer offers, with an optional custom hourly price."""
    __tablename__ = "performer_services"

    performer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("performer_profiles.id", ondelete="CASCADE"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id", ondelete="CASCADE"), nullable=False
    )
    custom_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_offered: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("performer_id", "service_id", name="uq_performer_service"),
    )


# ── Booking ───────────────────────────────────────────────────

class Booking(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    Core booking entity. State fields are written only by the lifecycle engine.
    PENDING_DEPOSIT → PENDING_APPROVAL → APPROVED → CONFIRMED → COMPLETED,
    with REJECTED / CANCELLED reachable from any non-terminal state.
    """
    __tablename__ = "bookings"

    reference_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    performer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("performer_profiles.id"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )

    # Schedule
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    venue: Mapped[str] = mapped_column(Text, nullable=False)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (frozen at creation)
    currency: Mapped[str] = mapped_column(String(3), default="AUD", nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    deposit_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    referral_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    referral_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING_DEPOSIT
    )
    deposit_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    balance_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Milestones
    deposit_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_booking_duration_positive"),
        CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
        CheckConstraint(
            "deposit_amount >= 0 AND deposit_amount <= total_amount",
            name="ck_booking_deposit_range",
        ),
        Index("ix_bookings_client_id", "client_id"),
        Index("ix_bookings_performer_id", "performer_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_at", "scheduled_at"),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.reference_code} ({self.status})>"


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    A manually reconciled payment (PayID / bank transfer) against a booking.
    UPLOADED → VERIFIED | FAILED, never regresses.
    """
    __tablename__ = "payments"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    type: Mapped[PaymentType] = mapped_column(Enum(PaymentType), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod), nullable=False, default=PaymentMethod.PAYID
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.UPLOADED
    )
    verified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        Index("ix_payments_booking_id", "booking_id"),
        Index("ix_payments_status", "status"),
    )


# ── Side-effect records ───────────────────────────────────────

class AuditLog(UUIDPrimaryKeyMixin, Base):
    """Append-only record of who did what to which entity."""
    __tablename__ = "audit_logs"

    # Nullable for system-initiated actions; no FK so denied attempts still log
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    changes: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_security: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_created_at", "created_at"),
        Index("ix_audit_logs_action", "action"),
    )


class Notification(UUIDPrimaryKeyMixin, Base):
    """In-app notification log. Delivered out-of-band via SMS / email."""
    __tablename__ = "notifications"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    related_entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_sms: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_email: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_notifications_user_id_read", "user_id", "is_read"),
        Index("ix_notifications_related", "related_entity_type", "related_entity_id"),
    )


class DenyListEntry(UUIDPrimaryKeyMixin, Base):
    """Contact identifiers barred from transacting. Reason is internal only."""
    __tablename__ = "denylist_entries"

    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "email IS NOT NULL OR phone IS NOT NULL", name="ck_denylist_has_identifier"
        ),
        Index("ix_denylist_email", "email"),
        Index("ix_denylist_phone", "phone"),
    )
