"""
services/booking/lifecycle.py
Booking lifecycle engine: the only writer of Booking.status and Payment.status.

State Machine:
  PENDING_DEPOSIT → PENDING_APPROVAL → APPROVED → CONFIRMED → COMPLETED
  REJECTED / CANCELLED reachable from any non-terminal state.

Every operation checks (a) caller capability and ownership, (b) current
state, (c) data, before writing anything. The state precondition is then
re-asserted in the UPDATE itself (WHERE status = :expected), so a concurrent
writer that got there first turns into a Conflict instead of a lost update.
Audit entries and notifications follow the commit and never undo it.
"""

import logging
import secrets
import string
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.audit.service import AuditRecorder
from services.denylist.service import DenylistChecker
from services.notification.service import Notifier
from shared.middleware.permissions import Action, ensure_allowed
from shared.models.models import (
    AuditAction,
    Booking,
    BookingStatus,
    NotificationType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    PerformerProfile,
    PerformerService,
    Service,
    User,
    UserRole,
)
from shared.utils.dates import as_utc, utcnow
from shared.utils.errors import (
    Blocked,
    BookingError,
    Conflict,
    Forbidden,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationError,
)
from shared.utils.money import (
    amounts_match,
    compute_balance,
    compute_deposit,
    compute_referral,
    compute_total,
    to_decimal,
)

logger = logging.getLogger(__name__)

BOOKING = "booking"
PAYMENT = "payment"
REFERENCE_ATTEMPTS = 3
_BASE36 = string.digits + string.ascii_uppercase

_VERIFY_ACTIONS = {
    PaymentType.DEPOSIT: (AuditAction.DEPOSIT_VERIFIED, AuditAction.DEPOSIT_REJECTED),
    PaymentType.BALANCE: (AuditAction.BALANCE_VERIFIED, AuditAction.BALANCE_REJECTED),
}


@dataclass
class RequestContext:
    """Caller metadata copied onto audit entries."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class BookingSchedule:
    scheduled_at: datetime
    duration_minutes: int


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_reference_code(now: Optional[datetime] = None) -> str:
    """BK-<base36 epoch millis>-<4 random>, e.g. BK-LZ3K9Q2A-X7P1."""
    millis = int((now or utcnow()).timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"BK-{_base36(millis)}-{suffix}"


class BookingLifecycle:
    def __init__(
        self,
        db: AsyncSession,
        *,
        audit: Optional[AuditRecorder] = None,
        notifier: Optional[Notifier] = None,
        denylist: Optional[DenylistChecker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.audit = audit or AuditRecorder()
        self.notifier = notifier or Notifier()
        self.denylist = denylist or DenylistChecker(db)
        self.clock = clock

    # ── Helpers ───────────────────────────────────────────────

    async def _get_booking(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.db.get(Booking, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        return booking

    async def _performer_user_id(self, booking: Booking) -> Optional[uuid.UUID]:
        return await self.db.scalar(
            select(PerformerProfile.user_id).where(PerformerProfile.id == booking.performer_id)
        )

    async def _verified_deposits(self, booking_id: uuid.UUID) -> Decimal:
        total = await self.db.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.booking_id == booking_id,
                Payment.type == PaymentType.DEPOSIT,
                Payment.status == PaymentStatus.VERIFIED,
            )
        )
        return to_decimal(total or 0)

    def _require_non_terminal(self, booking: Booking) -> None:
        if booking.status.is_terminal:
            raise InvalidState(f"Booking is already {booking.status.value}")

    async def _guarded_update(self, booking: Booking, expected: BookingStatus, **values) -> None:
        """UPDATE ... WHERE status = :expected. Zero rows means someone else moved it first."""
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.warning(
                f"Concurrent update on booking {booking.id}: expected {expected.value}, no rows matched"
            )
            raise Conflict()

    async def _fail_pending_payments(self, booking: Booking, reason: str) -> int:
        """Close receipts still awaiting review when the booking leaves the flow."""
        result = await self.db.execute(
            update(Payment)
            .where(Payment.booking_id == booking.id, Payment.status == PaymentStatus.UPLOADED)
            .values(status=PaymentStatus.FAILED, notes=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _commit_and_refresh(self, *instances) -> None:
        await self.db.commit()
        for instance in instances:
            await self.db.refresh(instance)

    @asynccontextmanager
    async def _failure_audit(
        self,
        actor: Optional[User],
        action: AuditAction,
        entity_type: str,
        entity_id,
        context: RequestContext,
    ):
        # Read before any rollback expires the instance
        actor_id = actor.id if actor else None
        try:
            yield
        except Blocked:
            raise
        except BookingError as exc:
            await self.audit.record(
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                changes={"error": exc.code, "message": exc.message},
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                is_security=isinstance(exc, (Unauthorized, Forbidden)),
            )
            raise

    async def _audit(self, actor_id: Optional[uuid.UUID], action: AuditAction, entity_type: str,
                     entity_id, changes: dict, context: RequestContext) -> None:
        await self.audit.record(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

    # ── Create ────────────────────────────────────────────────

    async def create_booking(
        self,
        client: User,
        performer_id: uuid.UUID,
        service_id: uuid.UUID,
        schedule: BookingSchedule,
        venue: str,
        special_requests: Optional[str] = None,
        referral_percent: Optional[Decimal] = None,
        context: Optional[RequestContext] = None,
    ) -> Booking:
        context = context or RequestContext()
        async with self._failure_audit(client, AuditAction.BOOKING_CREATE_FAILED, BOOKING, None, context):
            ensure_allowed(client.role if client else None, Action.CREATE_BOOKING)

            if schedule.duration_minutes <= 0:
                raise ValidationError("Duration must be positive")
            if as_utc(schedule.scheduled_at) <= self.clock():
                raise ValidationError("Event date must be in the future")
            if not venue or not venue.strip():
                raise ValidationError("Venue is required")

            verdict = await self.denylist.check(email=client.email, phone=client.phone)
            if verdict.blocked:
                await self.audit.record(
                    actor_id=client.id,
                    action=AuditAction.BOOKING_BLOCKED,
                    entity_type=BOOKING,
                    changes={"reason": "DENYLIST", "entry_id": verdict.entry_id},
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    is_security=True,
                )
                raise Blocked()

            performer = await self.db.get(PerformerProfile, performer_id)
            if not performer or not performer.is_active:
                raise NotFound("Performer not found")
            service = await self.db.get(Service, service_id)
            if not service or not service.is_active:
                raise NotFound("Service not found")

            offering = await self.db.scalar(
                select(PerformerService).where(
                    PerformerService.performer_id == performer.id,
                    PerformerService.service_id == service.id,
                    PerformerService.is_offered.is_(True),
                )
            )
            if not offering:
                raise ValidationError("Performer does not offer this service")

            hourly_rate = offering.custom_price if offering.custom_price is not None else service.base_price
            if performer.deposit_percent is not None:
                deposit_percent = to_decimal(performer.deposit_percent)
            elif service.deposit_percent is not None:
                deposit_percent = to_decimal(service.deposit_percent)
            else:
                deposit_percent = to_decimal(settings.DEPOSIT_PERCENT_DEFAULT)

            try:
                total = compute_total(hourly_rate, schedule.duration_minutes)
                deposit = compute_deposit(total, deposit_percent)
                referral = compute_referral(total, referral_percent) if referral_percent is not None else None
            except ValueError as e:
                raise ValidationError(str(e))

            # A collision rollback expires every loaded instance, so keep plain values
            client_id = client.id
            performer_id, performer_user_id = performer.id, performer.user_id
            service_id, service_name = service.id, service.name

            booking = Booking(
                client_id=client_id,
                performer_id=performer_id,
                service_id=service_id,
                scheduled_at=schedule.scheduled_at,
                duration_minutes=schedule.duration_minutes,
                venue=venue.strip(),
                special_requests=special_requests,
                currency=settings.CURRENCY,
                hourly_rate=to_decimal(hourly_rate),
                total_amount=total,
                deposit_percent=deposit_percent,
                deposit_amount=deposit,
                referral_percent=referral_percent,
                referral_amount=referral,
                status=BookingStatus.PENDING_DEPOSIT,
            )

            for attempt in range(1, REFERENCE_ATTEMPTS + 1):
                booking.reference_code = generate_reference_code(self.clock())
                self.db.add(booking)
                try:
                    await self.db.commit()
                    break
                except IntegrityError:
                    await self.db.rollback()
                    logger.warning(f"Reference code collision on attempt {attempt}, regenerating")
            else:
                raise Conflict("Could not allocate a booking reference. Please retry.")

        logger.info(f"Booking {booking.reference_code} created by {client_id} (total {total}, deposit {deposit})")
        await self._audit(client_id, AuditAction.BOOKING_CREATED, BOOKING, booking.id, {
            "reference_code": booking.reference_code,
            "performer_id": performer_id,
            "service_id": service_id,
            "total_amount": total,
            "deposit_percent": deposit_percent,
            "deposit_amount": deposit,
        }, context)
        await self.notifier.notify(
            performer_user_id,
            NotificationType.BOOKING_CREATED,
            "New Booking Request",
            f"You have a new booking request for {service_name} "
            f"on {as_utc(booking.scheduled_at):%d %b %Y %H:%M} UTC.",
            related_entity_type=BOOKING,
            related_entity_id=booking.id,
            reference=booking.reference_code,
        )
        return booking

    # ── Payments ──────────────────────────────────────────────

    async def upload_deposit(
        self,
        booking_id: uuid.UUID,
        client: User,
        amount,
        receipt_ref: str,
        reference: Optional[str] = None,
        method: PaymentMethod = PaymentMethod.PAYID,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Payment:
        context = context or RequestContext()
        async with self._failure_audit(client, AuditAction.DEPOSIT_UPLOAD_FAILED, BOOKING, booking_id, context):
            ensure_allowed(client.role if client else None, Action.UPLOAD_PAYMENT)
            booking = await self._get_booking(booking_id)
            if booking.client_id != client.id:
                raise Forbidden("Not authorized for this booking")
            if booking.status != BookingStatus.PENDING_DEPOSIT:
                raise InvalidState(
                    f"Cannot upload deposit. Booking status: {booking.status.value}"
                )

            amount = to_decimal(amount)
            if amount <= 0:
                raise ValidationError("Amount must be positive")
            if not amounts_match(amount, booking.deposit_amount, settings.PAYMENT_AMOUNT_TOLERANCE):
                raise ValidationError(
                    f"Invalid amount. Expected ${booking.deposit_amount:.2f}",
                    details={"expected": str(booking.deposit_amount), "received": str(amount)},
                )
            if not receipt_ref or not receipt_ref.strip():
                raise ValidationError("Receipt is required")

            payment = Payment(
                booking_id=booking.id,
                payer_id=client.id,
                type=PaymentType.DEPOSIT,
                status=PaymentStatus.UPLOADED,
                amount=amount,
                method=method,
                receipt_url=receipt_ref.strip(),
                reference=reference or booking.reference_code,
                notes=notes,
            )
            self.db.add(payment)
            await self.db.flush()
            await self._guarded_update(
                booking, BookingStatus.PENDING_DEPOSIT, status=BookingStatus.PENDING_APPROVAL
            )
            await self._commit_and_refresh(booking, payment)

        logger.info(f"Deposit {amount} uploaded for booking {booking.reference_code}")
        await self._audit(client.id, AuditAction.DEPOSIT_UPLOADED, PAYMENT, payment.id, {
            "booking_id": booking.id,
            "amount": amount,
            "reference": payment.reference,
            "old_status": BookingStatus.PENDING_DEPOSIT.value,
            "new_status": booking.status.value,
        }, context)
        await self.notifier.notify_admins(
            NotificationType.DEPOSIT_UPLOADED,
            "Deposit Receipt Uploaded",
            f"A deposit of ${amount:.2f} was uploaded for booking {booking.reference_code}.",
            related_entity_type=BOOKING,
            related_entity_id=booking.id,
            reference=booking.reference_code,
        )
        return payment

    async def upload_balance(
        self,
        booking_id: uuid.UUID,
        client: User,
        amount,
        receipt_ref: str,
        reference: Optional[str] = None,
        method: PaymentMethod = PaymentMethod.PAYID,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Payment:
        """Balance (total minus verified deposits) against a confirmed booking."""
        context = context or RequestContext()
        async with self._failure_audit(client, AuditAction.BALANCE_UPLOAD_FAILED, BOOKING, booking_id, context):
            ensure_allowed(client.role if client else None, Action.UPLOAD_PAYMENT)
            booking = await self._get_booking(booking_id)
            if booking.client_id != client.id:
                raise Forbidden("Not authorized for this booking")
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidState(
                    f"Balance can only be paid on a confirmed booking. Booking status: {booking.status.value}"
                )
            if not booking.deposit_paid:
                raise InvalidState("Deposit has not been verified yet")
            if booking.balance_paid:
                raise InvalidState("Balance has already been paid")

            pending = await self.db.scalar(
                select(Payment.id).where(
                    Payment.booking_id == booking.id,
                    Payment.status == PaymentStatus.UPLOADED,
                )
            )
            if pending:
                raise InvalidState("A payment for this booking is already awaiting verification")

            expected = compute_balance(booking.total_amount, await self._verified_deposits(booking.id))
            amount = to_decimal(amount)
            if amount <= 0:
                raise ValidationError("Amount must be positive")
            if not amounts_match(amount, expected, settings.PAYMENT_AMOUNT_TOLERANCE):
                raise ValidationError(
                    f"Invalid amount. Expected ${expected:.2f}",
                    details={"expected": str(expected), "received": str(amount)},
                )
            if not receipt_ref or not receipt_ref.strip():
                raise ValidationError("Receipt is required")

            payment = Payment(
                booking_id=booking.id,
                payer_id=client.id,
                type=PaymentType.BALANCE,
                method=method,
                amount=amount,
                receipt_url=receipt_ref.strip(),
                reference=reference or booking.reference_code,
                notes=notes,
                status=PaymentStatus.UPLOADED,
            )
            self.db.add(payment)
            await self.db.flush()
            # Touch the row under the status guard so a concurrent cancel wins cleanly
            await self._guarded_update(booking, BookingStatus.CONFIRMED, updated_at=self.clock())
            await self._commit_and_refresh(booking, payment)

        logger.info(f"Balance {amount} uploaded for booking {booking.reference_code}")
        await self._audit(client.id, AuditAction.BALANCE_UPLOADED, PAYMENT, payment.id, {
            "booking_id": booking.id,
            "amount": amount,
            "expected": expected,
            "reference": payment.reference,
        }, context)
        await self.notifier.notify_admins(
            NotificationType.PAYMENT_UPLOADED,
            "Balance Payment Uploaded",
            f"A balance payment of ${amount:.2f} was uploaded for booking {booking.reference_code}.",
            related_entity_type=BOOKING,
            related_entity_id=booking.id,
            reference=booking.reference_code,
        )
        return payment

    async def verify_payment(
        self,
        payment_id: uuid.UUID,
        admin: User,
        verified: bool,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Payment:
        context = context or RequestContext()
        async with self._failure_audit(admin, AuditAction.PAYMENT_VERIFY_FAILED, PAYMENT, payment_id, context):
            ensure_allowed(admin.role if admin else None, Action.VERIFY_PAYMENT)
            payment = await self.db.get(Payment, payment_id)
            if not payment:
                raise NotFound("Payment not found")
            if payment.status != PaymentStatus.UPLOADED:
                raise InvalidState(f"Payment has already been {payment.status.value.lower()}")
            booking = await self._get_booking(payment.booking_id)
            self._require_non_terminal(booking)

            now = self.clock()
            result = await self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.UPLOADED)
                .values(
                    status=PaymentStatus.VERIFIED if verified else PaymentStatus.FAILED,
                    verified_by_id=admin.id,
                    verified_at=now,
                    notes=notes if notes is not None else payment.notes,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                raise Conflict("Payment was processed by another request")

            if verified and payment.type == PaymentType.DEPOSIT:
                await self._guarded_update(
                    booking, booking.status, deposit_paid=True, deposit_verified_at=now
                )
            elif verified and payment.type == PaymentType.BALANCE:
                await self._guarded_update(booking, booking.status, balance_paid=True)
            await self._commit_and_refresh(booking, payment)

        ok_action, failed_action = _VERIFY_ACTIONS.get(
            payment.type, (AuditAction.PAYMENT_VERIFIED, AuditAction.PAYMENT_REJECTED)
        )
        logger.info(
            f"{payment.type.value} payment {payment.id} {'verified' if verified else 'rejected'} by {admin.id}"
        )
        await self._audit(admin.id, ok_action if verified else failed_action, PAYMENT, payment.id, {
            "booking_id": booking.id,
            "amount": payment.amount,
            "verified": verified,
            "notes": notes,
        }, context)

        kind = payment.type.value.lower()
        if verified:
            client_type = (
                NotificationType.DEPOSIT_VERIFIED
                if payment.type == PaymentType.DEPOSIT
                else NotificationType.PAYMENT_VERIFIED
            )
            await self.notifier.notify(
                booking.client_id,
                client_type,
                f"{kind.capitalize()} Verified",
                f"Your {kind} of ${payment.amount:.2f} for booking {booking.reference_code} has been verified.",
                related_entity_type=BOOKING,
                related_entity_id=booking.id,
                reference=booking.reference_code,
            )
            await self.notifier.notify(
                await self._performer_user_id(booking),
                client_type,
                f"Booking {kind.capitalize()} Verified",
                f"The client's {kind} for booking {booking.reference_code} has been verified.",
                related_entity_type=BOOKING,
                related_entity_id=booking.id,
                reference=booking.reference_code,
            )
        else:
            await self.notifier.notify(
                booking.client_id,
                NotificationType.SYSTEM_ALERT,
                "Payment Verification Failed",
                f"Your {kind} payment for booking {booking.reference_code} could not be verified. "
                f"{notes or 'Please contact support.'}",
                related_entity_type=BOOKING,
                related_entity_id=booking.id,
                reference=booking.reference_code,
            )
        return payment

    # ── Decisions ─────────────────────────────────────────────

    async def admin_decide(
        self,
        booking_id: uuid.UUID,
        admin: User,
        approved: bool,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Booking:
        context = context or RequestContext()
        async with self._failure_audit(admin, AuditAction.BOOKING_DECISION_FAILED, BOOKING, booking_id, context):
            ensure_allowed(admin.role if admin else None, Action.DECIDE_BOOKING)
            booking = await self._get_booking(booking_id)
            if booking.status != BookingStatus.PENDING_APPROVAL:
                raise InvalidState(
                    f"Booking is not pending approval. Booking status: {booking.status.value}"
                )

            now = self.clock()
            if approved:
                values = {"status": BookingStatus.APPROVED, "approved_at": now}
            else:
                values = {
                    "status": BookingStatus.REJECTED,
                    "cancellation_reason": notes or "Rejected by admin",
                    "cancelled_at": now,
                    "cancelled_by": UserRole.ADMIN.value,
                }
            await self._guarded_update(booking, BookingStatus.PENDING_APPROVAL, **values)
            closed = 0
            if not approved:
                closed = await self._fail_pending_payments(booking, values["cancellation_reason"])
            await self._commit_and_refresh(booking)

        logger.info(f"Booking {booking.reference_code} {booking.status.value} by admin {admin.id}")
        await self._audit(
            admin.id,
            AuditAction.BOOKING_APPROVED if approved else AuditAction.BOOKING_REJECTED,
            BOOKING,
            booking.id,
            {
                "approved": approved,
                "notes": notes,
                "payments_closed": closed,
                "old_status": BookingStatus.PENDING_APPROVAL.value,
                "new_status": booking.status.value,
            },
            context,
        )

        if approved:
            notification_type = NotificationType.BOOKING_APPROVED
            title = "Booking Approved"
            client_message = (
                f"Your booking {booking.reference_code} has been approved and is awaiting performer confirmation."
            )
            performer_message = f"Booking {booking.reference_code} has been approved. Please confirm your availability."
        else:
            notification_type = NotificationType.BOOKING_CANCELLED
            title = "Booking Rejected"
            client_message = f"Your booking {booking.reference_code} was rejected: {booking.cancellation_reason}"
            performer_message = f"Booking {booking.reference_code} was rejected by the admin."

        await self.notifier.notify(
            booking.client_id, notification_type, title, client_message,
            related_entity_type=BOOKING, related_entity_id=booking.id, reference=booking.reference_code,
        )
        await self.notifier.notify(
            await self._performer_user_id(booking), notification_type, title, performer_message,
            related_entity_type=BOOKING, related_entity_id=booking.id, reference=booking.reference_code,
        )
        return booking

    async def performer_respond(
        self,
        booking_id: uuid.UUID,
        performer_user: User,
        accepted: bool,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Booking:
        context = context or RequestContext()
        async with self._failure_audit(
            performer_user, AuditAction.BOOKING_RESPONSE_FAILED, BOOKING, booking_id, context
        ):
            ensure_allowed(performer_user.role if performer_user else None, Action.RESPOND_BOOKING)
            profile = await self.db.scalar(
                select(PerformerProfile).where(PerformerProfile.user_id == performer_user.id)
            )
            if not profile:
                raise NotFound("Performer profile not found")
            booking = await self._get_booking(booking_id)
            if booking.performer_id != profile.id:
                raise Forbidden("Not authorized for this booking")
            if booking.status != BookingStatus.APPROVED:
                raise InvalidState(
                    f"Booking must be approved by admin first. Booking status: {booking.status.value}"
                )

            now = self.clock()
            if accepted:
                values = {"status": BookingStatus.CONFIRMED, "confirmed_at": now}
            else:
                values = {
                    "status": BookingStatus.REJECTED,
                    "cancellation_reason": notes or "Rejected by performer",
                    "cancelled_at": now,
                    "cancelled_by": UserRole.PERFORMER.value,
                }
            await self._guarded_update(booking, BookingStatus.APPROVED, **values)
            closed = 0
            if not accepted:
                closed = await self._fail_pending_payments(booking, values["cancellation_reason"])
            await self._commit_and_refresh(booking)

        logger.info(f"Booking {booking.reference_code} {booking.status.value} by performer {profile.id}")
        await self._audit(
            performer_user.id,
            AuditAction.BOOKING_CONFIRMED if accepted else AuditAction.BOOKING_REJECTED,
            BOOKING,
            booking.id,
            {
                "accepted": accepted,
                "notes": notes,
                "payments_closed": closed,
                "old_status": BookingStatus.APPROVED.value,
                "new_status": booking.status.value,
            },
            context,
        )

        if accepted:
            await self.notifier.notify(
                booking.client_id,
                NotificationType.BOOKING_CONFIRMED,
                "Booking Confirmed",
                f"{profile.stage_name} confirmed booking {booking.reference_code}.",
                related_entity_type=BOOKING, related_entity_id=booking.id, reference=booking.reference_code,
            )
        else:
            await self.notifier.notify(
                booking.client_id,
                NotificationType.BOOKING_CANCELLED,
                "Booking Rejected",
                f"Your booking {booking.reference_code} was rejected: {notes or 'No reason provided'}",
                related_entity_type=BOOKING, related_entity_id=booking.id, reference=booking.reference_code,
            )
        return booking

    # ── Cancellation & completion ─────────────────────────────

    async def cancel_booking(
        self,
        booking_id: uuid.UUID,
        caller: User,
        reason: str,
        context: Optional[RequestContext] = None,
    ) -> Booking:
        context = context or RequestContext()
        async with self._failure_audit(caller, AuditAction.BOOKING_CANCEL_FAILED, BOOKING, booking_id, context):
            ensure_allowed(caller.role if caller else None, Action.CANCEL_BOOKING)
            booking = await self._get_booking(booking_id)
            if caller.role == UserRole.CLIENT and booking.client_id != caller.id:
                raise Forbidden("Not authorized for this booking")
            self._require_non_terminal(booking)
            if not reason or not reason.strip():
                raise ValidationError("A cancellation reason is required")

            previous = booking.status
            await self._guarded_update(
                booking,
                previous,
                status=BookingStatus.CANCELLED,
                cancellation_reason=reason.strip(),
                cancelled_at=self.clock(),
                cancelled_by=caller.role.value,
            )
            closed = await self._fail_pending_payments(booking, reason.strip())
            await self._commit_and_refresh(booking)

        logger.info(f"Booking {booking.reference_code} cancelled by {caller.role.value} {caller.id}")
        await self._audit(caller.id, AuditAction.BOOKING_CANCELLED, BOOKING, booking.id, {
            "reason": booking.cancellation_reason,
            "payments_closed": closed,
            "old_status": previous.value,
            "new_status": booking.status.value,
        }, context)

        recipients = [await self._performer_user_id(booking)]
        if caller.id != booking.client_id:
            recipients.append(booking.client_id)
        await self.notifier.notify_many(
            recipients,
            NotificationType.BOOKING_CANCELLED,
            "Booking Cancelled",
            f"Booking {booking.reference_code} was cancelled: {booking.cancellation_reason}",
            related_entity_type=BOOKING, related_entity_id=booking.id, reference=booking.reference_code,
        )
        return booking

    async def complete_booking(
        self,
        booking_id: uuid.UUID,
        caller: Optional[User] = None,
        context: Optional[RequestContext] = None,
    ) -> Booking:
        """Mark a confirmed booking completed once its event has ended. caller=None is the scheduler."""
        context = context or RequestContext()
        async with self._failure_audit(caller, AuditAction.BOOKING_COMPLETE_FAILED, BOOKING, booking_id, context):
            if caller is not None:
                ensure_allowed(caller.role, Action.COMPLETE_BOOKING)
            booking = await self._get_booking(booking_id)
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidState(
                    f"Only confirmed bookings can be completed. Booking status: {booking.status.value}"
                )
            now = self.clock()
            ends_at = as_utc(booking.scheduled_at) + timedelta(minutes=booking.duration_minutes)
            if ends_at > now:
                raise ValidationError("The event has not finished yet")

            await self._guarded_update(
                booking, BookingStatus.CONFIRMED, status=BookingStatus.COMPLETED, completed_at=now
            )
            await self._commit_and_refresh(booking)

        logger.info(f"Booking {booking.reference_code} completed")
        await self._audit(caller.id if caller else None, AuditAction.BOOKING_COMPLETED, BOOKING, booking.id, {
            "old_status": BookingStatus.CONFIRMED.value,
            "new_status": booking.status.value,
            "system": caller is None,
        }, context)
        await self.notifier.notify_many(
            [booking.client_id, await self._performer_user_id(booking)],
            NotificationType.BOOKING_COMPLETED,
            "Booking Completed",
            f"Booking {booking.reference_code} has been marked as completed. Thank you!",
            related_entity_type=BOOKING, related_entity_id=booking.id, reference=booking.reference_code,
        )
        return booking

    async def cancel_stale_booking(
        self,
        booking_id: uuid.UUID,
        threshold_hours: Optional[int] = None,
    ) -> Booking:
        """System cancellation of a PENDING_DEPOSIT booking nobody paid for."""
        threshold_hours = threshold_hours or settings.STALE_BOOKING_HOURS
        booking = await self._get_booking(booking_id)
        if booking.status != BookingStatus.PENDING_DEPOSIT:
            raise InvalidState(f"Booking is no longer awaiting a deposit ({booking.status.value})")
        paid = await self.db.scalar(
            select(Payment.id).where(
                Payment.booking_id == booking.id,
                Payment.status.in_([PaymentStatus.UPLOADED, PaymentStatus.VERIFIED]),
            )
        )
        if paid:
            raise InvalidState("Booking has a deposit on file")
        cutoff = self.clock() - timedelta(hours=threshold_hours)
        if as_utc(booking.created_at) > cutoff:
            raise ValidationError("Booking is not stale yet")

        reason = f"Auto-cancelled: deposit not received within {threshold_hours} hours"
        await self._guarded_update(
            booking,
            BookingStatus.PENDING_DEPOSIT,
            status=BookingStatus.CANCELLED,
            cancellation_reason=reason,
            cancelled_at=self.clock(),
            cancelled_by="SYSTEM",
        )
        await self._commit_and_refresh(booking)

        logger.info(f"Stale booking {booking.reference_code} auto-cancelled")
        await self._audit(None, AuditAction.AUTO_CANCELLED_STALE, BOOKING, booking.id, {
            "reference_code": booking.reference_code,
            "reason": reason,
            "created_at": booking.created_at,
        }, RequestContext())
        await self.notifier.notify_many(
            [booking.client_id, await self._performer_user_id(booking)],
            NotificationType.BOOKING_CANCELLED,
            "Booking Cancelled",
            f"Booking {booking.reference_code} was cancelled: no deposit received within "
            f"{threshold_hours} hours. Please create a new booking if you still wish to proceed.",
            related_entity_type=BOOKING, related_entity_id=booking.id, reference=booking.reference_code,
        )
        return booking
