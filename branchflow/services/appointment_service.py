"""Appointment lifecycle operations: book, cancel, check in, reschedule, no-show.

Validation rules live in booking_validation; status changes go through
appointment_state. This module wires them to persistence.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from branchflow.core.clock import ensure_aware
from branchflow.core.errors import (
    BusinessRuleError,
    EngineError,
    ErrorCode,
    IllegalTransitionError,
    NotFoundError,
)
from branchflow.db.enums import ActorRole, AppointmentStatus, AppointmentType
from branchflow.db.models import (
    Appointment,
    AppointmentReschedule,
    Branch,
    Service,
    ServicePoint,
    ServicePointService,
)
from branchflow.services import appointment_state, policy_service, reminder_service
from branchflow.services.booking_validation import (
    ValidationResult,
    validate_booking,
    validate_cancellation,
    validate_reschedule,
)

logger = logging.getLogger(__name__)

CONFIRMATION_CODE_ALPHABET = string.ascii_uppercase + string.digits
CONFIRMATION_CODE_LENGTH = 8
CONFIRMATION_CODE_ATTEMPTS = 10


class AppointmentServiceError(EngineError):
    """Base exception for appointment service errors."""

    pass


class AppointmentNotFoundError(NotFoundError):
    """Appointment not found."""

    pass


class SlotUnavailableError(AppointmentServiceError):
    """Another live appointment already holds this service slot."""

    code = ErrorCode.SLOT_UNAVAILABLE


class ServiceNotOfferedError(AppointmentServiceError):
    """No active service point at the branch can serve this service."""

    code = ErrorCode.SERVICE_NOT_OFFERED


def _raise_if_invalid(result: ValidationResult) -> None:
    if not result.valid:
        raise BusinessRuleError(result.message or "Request not allowed", result.error_code)


# =============================================================================
# Helpers
# =============================================================================


def generate_confirmation_code() -> str:
    """Generate an 8-char uppercase alphanumeric confirmation code."""
    return "".join(
        secrets.choice(CONFIRMATION_CODE_ALPHABET) for _ in range(CONFIRMATION_CODE_LENGTH)
    )


def unique_confirmation_code(db: Session) -> str:
    for _ in range(CONFIRMATION_CODE_ATTEMPTS):
        code = generate_confirmation_code()
        taken = db.execute(
            select(Appointment.id).where(Appointment.confirmation_code == code)
        ).first()
        if not taken:
            return code
    raise AppointmentServiceError("Could not allocate a confirmation code")


def is_service_offered(db: Session, branch_id: int, service_id: int) -> bool:
    """True if an active service point at the branch has an active capability row."""
    row = db.execute(
        select(ServicePointService.id)
        .join(ServicePoint, ServicePoint.id == ServicePointService.service_point_id)
        .where(
            ServicePoint.branch_id == branch_id,
            ServicePoint.is_active.is_(True),
            ServicePointService.service_id == service_id,
            ServicePointService.is_active.is_(True),
        )
        .limit(1)
    ).first()
    return row is not None


def is_slot_taken(
    db: Session,
    branch_id: int,
    service_id: int,
    scheduled_at: datetime,
    exclude_appointment_id: int | None = None,
) -> bool:
    query = select(Appointment.id).where(
        Appointment.branch_id == branch_id,
        Appointment.service_id == service_id,
        Appointment.scheduled_at == scheduled_at,
        Appointment.status != AppointmentStatus.CANCELLED.value,
        Appointment.appointment_type == AppointmentType.BOOKING.value,
    )
    if exclude_appointment_id is not None:
        query = query.where(Appointment.id != exclude_appointment_id)
    return db.execute(query.limit(1)).first() is not None


# =============================================================================
# Reads
# =============================================================================


def get_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
    return appointment


def get_by_confirmation_code(db: Session, confirmation_code: str) -> Appointment:
    appointment = db.execute(
        select(Appointment).where(
            Appointment.confirmation_code == confirmation_code.strip().upper()
        )
    ).scalar_one_or_none()
    if appointment is None:
        raise AppointmentNotFoundError("No appointment matches that confirmation code")
    return appointment


def list_appointments(
    db: Session,
    branch_id: int,
    *,
    status: AppointmentStatus | None = None,
    date_start: datetime | None = None,
    date_end: datetime | None = None,
    limit: int = 200,
) -> list[Appointment]:
    """List a branch's appointments ordered by scheduled time."""
    query = select(Appointment).where(Appointment.branch_id == branch_id)
    if status is not None:
        query = query.where(Appointment.status == status.value)
    if date_start is not None:
        query = query.where(Appointment.scheduled_at >= ensure_aware(date_start))
    if date_end is not None:
        query = query.where(Appointment.scheduled_at <= ensure_aware(date_end))
    query = query.order_by(Appointment.scheduled_at, Appointment.id).limit(limit)
    return list(db.execute(query).scalars().all())


def get_reschedule_count(db: Session, appointment_id: int) -> int:
    return db.execute(
        select(func.count(AppointmentReschedule.id)).where(
            AppointmentReschedule.appointment_id == appointment_id
        )
    ).scalar_one()


def list_reschedule_history(db: Session, appointment_id: int) -> list[AppointmentReschedule]:
    return list(
        db.execute(
            select(AppointmentReschedule)
            .where(AppointmentReschedule.appointment_id == appointment_id)
            .order_by(AppointmentReschedule.created_at, AppointmentReschedule.id)
        ).scalars().all()
    )


# =============================================================================
# Booking
# =============================================================================


def book_appointment(
    db: Session,
    *,
    branch_id: int,
    service_id: int,
    scheduled_at: datetime,
    now: datetime,
    user_id: int | None = None,
    guest_name: str | None = None,
    guest_email: str | None = None,
) -> Appointment:
    """
    Book a new appointment in ``scheduled`` status.

    Raises:
        NotFoundError: unknown branch or service
        BusinessRuleError: PAST_DATE / EXCEEDS_MAX_ADVANCE
        ServiceNotOfferedError: no capable service point at the branch
        SlotUnavailableError: slot already booked
    """
    scheduled_at = ensure_aware(scheduled_at)

    branch = db.get(Branch, branch_id)
    if branch is None or not branch.is_active:
        raise NotFoundError(f"Branch {branch_id} not found")
    service = db.get(Service, service_id)
    if service is None or not service.is_active:
        raise NotFoundError(f"Service {service_id} not found")

    policy = policy_service.get_policy(db, branch_id)
    _raise_if_invalid(validate_booking(scheduled_at, policy, now=now))

    if not is_service_offered(db, branch_id, service_id):
        raise ServiceNotOfferedError(
            f"Service {service.name} is not offered at branch {branch.name}"
        )
    if is_slot_taken(db, branch_id, service_id, scheduled_at):
        raise SlotUnavailableError("That time slot is no longer available")

    appointment = Appointment(
        branch_id=branch_id,
        service_id=service_id,
        user_id=user_id,
        guest_name=guest_name.strip() if guest_name else None,
        guest_email=guest_email.strip().lower() if guest_email else None,
        confirmation_code=unique_confirmation_code(db),
        status=AppointmentStatus.SCHEDULED.value,
        scheduled_at=scheduled_at,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(appointment)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise SlotUnavailableError("That time slot is no longer available")

    logger.info(
        "Appointment booked id=%s branch_id=%s service_id=%s",
        appointment.id,
        branch_id,
        service_id,
    )
    return appointment


# =============================================================================
# Lifecycle transitions
# =============================================================================


def cancel_appointment(
    db: Session,
    appointment_id: int,
    *,
    actor_id: int | None,
    actor_role: ActorRole,
    now: datetime,
) -> Appointment:
    """Cancel a scheduled or checked-in appointment and retire its pending reminders."""
    appointment = get_appointment(db, appointment_id)
    appointment_state.check_transition(appointment.status, AppointmentStatus.CANCELLED)

    policy = policy_service.get_policy(db, appointment.branch_id)
    _raise_if_invalid(
        validate_cancellation(appointment.scheduled_at, policy, actor_role, now=now)
    )

    appointment_state.transition(
        db,
        appointment,
        AppointmentStatus.CANCELLED,
        now=now,
        cancelled_at=now,
        cancelled_by_id=actor_id,
    )
    reminder_service.cancel_pending_reminders(db, appointment.id)
    return appointment


def check_in(db: Session, appointment: Appointment, *, now: datetime) -> Appointment:
    """Mark the customer as arrived; stamps ``attended_at``."""
    return appointment_state.transition(
        db,
        appointment,
        AppointmentStatus.CHECKED_IN,
        now=now,
        attended_at=now,
    )


def check_in_by_code(db: Session, confirmation_code: str, *, now: datetime) -> Appointment:
    return check_in(db, get_by_confirmation_code(db, confirmation_code), now=now)


def mark_no_show(
    db: Session, appointment_id: int, *, actor_id: int | None, now: datetime
) -> Appointment:
    """Manually mark a scheduled appointment as no-show."""
    appointment = get_appointment(db, appointment_id)
    appointment_state.transition(
        db,
        appointment,
        AppointmentStatus.NO_SHOW,
        now=now,
        no_show_marked_at=now,
        auto_marked_as_no_show=False,
    )
    logger.info("Appointment %s marked no-show by actor_id=%s", appointment_id, actor_id)
    return appointment


def reschedule_appointment(
    db: Session,
    appointment_id: int,
    new_scheduled_at: datetime,
    *,
    actor_id: int | None,
    actor_role: ActorRole,
    now: datetime,
    reason: str | None = None,
) -> Appointment:
    """
    Move a scheduled appointment to a new time.

    Status stays ``scheduled``. The write is a compare-and-set on both the
    status and the previous time, so a concurrent cancel or reschedule wins
    cleanly. Each success appends an immutable history row.
    """
    new_scheduled_at = ensure_aware(new_scheduled_at)
    appointment = get_appointment(db, appointment_id)
    appointment_state.require_status(
        appointment, {AppointmentStatus.SCHEDULED}, AppointmentStatus.SCHEDULED
    )

    reschedule_count = get_reschedule_count(db, appointment.id)
    policy = policy_service.get_policy(db, appointment.branch_id)
    _raise_if_invalid(
        validate_reschedule(
            appointment.scheduled_at,
            new_scheduled_at,
            policy,
            reschedule_count,
            actor_role,
            now=now,
        )
    )

    if is_slot_taken(
        db,
        appointment.branch_id,
        appointment.service_id,
        new_scheduled_at,
        exclude_appointment_id=appointment.id,
    ):
        raise SlotUnavailableError("That time slot is no longer available")

    previous = appointment.scheduled_at
    try:
        result = db.execute(
            update(Appointment)
            .where(
                and_(
                    Appointment.id == appointment.id,
                    Appointment.status == AppointmentStatus.SCHEDULED.value,
                    Appointment.scheduled_at == previous,
                )
            )
            .values(
                scheduled_at=new_scheduled_at,
                original_scheduled_at=appointment.original_scheduled_at or previous,
                rescheduled_by_id=actor_id,
                rescheduled_at=now,
                reschedule_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
    except IntegrityError:
        db.rollback()
        raise SlotUnavailableError("That time slot is no longer available")

    if result.rowcount != 1:
        db.refresh(appointment)
        raise IllegalTransitionError(
            appointment.status,
            AppointmentStatus.SCHEDULED.value,
            "Appointment was modified concurrently, please retry",
        )

    db.add(
        AppointmentReschedule(
            appointment_id=appointment.id,
            previous_scheduled_at=previous,
            new_scheduled_at=new_scheduled_at,
            actor_id=actor_id,
            reason=reason,
            created_at=now,
        )
    )
    db.flush()
    db.refresh(appointment)

    reminder_service.cancel_pending_reminders(db, appointment.id)
    logger.info(
        "Appointment %s rescheduled (count=%s) by actor_id=%s",
        appointment.id,
        reschedule_count + 1,
        actor_id,
    )
    return appointment


# =============================================================================
# Sweeps
# =============================================================================


def mark_overdue_no_shows(db: Session, *, now: datetime, grace_minutes: int = 1) -> int:
    """
    Auto-mark scheduled appointments whose time has passed as no-show.

    Returns the number of appointments marked. The status predicate in the
    UPDATE keeps this safe against a check-in landing at the same moment.
    """
    cutoff = now - timedelta(minutes=grace_minutes)
    marked = appointment_state.bulk_transition(
        db,
        AppointmentStatus.SCHEDULED,
        AppointmentStatus.NO_SHOW,
        Appointment.scheduled_at < cutoff,
        Appointment.no_show_marked_at.is_(None),
        now=now,
        no_show_marked_at=now,
        auto_marked_as_no_show=True,
    )
    if marked:
        logger.info("Auto-marked %s appointments as no-show", marked)
    return marked
