"""Appointment API endpoints: booking, cancellation, reschedule, check-in, no-show."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from branchflow.core.clock import Clock
from branchflow.core.deps import (
    ActorContext,
    get_actor,
    get_clock,
    get_db,
    require_roles,
)
from branchflow.core.errors import EngineError, to_http_exception
from branchflow.db.enums import ActorRole, AppointmentStatus
from branchflow.db.models import Appointment
from branchflow.services import appointment_service, reminder_service

router = APIRouter()

STAFF_ROLES = [ActorRole.ADMIN, ActorRole.STAFF]


# =============================================================================
# Schemas
# =============================================================================


class AppointmentCreate(BaseModel):
    branch_id: int
    service_id: int
    scheduled_at: datetime
    guest_name: str | None = Field(None, max_length=255)
    guest_email: str | None = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class AppointmentRead(BaseModel):
    id: int
    branch_id: int
    service_id: int
    service_point_id: int | None
    user_id: int | None
    guest_name: str | None
    confirmation_code: str
    appointment_type: str
    status: str
    scheduled_at: datetime
    original_scheduled_at: datetime | None
    attended_at: datetime | None
    no_show_marked_at: datetime | None
    auto_marked_as_no_show: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class CancelRequest(BaseModel):
    """Guests authorize with their confirmation code."""

    confirmation_code: str | None = None


class RescheduleRequest(BaseModel):
    new_scheduled_at: datetime
    reason: str | None = Field(None, max_length=500)
    confirmation_code: str | None = None


class CheckInRequest(BaseModel):
    confirmation_code: str = Field(..., min_length=4, max_length=16)


class RescheduleRecordRead(BaseModel):
    id: int
    appointment_id: int
    previous_scheduled_at: datetime
    new_scheduled_at: datetime
    actor_id: int | None
    reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ReminderRead(BaseModel):
    id: int
    offset_hours: int
    status: str
    target_scheduled_at: datetime
    sent_at: datetime | None
    retry_count: int
    error_message: str | None

    model_config = {"from_attributes": True}


# =============================================================================
# Helpers
# =============================================================================


def _load(db: Session, appointment_id: int) -> Appointment:
    try:
        return appointment_service.get_appointment(db, appointment_id)
    except EngineError as e:
        raise to_http_exception(e)


def _authorize(
    actor: ActorContext, appointment: Appointment, confirmation_code: str | None
) -> None:
    """Owner, branch staff, admin, or anyone holding the confirmation code."""
    if confirmation_code and confirmation_code.strip().upper() == appointment.confirmation_code:
        return
    if actor.can_manage_branch(appointment.branch_id):
        return
    if actor.role == ActorRole.USER and appointment.user_id == actor.actor_id:
        return
    if not actor.is_authenticated:
        raise HTTPException(status_code=401, detail="Not authenticated")
    raise HTTPException(status_code=403, detail="Not allowed to access this appointment")


def _require_branch_staff(actor: ActorContext, branch_id: int) -> None:
    if not actor.can_manage_branch(branch_id):
        raise HTTPException(status_code=403, detail="Not staff of this branch")


# =============================================================================
# Booking
# =============================================================================


@router.post("", response_model=AppointmentRead, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: AppointmentCreate,
    actor: ActorContext = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Book an appointment. Guests must provide a name and email."""
    if actor.role != ActorRole.USER and not (data.guest_name and data.guest_email):
        raise HTTPException(status_code=422, detail="guest_name and guest_email are required")

    try:
        appointment = appointment_service.book_appointment(
            db,
            branch_id=data.branch_id,
            service_id=data.service_id,
            scheduled_at=data.scheduled_at,
            now=clock(),
            user_id=actor.actor_id if actor.role == ActorRole.USER else None,
            guest_name=data.guest_name,
            guest_email=data.guest_email,
        )
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    db.refresh(appointment)
    return appointment


@router.get("", response_model=list[AppointmentRead])
def list_appointments(
    branch_id: int,
    status_filter: AppointmentStatus | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    actor: ActorContext = Depends(require_roles(STAFF_ROLES)),
    db: Session = Depends(get_db),
):
    """List a branch's appointments (staff)."""
    _require_branch_staff(actor, branch_id)
    return appointment_service.list_appointments(
        db, branch_id, status=status_filter, date_start=date_from, date_end=date_to
    )


@router.post("/check-in", response_model=AppointmentRead)
def check_in_by_code(
    data: CheckInRequest,
    actor: ActorContext = Depends(require_roles(STAFF_ROLES)),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Check in an arriving customer by confirmation code (staff)."""
    try:
        appointment = appointment_service.get_by_confirmation_code(db, data.confirmation_code)
        _require_branch_staff(actor, appointment.branch_id)
        appointment_service.check_in(db, appointment, now=clock())
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return appointment


@router.get("/{appointment_id}", response_model=AppointmentRead)
def get_appointment(
    appointment_id: int,
    code: str | None = None,
    actor: ActorContext = Depends(get_actor),
    db: Session = Depends(get_db),
):
    appointment = _load(db, appointment_id)
    _authorize(actor, appointment, code)
    return appointment


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/{appointment_id}/cancel", response_model=AppointmentRead)
def cancel_appointment(
    appointment_id: int,
    data: CancelRequest,
    actor: ActorContext = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Cancel an appointment, subject to the branch cancellation window (admins exempt)."""
    appointment = _load(db, appointment_id)
    _authorize(actor, appointment, data.confirmation_code)
    try:
        appointment = appointment_service.cancel_appointment(
            db,
            appointment_id,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            now=clock(),
        )
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return appointment


@router.post("/{appointment_id}/reschedule", response_model=AppointmentRead)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    actor: ActorContext = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    appointment = _load(db, appointment_id)
    _authorize(actor, appointment, data.confirmation_code)
    try:
        appointment = appointment_service.reschedule_appointment(
            db,
            appointment_id,
            data.new_scheduled_at,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            now=clock(),
            reason=data.reason,
        )
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return appointment


@router.get("/{appointment_id}/reschedules", response_model=list[RescheduleRecordRead])
def list_reschedules(
    appointment_id: int,
    code: str | None = None,
    actor: ActorContext = Depends(get_actor),
    db: Session = Depends(get_db),
):
    appointment = _load(db, appointment_id)
    _authorize(actor, appointment, code)
    return appointment_service.list_reschedule_history(db, appointment_id)


@router.post("/{appointment_id}/check-in", response_model=AppointmentRead)
def check_in(
    appointment_id: int,
    actor: ActorContext = Depends(require_roles(STAFF_ROLES)),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    appointment = _load(db, appointment_id)
    _require_branch_staff(actor, appointment.branch_id)
    try:
        appointment_service.check_in(db, appointment, now=clock())
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return appointment


@router.post("/{appointment_id}/no-show", response_model=AppointmentRead)
def mark_no_show(
    appointment_id: int,
    actor: ActorContext = Depends(require_roles(STAFF_ROLES)),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    appointment = _load(db, appointment_id)
    _require_branch_staff(actor, appointment.branch_id)
    try:
        appointment = appointment_service.mark_no_show(
            db, appointment_id, actor_id=actor.actor_id, now=clock()
        )
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return appointment


@router.get("/{appointment_id}/reminders", response_model=list[ReminderRead])
def list_reminders(
    appointment_id: int,
    actor: ActorContext = Depends(require_roles(STAFF_ROLES)),
    db: Session = Depends(get_db),
):
    appointment = _load(db, appointment_id)
    _require_branch_staff(actor, appointment.branch_id)
    return reminder_service.list_reminders(db, appointment_id)
