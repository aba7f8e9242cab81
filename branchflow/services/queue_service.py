"""Queue ticketing: issue, advance, and transfer tickets for checked-in appointments."""

from __future__ import annotations

import logging
from datetime import date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from branchflow.core.errors import EngineError, ErrorCode, IllegalTransitionError, NotFoundError
from branchflow.db.enums import AppointmentStatus, AppointmentType, TicketStatus
from branchflow.db.models import (
    Appointment,
    Branch,
    QueueTicket,
    Service,
    ServicePoint,
    ServicePointService,
    TicketCounter,
)
from branchflow.services import appointment_service, appointment_state

logger = logging.getLogger(__name__)

COUNTER_INSERT_ATTEMPTS = 3


class QueueServiceError(EngineError):
    """Base exception for queue service errors."""

    pass


class TicketNotFoundError(NotFoundError):
    """Queue ticket not found."""

    pass


class DuplicateTicketError(QueueServiceError):
    """Appointment already has a queue ticket."""

    code = ErrorCode.DUPLICATE_TICKET


class ServicePointInactiveError(QueueServiceError):
    """Service point is missing, inactive, or belongs to another branch."""

    code = ErrorCode.SERVICE_POINT_INACTIVE


class ServicePointIncapableError(QueueServiceError):
    """Service point does not serve the appointment's service."""

    code = ErrorCode.SERVICE_POINT_INCAPABLE


class InvalidTransferError(QueueServiceError):
    """Transfer target is the ticket's current service point."""

    code = ErrorCode.INVALID_TRANSFER


TICKET_TRANSITIONS: dict[TicketStatus, TicketStatus] = {
    TicketStatus.WAITING: TicketStatus.SERVING,
    TicketStatus.SERVING: TicketStatus.COMPLETE,
}


# =============================================================================
# Helpers
# =============================================================================


def _get_timezone(name: str | None) -> ZoneInfo:
    """Get a ZoneInfo timezone with UTC fallback."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown branch timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def service_day_for(branch: Branch, now: datetime) -> date:
    """Calendar day in the branch's local time; ticket numbers restart on it."""
    return now.astimezone(_get_timezone(branch.timezone)).date()


def _validate_service_point(
    db: Session, service_point_id: int, branch_id: int, service_id: int
) -> ServicePoint:
    point = db.get(ServicePoint, service_point_id)
    if point is None or point.branch_id != branch_id:
        raise ServicePointInactiveError(
            f"Service point {service_point_id} does not exist at this branch"
        )
    if not point.is_active:
        raise ServicePointInactiveError(f"Service point {point.name} is not active")

    capable = db.execute(
        select(ServicePointService.id).where(
            ServicePointService.service_point_id == service_point_id,
            ServicePointService.service_id == service_id,
            ServicePointService.is_active.is_(True),
        )
    ).first()
    if not capable:
        raise ServicePointIncapableError(
            f"Service point {point.name} cannot serve this appointment's service"
        )
    return point


def next_ticket_number(db: Session, branch_id: int, service_day: date) -> int:
    """
    Allocate the next ticket number for (branch, day).

    Increments the counter row in place; the UPDATE takes a row lock so
    concurrent issuers serialize on it. The first ticket of the day inserts
    the row, and a losing concurrent insert falls back to the increment.
    """
    for _ in range(COUNTER_INSERT_ATTEMPTS):
        number = db.execute(
            update(TicketCounter)
            .where(
                TicketCounter.branch_id == branch_id,
                TicketCounter.service_day == service_day,
            )
            .values(last_number=TicketCounter.last_number + 1)
            .returning(TicketCounter.last_number)
        ).scalar_one_or_none()
        if number is not None:
            return number

        try:
            with db.begin_nested():
                db.add(TicketCounter(branch_id=branch_id, service_day=service_day, last_number=1))
            return 1
        except IntegrityError:
            logger.debug(
                "Ticket counter for branch_id=%s day=%s created concurrently, retrying",
                branch_id,
                service_day,
            )
            continue
    raise QueueServiceError("Could not allocate a ticket number, please retry")


# =============================================================================
# Reads
# =============================================================================


def get_ticket(db: Session, ticket_id: int) -> QueueTicket:
    ticket = db.get(QueueTicket, ticket_id)
    if ticket is None:
        raise TicketNotFoundError(f"Ticket {ticket_id} not found")
    return ticket


def get_ticket_for_appointment(db: Session, appointment_id: int) -> QueueTicket | None:
    return db.execute(
        select(QueueTicket).where(QueueTicket.appointment_id == appointment_id)
    ).scalar_one_or_none()


def list_queue(
    db: Session,
    branch_id: int,
    *,
    service_day: date | None = None,
    status: TicketStatus | None = None,
    service_point_id: int | None = None,
) -> list[QueueTicket]:
    """List a branch's tickets in ticket-number order."""
    query = select(QueueTicket).where(QueueTicket.branch_id == branch_id)
    if service_day is not None:
        query = query.where(QueueTicket.service_day == service_day)
    if status is not None:
        query = query.where(QueueTicket.status == status.value)
    if service_point_id is not None:
        query = query.where(QueueTicket.service_point_id == service_point_id)
    query = query.order_by(QueueTicket.service_day, QueueTicket.ticket_number)
    return list(db.execute(query).scalars().all())


# =============================================================================
# Ticket lifecycle
# =============================================================================


def issue_ticket(
    db: Session,
    appointment_id: int,
    service_point_id: int,
    *,
    now: datetime,
) -> QueueTicket:
    """
    Bind a checked-in appointment to a service point and issue a waiting ticket.

    The appointment moves to ``completed`` (ready for service) in the same
    transaction.

    Raises:
        NotFoundError: unknown appointment
        IllegalTransitionError: appointment is not checked in
        DuplicateTicketError: appointment already ticketed
        ServicePointInactiveError / ServicePointIncapableError
    """
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError(f"Appointment {appointment_id} not found")

    if get_ticket_for_appointment(db, appointment_id) is not None:
        raise DuplicateTicketError("Appointment is already in the queue")
    appointment_state.check_transition(appointment.status, AppointmentStatus.COMPLETED)

    _validate_service_point(db, service_point_id, appointment.branch_id, appointment.service_id)

    branch = db.get(Branch, appointment.branch_id)
    service_day = service_day_for(branch, now)
    ticket_number = next_ticket_number(db, appointment.branch_id, service_day)

    appointment_state.transition(
        db,
        appointment,
        AppointmentStatus.COMPLETED,
        now=now,
        service_point_id=service_point_id,
    )

    ticket = QueueTicket(
        appointment_id=appointment.id,
        branch_id=appointment.branch_id,
        service_point_id=service_point_id,
        service_day=service_day,
        ticket_number=ticket_number,
        status=TicketStatus.WAITING.value,
        created_at=now,
    )
    try:
        with db.begin_nested():
            db.add(ticket)
    except IntegrityError:
        db.rollback()
        raise DuplicateTicketError("Appointment is already in the queue")

    logger.info(
        "Ticket issued number=%s branch_id=%s day=%s appointment_id=%s",
        ticket_number,
        appointment.branch_id,
        service_day,
        appointment.id,
    )
    return ticket


def issue_walk_in_ticket(
    db: Session,
    *,
    service_id: int,
    service_point_id: int,
    now: datetime,
    guest_name: str | None = None,
    guest_email: str | None = None,
) -> QueueTicket:
    """
    Queue a customer who arrived without a booking.

    Creates a walk-in appointment at ``now``, checks it in, and issues its
    ticket, all in the caller's transaction. Booking-horizon rules do not
    apply. Capability is checked before anything is written.

    Raises:
        NotFoundError: unknown or inactive service
        ServicePointInactiveError / ServicePointIncapableError
    """
    point = db.get(ServicePoint, service_point_id)
    if point is None:
        raise ServicePointInactiveError(f"Service point {service_point_id} does not exist")
    branch = db.get(Branch, point.branch_id)
    if branch is None or not branch.is_active:
        raise NotFoundError(f"Branch {point.branch_id} not found")
    service = db.get(Service, service_id)
    if service is None or not service.is_active:
        raise NotFoundError(f"Service {service_id} not found")
    _validate_service_point(db, service_point_id, point.branch_id, service_id)

    appointment = Appointment(
        branch_id=point.branch_id,
        service_id=service_id,
        appointment_type=AppointmentType.WALK_IN.value,
        guest_name=guest_name.strip() if guest_name else None,
        guest_email=guest_email.strip().lower() if guest_email else None,
        confirmation_code=appointment_service.unique_confirmation_code(db),
        status=AppointmentStatus.SCHEDULED.value,
        scheduled_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(appointment)
    db.flush()

    appointment_service.check_in(db, appointment, now=now)
    ticket = issue_ticket(db, appointment.id, service_point_id, now=now)
    logger.info(
        "Walk-in queued appointment_id=%s ticket=%s service_point_id=%s",
        appointment.id,
        ticket.ticket_number,
        service_point_id,
    )
    return ticket


def advance_ticket(
    db: Session, ticket_id: int, new_status: TicketStatus, *, now: datetime
) -> QueueTicket:
    """
    Advance a ticket one step: waiting → serving → complete.

    Serving stamps ``called_at``; complete stamps ``completed_at`` and makes
    sure the bound appointment is completed with an attendance time.
    """
    ticket = get_ticket(db, ticket_id)
    current = TicketStatus(ticket.status)
    if TICKET_TRANSITIONS.get(current) != new_status:
        raise IllegalTransitionError(
            current.value,
            new_status.value,
            f"Ticket cannot move from {current.value} to {new_status.value}",
        )

    values: dict = {"status": new_status.value}
    if new_status == TicketStatus.SERVING:
        values["called_at"] = now
    else:
        values["completed_at"] = now

    result = db.execute(
        update(QueueTicket)
        .where(QueueTicket.id == ticket.id, QueueTicket.status == current.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(ticket)
        raise IllegalTransitionError(
            ticket.status,
            new_status.value,
            f"Ticket status changed concurrently to {ticket.status}",
        )

    if new_status == TicketStatus.COMPLETE:
        # Appointment is normally already completed at enqueue; keep existing attended_at
        appointment = db.get(Appointment, ticket.appointment_id)
        if appointment.status != AppointmentStatus.COMPLETED.value:
            appointment_state.transition(
                db, appointment, AppointmentStatus.COMPLETED, now=now
            )
        if appointment.attended_at is None:
            appointment.attended_at = now
            db.flush()

    db.refresh(ticket)
    logger.info("Ticket %s: %s -> %s", ticket.id, current.value, new_status.value)
    return ticket


def transfer_ticket(db: Session, ticket_id: int, new_service_point_id: int) -> QueueTicket:
    """Move a ticket to another capable service point; number and status are kept."""
    ticket = get_ticket(db, ticket_id)
    if ticket.status == TicketStatus.COMPLETE.value:
        raise IllegalTransitionError(
            ticket.status, ticket.status, "Completed tickets cannot be transferred"
        )
    if ticket.service_point_id == new_service_point_id:
        raise InvalidTransferError("Ticket is already assigned to that service point")

    appointment = db.get(Appointment, ticket.appointment_id)
    _validate_service_point(db, new_service_point_id, ticket.branch_id, appointment.service_id)

    previous = ticket.service_point_id
    ticket.service_point_id = new_service_point_id
    appointment.service_point_id = new_service_point_id
    db.flush()

    logger.info(
        "Ticket %s transferred from service point %s to %s",
        ticket.id,
        previous,
        new_service_point_id,
    )
    return ticket
