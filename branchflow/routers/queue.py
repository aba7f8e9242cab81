"""Queue ticketing API endpoints."""

from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from branchflow.core.clock import Clock
from branchflow.core.deps import ActorContext, get_clock, get_db, require_roles
from branchflow.core.errors import EngineError, to_http_exception
from branchflow.db.enums import ActorRole, TicketStatus
from branchflow.db.models import Appointment, Branch, ServicePoint
from branchflow.services import queue_service

router = APIRouter(
    dependencies=[Depends(require_roles([ActorRole.ADMIN, ActorRole.STAFF]))],
)


# =============================================================================
# Schemas
# =============================================================================


class TicketCreate(BaseModel):
    appointment_id: int
    service_point_id: int


class WalkInCreate(BaseModel):
    service_id: int
    service_point_id: int
    guest_name: str | None = Field(None, max_length=255)
    guest_email: str | None = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class TicketStatusUpdate(BaseModel):
    status: TicketStatus


class TicketTransfer(BaseModel):
    service_point_id: int


class TicketRead(BaseModel):
    id: int
    appointment_id: int
    branch_id: int
    service_point_id: int
    service_day: date
    ticket_number: int
    status: str
    called_at: datetime | None
    completed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Endpoints
# =============================================================================


def _require_branch_staff(actor: ActorContext, branch_id: int) -> None:
    if not actor.can_manage_branch(branch_id):
        raise HTTPException(status_code=403, detail="Not staff of this branch")


def _load_ticket(db: Session, ticket_id: int, actor: ActorContext):
    try:
        ticket = queue_service.get_ticket(db, ticket_id)
    except EngineError as e:
        raise to_http_exception(e)
    _require_branch_staff(actor, ticket.branch_id)
    return ticket


@router.post("/tickets", response_model=TicketRead, status_code=status.HTTP_201_CREATED)
def issue_ticket(
    data: TicketCreate,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN, ActorRole.STAFF])),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Enqueue a checked-in appointment at a service point."""
    appointment = db.get(Appointment, data.appointment_id)
    if appointment is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    _require_branch_staff(actor, appointment.branch_id)

    try:
        ticket = queue_service.issue_ticket(
            db, data.appointment_id, data.service_point_id, now=clock()
        )
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    db.refresh(ticket)
    return ticket


@router.post("/walk-ins", response_model=TicketRead, status_code=status.HTTP_201_CREATED)
def issue_walk_in_ticket(
    data: WalkInCreate,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN, ActorRole.STAFF])),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Queue a customer without a booking at one of the branch's service points."""
    point = db.get(ServicePoint, data.service_point_id)
    if point is None:
        raise HTTPException(status_code=404, detail="Service point not found")
    _require_branch_staff(actor, point.branch_id)

    try:
        ticket = queue_service.issue_walk_in_ticket(
            db,
            service_id=data.service_id,
            service_point_id=data.service_point_id,
            now=clock(),
            guest_name=data.guest_name,
            guest_email=data.guest_email,
        )
        db.commit()
    except EngineError as e:
        db.rollback()
        raise to_http_exception(e)
    db.refresh(ticket)
    return ticket


@router.get("/tickets/{ticket_id}", response_model=TicketRead)
def get_ticket(
    ticket_id: int,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN, ActorRole.STAFF])),
    db: Session = Depends(get_db),
):
    return _load_ticket(db, ticket_id, actor)


@router.post("/tickets/{ticket_id}/status", response_model=TicketRead)
def advance_ticket(
    ticket_id: int,
    data: TicketStatusUpdate,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN, ActorRole.STAFF])),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """Call (serving) or finish (complete) a ticket."""
    _load_ticket(db, ticket_id, actor)
    try:
        ticket = queue_service.advance_ticket(db, ticket_id, data.status, now=clock())
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return ticket


@router.post("/tickets/{ticket_id}/transfer", response_model=TicketRead)
def transfer_ticket(
    ticket_id: int,
    data: TicketTransfer,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN, ActorRole.STAFF])),
    db: Session = Depends(get_db),
):
    _load_ticket(db, ticket_id, actor)
    try:
        ticket = queue_service.transfer_ticket(db, ticket_id, data.service_point_id)
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return ticket


@router.get("/branches/{branch_id}", response_model=list[TicketRead])
def list_branch_queue(
    branch_id: int,
    service_day: date | None = None,
    status_filter: TicketStatus | None = None,
    service_point_id: int | None = None,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN, ActorRole.STAFF])),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """A branch's queue; defaults to today in the branch's timezone."""
    _require_branch_staff(actor, branch_id)
    branch = db.get(Branch, branch_id)
    if branch is None:
        raise HTTPException(status_code=404, detail="Branch not found")
    day = service_day or queue_service.service_day_for(branch, clock())
    return queue_service.list_queue(
        db,
        branch_id,
        service_day=day,
        status=status_filter,
        service_point_id=service_point_id,
    )
