"""Reminder dispatcher.

For every branch with reminders enabled and every configured offset, finds
scheduled appointments inside the offset's window and sends one reminder per
(appointment, offset). A reminder row is claimed with a unique insert before
the send, so overlapping runs (manual trigger vs scheduled tick) cannot both
send.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from branchflow.core.structured_logging import build_log_context, mask_email
from branchflow.db.enums import AppointmentStatus, ReminderStatus
from branchflow.db.models import Appointment, AppointmentReminder, Branch
from branchflow.services import policy_service
from branchflow.services.booking_validation import reminder_window
from branchflow.services.email_service import EmailSender
from branchflow.services.policy_service import PolicyConfig

logger = logging.getLogger(__name__)

# A pending claim older than this is assumed to belong to a crashed run
STALE_CLAIM_AFTER = timedelta(minutes=10)
# Tolerance when matching an earlier "sent" row to this run's expected send instant
SENT_MATCH_TOLERANCE = timedelta(minutes=30)

DEFAULT_SUBJECT = "Reminder: your appointment at {branch_name}"
DEFAULT_BODY = (
    "Your {service_name} appointment at {branch_name} is scheduled for "
    "{scheduled_at}. Confirmation code: {confirmation_code}."
)


@dataclass
class DispatchStats:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    branches: int = 0
    branch_errors: int = 0
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "branches_processed": self.branches,
            "errors": self.errors,
        }


# =============================================================================
# Content
# =============================================================================


def _local_time(value: datetime, tz_name: str | None) -> datetime:
    try:
        return value.astimezone(ZoneInfo(tz_name or "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        return value


def render_reminder(
    appointment: Appointment, branch: Branch, policy: PolicyConfig, offset_hours: int
) -> tuple[str, str]:
    """
    Return (subject, html) for a reminder.

    Interpolated values are HTML-escaped. Raises ValueError when the
    branch template cannot render.
    """
    local = _local_time(appointment.scheduled_at, branch.timezone)
    values = dict(
        branch_name=branch.name,
        service_name=appointment.service.name if appointment.service else "",
        scheduled_at=local.strftime("%Y-%m-%d %H:%M"),
        confirmation_code=appointment.confirmation_code,
        hours=offset_hours,
        customer_name=appointment.guest_name or "",
    )
    template = policy.reminder_message_template or DEFAULT_BODY
    subject = DEFAULT_SUBJECT.format(branch_name=branch.name)
    body = policy_service.render_message_template(template, values)
    return subject, f"<p>{body}</p>"


# =============================================================================
# Queries
# =============================================================================


def find_candidates(
    db: Session, branch_id: int, offset_hours: int, *, now: datetime
) -> list[Appointment]:
    """Scheduled appointments of a branch whose time is inside the offset's window."""
    start, end = reminder_window(offset_hours, now=now)
    return list(
        db.execute(
            select(Appointment)
            .where(
                Appointment.branch_id == branch_id,
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.scheduled_at >= start,
                Appointment.scheduled_at <= end,
            )
            .order_by(Appointment.scheduled_at, Appointment.id)
        ).scalars().all()
    )


def expected_send_at(scheduled_at: datetime, offset_hours: int) -> datetime:
    return scheduled_at - timedelta(hours=offset_hours)


def already_sent(
    db: Session, appointment_id: int, offset_hours: int, expected_at: datetime
) -> bool:
    """True if a sent reminder for this offset lands within ±30 min of ``expected_at``."""
    row = db.execute(
        select(AppointmentReminder.id).where(
            AppointmentReminder.appointment_id == appointment_id,
            AppointmentReminder.offset_hours == offset_hours,
            AppointmentReminder.status == ReminderStatus.SENT.value,
            AppointmentReminder.sent_at >= expected_at - SENT_MATCH_TOLERANCE,
            AppointmentReminder.sent_at <= expected_at + SENT_MATCH_TOLERANCE,
        ).limit(1)
    ).first()
    return row is not None


def list_reminders(db: Session, appointment_id: int) -> list[AppointmentReminder]:
    return list(
        db.execute(
            select(AppointmentReminder)
            .where(AppointmentReminder.appointment_id == appointment_id)
            .order_by(AppointmentReminder.created_at, AppointmentReminder.id)
        ).scalars().all()
    )


# =============================================================================
# Claim / mark
# =============================================================================


def claim_reminder(
    db: Session,
    appointment: Appointment,
    offset_hours: int,
    email_address: str,
    *,
    now: datetime,
) -> int | None:
    """
    Claim the (appointment, offset, scheduled time) reminder for this run.

    Inserts a pending row and commits. If the row already exists, it is
    re-claimed only when failed, cancelled, or a stale pending claim.
    Returns the row id, or None when another run owns it or it was sent.
    """
    target = appointment.scheduled_at
    appointment_id = appointment.id
    row = AppointmentReminder(
        appointment_id=appointment_id,
        offset_hours=offset_hours,
        target_scheduled_at=target,
        scheduled_send_at=expected_send_at(target, offset_hours),
        status=ReminderStatus.PENDING.value,
        email_address=email_address,
        claimed_at=now,
        created_at=now,
    )
    try:
        db.add(row)
        db.commit()
        return row.id
    except IntegrityError:
        db.rollback()

    key = and_(
        AppointmentReminder.appointment_id == appointment_id,
        AppointmentReminder.offset_hours == offset_hours,
        AppointmentReminder.target_scheduled_at == target,
    )
    result = db.execute(
        update(AppointmentReminder)
        .where(
            key,
            or_(
                AppointmentReminder.status.in_(
                    [ReminderStatus.FAILED.value, ReminderStatus.CANCELLED.value]
                ),
                and_(
                    AppointmentReminder.status == ReminderStatus.PENDING.value,
                    AppointmentReminder.claimed_at < now - STALE_CLAIM_AFTER,
                ),
            ),
        )
        .values(
            status=ReminderStatus.PENDING.value,
            claimed_at=now,
            email_address=email_address,
            error_message=None,
        )
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    db.commit()
    if not claimed:
        return None
    return db.execute(select(AppointmentReminder.id).where(key)).scalar_one()


def _finish_claim(db: Session, reminder_id: int, **values) -> bool:
    result = db.execute(
        update(AppointmentReminder)
        .where(
            AppointmentReminder.id == reminder_id,
            AppointmentReminder.status == ReminderStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    finished = result.rowcount == 1
    db.commit()
    return finished


def mark_sent(db: Session, reminder_id: int, *, now: datetime) -> bool:
    return _finish_claim(db, reminder_id, status=ReminderStatus.SENT.value, sent_at=now)


def mark_failed(db: Session, reminder_id: int, error: str) -> bool:
    return _finish_claim(
        db,
        reminder_id,
        status=ReminderStatus.FAILED.value,
        error_message=error[:1000],
        retry_count=AppointmentReminder.retry_count + 1,
    )


def cancel_pending_reminders(db: Session, appointment_id: int) -> int:
    """
    Cancel an appointment's pending reminders. Best-effort: errors are logged,
    never raised, and do not poison the caller's transaction.
    """
    try:
        with db.begin_nested():
            result = db.execute(
                update(AppointmentReminder)
                .where(
                    AppointmentReminder.appointment_id == appointment_id,
                    AppointmentReminder.status == ReminderStatus.PENDING.value,
                )
                .values(status=ReminderStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError:
        logger.exception(
            "Failed to cancel pending reminders",
            extra=build_log_context(appointment_id=appointment_id),
        )
        return 0
    cancelled = result.rowcount or 0
    if cancelled:
        logger.info("Cancelled %s pending reminders for appointment %s", cancelled, appointment_id)
    return cancelled


# =============================================================================
# Dispatch
# =============================================================================


async def _dispatch_one(
    db: Session,
    sender: EmailSender,
    appointment: Appointment,
    branch: Branch,
    policy: PolicyConfig,
    offset_hours: int,
    *,
    now: datetime,
    throttle: Callable[[], Awaitable[None]],
) -> str:
    """Handle one candidate. Returns "sent", "failed" or "skipped"."""
    appointment_id = appointment.id
    if already_sent(db, appointment_id, offset_hours, expected_send_at(appointment.scheduled_at, offset_hours)):
        return "skipped"

    email = appointment.recipient_email
    if not email:
        logger.info("Appointment %s has no recipient email, skipping reminder", appointment_id)
        return "skipped"

    reminder_id = claim_reminder(db, appointment, offset_hours, email, now=now)
    if reminder_id is None:
        return "skipped"

    try:
        subject, html = render_reminder(appointment, branch, policy, offset_hours)
    except ValueError as exc:
        logger.warning(
            "Reminder template failed to render appointment_id=%s branch_id=%s: %s",
            appointment_id,
            branch.id,
            exc,
        )
        mark_failed(db, reminder_id, f"template error: {exc}")
        return "failed"

    await throttle()
    try:
        await sender.send(
            to_email=email,
            subject=subject,
            html=html,
            idempotency_key=f"reminder-{reminder_id}",
        )
    except Exception as exc:
        logger.warning(
            "Reminder send failed appointment_id=%s offset=%sh to=%s: %s",
            appointment_id,
            offset_hours,
            mask_email(email),
            exc,
        )
        mark_failed(db, reminder_id, str(exc) or exc.__class__.__name__)
        return "failed"

    if not mark_sent(db, reminder_id, now=now):
        logger.warning(
            "Reminder %s was cancelled while sending (appointment %s)",
            reminder_id,
            appointment_id,
        )
    return "sent"


async def process_due_reminders(
    db: Session,
    sender: EmailSender,
    *,
    now: datetime,
    send_delay_seconds: float = 0.0,
) -> DispatchStats:
    """
    Send every reminder due at ``now`` across all branches.

    Failures are isolated per appointment and per branch: one bad send or
    branch never aborts the rest of the run.
    """
    stats = DispatchStats()
    policies = policy_service.list_reminder_policies(db)
    sends = 0

    async def throttle() -> None:
        nonlocal sends
        if sends and send_delay_seconds > 0:
            await asyncio.sleep(send_delay_seconds)
        sends += 1

    for policy in policies:
        branch = db.get(Branch, policy.branch_id)
        if branch is None or not branch.is_active:
            continue
        stats.branches += 1

        for offset_hours in policy.reminder_offsets_hours:
            try:
                candidates = find_candidates(db, policy.branch_id, offset_hours, now=now)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception(
                    "Reminder candidate query failed",
                    extra=build_log_context(branch_id=policy.branch_id),
                )
                stats.branch_errors += 1
                stats.errors.append(
                    {"branch_id": policy.branch_id, "offset_hours": offset_hours, "error": str(exc)}
                )
                continue

            candidate_ids = [a.id for a in candidates]
            for appointment_id in candidate_ids:
                appointment = db.get(Appointment, appointment_id)
                if appointment is None or appointment.status != AppointmentStatus.SCHEDULED.value:
                    stats.skipped += 1
                    continue
                try:
                    outcome = await _dispatch_one(
                        db, sender, appointment, branch, policy, offset_hours, now=now, throttle=throttle
                    )
                except Exception as exc:
                    db.rollback()
                    logger.exception(
                        "Reminder dispatch failed",
                        extra=build_log_context(
                            branch_id=policy.branch_id, appointment_id=appointment_id
                        ),
                    )
                    stats.errors.append(
                        {"appointment_id": appointment_id, "offset_hours": offset_hours, "error": str(exc)}
                    )
                    stats.failed += 1
                    continue

                if outcome == "sent":
                    stats.sent += 1
                elif outcome == "failed":
                    stats.failed += 1
                else:
                    stats.skipped += 1

    if stats.sent or stats.failed:
        logger.info(
            "Reminder run complete sent=%s failed=%s skipped=%s branches=%s",
            stats.sent,
            stats.failed,
            stats.skipped,
            stats.branches,
        )
    return stats
