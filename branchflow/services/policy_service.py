"""Branch policy store.

Reads always succeed: a branch with no stored policy gets the system
defaults with ``id = 0`` ("default, not persisted"). Writes merge a typed
partial update over the current values and bump ``version`` with a
compare-and-set so concurrent edits are detected instead of lost.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from branchflow.core.clock import utc_now
from branchflow.core.errors import EngineError, ErrorCode, NotFoundError
from branchflow.db.models import Branch, BranchPolicy

logger = logging.getLogger(__name__)

MAX_REMINDER_OFFSETS = 5
DEFAULT_POLICY_ID = 0


class PolicyServiceError(EngineError):
    """Base exception for policy store errors."""

    pass


class StalePolicyVersionError(PolicyServiceError):
    """Policy was modified by another writer since it was read."""

    code = ErrorCode.STALE_POLICY_VERSION


class InvalidPolicyError(PolicyServiceError):
    """Policy values fall outside allowed bounds."""

    code = ErrorCode.INVALID_POLICY


# =============================================================================
# Typed configuration
# =============================================================================


class _SafeFormatDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


# Placeholder values used to trial-render a template when a policy is saved
TEMPLATE_SAMPLE_VALUES = {
    "branch_name": "Branch",
    "service_name": "Service",
    "scheduled_at": "2026-01-01 09:00",
    "confirmation_code": "ABCD1234",
    "hours": 24,
    "customer_name": "Customer",
}


def render_message_template(template: str, values: dict) -> str:
    """
    Fill ``{placeholder}`` fields of a reminder template.

    String values are HTML-escaped. Unknown placeholders are left as written.

    Raises:
        ValueError: malformed template (unbalanced braces, bad format spec,
            positional fields, attribute or index lookups that fail)
    """
    escaped = _SafeFormatDict(
        {key: html.escape(value) if isinstance(value, str) else value for key, value in values.items()}
    )
    try:
        return template.format_map(escaped)
    except (IndexError, KeyError, AttributeError, TypeError) as exc:
        raise ValueError(f"invalid placeholder in template: {exc}") from exc


def _normalize_offsets(value: list[int]) -> list[int]:
    offsets = sorted({int(v) for v in value}, reverse=True)
    if any(o < 0 for o in offsets):
        raise ValueError("reminder offsets must be >= 0")
    if len(offsets) > MAX_REMINDER_OFFSETS:
        raise ValueError(f"at most {MAX_REMINDER_OFFSETS} reminder offsets allowed")
    return offsets


class PolicyConfig(BaseModel):
    """Fully-resolved branch policy."""

    model_config = {"from_attributes": True}

    id: int = DEFAULT_POLICY_ID
    branch_id: int
    cancellation_hours: int = Field(default=24, ge=0)
    reschedule_time_limit_hours: int = Field(default=4, ge=0)
    max_reschedules: int = Field(default=3, ge=1)
    max_advance_booking_days: int = Field(default=30, ge=1)
    reminders_enabled: bool = True
    reminder_offsets_hours: list[int] = Field(default_factory=lambda: [24, 2])
    reminder_message_template: str | None = None
    emergency_mode: bool = False
    is_active: bool = True
    version: int = 1
    updated_by: int | None = None
    updated_at: datetime | None = None

    @field_validator("reminder_offsets_hours")
    @classmethod
    def _check_offsets(cls, value: list[int]) -> list[int]:
        return _normalize_offsets(value)

    @property
    def is_default(self) -> bool:
        return self.id == DEFAULT_POLICY_ID


class PolicyUpdate(BaseModel):
    """Partial update; only explicitly provided fields are merged."""

    cancellation_hours: int | None = Field(default=None, ge=0)
    reschedule_time_limit_hours: int | None = Field(default=None, ge=0)
    max_reschedules: int | None = Field(default=None, ge=1)
    max_advance_booking_days: int | None = Field(default=None, ge=1)
    reminders_enabled: bool | None = None
    reminder_offsets_hours: list[int] | None = None
    reminder_message_template: str | None = None
    emergency_mode: bool | None = None
    is_active: bool | None = None

    @field_validator("reminder_offsets_hours")
    @classmethod
    def _check_offsets(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return None
        return _normalize_offsets(value)


_POLICY_FIELDS = tuple(PolicyUpdate.model_fields)


def default_policy(branch_id: int) -> PolicyConfig:
    """System defaults for a branch with no stored policy."""
    return PolicyConfig(branch_id=branch_id)


def merge_policy(base: PolicyConfig, changes: PolicyUpdate) -> PolicyConfig:
    """Return ``base`` with the explicitly-set fields of ``changes`` applied.

    Fields left unset on the update keep their current value. Setting
    ``reminder_message_template`` to ``None`` explicitly clears it, while
    ``None`` for the non-nullable fields is ignored.
    """
    merged = base.model_dump()
    for key, value in changes.model_dump(exclude_unset=True).items():
        if value is None and key != "reminder_message_template":
            continue
        merged[key] = value
    try:
        return PolicyConfig.model_validate(merged)
    except ValidationError as exc:
        raise InvalidPolicyError(str(exc)) from exc


def validate_policy_config(config: PolicyConfig) -> list[str]:
    """Return human-readable problems with a policy (empty when valid).

    PolicyConfig already enforces bounds on construction; this catches
    combinations that make no sense together and templates that cannot
    render. Checked on write only, so stored policies always load.
    """
    problems: list[str] = []
    max_offset_hours = config.max_advance_booking_days * 24
    for offset in config.reminder_offsets_hours:
        if offset > max_offset_hours:
            problems.append(
                f"reminder offset {offset}h exceeds the booking horizon of "
                f"{config.max_advance_booking_days} days"
            )
    if config.reminder_message_template:
        try:
            render_message_template(config.reminder_message_template, TEMPLATE_SAMPLE_VALUES)
        except ValueError as exc:
            problems.append(f"reminder message template is malformed: {exc}")
    return problems


# =============================================================================
# Reads
# =============================================================================


def _get_row(db: Session, branch_id: int) -> BranchPolicy | None:
    return db.execute(
        select(BranchPolicy).where(BranchPolicy.branch_id == branch_id)
    ).scalar_one_or_none()


def get_policy(db: Session, branch_id: int) -> PolicyConfig:
    """Get a branch's policy, falling back to defaults. Never raises for a missing row."""
    row = _get_row(db, branch_id)
    if row is None:
        return default_policy(branch_id)
    return PolicyConfig.model_validate(row)


def list_reminder_policies(db: Session) -> list[PolicyConfig]:
    """Persisted, active policies with reminders enabled."""
    rows = db.execute(
        select(BranchPolicy)
        .where(
            BranchPolicy.reminders_enabled.is_(True),
            BranchPolicy.is_active.is_(True),
        )
        .order_by(BranchPolicy.branch_id)
    ).scalars().all()
    return [PolicyConfig.model_validate(row) for row in rows]


# =============================================================================
# Writes
# =============================================================================


def _ensure_branch(db: Session, branch_id: int) -> None:
    if db.get(Branch, branch_id) is None:
        raise NotFoundError(f"Branch {branch_id} not found")


def _insert_policy(
    db: Session, config: PolicyConfig, actor_id: int | None, now: datetime
) -> PolicyConfig:
    values = config.model_dump(include=set(_POLICY_FIELDS))
    row = BranchPolicy(
        branch_id=config.branch_id,
        version=1,
        created_by=actor_id,
        updated_by=actor_id,
        created_at=now,
        updated_at=now,
        **values,
    )
    try:
        db.add(row)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise StalePolicyVersionError(
            f"Policy for branch {config.branch_id} was created concurrently"
        )
    return PolicyConfig.model_validate(row)


def _cas_update_policy(
    db: Session,
    config: PolicyConfig,
    expected_version: int,
    actor_id: int | None,
    now: datetime,
) -> PolicyConfig:
    values = config.model_dump(include=set(_POLICY_FIELDS))
    result = db.execute(
        update(BranchPolicy)
        .where(
            BranchPolicy.branch_id == config.branch_id,
            BranchPolicy.version == expected_version,
        )
        .values(
            **values,
            version=expected_version + 1,
            updated_by=actor_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StalePolicyVersionError(
            f"Policy for branch {config.branch_id} changed since version {expected_version}"
        )
    row = _get_row(db, config.branch_id)
    db.refresh(row)
    return PolicyConfig.model_validate(row)


def upsert_policy(
    db: Session,
    branch_id: int,
    changes: PolicyUpdate,
    actor_id: int | None,
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> PolicyConfig:
    """
    Merge ``changes`` over the stored policy (or defaults) and persist.

    Creates the row at version 1 when absent; otherwise increments
    ``version``. The update only applies if the stored version still equals
    ``expected_version`` (or the version just read when not given).

    Raises:
        NotFoundError: branch does not exist
        StalePolicyVersionError: concurrent modification detected
        InvalidPolicyError: merged policy is out of bounds
    """
    now = now or utc_now()
    _ensure_branch(db, branch_id)
    current = get_policy(db, branch_id)

    if expected_version is not None and not current.is_default and current.version != expected_version:
        raise StalePolicyVersionError(
            f"Policy for branch {branch_id} is at version {current.version}, "
            f"expected {expected_version}"
        )

    merged = merge_policy(current, changes)
    problems = validate_policy_config(merged)
    if problems:
        raise InvalidPolicyError("; ".join(problems))

    if current.is_default:
        saved = _insert_policy(db, merged, actor_id, now)
    else:
        saved = _cas_update_policy(db, merged, current.version, actor_id, now)

    logger.info(
        "Policy saved branch_id=%s version=%s actor_id=%s",
        branch_id,
        saved.version,
        actor_id,
    )
    return saved


def toggle_emergency_mode(
    db: Session,
    branch_id: int,
    enabled: bool,
    actor_id: int | None,
    *,
    now: datetime | None = None,
) -> PolicyConfig:
    """Set the emergency flag, creating the policy row eagerly if absent."""
    saved = upsert_policy(
        db,
        branch_id,
        PolicyUpdate(emergency_mode=enabled),
        actor_id,
        now=now,
    )
    logger.warning(
        "Emergency mode %s for branch_id=%s by actor_id=%s",
        "enabled" if enabled else "disabled",
        branch_id,
        actor_id,
    )
    return saved


def delete_policy(db: Session, branch_id: int) -> bool:
    """Remove the stored policy so the branch reverts to defaults."""
    result = db.execute(
        delete(BranchPolicy)
        .where(BranchPolicy.branch_id == branch_id)
        .execution_options(synchronize_session=False)
    )
    deleted = result.rowcount > 0
    if deleted:
        logger.info("Policy reset to defaults for branch_id=%s", branch_id)
    return deleted
