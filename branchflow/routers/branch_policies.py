"""Branch policy API endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from branchflow.core.clock import Clock
from branchflow.core.deps import ActorContext, get_clock, get_db, require_roles
from branchflow.core.errors import EngineError, to_http_exception
from branchflow.db.enums import ActorRole
from branchflow.services import policy_service
from branchflow.services.policy_service import PolicyConfig, PolicyUpdate

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================


class PolicyUpdateRequest(PolicyUpdate):
    """Partial policy update. Send ``expected_version`` to guard against concurrent edits."""

    expected_version: int | None = None


class EmergencyModeRequest(BaseModel):
    enabled: bool


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/{branch_id}/policy", response_model=PolicyConfig)
def get_policy(branch_id: int, db: Session = Depends(get_db)):
    """Current policy; ``id == 0`` means the branch is on system defaults."""
    return policy_service.get_policy(db, branch_id)


@router.put("/{branch_id}/policy", response_model=PolicyConfig)
def update_policy(
    branch_id: int,
    data: PolicyUpdateRequest,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN])),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    changes = PolicyUpdate.model_validate(
        data.model_dump(exclude_unset=True, exclude={"expected_version"})
    )
    try:
        policy = policy_service.upsert_policy(
            db,
            branch_id,
            changes,
            actor.actor_id,
            expected_version=data.expected_version,
            now=clock(),
        )
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return policy


@router.post("/{branch_id}/policy/emergency-mode", response_model=PolicyConfig)
def set_emergency_mode(
    branch_id: int,
    data: EmergencyModeRequest,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN])),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    try:
        policy = policy_service.toggle_emergency_mode(
            db, branch_id, data.enabled, actor.actor_id, now=clock()
        )
        db.commit()
    except EngineError as e:
        raise to_http_exception(e)
    return policy


@router.delete("/{branch_id}/policy", response_model=PolicyConfig)
def reset_policy(
    branch_id: int,
    actor: ActorContext = Depends(require_roles([ActorRole.ADMIN])),
    db: Session = Depends(get_db),
):
    """Delete the stored policy; the branch reverts to defaults."""
    policy_service.delete_policy(db, branch_id)
    db.commit()
    return policy_service.get_policy(db, branch_id)
