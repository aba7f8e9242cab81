"""Scheduler control endpoints (admin): stats, manual run, live config."""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from branchflow.core.deps import require_roles
from branchflow.db.enums import ActorRole
from branchflow.services.schedulers import IntervalScheduler

router = APIRouter(
    dependencies=[Depends(require_roles([ActorRole.ADMIN]))],
)


class SchedulerConfigUpdate(BaseModel):
    interval_minutes: float | None = Field(None, gt=0)
    enabled: bool | None = None


def get_schedulers(request: Request) -> dict[str, IntervalScheduler]:
    schedulers = getattr(request.app.state, "schedulers", None)
    if schedulers is None:
        raise HTTPException(status_code=503, detail="Schedulers not initialized")
    return schedulers


def _get_scheduler(name: str, schedulers: dict[str, IntervalScheduler]) -> IntervalScheduler:
    scheduler = schedulers.get(name)
    if scheduler is None:
        raise HTTPException(status_code=404, detail=f"Unknown scheduler '{name}'")
    return scheduler


@router.get("")
def list_schedulers(schedulers: dict[str, IntervalScheduler] = Depends(get_schedulers)):
    return {name: scheduler.get_stats() for name, scheduler in schedulers.items()}


@router.post("/{name}/run")
async def run_scheduler(
    name: str, schedulers: dict[str, IntervalScheduler] = Depends(get_schedulers)
):
    """Trigger one tick now; ``ran`` is false when a tick was already in progress."""
    scheduler = _get_scheduler(name, schedulers)
    ran = await scheduler.run_now()
    return {"ran": ran, "stats": scheduler.get_stats()}


@router.patch("/{name}")
async def update_scheduler(
    name: str,
    data: SchedulerConfigUpdate,
    schedulers: dict[str, IntervalScheduler] = Depends(get_schedulers),
):
    scheduler = _get_scheduler(name, schedulers)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    try:
        await scheduler.update_config(**changes)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return scheduler.get_stats()


@router.post("/{name}/reset")
def reset_scheduler_stats(
    name: str, schedulers: dict[str, IntervalScheduler] = Depends(get_schedulers)
):
    scheduler = _get_scheduler(name, schedulers)
    scheduler.reset_stats()
    return scheduler.get_stats()
