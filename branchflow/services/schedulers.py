"""Periodic background drivers (reminders, no-show sweep).

Schedulers are explicit service objects: the app lifespan (or worker.py)
constructs them with their dependencies and owns start/stop. Ticks never
overlap; a tick that fires while the previous one is still running is
skipped, not queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from branchflow.core.clock import Clock, utc_now
from branchflow.core.config import Settings
from branchflow.services import appointment_service, reminder_service
from branchflow.services.email_service import EmailSender

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


class SchedulerConfig(BaseModel):
    interval_minutes: float = Field(gt=0)
    enabled: bool = True


@dataclass
class SchedulerStats:
    last_run: datetime | None = None
    next_run: datetime | None = None
    total_runs: int = 0
    total_errors: int = 0
    skipped_runs: int = 0
    average_execution_ms: float = 0.0


@dataclass
class ReminderSchedulerStats(SchedulerStats):
    total_sent: int = 0


@dataclass
class NoShowSchedulerStats(SchedulerStats):
    total_marked: int = 0


class IntervalScheduler:
    """Run ``tick`` once on start and then every ``interval_minutes``."""

    name = "scheduler"
    stats_class: type[SchedulerStats] = SchedulerStats

    def __init__(self, config: SchedulerConfig, *, clock: Clock = utc_now):
        self.config = config
        self._clock = clock
        self._loop_task: asyncio.Task | None = None
        self._tick_tasks: set[asyncio.Task] = set()
        self._processing = False
        self.stats = self.stats_class()

    @property
    def is_active(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_running(self) -> bool:
        """True while a tick is in progress."""
        return self._processing

    async def tick(self) -> None:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        """Start the timer loop. Must be called from a running event loop."""
        if not self.config.enabled:
            logger.info("%s scheduler disabled by configuration", self.name)
            return False
        if self.is_active:
            logger.info("%s scheduler already running", self.name)
            return False
        self._loop_task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "%s scheduler started (every %s minutes)", self.name, self.config.interval_minutes
        )
        return True

    async def stop(self) -> None:
        """Stop the timer and wait for an in-flight tick to finish."""
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("%s scheduler stopped", self.name)
        if self._tick_tasks:
            await asyncio.gather(*self._tick_tasks, return_exceptions=True)
        self.stats.next_run = None

    async def update_config(self, **changes) -> SchedulerConfig:
        """Apply a live config change; restarts the timer if running, keeps counters."""
        try:
            new_config = SchedulerConfig.model_validate(
                {**self.config.model_dump(), **changes}
            )
        except ValidationError:
            logger.warning("Rejected %s scheduler config update: %s", self.name, changes)
            raise
        was_active = self.is_active
        if was_active:
            await self.stop()
        self.config = new_config
        if was_active or (new_config.enabled and "enabled" in changes):
            self.start()
        logger.info("%s scheduler config updated: %s", self.name, new_config.model_dump())
        return new_config

    async def run_now(self) -> bool:
        """Run one tick immediately. Returns False if a tick was already running."""
        return await self._run_tick()

    def get_stats(self) -> dict:
        data = asdict(self.stats)
        data["is_running"] = self.is_running
        data["is_active"] = self.is_active
        data["interval_minutes"] = self.config.interval_minutes
        data["enabled"] = self.config.enabled
        return data

    def reset_stats(self) -> None:
        self.stats = self.stats_class(next_run=self.stats.next_run)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _loop(self) -> None:
        while True:
            self._spawn_tick()
            await asyncio.sleep(self.config.interval_minutes * 60)

    def _spawn_tick(self) -> None:
        if self._processing:
            self._record_skip()
            return
        task = asyncio.get_running_loop().create_task(self._run_tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    def _record_skip(self) -> None:
        self.stats.skipped_runs += 1
        logger.info("%s tick skipped: previous run still in progress", self.name)

    async def _run_tick(self) -> bool:
        if self._processing:
            self._record_skip()
            return False

        self._processing = True
        started_at = self._clock()
        started = time.monotonic()
        try:
            await self.tick()
        except Exception:
            self.stats.total_errors += 1
            logger.exception("%s tick failed", self.name)
        finally:
            elapsed_ms = (time.monotonic() - started) * 1000
            runs = self.stats.total_runs + 1
            self.stats.average_execution_ms = (
                self.stats.average_execution_ms * self.stats.total_runs + elapsed_ms
            ) / runs
            self.stats.total_runs = runs
            self.stats.last_run = started_at
            self.stats.next_run = (
                started_at + timedelta(minutes=self.config.interval_minutes)
                if self.is_active
                else None
            )
            self._processing = False
        return True


class ReminderScheduler(IntervalScheduler):
    """Each tick runs the reminder dispatcher once across all branches."""

    name = "reminders"
    stats_class = ReminderSchedulerStats

    def __init__(
        self,
        session_factory: SessionFactory,
        sender: EmailSender,
        config: SchedulerConfig,
        *,
        clock: Clock = utc_now,
        send_delay_seconds: float = 1.0,
    ):
        super().__init__(config, clock=clock)
        self._session_factory = session_factory
        self._sender = sender
        self.send_delay_seconds = send_delay_seconds

    async def tick(self) -> None:
        with self._session_factory() as db:
            result = await reminder_service.process_due_reminders(
                db,
                self._sender,
                now=self._clock(),
                send_delay_seconds=self.send_delay_seconds,
            )
        self.stats.total_sent += result.sent
        self.stats.total_errors += result.failed + result.branch_errors


class NoShowScheduler(IntervalScheduler):
    """Each tick marks scheduled appointments past their grace period as no-show."""

    name = "no_show"
    stats_class = NoShowSchedulerStats

    def __init__(
        self,
        session_factory: SessionFactory,
        config: SchedulerConfig,
        *,
        clock: Clock = utc_now,
        grace_minutes: int = 1,
    ):
        super().__init__(config, clock=clock)
        self._session_factory = session_factory
        self.grace_minutes = grace_minutes

    async def tick(self) -> None:
        with self._session_factory() as db:
            marked = appointment_service.mark_overdue_no_shows(
                db, now=self._clock(), grace_minutes=self.grace_minutes
            )
            db.commit()
        self.stats.total_marked += marked


def build_schedulers(
    settings: Settings,
    session_factory: SessionFactory,
    sender: EmailSender,
    *,
    clock: Clock = utc_now,
) -> dict[str, IntervalScheduler]:
    """Construct the process's schedulers from settings (read once at start)."""
    reminders = ReminderScheduler(
        session_factory,
        sender,
        SchedulerConfig(
            interval_minutes=settings.REMINDER_INTERVAL_MINUTES,
            enabled=settings.REMINDER_SCHEDULER_ENABLED,
        ),
        clock=clock,
        send_delay_seconds=settings.REMINDER_SEND_DELAY_SECONDS,
    )
    no_show = NoShowScheduler(
        session_factory,
        SchedulerConfig(
            interval_minutes=settings.NO_SHOW_INTERVAL_MINUTES,
            enabled=settings.NO_SHOW_SCHEDULER_ENABLED,
        ),
        clock=clock,
        grace_minutes=settings.NO_SHOW_GRACE_MINUTES,
    )
    return {reminders.name: reminders, no_show.name: no_show}
