"""
Standalone scheduler worker.

Usage:
    python -m branchflow.worker

Runs the reminder and no-show schedulers outside the API process. Set
RUN_SCHEDULERS_IN_API=false on the API when using this.
"""

import asyncio
import logging
import signal

from branchflow.core.config import settings
from branchflow.core.structured_logging import build_log_context
from branchflow.db.session import SessionLocal
from branchflow.services.email_service import select_sender
from branchflow.services.schedulers import build_schedulers

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def worker_loop() -> None:
    """Start all enabled schedulers and run until signalled."""
    selection = select_sender()
    if selection.dry_run:
        logger.warning("RESEND_API_KEY not set - reminder emails will be logged only")

    schedulers = build_schedulers(settings, SessionLocal, selection.sender)
    started = [name for name, scheduler in schedulers.items() if scheduler.start()]
    if not started:
        logger.warning("No schedulers enabled, exiting")
        return
    logger.info("Worker started with schedulers: %s", ", ".join(started))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms; rely on KeyboardInterrupt
            pass

    try:
        await stop_event.wait()
    finally:
        for scheduler in schedulers.values():
            await scheduler.stop()
        for name, scheduler in schedulers.items():
            logger.info("Scheduler %s final stats: %s", name, scheduler.get_stats())


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception("Worker crashed", extra=build_log_context(request_id="worker"))
        raise


if __name__ == "__main__":
    main()
