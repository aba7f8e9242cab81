"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from branchflow.core.config import settings
from branchflow.core.errors import InternalEngineError
from branchflow.core.structured_logging import build_log_context
from branchflow.db.session import SessionLocal, engine
from branchflow.services.email_service import select_sender
from branchflow.services.schedulers import build_schedulers

logger = logging.getLogger(__name__)


# ============================================================================
# Lifespan (schedulers)
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    selection = select_sender()
    if selection.dry_run:
        logger.warning("RESEND_API_KEY not set, reminder emails run in dry-run mode")
    schedulers = build_schedulers(settings, SessionLocal, selection.sender)
    app.state.schedulers = schedulers
    if settings.RUN_SCHEDULERS_IN_API:
        for scheduler in schedulers.values():
            scheduler.start()
    try:
        yield
    finally:
        for scheduler in schedulers.values():
            await scheduler.stop()


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Branchflow API",
    description="Appointment booking, check-in, and branch queue engine",
    version=settings.VERSION,
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    lifespan=lifespan,
)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    """Unexpected persistence failures surface as an opaque INTERNAL_ERROR."""
    logger.error(
        "Persistence failure on %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
        extra=build_log_context(request_id=request.headers.get("X-Request-ID")),
    )
    error = InternalEngineError("An internal error occurred")
    return JSONResponse(status_code=500, content={"detail": error.to_dict()})


# ============================================================================
# Routers
# ============================================================================

from branchflow.routers import (  # noqa: E402
    appointments_router,
    branch_policies_router,
    queue_router,
    schedulers_router,
)

app.include_router(appointments_router, prefix="/appointments", tags=["appointments"])
app.include_router(queue_router, prefix="/queue", tags=["queue"])
app.include_router(branch_policies_router, prefix="/branches", tags=["branch-policies"])
app.include_router(schedulers_router, prefix="/schedulers", tags=["schedulers"])


@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
