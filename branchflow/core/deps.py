"""FastAPI dependencies for actor context, authorization, clock, and database access."""

from dataclasses import dataclass
from typing import Generator

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from branchflow.core.clock import Clock, utc_now
from branchflow.core.security import decode_session_token
from branchflow.db.enums import ActorRole
from branchflow.db.session import SessionLocal

COOKIE_NAME = "branchflow_session"


@dataclass(frozen=True)
class ActorContext:
    """Who is acting: id for audit stamping, role for policy bypass."""

    actor_id: int | None
    role: ActorRole
    branch_id: int | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.role != ActorRole.ANONYMOUS

    def can_manage_branch(self, branch_id: int) -> bool:
        if self.role == ActorRole.ADMIN:
            return True
        return self.role == ActorRole.STAFF and self.branch_id == branch_id


ANONYMOUS = ActorContext(actor_id=None, role=ActorRole.ANONYMOUS)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    """Time source dependency; tests override it to pin "now"."""
    return utc_now


def get_actor(request: Request) -> ActorContext:
    """
    Resolve the acting identity from the session cookie.

    No cookie means an anonymous actor (guest booking).

    Raises:
        HTTPException 401: cookie present but token invalid or malformed
    """
    token = request.cookies.get(COOKIE_NAME)
    if not token:
        return ANONYMOUS
    try:
        payload = decode_session_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid session")

    role = payload.get("role")
    if not role or not ActorRole.has_value(role) or role == ActorRole.ANONYMOUS.value:
        raise HTTPException(status_code=401, detail="Invalid session role")
    try:
        actor_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid session subject")

    branch_id = payload.get("branch_id")
    return ActorContext(
        actor_id=actor_id,
        role=ActorRole(role),
        branch_id=int(branch_id) if branch_id is not None else None,
    )


def require_authenticated(actor: ActorContext = Depends(get_actor)) -> ActorContext:
    if not actor.is_authenticated:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return actor


def require_roles(allowed_roles: list[ActorRole]):
    """
    Dependency factory for role-based authorization.

    Usage:
        @router.put("/x", dependencies=[Depends(require_roles([ActorRole.ADMIN]))])
    """

    def dependency(actor: ActorContext = Depends(require_authenticated)) -> ActorContext:
        if actor.role not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Role '{actor.role.value}' not authorized for this action",
            )
        return actor

    return dependency
