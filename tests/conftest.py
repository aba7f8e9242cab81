"""
Test configuration and fixtures.

Provides:
- In-memory SQLite session per test (schema from metadata)
- A pinned, advanceable clock
- A branch with services, service points and capability rows
- A recording email sender
- HTTPX AsyncClient with dependency overrides and JWT cookie login
"""
import itertools
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

# Keep the app on a throwaway database and out of real email delivery
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["RESEND_API_KEY"] = ""
os.environ["RUN_SCHEDULERS_IN_API"] = "False"

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from branchflow.core.deps import COOKIE_NAME, get_clock, get_db
from branchflow.core.security import create_session_token
from branchflow.db.base import Base
from branchflow.db.enums import ActorRole
from branchflow.db.models import (
    Appointment,
    Branch,
    Service,
    ServicePoint,
    ServicePointService,
    User,
)
from branchflow.services.email_service import EmailSendError

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock / email doubles
# =============================================================================


class FakeClock:
    """Callable time source pinned to a fixed instant."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmailSender:
    """Records sends; raises for addresses in ``fail_for``."""

    key = "fake"

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_for: set[str] = set()

    async def send(self, *, to_email, subject, html, idempotency_key=None):
        if to_email in self.fail_for:
            raise EmailSendError(f"mailbox unavailable: {to_email}")
        self.sent.append(
            {
                "to": to_email,
                "subject": subject,
                "html": html,
                "idempotency_key": idempotency_key,
            }
        )
        return f"msg-{len(self.sent)}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> FakeEmailSender:
    return FakeEmailSender()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@dataclass
class BranchSetup:
    branch: Branch
    service: Service
    other_service: Service
    counter_a: ServicePoint  # active, serves ``service``
    counter_b: ServicePoint  # active, serves ``service``
    back_office: ServicePoint  # active, serves only ``other_service``
    closed_counter: ServicePoint  # inactive, serves ``service``


@pytest.fixture(scope="function")
def branch_setup(db: Session) -> BranchSetup:
    branch = Branch(name="Downtown", timezone="UTC", created_at=NOW)
    service = Service(name="Passport renewal")
    other_service = Service(name="Notary")
    db.add_all([branch, service, other_service])
    db.flush()

    counter_a = ServicePoint(branch_id=branch.id, name="Counter A")
    counter_b = ServicePoint(branch_id=branch.id, name="Counter B")
    back_office = ServicePoint(branch_id=branch.id, name="Back office")
    closed_counter = ServicePoint(branch_id=branch.id, name="Counter C", is_active=False)
    db.add_all([counter_a, counter_b, back_office, closed_counter])
    db.flush()

    db.add_all(
        [
            ServicePointService(service_point_id=counter_a.id, service_id=service.id),
            ServicePointService(service_point_id=counter_b.id, service_id=service.id),
            ServicePointService(service_point_id=back_office.id, service_id=other_service.id),
            ServicePointService(service_point_id=closed_counter.id, service_id=service.id),
        ]
    )
    db.commit()
    return BranchSetup(
        branch=branch,
        service=service,
        other_service=other_service,
        counter_a=counter_a,
        counter_b=counter_b,
        back_office=back_office,
        closed_counter=closed_counter,
    )


def _make_user(db: Session, email: str, role: ActorRole, branch_id: int | None) -> User:
    user = User(email=email, role=role.value, branch_id=branch_id)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin_user(db, branch_setup) -> User:
    return _make_user(db, "admin@example.com", ActorRole.ADMIN, None)


@pytest.fixture
def staff_user(db, branch_setup) -> User:
    return _make_user(db, "staff@example.com", ActorRole.STAFF, branch_setup.branch.id)


@pytest.fixture
def customer(db, branch_setup) -> User:
    return _make_user(db, "customer@example.com", ActorRole.USER, None)


@pytest.fixture
def make_appointment(db: Session, branch_setup: BranchSetup, clock: FakeClock):
    """Factory booking appointments through the service; slots never collide."""
    from branchflow.services import appointment_service

    slot = itertools.count()

    def _make(
        *,
        at: datetime | None = None,
        hours_ahead: float = 48,
        email: str | None = None,
        user: User | None = None,
    ) -> Appointment:
        scheduled_at = at or clock() + timedelta(hours=hours_ahead, minutes=next(slot))
        appointment = appointment_service.book_appointment(
            db,
            branch_id=branch_setup.branch.id,
            service_id=branch_setup.service.id,
            scheduled_at=scheduled_at,
            now=clock(),
            user_id=user.id if user else None,
            guest_name=None if user else "Guest Customer",
            guest_email=None if user else (email or f"guest{next(slot)}@example.com"),
        )
        db.commit()
        return appointment

    return _make


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture
def login():
    """Return a helper that attaches a session cookie for a user to a client."""

    def _login(client: AsyncClient, user: User) -> AsyncClient:
        token = create_session_token(user.id, user.role, user.branch_id)
        client.cookies.set(COOKIE_NAME, token)
        return client

    return _login


@pytest.fixture(scope="function")
async def client(db: Session, clock: FakeClock) -> AsyncGenerator[AsyncClient, None]:
    """
    AsyncClient sharing the test session and clock with the app.
    """
    from branchflow.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
