"""
Pytest configuration and shared fixtures for Docket tests.

Testing Standards:
- Unit tests go in tests/unit/
- Every test gets a fresh in-memory SQLite database
- The communication provider is the in-process dev backend unless a test
  injects its own
"""

import os

# Settings are read at import time; configure before importing docket
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("COMMUNICATION_PROVIDER", "dev")
os.environ.setdefault("DEBUG", "false")

from datetime import date, datetime, time, timedelta  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from docket.core.config import settings  # noqa: E402
from docket.db import models  # noqa: E402,F401
from docket.db.database import Base  # noqa: E402
from docket.db.models import (  # noqa: E402
    AdminApprovalStatus,
    ApplicationStatus,
    AttorneyStatus,
    Case,
    JurorApplication,
    User,
    UserRole,
)
from docket.services.communication_service import CommunicationService  # noqa: E402

# Fixed "now" used by service-level tests: 2030-06-01 12:00 UTC
NOW = datetime(2030, 6, 1, 12, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def comms() -> CommunicationService:
    """Fresh dev backend per test so room/thread state is isolated."""
    return CommunicationService(provider="dev")


# ============================================================================
# Factories
# ============================================================================

class Factory:
    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def user(self, role: UserRole, first_name: str = None, state: str = None, **kwargs) -> User:
        n = self._next()
        user = User(
            email=f"{role.value}{n}@example.com",
            first_name=first_name or f"{role.value.capitalize()}{n}",
            last_name=kwargs.pop("last_name", "Test"),
            role=role,
            state=state,
            **kwargs,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def attorney(self, **kwargs) -> User:
        return self.user(UserRole.attorney, **kwargs)

    def juror(self, **kwargs) -> User:
        return self.user(UserRole.juror, **kwargs)

    def admin(self, **kwargs) -> User:
        return self.user(UserRole.admin, **kwargs)

    def case(
        self,
        attorney: User,
        scheduled_date: date = date(2030, 6, 10),
        scheduled_time: time = time(10, 0),
        admin_status: AdminApprovalStatus = AdminApprovalStatus.pending,
        status: AttorneyStatus = AttorneyStatus.pending,
        timezone_offset: int = 0,
        required_jurors: int = 7,
        title: str = None,
    ) -> Case:
        n = self._next()
        case = Case(
            attorney_id=attorney.id,
            case_title=title or f"Smith v. Jones {n}",
            case_type="Civil",
            case_jurisdiction="State",
            case_tier="Tier 1",
            state="Texas",
            county="Travis",
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            timezone_offset=timezone_offset,
            required_jurors=required_jurors,
            admin_approval_status=admin_status,
            attorney_status=status,
        )
        self.db.add(case)
        self.db.commit()
        self.db.refresh(case)
        return case

    def war_room_case(self, attorney: User, **kwargs) -> Case:
        return self.case(
            attorney,
            admin_status=AdminApprovalStatus.approved,
            status=AttorneyStatus.war_room,
            **kwargs,
        )

    def application(self, case: Case, juror: User, status: ApplicationStatus = ApplicationStatus.pending) -> JurorApplication:
        application = JurorApplication(case_id=case.id, juror_id=juror.id, status=status)
        self.db.add(application)
        self.db.commit()
        self.db.refresh(application)
        return application

    def approved_jurors(self, case: Case, count: int) -> list:
        jurors = []
        for _ in range(count):
            juror = self.juror()
            self.application(case, juror, ApplicationStatus.approved)
            jurors.append(juror)
        return jurors


@pytest.fixture
def factory(db) -> Factory:
    return Factory(db)


# ============================================================================
# API
# ============================================================================

def auth_headers(user: User) -> dict:
    token = jwt.encode(
        {"sub": str(user.id), "exp": datetime.utcnow() + timedelta(hours=1)},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db, comms):
    """TestClient bound to the test session and dev communication backend."""
    from fastapi.testclient import TestClient

    from docket.db.database import get_db
    from docket.main import app
    from docket.services.communication_service import get_communication_service

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_communication_service] = lambda: comms
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth():
    return auth_headers
