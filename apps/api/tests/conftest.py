"""
Test configuration and fixtures.

Provides:
- In-memory SQLite schema and a savepoint session (rollback after each test)
- JWT token minting for authenticated tests
- HTTPX AsyncClient with proper headers
- A recording stand-in for the outbound webhook scheduler
"""
import os
import uuid
from dataclasses import dataclass, field
from typing import AsyncGenerator, Generator

from cryptography.fernet import Fernet

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "true"
os.environ["TWILIO_VALIDATE_SIGNATURES"] = "false"
os.environ.setdefault("WEBHOOK_SECRET_ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

from intake_crm.main import app
from intake_crm.db.base import Base
from intake_crm.db.session import engine
from intake_crm.core.deps import get_db, COOKIE_NAME, CSRF_HEADER, CSRF_HEADER_VALUE
from intake_crm.core.security import create_session_token
from intake_crm.db.models import Organization, PhoneNumber, User
from intake_crm.db.enums import Role
from intake_crm.services import outbound_webhook_service


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def schema() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates a database session with savepoint for test isolation.

    App code can call commit() and rollback() freely; each maps onto a
    SAVEPOINT inside the outer transaction, which is rolled back at the end.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    """Create a test organization."""
    org = Organization(
        id=uuid.uuid4(),
        name="Test Law Firm",
        slug=f"test-org-{uuid.uuid4().hex[:8]}",
    )
    db.add(org)
    db.flush()
    return org


def _make_user(db: Session, org: Organization, role: Role = Role.STAFF, **kwargs) -> User:
    user = User(
        id=uuid.uuid4(),
        organization_id=org.id,
        email=kwargs.pop("email", f"user-{uuid.uuid4().hex[:8]}@test.com"),
        display_name=kwargs.pop("display_name", "Test User"),
        role=role.value,
        **kwargs,
    )
    db.add(user)
    db.flush()
    return user


def _make_phone_number(db: Session, org: Organization, e164: str, provider: str = "twilio", **kwargs) -> PhoneNumber:
    phone_number = PhoneNumber(
        id=uuid.uuid4(),
        organization_id=org.id,
        e164=e164,
        provider=provider,
        **kwargs,
    )
    db.add(phone_number)
    db.flush()
    return phone_number


@pytest.fixture(scope="function")
def user_factory(db: Session, test_org: Organization):
    """Create users in test_org (or another org) with the given role."""
    def factory(role: Role = Role.STAFF, org: Organization | None = None, **kwargs) -> User:
        return _make_user(db, org or test_org, role, **kwargs)
    return factory


@pytest.fixture(scope="function")
def phone_number_factory(db: Session, test_org: Organization):
    def factory(e164: str, org: Organization | None = None, **kwargs) -> PhoneNumber:
        return _make_phone_number(db, org or test_org, e164, **kwargs)
    return factory


@pytest.fixture(scope="function")
def test_user(db: Session, test_org: Organization) -> User:
    """Create an admin user in test_org."""
    return _make_user(db, test_org, Role.ADMIN, display_name="Admin User")


@pytest.fixture(scope="function")
def test_phone_number(db: Session, test_org: Organization) -> PhoneNumber:
    return _make_phone_number(db, test_org, "+15550001111", label="Main line")


@pytest.fixture(scope="function")
def other_org(db: Session) -> Organization:
    """A second tenant for isolation checks."""
    org = Organization(id=uuid.uuid4(), name="Other Firm", slug=f"other-{uuid.uuid4().hex[:8]}")
    db.add(org)
    db.flush()
    return org


# =============================================================================
# Outbound webhook scheduler
# =============================================================================

@dataclass
class RecordingScheduler:
    """Collects schedule/cancel calls instead of spawning delivery tasks."""
    scheduled: list = field(default_factory=list)
    canceled: list = field(default_factory=list)

    def schedule(self, delivery_id, delay: float = 0.0) -> bool:
        self.scheduled.append((delivery_id, delay))
        return True

    def cancel(self, delivery_id) -> bool:
        self.canceled.append(delivery_id)
        return False


@pytest.fixture(autouse=True)
def delivery_scheduler(monkeypatch) -> RecordingScheduler:
    recorder = RecordingScheduler()
    monkeypatch.setattr(outbound_webhook_service, "scheduler", recorder)
    return recorder


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    org: Organization
    token: str
    cookie_name: str = COOKIE_NAME


def _mint_auth(user: User, org: Organization) -> TestAuth:
    token = create_session_token(
        user_id=user.id,
        org_id=org.id,
        role=user.role,
        token_version=user.token_version,
    )
    return TestAuth(user=user, org=org, token=token)


@pytest.fixture(scope="function")
def test_auth(test_user: User, test_org: Organization) -> TestAuth:
    """Create JWT token for test user."""
    return _mint_auth(test_user, test_org)


@pytest.fixture(scope="function")
def auth_factory():
    return _mint_auth


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """
    Create unauthenticated AsyncClient for testing public endpoints.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    test_auth: TestAuth
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create authenticated AsyncClient with JWT cookie and CSRF header.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={test_auth.cookie_name: test_auth.token},
        headers={CSRF_HEADER: CSRF_HEADER_VALUE},
    ) as c:
        yield c

    app.dependency_overrides.clear()
