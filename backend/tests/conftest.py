"""
Test configuration and fixtures
"""
import base64
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-for-audit-workflow-tests"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ACTIVITY_PAGE_CAP"] = "50"

from app.core.security import Identity, hash_password
from app.db.database import Base, get_db, enable_sqlite_foreign_keys
from app.main import app
from app.db.models import (
    AuditRun, AuditRunStatus, AuditType, Control, Criticality, Organization,
    OrganizationRole, OrganizationUser, PlatformRole, User,
)
from app.services.broadcast import ActivityBroadcaster

PASSWORD = "Audit-Pass-2026!"

# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def _basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("utf-8")
    return f"Basic {token}"


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async engine for tests"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async_session = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def broadcaster() -> AsyncGenerator[ActivityBroadcaster, None]:
    """Running broadcaster (ASGITransport does not run the app lifespan)"""
    instance = ActivityBroadcaster(queue_size=10)
    await instance.start()
    yield instance
    await instance.shutdown()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, broadcaster: ActivityBroadcaster) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database session override"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.broadcaster = broadcaster

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[[User], dict]:
    """Basic auth headers for a fixture user"""

    def _headers(user: User) -> dict:
        return {"Authorization": _basic_auth_header(user.email, PASSWORD)}

    return _headers


@pytest.fixture
def password() -> str:
    """Password shared by every fixture user"""
    return PASSWORD


@pytest.fixture
def identity_of() -> Callable[[User], Identity]:
    return Identity.from_user


# === Sample Data Fixtures ===

async def _create_user(
    db: AsyncSession,
    email: str,
    organization: Optional[Organization] = None,
    role: Optional[OrganizationRole] = None,
    platform_role: PlatformRole = PlatformRole.USER,
) -> User:
    user = User(
        email=email,
        name=email.split("@")[0].title(),
        password_hash=hash_password(PASSWORD),
        platform_role=platform_role,
    )
    db.add(user)
    await db.flush()  # Flush to get the user ID

    if organization is not None and role is not None:
        db.add(OrganizationUser(organization_id=organization.id, user_id=user.id, role=role))

    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def organization(db_session: AsyncSession) -> Organization:
    org = Organization(name="Acme Corp")
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


@pytest_asyncio.fixture
async def other_organization(db_session: AsyncSession) -> Organization:
    org = Organization(name="Globex")
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


@pytest_asyncio.fixture
async def manager(db_session: AsyncSession, organization: Organization) -> User:
    """Audit manager of the organization; creates runs in most tests"""
    return await _create_user(db_session, "manager@acme.test", organization, OrganizationRole.AUDIT_MANAGER)


@pytest_asyncio.fixture
async def officer(db_session: AsyncSession, organization: Organization) -> User:
    return await _create_user(db_session, "officer@acme.test", organization, OrganizationRole.COMPLIANCE_OFFICER)


@pytest_asyncio.fixture
async def viewer(db_session: AsyncSession, organization: Organization) -> User:
    return await _create_user(db_session, "viewer@acme.test", organization, OrganizationRole.VIEWER)


@pytest_asyncio.fixture
async def reviewer(db_session: AsyncSession, organization: Organization) -> User:
    return await _create_user(db_session, "reviewer@acme.test", organization, OrganizationRole.CONTRIBUTOR)


@pytest_asyncio.fixture
async def approver(db_session: AsyncSession, organization: Organization) -> User:
    return await _create_user(db_session, "approver@acme.test", organization, OrganizationRole.CONTRIBUTOR)


@pytest_asyncio.fixture
async def outsider(db_session: AsyncSession, other_organization: Organization) -> User:
    """Audit manager, but of another organization"""
    return await _create_user(db_session, "outsider@globex.test", other_organization, OrganizationRole.AUDIT_MANAGER)


@pytest_asyncio.fixture
async def super_admin(db_session: AsyncSession) -> User:
    """Platform super admin without any membership"""
    return await _create_user(db_session, "root@platform.test", platform_role=PlatformRole.SUPER_ADMIN)


@pytest_asyncio.fixture
async def controls(db_session: AsyncSession, organization: Organization) -> list[Control]:
    """Three controls of the organization with mixed criticality"""
    items = [
        Control(organization_id=organization.id, name="Access Review", category="IAM", criticality=Criticality.LOW),
        Control(organization_id=organization.id, name="Encryption at Rest", category="Crypto", criticality=Criticality.CRITICAL),
        Control(organization_id=organization.id, name="Change Management", category="Ops", criticality=Criticality.MEDIUM),
    ]
    db_session.add_all(items)
    await db_session.commit()
    return items


@pytest_asyncio.fixture
async def foreign_control(db_session: AsyncSession, other_organization: Organization) -> Control:
    control = Control(organization_id=other_organization.id, name="Globex Backup Policy")
    db_session.add(control)
    await db_session.commit()
    return control


@pytest_asyncio.fixture
async def audit_run(db_session: AsyncSession, organization: Organization, manager: User) -> AuditRun:
    """In-progress run created by the manager"""
    start = datetime(2026, 1, 1)
    run = AuditRun(
        organization_id=organization.id,
        name="SOC 2 Type II 2026",
        audit_type=AuditType.EXTERNAL,
        status=AuditRunStatus.IN_PROGRESS,
        start_date=start,
        end_date=start + timedelta(days=90),
        created_by=manager.id,
    )
    db_session.add(run)
    await db_session.commit()
    await db_session.refresh(run)
    return run


@pytest_asyncio.fixture
async def locked_run(db_session: AsyncSession, organization: Organization, manager: User) -> AuditRun:
    start = datetime(2025, 1, 1)
    run = AuditRun(
        organization_id=organization.id,
        name="ISO 27001 2025",
        status=AuditRunStatus.LOCKED,
        start_date=start,
        end_date=start + timedelta(days=60),
        created_by=manager.id,
        locked_at=datetime(2025, 4, 1),
    )
    db_session.add(run)
    await db_session.commit()
    await db_session.refresh(run)
    return run
