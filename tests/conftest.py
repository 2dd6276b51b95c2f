import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import uuid
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, List

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.v1.jobs.queue import get_job_queue
from app.auth.schemas import CurrentUser
from app.auth.security import create_access_token
from app.core.models import Organization, Student
from app.db.session import Base, get_db
from app.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture()
async def engine():
    """One in-memory database per test, shared by every session through a static pool."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


class RecordingJobQueue:
    """Stands in for the arq pool: keeps every enqueue_job call instead of writing to redis."""

    def __init__(self) -> None:
        self.calls: List[Dict] = []

    async def enqueue_job(self, function: str, *args, **kwargs):
        self.calls.append(dict(kwargs, function=function, args=args))
        return kwargs.get("_job_id")


@pytest.fixture()
def job_queue() -> RecordingJobQueue:
    return RecordingJobQueue()


@pytest.fixture()
async def client(session_factory, job_queue) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, with get_db pointed at the test database."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
async def organization(db_session: AsyncSession) -> Organization:
    org = Organization(
        organization_code="GHS",
        organization_name="Greenfield High School",
        terminal_grade_code="SSS3",
    )
    db_session.add(org)
    await db_session.commit()
    return org


@pytest.fixture()
async def other_organization(db_session: AsyncSession) -> Organization:
    org = Organization(
        organization_code="RVA",
        organization_name="Riverside Academy",
        terminal_grade_code="SSS3",
    )
    db_session.add(org)
    await db_session.commit()
    return org


@pytest.fixture()
def actor(organization: Organization) -> CurrentUser:
    return CurrentUser(
        id=uuid.uuid4(),
        organization_id=organization.id,
        role="ADMIN",
        name="Registrar",
        permissions={},
    )


@pytest.fixture()
def make_student(db_session: AsyncSession, organization: Organization) -> Callable:
    """Factory for students that satisfy every graduation rule unless overridden."""
    counter = {"n": 0}

    async def _make(**overrides) -> Student:
        counter["n"] += 1
        values = dict(
            organization_id=organization.id,
            admission_number=f"GHS2020{counter['n']:04d}",
            first_name="Ada",
            last_name=f"Student{counter['n']}",
            grade_code="SSS3",
            stream_section="A",
            status="ACTIVE",
            gpa=Decimal("3.20"),
            total_credits=160,
            on_probation=False,
            disciplinary_status="CLEAR",
            outstanding_balance=Decimal("0"),
            is_boarding=False,
            promotion_history=[],
            transfer_history=[],
        )
        values.update(overrides)
        student = Student(**values)
        db_session.add(student)
        await db_session.commit()
        return student

    return _make


FULL_PERMISSIONS = {
    "students": {"create": True, "read": True, "update": True, "delete": True},
    "transfers": {"create": True, "read": True, "update": True},
    "audit": {"read": True},
}


def auth_headers_for(user: CurrentUser, permissions: Dict = None) -> Dict[str, str]:
    token = create_access_token(
        subject={
            "user_id": str(user.id),
            "tenant_id": str(user.organization_id),
            "role": user.role,
            "name": user.name,
            "permissions": FULL_PERMISSIONS if permissions is None else permissions,
        }
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers(actor: CurrentUser) -> Dict[str, str]:
    return auth_headers_for(actor)


@pytest.fixture()
def headers_with() -> Callable:
    """Build auth headers for a user with an explicit permission map."""
    return auth_headers_for
