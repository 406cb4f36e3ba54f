"""
tests/conftest.py
Shared fixtures: in-memory SQLite per test, seeded users, an HTTP client
wired to the app with the database, OTP provider and mailer overridden.
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ACADEMIC_DOMAINS", "iitb.ac.in,stanford.edu")
os.environ.setdefault("BACKEND_URL", "http://testserver")

import uuid
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from services.otp.providers import MockOtpProvider, get_otp_provider
from services.otp.store import InMemoryChallengeStore
from services.verification.engine import VerificationEngine
from services.verification.notifier import get_mailer
from shared.models.models import User, UserRole
from shared.utils.security import create_access_token


class RecordingMailer:
    """Collects outgoing mail instead of enqueueing Celery tasks."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def send(self, to: str, template_name: str, data: Dict[str, Any]) -> None:
        self.sent.append({"to": to, "template_name": template_name, "data": data})

    @property
    def last(self) -> Dict[str, Any]:
        return self.sent[-1]


def auth_headers(user: User) -> dict:
    token = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def token_from_url(url: str) -> str:
    return url.split("token=", 1)[1]


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


async def _make_user(db: AsyncSession, role: UserRole, name: str) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
        name=name,
        role=role,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def student(db: AsyncSession) -> User:
    return await _make_user(db, UserRole.STUDENT, "Asha Student")


@pytest_asyncio.fixture
async def other_student(db: AsyncSession) -> User:
    return await _make_user(db, UserRole.STUDENT, "Ravi Student")


@pytest_asyncio.fixture
async def owner(db: AsyncSession) -> User:
    return await _make_user(db, UserRole.OWNER, "Meera Owner")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await _make_user(db, UserRole.ADMIN, "Admin One")


# ── Collaborators ──────────────────────────────────────────────────────────────

@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def otp_provider() -> MockOtpProvider:
    return MockOtpProvider(InMemoryChallengeStore(), ttl_seconds=300, strict_checksum=False)


@pytest.fixture
def engine(db: AsyncSession, otp_provider: MockOtpProvider, mailer: RecordingMailer) -> VerificationEngine:
    return VerificationEngine(db, otp_provider, mailer)


# ── HTTP client ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(db: AsyncSession, otp_provider: MockOtpProvider, mailer: RecordingMailer):
    from main import app

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_otp_provider] = lambda: otp_provider
    app.dependency_overrides[get_mailer] = lambda: mailer

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def make_evidence(**overrides):
    from services.documents.workflow import Evidence

    values = {
        "storage_key": f"documents/{uuid.uuid4().hex}.pdf",
        "original_name": "scan.pdf",
        "mime_type": "application/pdf",
        "size_bytes": 120_000,
    }
    values.update(overrides)
    return Evidence(**values)
