# tests/conftest.py — Shared test fixtures
import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "10"
os.environ.pop("SMTP_HOST", None)

import auth as auth_module
from auth import get_credential_store, get_token_service
from database import get_db_session
from mailer import MailDeliveryError, get_mailer
from main import app
from models import Base, User, UserRole
from storage import LocalBlobStore, get_blob_store


class RecordingMailer:
    """Collects outgoing mail; set fail=True to simulate a dead relay"""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise MailDeliveryError(f"relay unavailable for {to}")
        self.sent.append({"to": to, "subject": subject, "body": body})


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    auth_module._login_attempts.clear()
    yield
    auth_module._login_attempts.clear()


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, blob_store, mailer):
    """HTTP test client with overridden DB, blob store and mailer"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_mailer] = lambda: mailer
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(db_session, email, password, role, first_name, last_name, active=True):
    user = User(
        first_name=first_name,
        last_name=last_name,
        email=email,
        password_hash=get_credential_store().hash_password(password),
        role=role,
        is_active=active,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Create an admin user"""
    return await _make_user(
        db_session, "admin@bugboard.dev", "AdminPass1!", UserRole.ADMIN, "Ada", "Admin",
    )


@pytest_asyncio.fixture
async def second_admin(db_session):
    """Create another admin"""
    return await _make_user(
        db_session, "admin2@bugboard.dev", "AdminPass2!", UserRole.ADMIN, "Bea", "Admin",
    )


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a regular user"""
    return await _make_user(
        db_session, "testuser@bugboard.dev", "TestPass1!", UserRole.USER, "Tess", "User",
    )


@pytest_asyncio.fixture
async def other_user(db_session):
    """Create a second regular user, unrelated to test issues"""
    return await _make_user(
        db_session, "other@bugboard.dev", "OtherPass1!", UserRole.USER, "Otto", "Other",
    )


@pytest_asyncio.fixture
async def inactive_user(db_session):
    """Create a deactivated user"""
    return await _make_user(
        db_session, "inactive@bugboard.dev", "Inactive1!", UserRole.USER, "Ina", "Active",
        active=False,
    )


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = get_token_service().issue(user)
    return {"Authorization": f"Bearer {token}"}


async def create_issue(client: AsyncClient, user: User, **overrides) -> dict:
    """Create an issue through the API and return its JSON"""
    payload = {
        "title": "Login button unresponsive",
        "description": "Clicking login does nothing on Safari",
        "priority": "medium",
        "type": "bug",
    }
    payload.update(overrides)
    resp = await client.post("/api/v1/issues", json=payload, headers=get_auth_headers(user))
    assert resp.status_code == 201, resp.text
    return resp.json()
