# tests/conftest.py — Shared test fixtures
import os
import shutil
import tempfile

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
TEST_STORAGE_ROOT = os.environ.get("MBEE_TEST_STORAGE_ROOT") or tempfile.mkdtemp(prefix="mbee-storage-")
os.environ["MBEE_TEST_STORAGE_ROOT"] = TEST_STORAGE_ROOT
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["ARTIFACT_STRATEGY"] = "local"
os.environ["ARTIFACT_STORAGE_ROOT"] = TEST_STORAGE_ROOT

from models import Base, User, Organization  # noqa: E402
from auth import AuthService  # noqa: E402
from database import get_db_session, seed_defaults, DEFAULT_ADMIN_USERNAME, DEFAULT_ORG_ID  # noqa: E402
from main import app  # noqa: E402

TEST_PASSWORD = "TestPassword123"


@pytest.fixture(autouse=True)
def clean_storage():
    """Blob storage is shared by the whole run; empty it after each test."""
    yield
    shutil.rmtree(TEST_STORAGE_ROOT, ignore_errors=True)
    os.makedirs(TEST_STORAGE_ROOT, exist_ok=True)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # The default admin and default org exist in every deployment
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        await seed_defaults(session)
        await session.commit()

    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def make_user(db_session, username: str, admin: bool = False, password: str = TEST_PASSWORD) -> User:
    """Create a local user and add them to the default org."""
    user = User(
        id=username,
        email=f"{username}@mbee.dev",
        fname=username.capitalize(),
        lname="Tester",
        password_hash=AuthService.hash_password(password),
        admin=admin,
        provider="local",
        failed_logins=[],
        created_by=DEFAULT_ADMIN_USERNAME,
        last_modified_by=DEFAULT_ADMIN_USERNAME,
    )
    db_session.add(user)

    org = await db_session.get(Organization, DEFAULT_ORG_ID)
    perms = dict(org.permissions or {})
    perms[username] = ["read", "write"]
    org.permissions = perms

    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin_user(db_session):
    """The seeded default admin"""
    return await db_session.get(User, DEFAULT_ADMIN_USERNAME)


@pytest_asyncio.fixture
async def test_user(db_session):
    """A regular, non-admin user"""
    return await make_user(db_session, "testuser")


@pytest_asyncio.fixture
async def other_user(db_session):
    """A second regular user with no access to the test org"""
    return await make_user(db_session, "otheruser")


@pytest_asyncio.fixture
async def test_org(client, admin_user, test_user):
    """An org where test_user has write access"""
    resp = await client.post(
        "/api/orgs/testorg",
        json={"name": "Test Org", "permissions": {"testuser": "write"}},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest_asyncio.fixture
async def test_project(client, admin_user, test_org):
    """A project in test_org, with its master branch and root elements"""
    resp = await client.post(
        "/api/orgs/testorg/projects/testproj",
        json={"name": "Test Project", "permissions": {"testuser": "write"}},
        headers=get_auth_headers(admin_user),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "admin": bool(user.admin)})
    return {"Authorization": f"Bearer {token}"}
