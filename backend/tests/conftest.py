# tests/conftest.py — Shared test fixtures
import os
import uuid
import tempfile

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("FILE_STORAGE_ROOT", tempfile.mkdtemp(prefix="interntrack-uploads-"))

from models import Base, User, Profile, UserRole
from database import get_db_session
from storage import LocalBlobStore, get_blob_store
from auth import AuthService, CurrentUser
from main import app

TEST_PASSWORD = "Password123"
_PASSWORD_HASH = AuthService.hash_password(TEST_PASSWORD)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "uploads"))


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, blob_store):
    """HTTP test client with overridden DB and blob store dependencies"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def create_member(db_session, email: str, role: UserRole, full_name: str, points: int = 0) -> User:
    """Create an identity with its profile already provisioned"""
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        password_hash=_PASSWORD_HASH,
        user_metadata={"full_name": full_name, "role": role.value},
        is_active=True,
    )
    db_session.add(user)
    db_session.add(Profile(
        user_id=user.id,
        email=email,
        full_name=full_name,
        role=role,
        points=points,
    ))
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def intern_user(db_session):
    return await create_member(db_session, "intern@interntrack.dev", UserRole.INTERN, "Ivy Intern")


@pytest_asyncio.fixture
async def other_intern(db_session):
    return await create_member(db_session, "intern2@interntrack.dev", UserRole.INTERN, "Otto Intern")


@pytest_asyncio.fixture
async def employee_user(db_session):
    return await create_member(db_session, "employee@interntrack.dev", UserRole.EMPLOYEE, "Emma Employee")


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await create_member(db_session, "admin@interntrack.dev", UserRole.ADMIN, "Ada Admin")


def as_actor(user: User) -> CurrentUser:
    """The authenticated actor a service call would receive for this user"""
    return CurrentUser(id=user.id, email=user.email, role=UserRole(user.user_metadata["role"]))


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {"sub": user.id, "email": user.email}
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
