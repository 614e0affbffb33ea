import os
import tempfile
import uuid

# Settings are read at import time, so the environment has to be ready first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-0123456789")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="campus-report-uploads-"))
os.environ.setdefault("LOG_FORMAT", "pretty")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.security import create_password_hash, create_user_token
from app.main import app
from app.models.database import Base, User, UserRole, get_db_session


@pytest.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture
async def client(session_maker):
    async def override_get_db_session():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_db_session] = override_get_db_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def make_user(session, username: str, role: UserRole = UserRole.USER, password: str = "secret1") -> User:
    user = User(
        id=uuid.uuid4(),
        username=username,
        email=f"{username}@campus.test",
        password_hash=create_password_hash(password),
        role=role,
    )
    session.add(user)
    await session.commit()
    return user


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_user_token(user)}"}


@pytest.fixture
async def user(session):
    return await make_user(session, "alice")


@pytest.fixture
async def other_user(session):
    return await make_user(session, "bob")


@pytest.fixture
async def admin(session):
    return await make_user(session, "admin", role=UserRole.ADMIN)
