import pytest
from unittest.mock import AsyncMock

from app.models.database import UserRole
from scripts import create_admin


@pytest.fixture
def cli_store(session_maker, monkeypatch):
    monkeypatch.setattr(create_admin, "async_session_maker", session_maker)
    monkeypatch.setattr(create_admin, "create_tables", AsyncMock())


@pytest.mark.asyncio
async def test_taken_username_exits_with_message(cli_store, user):
    with pytest.raises(SystemExit, match="Username alice is already taken"):
        await create_admin._create_or_promote("boss@campus.test", "alice", "secret1", False)


@pytest.mark.asyncio
async def test_creates_admin(cli_store, session_maker):
    result = await create_admin._create_or_promote("Boss@Campus.test", "boss", "secret1", False)
    assert result["action"] == "created"

    again = await create_admin._create_or_promote("boss@campus.test", None, None, False)
    assert again == {"action": "unchanged", "user_id": result["user_id"]}


@pytest.mark.asyncio
async def test_promote_existing_user(cli_store, session, user):
    with pytest.raises(SystemExit, match="--promote"):
        await create_admin._create_or_promote(user.email, None, None, False)

    result = await create_admin._create_or_promote(user.email, None, None, True)
    assert result["action"] == "promoted"

    await session.refresh(user)
    assert user.role == UserRole.ADMIN
