from datetime import timedelta

import pytest

from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.models.database import ChatStatus, User, UserRole, as_utc
from app.services.chat import ChatService, format_chat

from conftest import auth_headers


@pytest.mark.asyncio
async def test_one_thread_per_user(session, user):
    service = ChatService(session)
    first = await service.get_or_create_thread(user)
    second = await service.get_or_create_thread(user)
    assert first.id == second.id
    assert first.status == ChatStatus.ACTIVE


@pytest.mark.asyncio
async def test_thread_created_concurrently_is_reused(session_maker, session, user, monkeypatch):
    async with session_maker() as other:
        winner = await ChatService(other).get_or_create_thread(await other.get(User, user.id))

    # The first lookup misses, as if the other request had not committed yet
    real_scalar = session.scalar
    lookups = []

    async def scalar(statement, *args, **kwargs):
        lookups.append(statement)
        if len(lookups) == 1:
            return None
        return await real_scalar(statement, *args, **kwargs)

    monkeypatch.setattr(session, "scalar", scalar)
    chat = await ChatService(session).get_or_create_thread(user)

    assert chat.id == winner.id
    assert len(lookups) == 2
    assert user.username == "alice"


@pytest.mark.asyncio
async def test_empty_message_is_rejected(session, user):
    with pytest.raises(ValidationError):
        await ChatService(session).send_message(user, "   ")


@pytest.mark.asyncio
async def test_unread_counts_for_both_sides(session, user, other_user, admin):
    service = ChatService(session)
    chat = await service.send_message(user, "The lift is stuck")
    await service.send_message(user, "Still stuck")
    await service.send_message(other_user, "Hello?")

    assert await service.unread_count(admin) == 3
    assert await service.unread_count(user) == 0

    await service.reply(chat.id, admin, "On our way")
    assert await service.unread_count(user) == 1
    assert await service.unread_count(other_user) == 0

    await service.mark_read(chat.id, admin)
    assert await service.unread_count(admin) == 1

    await service.mark_read(chat.id, user)
    assert await service.unread_count(user) == 0


@pytest.mark.asyncio
async def test_closed_threads_leave_admin_unread_count(session, user, admin):
    service = ChatService(session)
    chat = await service.send_message(user, "Hi")
    await service.close_thread(chat.id, admin)

    assert await service.unread_count(admin) == 0


@pytest.mark.asyncio
async def test_reply_reopens_closed_thread(session, user, admin):
    service = ChatService(session)
    chat = await service.send_message(user, "Hi")
    await service.close_thread(chat.id, admin)

    chat = await service.reply(chat.id, admin, "Anything else?")
    assert chat.status == ChatStatus.ACTIVE
    assert chat.messages[-1].sender_role == UserRole.ADMIN


@pytest.mark.asyncio
async def test_get_new_since_returns_strictly_newer(session, user, admin):
    service = ChatService(session)
    chat = await service.send_message(user, "first")
    chat = await service.reply(chat.id, admin, "second")
    chat = await service.send_message(user, "third")

    all_messages = await service.get_new_since(chat.id, user)
    assert [m.message for m in all_messages] == ["first", "second", "third"]

    cutoff = as_utc(all_messages[0].timestamp)
    newer = await service.get_new_since(chat.id, user, cutoff)
    assert [m.message for m in newer] == ["second", "third"]

    latest = as_utc(all_messages[-1].timestamp)
    assert await service.get_new_since(chat.id, admin, latest + timedelta(seconds=1)) == []


@pytest.mark.asyncio
async def test_thread_access_rules(session, user, other_user, admin):
    service = ChatService(session)
    chat = await service.send_message(user, "private")

    with pytest.raises(AuthorizationError):
        await service.get_thread(chat.id, other_user)
    with pytest.raises(AuthorizationError):
        await service.reply(chat.id, other_user, "not an admin")
    with pytest.raises(AuthorizationError):
        await service.list_threads(user)
    with pytest.raises(NotFoundError):
        await service.get_thread("missing", admin)

    assert (await service.get_thread(chat.id, admin)).id == chat.id


@pytest.mark.asyncio
async def test_format_chat_counts_unread_user_messages(session, user):
    chat = await ChatService(session).send_message(user, "one")
    data = format_chat(chat)
    assert data["unreadFromUser"] == 1
    assert data["messages"][0]["senderRole"] == "user"
    assert "messages" not in format_chat(chat, include_messages=False)


@pytest.mark.asyncio
async def test_chat_http_flow(client, user, admin):
    resp = await client.post("/api/v1/chat/send", headers=auth_headers(user), json={"message": "Door broken"})
    assert resp.status_code == 200
    chat_id = resp.json()["data"]["id"]

    resp = await client.get("/api/v1/chat/unread-count", headers=auth_headers(admin))
    assert resp.json()["data"]["count"] == 1

    resp = await client.get("/api/v1/chat/all", headers=auth_headers(admin))
    assert [c["id"] for c in resp.json()["data"]] == [chat_id]

    assert (await client.get("/api/v1/chat/all", headers=auth_headers(user))).status_code == 403

    resp = await client.post(f"/api/v1/chat/{chat_id}/reply", headers=auth_headers(admin), json={"message": "Noted"})
    assert resp.status_code == 200

    resp = await client.get(f"/api/v1/chat/{chat_id}/messages", headers=auth_headers(user))
    assert [m["message"] for m in resp.json()["data"]] == ["Door broken", "Noted"]

    resp = await client.put(f"/api/v1/chat/{chat_id}/read", headers=auth_headers(user))
    assert resp.status_code == 200

    resp = await client.put(f"/api/v1/chat/{chat_id}/close", headers=auth_headers(admin))
    assert resp.json()["data"]["status"] == "closed"
