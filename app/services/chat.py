"""
Chat Service

One support thread per user. Users write into their own thread, admins read
every thread and reply into it. Clients poll with ``get_new_since``.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AuthorizationError, InternalError, NotFoundError, ValidationError
from app.core.metrics import CHAT_MESSAGES
from app.core.security import ensure_admin
from app.models.database import Chat, ChatMessage, ChatStatus, User, UserRole, as_utc, utcnow

logger = structlog.get_logger(__name__)

MAX_MESSAGE_LENGTH = 2000


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def format_message(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": str(message.id),
        "senderId": str(message.sender_id),
        "senderName": message.sender_name,
        "senderRole": message.sender_role.value,
        "message": message.message,
        "timestamp": _iso(message.timestamp),
        "isRead": message.is_read,
    }


def format_chat(chat: Chat, include_messages: bool = True) -> Dict[str, Any]:
    data = {
        "id": str(chat.id),
        "userId": str(chat.user_id),
        "userName": chat.user_name,
        "status": chat.status.value,
        "lastMessageAt": _iso(chat.last_message_at),
        "createdAt": _iso(chat.created_at),
        "updatedAt": _iso(chat.updated_at),
        "unreadFromUser": sum(
            1 for m in chat.messages if m.sender_role == UserRole.USER and not m.is_read
        ),
    }
    if include_messages:
        data["messages"] = [format_message(m) for m in chat.messages]
    return data


class ChatService:
    """Chat operations bound to one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _commit(self, operation: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Chat store write failed", operation=operation, error=str(e))
            raise InternalError(f"Failed to {operation}")

    async def _get(self, thread_id: Union[str, uuid.UUID]) -> Chat:
        try:
            cid = thread_id if isinstance(thread_id, uuid.UUID) else uuid.UUID(str(thread_id))
        except ValueError:
            raise NotFoundError("Chat", str(thread_id))

        chat = await self.session.get(Chat, cid)
        if chat is None:
            raise NotFoundError("Chat", str(thread_id))
        return chat

    def _check_access(self, chat: Chat, actor: User) -> None:
        if actor.role != UserRole.ADMIN and chat.user_id != actor.id:
            raise AuthorizationError("You can only access your own chat", resource="chat")

    @staticmethod
    def _clean(text: Optional[str]) -> str:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message is required", field="message")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters", field="message")
        return text

    def _append(self, chat: Chat, sender: User, role: UserRole, text: str) -> ChatMessage:
        now = utcnow()
        message = ChatMessage(
            id=uuid.uuid4(),
            sender_id=sender.id,
            sender_name=sender.username,
            sender_role=role,
            message=text,
            timestamp=now,
            is_read=False,
        )
        chat.messages.append(message)
        chat.last_message_at = now
        chat.updated_at = now
        if chat.status == ChatStatus.CLOSED:
            chat.status = ChatStatus.ACTIVE
        return message

    # -------------------------------------------------------------------------
    # User Side
    # -------------------------------------------------------------------------

    async def get_or_create_thread(self, user: User) -> Chat:
        chat = await self.session.scalar(select(Chat).where(Chat.user_id == user.id))
        if chat is not None:
            return chat

        chat = Chat(
            id=uuid.uuid4(),
            user_id=user.id,
            user_name=user.username,
            status=ChatStatus.ACTIVE,
            messages=[],
        )
        self.session.add(chat)
        try:
            await self.session.commit()
        except IntegrityError:
            # A concurrent request created the thread first
            await self.session.rollback()
            if user in self.session:
                await self.session.refresh(user)
            chat = await self.session.scalar(select(Chat).where(Chat.user_id == user.id))
            if chat is None:
                raise InternalError("Failed to create chat")
            return chat
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Chat store write failed", operation="create chat", error=str(e))
            raise InternalError("Failed to create chat")

        logger.info("Chat thread created", chat_id=str(chat.id), user_id=str(user.id))
        return chat

    async def send_message(self, user: User, text: str) -> Chat:
        """User message into the user's own thread; a closed thread reopens."""
        text = self._clean(text)
        chat = await self.get_or_create_thread(user)

        self._append(chat, user, UserRole.USER, text)
        await self._commit("send message")

        CHAT_MESSAGES.labels(sender_role=UserRole.USER.value).inc()
        return chat

    # -------------------------------------------------------------------------
    # Admin Side
    # -------------------------------------------------------------------------

    async def list_threads(self, actor: User, status: Optional[Union[str, ChatStatus]] = None) -> List[Chat]:
        ensure_admin(actor, resource="chat")

        stmt = select(Chat).order_by(Chat.last_message_at.desc())
        if status is not None:
            try:
                stmt = stmt.where(Chat.status == ChatStatus(status))
            except ValueError:
                raise ValidationError(f"Invalid chat status '{status}'", field="status")

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to list chats", error=str(e))
            raise InternalError("Failed to get chats")
        return list(result.scalars().all())

    async def reply(self, thread_id: Union[str, uuid.UUID], admin: User, text: str) -> Chat:
        """Admin reply; replying to a closed thread reopens it."""
        ensure_admin(admin, resource="chat")
        text = self._clean(text)
        chat = await self._get(thread_id)

        self._append(chat, admin, UserRole.ADMIN, text)
        await self._commit("send reply")

        CHAT_MESSAGES.labels(sender_role=UserRole.ADMIN.value).inc()
        return chat

    async def close_thread(self, thread_id: Union[str, uuid.UUID], admin: User) -> Chat:
        ensure_admin(admin, resource="chat")
        chat = await self._get(thread_id)

        chat.status = ChatStatus.CLOSED
        chat.updated_at = utcnow()
        await self._commit("close chat")

        logger.info("Chat thread closed", chat_id=str(chat.id), admin_id=str(admin.id))
        return chat

    # -------------------------------------------------------------------------
    # Both Sides
    # -------------------------------------------------------------------------

    async def get_thread(self, thread_id: Union[str, uuid.UUID], actor: User) -> Chat:
        chat = await self._get(thread_id)
        self._check_access(chat, actor)
        return chat

    async def mark_read(self, thread_id: Union[str, uuid.UUID], actor: User) -> Chat:
        """Mark every message from the other party as read."""
        chat = await self._get(thread_id)
        self._check_access(chat, actor)

        other_side = UserRole.USER if actor.role == UserRole.ADMIN else UserRole.ADMIN
        for message in chat.messages:
            if message.sender_role == other_side:
                message.is_read = True

        await self._commit("mark messages as read")
        return chat

    async def unread_count(self, actor: User) -> int:
        """Admins: unread user messages in active threads. Users: unread admin messages."""
        stmt = select(func.count(ChatMessage.id)).join(Chat, Chat.id == ChatMessage.chat_id)
        if actor.role == UserRole.ADMIN:
            stmt = stmt.where(
                Chat.status == ChatStatus.ACTIVE,
                ChatMessage.sender_role == UserRole.USER,
                ChatMessage.is_read.is_(False),
            )
        else:
            stmt = stmt.where(
                Chat.user_id == actor.id,
                ChatMessage.sender_role == UserRole.ADMIN,
                ChatMessage.is_read.is_(False),
            )

        try:
            return (await self.session.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            logger.error("Failed to count unread messages", error=str(e))
            raise InternalError("Failed to get unread count")

    async def get_new_since(
        self,
        thread_id: Union[str, uuid.UUID],
        actor: User,
        since: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        """Messages strictly newer than ``since``, oldest first. No ``since`` returns all."""
        chat = await self._get(thread_id)
        self._check_access(chat, actor)

        stmt = select(ChatMessage).where(ChatMessage.chat_id == chat.id)
        if since is not None:
            stmt = stmt.where(ChatMessage.timestamp > as_utc(since))
        stmt = stmt.order_by(ChatMessage.timestamp.asc(), ChatMessage.id.asc())

        result = await self.session.execute(stmt)
        return list(result.scalars().all())


__all__ = [
    "ChatService",
    "format_chat",
    "format_message",
]
