"""
Chat API Endpoints

User-to-admin support threads. Clients poll ``/{chat_id}/messages?since=``
for new messages.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.utils import success_response
from app.core.i18n import get_text
from app.core.security import get_current_user, require_admin
from app.models.database import User, get_db_session
from app.services.chat import ChatService, format_chat, format_message

logger = structlog.get_logger(__name__)
router = APIRouter()


class MessageRequest(BaseModel):
    message: str = Field(..., validation_alias=AliasChoices("message", "text"))


# =============================================================================
# User Endpoints
# =============================================================================

@router.get("/my-chat", response_model=Dict[str, Any])
async def get_my_chat(
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """The caller's thread, created on first access."""
    chat = await ChatService(session).get_or_create_thread(current_user)
    return success_response(format_chat(chat))


@router.post("/send", response_model=Dict[str, Any])
async def send_message(
    request: MessageRequest,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    chat = await ChatService(session).send_message(current_user, request.message)
    return success_response(format_chat(chat))


@router.get("/unread-count", response_model=Dict[str, Any])
async def get_unread_count(
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    count = await ChatService(session).unread_count(current_user)
    return success_response({"count": count})


# =============================================================================
# Admin Endpoints
# =============================================================================

@router.get("/all", response_model=Dict[str, Any])
async def list_chats(
    status_filter: Optional[str] = Query(None, alias="status"),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    """Every thread, most recent activity first."""
    chats = await ChatService(session).list_threads(current_user, status_filter)
    return success_response([format_chat(c, include_messages=False) for c in chats])


@router.post("/{chat_id}/reply", response_model=Dict[str, Any])
async def reply_to_chat(
    chat_id: str,
    request: MessageRequest,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    chat = await ChatService(session).reply(chat_id, current_user, request.message)
    return success_response(format_chat(chat))


@router.put("/{chat_id}/close", response_model=Dict[str, Any])
async def close_chat(
    chat_id: str,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    chat = await ChatService(session).close_thread(chat_id, current_user)
    return success_response(format_chat(chat), message=get_text("api.chat.closed"))


# =============================================================================
# Shared Endpoints
# =============================================================================

@router.get("/{chat_id}", response_model=Dict[str, Any])
async def get_chat(
    chat_id: str,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    chat = await ChatService(session).get_thread(chat_id, current_user)
    return success_response(format_chat(chat))


@router.get("/{chat_id}/messages", response_model=Dict[str, Any])
async def get_new_messages(
    chat_id: str,
    since: Optional[datetime] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """Messages strictly newer than ``since``, oldest first."""
    messages = await ChatService(session).get_new_since(chat_id, current_user, since)
    return success_response([format_message(m) for m in messages])


@router.put("/{chat_id}/read", response_model=Dict[str, Any])
async def mark_chat_read(
    chat_id: str,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    chat = await ChatService(session).mark_read(chat_id, current_user)
    return success_response(format_chat(chat), message=get_text("api.chat.marked_read"))
