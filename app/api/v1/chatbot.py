"""
Chatbot API Endpoint

Single-turn assistant that answers questions about the report base. The
prompt carries the caller's report counts and a few recent titles; users
only ever see numbers for their own reports.
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.utils import success_response
from app.core.config import settings
from app.core.exceptions import ValidationError
from app.core.security import get_current_user
from app.models.database import User, get_db_session, utcnow
from app.services.ai import AIAssistService, build_chat_context
from app.services.reports import ReportService
from app.services.statistics import StatisticsService, StatsScope

logger = structlog.get_logger(__name__)
router = APIRouter()

ai_service = AIAssistService()


class ChatbotRequest(BaseModel):
    message: str = Field(..., validation_alias=AliasChoices("message", "question"), max_length=1000)


@router.post("/chat", response_model=Dict[str, Any])
async def chatbot_chat(
    request: ChatbotRequest,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    question = request.message.strip()
    if not question:
        raise ValidationError("Message is required", field="message")

    scope = StatsScope.for_actor(current_user)
    counts = await StatisticsService(session).compute_counts(scope)
    recent = await ReportService(session).list_reports(
        None, current_user, limit=settings.CHATBOT_RECENT_TITLES
    )

    prompt = build_chat_context(counts, [r.title for r in recent], question)
    answer = await ai_service.chat(prompt)

    logger.info("Chatbot answered", user_id=str(current_user.id), scope=scope.name)
    return success_response({"message": answer, "timestamp": utcnow().isoformat()})
