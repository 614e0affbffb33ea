"""
User Administration API Endpoints
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.utils import success_response
from app.core.i18n import get_text
from app.core.security import require_admin
from app.models.database import User, get_db_session
from app.services.auth import AuthService, format_user
from app.services.reports import format_report_response
from app.services.statistics import StatisticsService

logger = structlog.get_logger(__name__)
router = APIRouter()


class RoleUpdateRequest(BaseModel):
    role: str


@router.get("/stats", response_model=Dict[str, Any])
async def get_user_stats(
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    """User totals, recently active users and top contributors."""
    return success_response(await StatisticsService(session).user_stats())


@router.get("/priority-reports", response_model=Dict[str, Any])
async def get_priority_reports(
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    reports = await StatisticsService(session).priority_reports(limit)
    return success_response([format_report_response(r) for r in reports])


@router.patch("/{user_id}/role", response_model=Dict[str, Any])
async def update_user_role(
    user_id: str,
    request: RoleUpdateRequest,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    user = await AuthService(session).set_role(user_id, request.role, current_user)
    return success_response(format_user(user), message=get_text("api.user.role_updated"))
