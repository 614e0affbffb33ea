"""
API Router v1

This module aggregates all API v1 routes and provides the main API router
that gets mounted to the FastAPI application in main.py.
"""

from fastapi import APIRouter

from app.api.v1.ai import router as ai_router
from app.api.v1.auth import router as auth_router
from app.api.v1.chat import router as chat_router
from app.api.v1.chatbot import router as chatbot_router
from app.api.v1.reports import router as reports_router
from app.api.v1.users import router as users_router
from app.core.config import settings

# =============================================================================
# Main API Router
# =============================================================================

api_router = APIRouter()

# =============================================================================
# Include Sub-Routers
# =============================================================================

api_router.include_router(
    auth_router,
    prefix="/auth",
    tags=["auth"],
    responses={
        400: {"description": "Validation error"},
        401: {"description": "Invalid credentials"},
        409: {"description": "User already exists"},
    },
)

api_router.include_router(
    reports_router,
    prefix="/reports",
    tags=["reports"],
    responses={
        400: {"description": "Validation error"},
        403: {"description": "Permission denied"},
        404: {"description": "Report not found"},
        500: {"description": "Internal server error"},
    },
)

api_router.include_router(ai_router, prefix="/ai", tags=["ai"])
api_router.include_router(chatbot_router, prefix="/chatbot", tags=["ai"])
api_router.include_router(chat_router, prefix="/chat", tags=["chat"])

api_router.include_router(
    users_router,
    prefix="/users",
    tags=["users"],
    responses={403: {"description": "Admin access required"}},
)


@api_router.get("/info", tags=["system"])
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": settings.APP_DESCRIPTION,
        "api_version": "v1",
        "environment": settings.ENVIRONMENT,
        "supported_languages": settings.SUPPORTED_LANGUAGES,
        "docs_url": "/docs" if settings.SHOW_DOCS else None,
    }
