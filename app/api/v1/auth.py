"""
Authentication API Endpoints

Registration, password login, Google sign-in and the current-user lookup.
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.utils import success_response
from app.core.i18n import get_text
from app.core.security import get_current_user
from app.models.database import User, get_db_session
from app.services.auth import AuthService, format_user

logger = structlog.get_logger(__name__)
router = APIRouter()

# =============================================================================
# Request Models
# =============================================================================

class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=50)
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=128)


class LoginRequest(BaseModel):
    """Login accepts an email or a username as the identifier."""
    identifier: str = Field(..., validation_alias=AliasChoices("identifier", "email", "username"))
    password: str


class GoogleLoginRequest(BaseModel):
    token: str = Field(..., validation_alias=AliasChoices("token", "credential", "idToken"))


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    session: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    """Create a user account. New accounts always get the ``user`` role."""
    user, token = await AuthService(session).register(request.username, request.email, request.password)
    return success_response(
        {"user": format_user(user), "token": token},
        message=get_text("api.auth.registered"),
    )


@router.post("/login")
async def login(
    request: LoginRequest,
    session: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    user, token = await AuthService(session).login(request.identifier, request.password)
    return success_response(
        {"token": token, "user": format_user(user)},
        message=get_text("api.auth.logged_in"),
    )


@router.post("/google")
async def google_login(
    request: GoogleLoginRequest,
    session: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    """Sign in with a Google ID token."""
    user, token = await AuthService(session).oauth_login(request.token)
    return success_response(
        {"token": token, "user": format_user(user)},
        message=get_text("api.auth.logged_in"),
    )


@router.get("/me")
async def me(
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    return success_response({"user": await AuthService(session).get_me(current_user)})
