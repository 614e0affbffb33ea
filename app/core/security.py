"""
Security and Authentication Module

This module provides authentication, authorization and security utilities
for CampusReport including JWT tokens, password hashing and role checks.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AuthenticationError, AuthorizationError
from app.models.database import Report, User, UserRole, get_db_session

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

# =============================================================================
# Security Configuration
# =============================================================================

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# JWT settings
ALGORITHM = "HS256"

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)

# =============================================================================
# Password Operations
# =============================================================================

def create_password_hash(password: str) -> str:
    """
    Create password hash using bcrypt.

    Args:
        password: Plain text password

    Returns:
        Hashed password string
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify password against hash. Accounts without a password never match."""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        logger.warning("Malformed password hash")
        return False


# =============================================================================
# JWT Token Operations
# =============================================================================

def create_access_token(
    subject: Union[str, uuid.UUID],
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[Dict[str, Any]] = None
) -> str:
    """
    Create JWT access token.

    Args:
        subject: Token subject (user ID)
        expires_delta: Token expiration time delta
        additional_claims: Additional claims to include

    Returns:
        JWT token string
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = {
        "exp": expire,
        "sub": str(subject),
        "iat": now,
        "type": "access",
    }

    if additional_claims:
        to_encode.update(additional_claims)

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def create_user_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Issue an access token carrying the user's identity and role."""
    return create_access_token(
        user.id,
        expires_delta=expires_delta,
        additional_claims={
            "id": str(user.id),
            "email": user.email,
            "username": user.username,
            "role": user.role.value,
        },
    )


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate JWT token.

    Raises:
        AuthenticationError: If the token is malformed, expired or not an access token
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.PyJWTError as e:
        logger.debug("JWT decode error", error=str(e))
        raise AuthenticationError("Invalid token")

    if not payload.get("sub") or payload.get("type") != "access":
        raise AuthenticationError("Invalid token")

    return payload


# =============================================================================
# User Authentication Dependencies
# =============================================================================

async def get_current_user(
    session: AsyncSession = Depends(get_db_session),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> User:
    """
    Require valid authentication.

    Raises:
        AuthenticationError: 401 if the bearer token is missing or invalid,
            or the account no longer exists or is disabled
    """
    if not credentials:
        raise AuthenticationError("Authentication required")

    payload = decode_token(credentials.credentials)

    try:
        user_id = uuid.UUID(payload["sub"])
    except ValueError:
        raise AuthenticationError("Invalid token")

    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("User account is disabled")

    structlog.contextvars.bind_contextvars(user_id=str(user.id))
    return user


# =============================================================================
# Role-Based Access Control
# =============================================================================

def require_roles(allowed_roles: List[UserRole]):
    """
    Create dependency that requires specific user roles.

    Args:
        allowed_roles: List of allowed user roles

    Returns:
        FastAPI dependency function
    """
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        """Check if user has required role."""
        if current_user.role not in allowed_roles:
            logger.warning(
                "Access denied - insufficient role",
                user_id=str(current_user.id),
                user_role=current_user.role.value,
                required_roles=[role.value for role in allowed_roles]
            )
            raise AuthorizationError(
                "Access denied",
                required_role=",".join(role.value for role in allowed_roles),
            )

        return current_user

    return role_checker


def require_admin():
    """Shortcut dependency for admin access."""
    return require_roles([UserRole.ADMIN])


def ensure_admin(user: User, resource: Optional[str] = None) -> None:
    """Raise AuthorizationError unless ``user`` is an admin."""
    if user.role != UserRole.ADMIN:
        raise AuthorizationError(
            "Admin access required",
            required_role=UserRole.ADMIN.value,
            resource=resource,
        )


# =============================================================================
# Permission Checkers
# =============================================================================

def can_access_report(user: User, report: Report) -> bool:
    """Admins see every report, users only their own."""
    if user.role == UserRole.ADMIN:
        return True
    return report.owner_id == user.id


def can_delete_report(user: User, report: Report) -> bool:
    return user.role == UserRole.ADMIN or report.owner_id == user.id


# =============================================================================
# Export Public Interface
# =============================================================================

__all__ = [
    # Password functions
    "create_password_hash",
    "verify_password",

    # JWT functions
    "create_access_token",
    "create_user_token",
    "decode_token",

    # Authentication dependencies
    "get_current_user",

    # Authorization
    "require_roles",
    "require_admin",
    "ensure_admin",

    # Permission checkers
    "can_access_report",
    "can_delete_report",
]
