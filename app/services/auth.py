"""
Authentication Service

Account registration, password and Google sign-in, and admin role changes.
Every successful sign-in returns a local JWT access token.
"""

import re
import uuid
from typing import Any, Dict, Optional, Tuple, Union

import httpx
import structlog
from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AuthenticationError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from app.core.security import (
    create_password_hash,
    create_user_token,
    ensure_admin,
    verify_password,
)
from app.models.database import Event, EventType, User, UserRole, as_utc, utcnow

logger = structlog.get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\- ]{3,50}$")


def format_user(user: User) -> Dict[str, Any]:
    created_at = as_utc(user.created_at)
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "role": user.role.value,
        "authProvider": "google" if user.oauth_id else "password",
        "createdAt": created_at.isoformat() if created_at else None,
    }


# =============================================================================
# Google ID Token Verification
# =============================================================================

class GoogleTokenVerifier:
    """Verifies Google ID tokens with Google's tokeninfo endpoint."""

    def __init__(self, client_id: Optional[str] = None, tokeninfo_url: Optional[str] = None):
        self.client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self.tokeninfo_url = tokeninfo_url or settings.GOOGLE_TOKENINFO_URL

    async def verify(self, id_token: str) -> Dict[str, Any]:
        """
        Return the token claims.

        Raises:
            InternalError: Google sign-in is not configured or Google is unreachable
            AuthenticationError: the token is invalid, expired or for another client
        """
        if not self.client_id:
            raise InternalError("Google sign-in is not configured")

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": id_token})
        except httpx.HTTPError as e:
            logger.error("Google token verification failed", error=str(e))
            raise InternalError("Could not verify Google token")

        if response.status_code != 200:
            logger.info("Google rejected ID token", status_code=response.status_code)
            raise AuthenticationError("Invalid Google token")

        claims = response.json()
        if claims.get("aud") != self.client_id:
            raise AuthenticationError("Invalid Google token")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise AuthenticationError("Invalid Google token")
        if not claims.get("sub") or not claims.get("email"):
            raise AuthenticationError("Invalid Google token")
        if str(claims.get("email_verified", "false")).lower() != "true":
            raise AuthenticationError("Google account email is not verified")

        return claims


# =============================================================================
# Service
# =============================================================================

class AuthService:
    """Account operations bound to one database session."""

    def __init__(self, session: AsyncSession, google_verifier: Optional[GoogleTokenVerifier] = None):
        self.session = session
        self.google_verifier = google_verifier or GoogleTokenVerifier()

    async def _commit(self, operation: str) -> None:
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("User already exists")
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("User store write failed", operation=operation, error=str(e))
            raise InternalError(f"Failed to {operation}")

    async def _find_by_identifier(self, identifier: str) -> Optional[User]:
        identifier = identifier.strip()
        result = await self.session.execute(
            select(User).where(
                or_(func.lower(User.email) == identifier.lower(), User.username == identifier)
            )
        )
        return result.scalars().first()

    async def _unique_username(self, base: str) -> str:
        base = re.sub(r"[^A-Za-z0-9_.\- ]", "", base).strip()[:40] or "user"
        if len(base) < 3:
            base = f"{base}_user"

        candidate, suffix = base, 1
        while True:
            exists = await self.session.scalar(select(User.id).where(User.username == candidate))
            if exists is None:
                return candidate
            suffix += 1
            candidate = f"{base}{suffix}"

    # -------------------------------------------------------------------------
    # Registration and Login
    # -------------------------------------------------------------------------

    async def register(self, username: str, email: str, password: str) -> Tuple[User, str]:
        """Create a password account with role ``user`` and issue a token."""
        username = (username or "").strip()
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username must be 3-50 characters: letters, digits, spaces, '.', '_' or '-'",
                field="username",
            )

        try:
            email = validate_email(email or "", check_deliverability=False).normalized.lower()
        except EmailNotValidError:
            raise ValidationError("Invalid email format", field="email")

        if len(password or "") < settings.MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {settings.MIN_PASSWORD_LENGTH} characters long",
                field="password",
            )

        existing = await self.session.execute(
            select(User.username, User.email).where(
                or_(func.lower(User.email) == email, User.username == username)
            )
        )
        for taken_username, taken_email in existing.all():
            if taken_email.lower() == email:
                raise ConflictError("Email is already registered", field="email")
            if taken_username == username:
                raise ConflictError("Username is already taken", field="username")

        user = User(
            id=uuid.uuid4(),
            username=username,
            email=email,
            password_hash=create_password_hash(password),
            role=UserRole.USER,
        )
        self.session.add(user)
        self.session.add(Event(
            event_type=EventType.USER_CREATED,
            entity_type="user",
            entity_id=user.id,
            user_id=user.id,
            payload={"provider": "password"},
        ))
        await self._commit("register user")

        logger.info("User registered", user_id=str(user.id))
        return user, create_user_token(user)

    async def login(self, identifier: str, password: str) -> Tuple[User, str]:
        """Password sign-in by email or username. All failures look the same."""
        user = await self._find_by_identifier(identifier or "")

        if (
            user is None
            or not user.password_hash
            or not verify_password(password or "", user.password_hash)
            or not user.is_active
        ):
            logger.info("Login failed")
            raise AuthenticationError(INVALID_CREDENTIALS)

        user.last_login_at = utcnow()
        await self._commit("record login")

        logger.info("User logged in", user_id=str(user.id))
        return user, create_user_token(user)

    async def oauth_login(self, provider_token: str) -> Tuple[User, str]:
        """
        Google sign-in. Creates a local account the first time a Google
        identity is seen; an existing account with the same email signs in.
        """
        if not provider_token or not provider_token.strip():
            raise ValidationError("Google token is required", field="token")

        claims = await self.google_verifier.verify(provider_token.strip())
        oauth_id = str(claims["sub"])
        email = str(claims["email"]).lower()

        user = await self.session.scalar(select(User).where(User.oauth_id == oauth_id))
        if user is None:
            user = await self.session.scalar(select(User).where(func.lower(User.email) == email))

        if user is None:
            username = await self._unique_username(claims.get("name") or email.split("@")[0])
            user = User(
                id=uuid.uuid4(),
                username=username,
                email=email,
                oauth_id=oauth_id,
                role=UserRole.USER,
            )
            self.session.add(user)
            self.session.add(Event(
                event_type=EventType.USER_CREATED,
                entity_type="user",
                entity_id=user.id,
                user_id=user.id,
                payload={"provider": "google"},
            ))
            logger.info("User created from Google sign-in", user_id=str(user.id))

        if not user.is_active:
            raise AuthenticationError(INVALID_CREDENTIALS)

        user.last_login_at = utcnow()
        await self._commit("google sign-in")
        return user, create_user_token(user)

    # -------------------------------------------------------------------------
    # Account Management
    # -------------------------------------------------------------------------

    async def get_me(self, user: User) -> Dict[str, Any]:
        return format_user(user)

    async def set_role(self, user_id: Union[str, uuid.UUID], role: Union[str, UserRole], actor: User) -> User:
        """Admin-only role change."""
        ensure_admin(actor, resource="user")

        try:
            new_role = UserRole(role)
        except ValueError:
            raise ValidationError(f"Invalid role '{role}'", field="role")

        try:
            uid = user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))
        except ValueError:
            raise NotFoundError("User", str(user_id))

        user = await self.session.get(User, uid)
        if user is None:
            raise NotFoundError("User", str(user_id))

        if user.id == actor.id and new_role != UserRole.ADMIN:
            raise ValidationError("Admins cannot remove their own admin role", field="role")

        previous = user.role
        user.role = new_role
        self.session.add(Event(
            event_type=EventType.USER_ROLE_CHANGED,
            entity_type="user",
            entity_id=user.id,
            user_id=actor.id,
            payload={"from_role": previous.value, "to_role": new_role.value},
        ))
        await self._commit("update user role")

        logger.info("User role changed", user_id=str(user.id), from_role=previous.value, to_role=new_role.value)
        return user


__all__ = [
    "AuthService",
    "GoogleTokenVerifier",
    "format_user",
]
