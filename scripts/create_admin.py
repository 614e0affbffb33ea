"""
Create an admin account, or promote an existing user to admin.

Registration through the API always creates plain users, so the first admin
has to be made here.

Usage:
  python scripts/create_admin.py --email admin@campus.edu --username admin --password secret1
  python scripts/create_admin.py --email someone@campus.edu --promote
"""

from __future__ import annotations

import argparse
import asyncio
import uuid

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.core.config import settings, setup_logging
from app.core.security import create_password_hash
from app.models.database import Event, EventType, User, UserRole, async_session_maker, create_tables

logger = structlog.get_logger(__name__).bind(component="create_admin")


async def _create_or_promote(email: str, username: str | None, password: str | None, promote: bool) -> dict:
    await create_tables()

    async with async_session_maker() as session:
        user = await session.scalar(select(User).where(func.lower(User.email) == email.lower()))

        if user is not None:
            if user.role == UserRole.ADMIN:
                return {"action": "unchanged", "user_id": str(user.id)}
            if not promote:
                raise SystemExit(f"{email} already exists; pass --promote to make it an admin")

            previous = user.role
            user.role = UserRole.ADMIN
            session.add(Event(
                event_type=EventType.USER_ROLE_CHANGED,
                entity_type="user",
                entity_id=user.id,
                payload={"from_role": previous.value, "to_role": UserRole.ADMIN.value, "source": "cli"},
            ))
            await session.commit()
            logger.info("admin_promoted", user_id=str(user.id))
            return {"action": "promoted", "user_id": str(user.id)}

        if promote:
            raise SystemExit(f"No user with email {email}")
        if not username or not password:
            raise SystemExit("--username and --password are required to create an admin")
        username = username.strip()
        if len(password) < settings.MIN_PASSWORD_LENGTH:
            raise SystemExit(f"Password must be at least {settings.MIN_PASSWORD_LENGTH} characters long")

        taken = await session.scalar(select(User.id).where(User.username == username))
        if taken is not None:
            raise SystemExit(f"Username {username} is already taken")

        user = User(
            id=uuid.uuid4(),
            username=username,
            email=email.lower(),
            password_hash=create_password_hash(password),
            role=UserRole.ADMIN,
        )
        session.add(user)
        session.add(Event(
            event_type=EventType.USER_CREATED,
            entity_type="user",
            entity_id=user.id,
            user_id=user.id,
            payload={"provider": "password", "source": "cli"},
        ))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise SystemExit(f"{email} or {username} was registered concurrently; run the command again")
        logger.info("admin_created", user_id=str(user.id))
        return {"action": "created", "user_id": str(user.id)}


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or promote a CampusReport admin")
    parser.add_argument("--email", required=True)
    parser.add_argument("--username")
    parser.add_argument("--password")
    parser.add_argument("--promote", action="store_true", help="Promote an existing user instead of creating one")
    args = parser.parse_args()

    setup_logging()
    result = asyncio.run(_create_or_promote(args.email, args.username, args.password, args.promote))
    print(result)


if __name__ == "__main__":
    main()
