"""
Database Models and ORM Setup

This module contains all database models using SQLAlchemy 2.0 with async support.
Models carry timestamps and an audit trail of report lifecycle events.
"""

import asyncio
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    select,
    text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.core.config import settings

logger = structlog.get_logger(__name__).bind(component="database")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enums for Type Safety
# =============================================================================

class UserRole(str, enum.Enum):
    """User role enumeration."""
    USER = "user"      # Regular campus member
    ADMIN = "admin"    # Staff allowed to triage every report


class ReportStatus(str, enum.Enum):
    """Report status lifecycle."""
    PENDING = "pending"            # Submitted, not yet handled
    IN_PROGRESS = "in_progress"    # Staff is handling it
    DONE = "done"                  # Resolved
    REJECTED = "rejected"          # Closed without resolution


class ReportCategory(str, enum.Enum):
    """Report categories."""
    INCIDENT = "incident"
    EVENT = "event"
    FACILITY = "facility"
    OTHER = "other"


class PriorityLevel(str, enum.Enum):
    """Ordinal urgency used for staff priority and AI severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChatStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class EventType(str, enum.Enum):
    """Event types for audit trail."""
    REPORT_CREATED = "report_created"
    REPORT_UPDATED = "report_updated"
    REPORT_STATUS_CHANGED = "report_status_changed"
    REPORT_DELETED = "report_deleted"
    COMMENT_ADDED = "comment_added"
    COMMENT_DELETED = "comment_deleted"
    USER_CREATED = "user_created"
    USER_ROLE_CHANGED = "user_role_changed"


def _enum_column(enum_cls: type, name: str) -> Enum:
    # Persist enum values ("in_progress"), not member names ("IN_PROGRESS")
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# =============================================================================
# Base Model with Common Fields
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all database models.

    Provides async attribute access and timezone-aware datetime mapping.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        dict: JSON,
        Dict: JSON,
    }


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        doc="Record creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        doc="Last update timestamp"
    )


class UUIDMixin:
    """Mixin for UUID primary keys."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        doc="Primary key UUID"
    )


# =============================================================================
# User Management Models
# =============================================================================

class User(Base, UUIDMixin, TimestampMixin):
    """
    User model for authentication and authorization.

    A user signs in either with a password or through Google, never both.
    """

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        doc="Unique display handle"
    )

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        doc="Email address"
    )

    password_hash: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        doc="bcrypt password hash"
    )

    oauth_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        doc="Subject id from the OAuth provider"
    )

    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"),
        default=UserRole.USER,
        nullable=False,
        doc="User role and permissions"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    __table_args__ = (
        CheckConstraint(
            "(password_hash IS NOT NULL AND oauth_id IS NULL) OR "
            "(password_hash IS NULL AND oauth_id IS NOT NULL)",
            name="check_single_credential"
        ),
        Index("ix_users_email", "email"),
        Index("ix_users_username", "username"),
    )


# =============================================================================
# Reports
# =============================================================================

class Report(Base, UUIDMixin, TimestampMixin):
    """
    Main report model for campus issues.

    Tracks an issue from submission to resolution.
    """

    __tablename__ = "reports"

    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="User who submitted the report"
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    category: Mapped[ReportCategory] = mapped_column(
        _enum_column(ReportCategory, "report_category"),
        default=ReportCategory.OTHER,
        nullable=False,
    )

    photo_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Geographic information
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    maps_link: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        doc="When the issue happened"
    )

    status: Mapped[ReportStatus] = mapped_column(
        _enum_column(ReportStatus, "report_status"),
        default=ReportStatus.PENDING,
        nullable=False,
    )

    priority: Mapped[Optional[PriorityLevel]] = mapped_column(
        _enum_column(PriorityLevel, "priority_level"),
        default=PriorityLevel.MEDIUM,
        nullable=True,
    )

    ai_analysis: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        doc="Damage analysis produced by the AI assistant"
    )

    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Response tracking
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    comments: Mapped[List["ReportComment"]] = relationship(
        "ReportComment",
        back_populates="report",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="(ReportComment.timestamp, ReportComment.id)",
    )

    __table_args__ = (
        CheckConstraint(
            "rating IS NULL OR (rating >= 1 AND rating <= 5)",
            name="check_rating_range"
        ),
        Index("ix_reports_owner_id", "owner_id"),
        Index("ix_reports_status", "status"),
        Index("ix_reports_category", "category"),
        Index("ix_reports_priority", "priority"),
        Index("ix_reports_created_at", "created_at"),
    )


class ReportComment(Base, UUIDMixin):
    """Admin comment attached to a report."""

    __tablename__ = "report_comments"

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False,
    )

    comment: Mapped[str] = mapped_column(Text, nullable=False)
    admin_name: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    report: Mapped["Report"] = relationship("Report", back_populates="comments")

    __table_args__ = (
        Index("ix_report_comments_report_id", "report_id"),
        Index("ix_report_comments_timestamp", "timestamp"),
    )


# =============================================================================
# Chat Threads
# =============================================================================

class Chat(Base, UUIDMixin, TimestampMixin):
    """One conversation thread between a user and the admin team."""

    __tablename__ = "chats"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    user_name: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[ChatStatus] = mapped_column(
        _enum_column(ChatStatus, "chat_status"),
        default=ChatStatus.ACTIVE,
        nullable=False,
    )

    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    messages: Mapped[List["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="chat",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="(ChatMessage.timestamp, ChatMessage.id)",
    )

    __table_args__ = (
        Index("ix_chats_status", "status"),
        Index("ix_chats_last_message_at", "last_message_at"),
    )


class ChatMessage(Base, UUIDMixin):
    """Single message inside a chat thread."""

    __tablename__ = "chat_messages"

    chat_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
    )

    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    sender_name: Mapped[str] = mapped_column(String(50), nullable=False)
    sender_role: Mapped[UserRole] = mapped_column(_enum_column(UserRole, "user_role"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    chat: Mapped["Chat"] = relationship("Chat", back_populates="messages")

    __table_args__ = (
        Index("ix_chat_messages_chat_id", "chat_id"),
    )


# =============================================================================
# Audit Trail
# =============================================================================

class Event(Base, UUIDMixin, TimestampMixin):
    """
    Event log for audit trail.

    Written in the same session as the change it records.
    """

    __tablename__ = "events"

    event_type: Mapped[EventType] = mapped_column(
        _enum_column(EventType, "event_type"),
        nullable=False,
    )

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_events_event_type", "event_type"),
        Index("ix_events_entity_type_id", "entity_type", "entity_id"),
        Index("ix_events_created_at", "created_at"),
    )


# =============================================================================
# Database Engine and Session Management
# =============================================================================

engine = create_async_engine(
    str(settings.DATABASE_URL),
    **settings.DATABASE_ENGINE_OPTIONS,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=True,
)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Get async database session.

    Provides one session per request for dependency injection in FastAPI endpoints.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# =============================================================================
# Database Initialization
# =============================================================================

async def create_tables() -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def wait_for_database(
    max_attempts: int = 10,
    initial_delay_seconds: float = 0.5,
    max_delay_seconds: float = 5.0,
) -> None:
    """Wait for database to become available with exponential backoff.

    Raises last exception if database is not reachable after all attempts.
    """
    attempt = 0
    delay = float(initial_delay_seconds)
    last_error: Optional[Exception] = None

    while attempt < max_attempts:
        try:
            async with async_session_maker() as session:
                await session.execute(text("SELECT 1"))
            if attempt > 0:
                logger.info("Database became available", attempts=attempt + 1)
            return
        except Exception as exc:  # noqa: BLE001 - we want original error
            last_error = exc
            logger.warning(
                "Database not reachable yet",
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
            delay = min(max_delay_seconds, delay * 2)
            attempt += 1

    logger.error(
        "Database not reachable after retries",
        attempts=max_attempts,
        error=str(last_error) if last_error else None,
    )
    if last_error:
        raise last_error


async def check_database_health() -> Dict[str, Any]:
    """Check database connectivity."""
    try:
        async with async_session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            test_value = result.scalar()

            users_total = await session.scalar(select(func.count()).select_from(User))
            reports_total = await session.scalar(select(func.count()).select_from(Report))

            return {
                "status": "healthy",
                "test_query": test_value == 1,
                "users_total": users_total,
                "reports_total": reports_total,
            }

    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


__all__ = [
    "Base",
    "User",
    "Report",
    "ReportComment",
    "Chat",
    "ChatMessage",
    "Event",
    "engine",
    "async_session_maker",
    "get_db_session",
    "create_tables",
    "check_database_health",
]
