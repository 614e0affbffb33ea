"""
Report Service

Report lifecycle for CampusReport: creation, owner edits, admin triage
(status transitions, priority, comments), feedback and deletion.

Status moves forward only::

    pending -> in_progress -> done
    pending -> done
    pending | in_progress -> rejected

``done`` and ``rejected`` are terminal. Re-applying the current status is
accepted and only refreshes ``updated_at``.
"""

import csv
import io
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AuthorizationError,
    InternalError,
    NotFoundError,
    ReportNotFoundError,
    ReportStatusError,
    ValidationError,
)
from app.core.i18n import acknowledgement_text, status_change_text
from app.core.metrics import REPORTS_CREATED, STATUS_TRANSITIONS
from app.core.security import (
    can_access_report,
    can_delete_report,
    ensure_admin,
)
from app.models.database import (
    Event,
    EventType,
    PriorityLevel,
    Report,
    ReportCategory,
    ReportComment,
    ReportStatus,
    User,
    UserRole,
    as_utc,
    utcnow,
)
from app.services.ai import DamageAnalysis
from app.services.file_storage import FileStorageService

logger = structlog.get_logger(__name__)

# =============================================================================
# Lifecycle Rules
# =============================================================================

ALLOWED_TRANSITIONS: Dict[ReportStatus, frozenset] = {
    ReportStatus.PENDING: frozenset({ReportStatus.IN_PROGRESS, ReportStatus.DONE, ReportStatus.REJECTED}),
    ReportStatus.IN_PROGRESS: frozenset({ReportStatus.DONE, ReportStatus.REJECTED}),
    ReportStatus.DONE: frozenset(),
    ReportStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset({ReportStatus.DONE, ReportStatus.REJECTED})

CSV_FIELDS = [
    "ID", "Title", "Category", "Status", "Priority", "Date",
    "Location (Lat,Lng)", "Description", "Admin Comments",
]


def can_transition(current: ReportStatus, new: ReportStatus) -> bool:
    return new == current or new in ALLOWED_TRANSITIONS[current]


def parse_status(value: Union[str, ReportStatus]) -> ReportStatus:
    # Older clients send "in progress"
    if isinstance(value, str) and not isinstance(value, ReportStatus):
        value = value.strip().lower().replace(" ", "_")
    try:
        return ReportStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status '{value}'",
            field="status",
            details={"field": "status", "allowed": [s.value for s in ReportStatus]},
        )


def parse_priority(value: Union[str, PriorityLevel]) -> PriorityLevel:
    try:
        return PriorityLevel(value)
    except ValueError:
        raise ValidationError(
            f"Invalid priority '{value}'",
            field="priority",
            details={"field": "priority", "allowed": [p.value for p in PriorityLevel]},
        )


# =============================================================================
# Input Models
# =============================================================================

class LocationInput(BaseModel):
    """Report location. Accepts ``{lat, lng}`` or a GeoJSON Point."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="before")
    @classmethod
    def from_geojson(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("type") == "Point":
            coordinates = data.get("coordinates")
            if not isinstance(coordinates, (list, tuple)) or len(coordinates) != 2:
                raise ValueError("Point coordinates must be [lng, lat]")
            return {"lat": coordinates[1], "lng": coordinates[0], "address": data.get("address")}
        return data


class ReportCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    category: ReportCategory = ReportCategory.OTHER
    location: Optional[LocationInput] = None
    maps_link: Optional[str] = Field(None, max_length=1024)
    occurred_at: Optional[datetime] = None
    photo_url: Optional[str] = None
    ai_analysis: Optional[DamageAnalysis] = None

    @field_validator("title", "description", "maps_link", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class ReportUpdate(ReportCreate):
    """Owner edits. Only the fields that were sent are applied."""

    category: Optional[ReportCategory] = None


class ReportFilter(BaseModel):
    status: Optional[ReportStatus] = None
    category: Optional[ReportCategory] = None
    priority: Optional[PriorityLevel] = None
    search: Optional[str] = Field(None, max_length=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    owner_id: Optional[uuid.UUID] = None


# =============================================================================
# Response Formatting
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def format_comment(comment: ReportComment) -> Dict[str, Any]:
    return {
        "id": str(comment.id),
        "comment": comment.comment,
        "adminName": comment.admin_name,
        "timestamp": _iso(comment.timestamp),
    }


def format_report_response(report: Report) -> Dict[str, Any]:
    """Format report data for API response."""
    return {
        "id": str(report.id),
        "ownerId": str(report.owner_id),
        "title": report.title,
        "description": report.description,
        "category": report.category.value,
        "photoUrl": report.photo_url,

        # Location
        "location": {
            "lat": report.latitude,
            "lng": report.longitude,
            "address": report.address,
        },
        "mapsLink": report.maps_link,
        "occurredAt": _iso(report.occurred_at),

        # Triage
        "status": report.status.value,
        "priority": report.priority.value if report.priority else None,
        "aiAnalysis": report.ai_analysis,
        "comments": [format_comment(c) for c in report.comments],

        # Feedback
        "feedback": report.feedback,
        "rating": report.rating,

        # Timestamps
        "firstResponseAt": _iso(report.first_response_at),
        "resolvedAt": _iso(report.resolved_at),
        "createdAt": _iso(report.created_at),
        "updatedAt": _iso(report.updated_at),
    }


# =============================================================================
# Service
# =============================================================================

class ReportService:
    """Report operations bound to one database session."""

    def __init__(self, session: AsyncSession, file_storage: Optional[FileStorageService] = None):
        self.session = session
        self.file_storage = file_storage or FileStorageService()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get(self, report_id: Union[str, uuid.UUID]) -> Report:
        try:
            rid = report_id if isinstance(report_id, uuid.UUID) else uuid.UUID(str(report_id))
        except ValueError:
            raise ReportNotFoundError(str(report_id))

        report = await self.session.get(Report, rid)
        if report is None:
            raise ReportNotFoundError(str(report_id))
        return report

    def _record_event(self, event_type: EventType, report_id: uuid.UUID, actor: User, **payload: Any) -> None:
        self.session.add(Event(
            event_type=event_type,
            entity_type="report",
            entity_id=report_id,
            user_id=actor.id,
            payload=payload,
        ))

    def _system_comment(self, report: Report, text: str) -> None:
        report.comments.append(ReportComment(
            comment=text,
            admin_name=settings.SYSTEM_ADMIN_NAME,
            timestamp=utcnow(),
        ))

    async def _commit(self, operation: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Report store write failed", operation=operation, error=str(e))
            raise InternalError(f"Failed to {operation}")

    # -------------------------------------------------------------------------
    # Create / Read
    # -------------------------------------------------------------------------

    async def create_report(self, owner: User, fields: ReportCreate) -> Report:
        """Create a new report in ``pending`` with the category acknowledgement comment."""
        if not fields.title:
            raise ValidationError("Title is required", field="title")
        if not fields.photo_url and not fields.description:
            raise ValidationError("A photo or a description is required", field="description")
        if fields.location is None:
            raise ValidationError("Location is required", field="location")

        report = Report(
            id=uuid.uuid4(),
            owner_id=owner.id,
            title=fields.title,
            description=fields.description,
            category=fields.category,
            photo_url=fields.photo_url,
            latitude=fields.location.lat,
            longitude=fields.location.lng,
            address=fields.location.address,
            maps_link=fields.maps_link,
            occurred_at=as_utc(fields.occurred_at) or utcnow(),
            status=ReportStatus.PENDING,
            priority=PriorityLevel.MEDIUM,
            ai_analysis=fields.ai_analysis.model_dump(mode="json", by_alias=True) if fields.ai_analysis else None,
            comments=[],
        )
        self._system_comment(report, acknowledgement_text(report.category.value))

        self.session.add(report)
        self._record_event(EventType.REPORT_CREATED, report.id, owner, category=report.category.value)
        await self._commit("create report")

        REPORTS_CREATED.labels(category=report.category.value).inc()
        logger.info(
            "Report created successfully",
            report_id=str(report.id),
            user_id=str(owner.id),
            category=report.category.value,
        )
        return report

    async def get_report(self, report_id: Union[str, uuid.UUID], actor: User) -> Report:
        report = await self._get(report_id)
        if not can_access_report(actor, report):
            raise AuthorizationError("You can only access your own reports", resource="report")
        return report

    async def list_reports(
        self,
        filters: Optional[ReportFilter],
        actor: User,
        limit: Optional[int] = None,
    ) -> List[Report]:
        """
        List reports, newest first.

        Users only ever see their own reports. Admins see everything and may
        narrow by owner, status, category, priority, text and creation date.
        """
        filters = filters or ReportFilter()
        stmt = select(Report)

        if actor.role != UserRole.ADMIN:
            stmt = stmt.where(Report.owner_id == actor.id)
        elif filters.owner_id:
            stmt = stmt.where(Report.owner_id == filters.owner_id)

        if filters.status:
            stmt = stmt.where(Report.status == filters.status)
        if filters.category:
            stmt = stmt.where(Report.category == filters.category)
        if filters.priority:
            stmt = stmt.where(Report.priority == filters.priority)
        if filters.search:
            stmt = stmt.where(
                Report.title.icontains(filters.search, autoescape=True)
                | Report.description.icontains(filters.search, autoescape=True)
            )
        if filters.start_date:
            stmt = stmt.where(Report.created_at >= as_utc(filters.start_date))
        if filters.end_date:
            stmt = stmt.where(Report.created_at <= as_utc(filters.end_date))

        stmt = stmt.order_by(Report.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to list reports", error=str(e))
            raise InternalError("Failed to fetch reports")
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Owner Operations
    # -------------------------------------------------------------------------

    async def update_report(self, report_id: Union[str, uuid.UUID], fields: ReportUpdate, actor: User) -> Report:
        """Owner edit of content fields while the report is still open."""
        report = await self._get(report_id)

        if report.owner_id != actor.id:
            raise AuthorizationError("You can only edit your own reports", resource="report")
        if report.status in TERMINAL_STATUSES:
            raise ValidationError(
                "Closed reports cannot be edited",
                error_code="REPORT_CLOSED",
                details={"status": report.status.value},
            )

        changes = fields.model_dump(exclude_unset=True)
        old_photo = report.photo_url

        if "title" in changes and not fields.title:
            raise ValidationError("Title is required", field="title")
        if "title" in changes:
            report.title = fields.title
        if "description" in changes:
            report.description = fields.description
        if fields.category is not None:
            report.category = fields.category
        if fields.location is not None:
            report.latitude = fields.location.lat
            report.longitude = fields.location.lng
            if fields.location.address is not None:
                report.address = fields.location.address
        if "maps_link" in changes:
            report.maps_link = fields.maps_link
        if fields.occurred_at is not None:
            report.occurred_at = as_utc(fields.occurred_at)
        if fields.photo_url:
            report.photo_url = fields.photo_url
        if fields.ai_analysis is not None:
            report.ai_analysis = fields.ai_analysis.model_dump(mode="json", by_alias=True)

        if not report.photo_url and not report.description:
            raise ValidationError("A photo or a description is required", field="description")

        report.updated_at = utcnow()
        self._record_event(EventType.REPORT_UPDATED, report.id, actor, fields=sorted(changes))
        await self._commit("update report")

        if old_photo and old_photo != report.photo_url:
            await self.file_storage.delete_by_url(old_photo)

        logger.info("Report updated", report_id=str(report.id), fields=sorted(changes))
        return report

    async def submit_feedback(
        self,
        report_id: Union[str, uuid.UUID],
        feedback: Optional[str],
        rating: Optional[int],
        actor: User,
    ) -> Report:
        """Owner feedback on a resolved report."""
        report = await self._get(report_id)

        if report.owner_id != actor.id:
            raise AuthorizationError("Only the reporter can leave feedback", resource="report")
        if report.status != ReportStatus.DONE:
            raise ValidationError(
                "Feedback can only be given on resolved reports",
                error_code="REPORT_NOT_RESOLVED",
                details={"status": report.status.value},
            )

        feedback = feedback.strip() if feedback else None
        if rating is None and not feedback:
            raise ValidationError("Feedback or rating is required", field="rating")
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", field="rating")

        if feedback:
            report.feedback = feedback
        if rating is not None:
            report.rating = rating
        report.updated_at = utcnow()

        self._record_event(EventType.REPORT_UPDATED, report.id, actor, rating=rating, feedback=bool(feedback))
        await self._commit("submit feedback")
        return report

    async def delete_report(self, report_id: Union[str, uuid.UUID], actor: User) -> None:
        """Hard delete by owner or admin; the stored photo goes with it."""
        report = await self._get(report_id)

        if not can_delete_report(actor, report):
            raise AuthorizationError("You can only delete your own reports", resource="report")

        photo_url = report.photo_url
        deleted_id = report.id

        await self.session.delete(report)
        self._record_event(EventType.REPORT_DELETED, deleted_id, actor, title=report.title)
        await self._commit("delete report")

        if photo_url:
            await self.file_storage.delete_by_url(photo_url)

        logger.info("Report deleted", report_id=str(deleted_id), user_id=str(actor.id))

    # -------------------------------------------------------------------------
    # Admin Operations
    # -------------------------------------------------------------------------

    async def update_status(
        self,
        report_id: Union[str, uuid.UUID],
        new_status: Union[str, ReportStatus],
        actor: User,
        priority: Optional[Union[str, PriorityLevel]] = None,
    ) -> Report:
        """
        Apply an admin status transition, optionally changing priority.

        Raises:
            AuthorizationError: actor is not an admin
            ValidationError: status or priority outside the enumeration
            NotFoundError: unknown report
            ReportStatusError: transition not allowed from the current status
        """
        ensure_admin(actor, resource="report")
        target = parse_status(new_status)
        target_priority = parse_priority(priority) if priority is not None else None

        report = await self._get(report_id)
        previous = report.status

        if not can_transition(previous, target):
            raise ReportStatusError(previous.value, target.value)

        now = utcnow()
        if target != previous:
            report.status = target
            if report.first_response_at is None:
                report.first_response_at = now
            if target == ReportStatus.DONE:
                report.resolved_at = now

            text = status_change_text(target.value, report.category.value)
            if text:
                self._system_comment(report, text)

        if target_priority is not None:
            report.priority = target_priority

        report.updated_at = now
        self._record_event(
            EventType.REPORT_STATUS_CHANGED,
            report.id,
            actor,
            from_status=previous.value,
            to_status=target.value,
            priority=report.priority.value if report.priority else None,
        )
        await self._commit("update report status")

        STATUS_TRANSITIONS.labels(from_status=previous.value, to_status=target.value).inc()
        logger.info(
            "Report status updated",
            report_id=str(report.id),
            from_status=previous.value,
            to_status=target.value,
            admin_id=str(actor.id),
        )
        return report

    async def add_comment(self, report_id: Union[str, uuid.UUID], text: str, actor: User) -> Report:
        ensure_admin(actor, resource="report")
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment is required", field="comment")

        report = await self._get(report_id)
        report.comments.append(ReportComment(comment=text, admin_name=actor.username, timestamp=utcnow()))

        self._record_event(EventType.COMMENT_ADDED, report.id, actor)
        await self._commit("add comment")
        return report

    async def delete_comment(
        self,
        report_id: Union[str, uuid.UUID],
        comment_id: Union[str, uuid.UUID],
        actor: User,
    ) -> Report:
        ensure_admin(actor, resource="report")
        report = await self._get(report_id)

        comment = next((c for c in report.comments if str(c.id) == str(comment_id)), None)
        if comment is None:
            raise NotFoundError("Comment", str(comment_id))

        report.comments.remove(comment)
        self._record_event(EventType.COMMENT_DELETED, report.id, actor, comment_id=str(comment_id))
        await self._commit("delete comment")
        return report

    async def export_csv(self, actor: User) -> str:
        """All reports as CSV, newest first."""
        ensure_admin(actor, resource="report")

        try:
            result = await self.session.execute(select(Report).order_by(Report.created_at.desc()))
        except SQLAlchemyError as e:
            logger.error("Failed to export reports", error=str(e))
            raise InternalError("Failed to export reports")

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_FIELDS)

        for report in result.scalars():
            comments = " | ".join(f"{c.admin_name}: {c.comment}" for c in report.comments)
            day = as_utc(report.occurred_at or report.created_at)
            writer.writerow([
                str(report.id),
                report.title,
                report.category.value,
                report.status.value,
                (report.priority or PriorityLevel.MEDIUM).value,
                day.date().isoformat(),
                f"{report.latitude},{report.longitude}",
                (report.description or "").replace("\r", " ").replace("\n", " "),
                comments,
            ])

        return buffer.getvalue()


__all__ = [
    "ALLOWED_TRANSITIONS",
    "LocationInput",
    "ReportCreate",
    "ReportUpdate",
    "ReportFilter",
    "ReportService",
    "can_transition",
    "format_report_response",
]
