"""
Reports API Endpoints

REST endpoints for campus damage reports: submission with an optional photo,
owner edits and feedback, admin triage (status, priority, comments), the
dashboard aggregates and the CSV export.

Fixed paths are registered before ``/{report_id}`` so they are not captured
by the id route.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import Response
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.utils import parse_json_field, parse_model, success_response
from app.core.exceptions import AiAnalysisError, CampusReportException, ValidationError
from app.core.i18n import get_text
from app.core.security import get_current_user, require_admin
from app.models.database import Report, User, get_db_session
from app.services.ai import AIAssistService
from app.services.file_storage import FileStorageService
from app.services.reports import (
    ReportCreate,
    ReportFilter,
    ReportService,
    ReportUpdate,
    format_report_response,
    parse_status,
)
from app.services.statistics import StatisticsService, StatsScope

# =============================================================================
# Logger and Services
# =============================================================================

logger = structlog.get_logger(__name__)
router = APIRouter()

file_storage = FileStorageService()
ai_service = AIAssistService()

# =============================================================================
# Request Models
# =============================================================================

class StatusUpdateRequest(BaseModel):
    status: str
    priority: Optional[str] = None


class CommentRequest(BaseModel):
    comment: str = Field(..., validation_alias=AliasChoices("comment", "text"), max_length=2000)


class FeedbackRequest(BaseModel):
    feedback: Optional[str] = Field(None, max_length=2000)
    rating: Optional[int] = None


# =============================================================================
# Utility Functions
# =============================================================================

def _report_fields(
    title: Optional[str],
    description: Optional[str],
    category: Optional[str],
    location: Optional[str],
    lat: Optional[float],
    lng: Optional[float],
    address: Optional[str],
    maps_link: Optional[str],
    occurred_at: Optional[str],
    ai_analysis: Optional[str],
) -> Dict[str, Any]:
    """
    Collect the multipart form fields that were actually sent.

    Location comes either as a JSON ``location`` field (``{lat, lng}`` or a
    GeoJSON Point) or as separate ``lat``/``lng``/``address`` fields.
    """
    fields: Dict[str, Any] = {}

    if title is not None:
        fields["title"] = title
    if description is not None:
        fields["description"] = description
    if category:
        fields["category"] = category.strip().lower()
    if maps_link is not None:
        fields["maps_link"] = maps_link
    if occurred_at:
        fields["occurred_at"] = occurred_at

    location_data = parse_json_field(location, "location")
    if location_data is None and (lat is not None or lng is not None):
        location_data = {"lat": lat, "lng": lng}
    if location_data is not None:
        if address and isinstance(location_data, dict):
            location_data.setdefault("address", address)
        fields["location"] = location_data

    analysis = parse_json_field(ai_analysis, "aiAnalysis")
    if analysis is not None:
        fields["ai_analysis"] = analysis

    return fields


async def _store_photo(photo: Optional[UploadFile]) -> Optional[str]:
    if photo is None or not photo.filename:
        return None

    data = await photo.read()
    stored = await file_storage.upload_file(
        file_data=data,
        filename=photo.filename,
        content_type=photo.content_type or "application/octet-stream",
        folder="reports",
    )
    return stored["url"]


async def _claim_photo_url(
    session: AsyncSession,
    photo_url: Optional[str],
    report: Optional[Report] = None,
) -> Optional[str]:
    """
    Accept a URL returned by ``/analyze-image`` as the report photo.

    The URL must name a stored file under ``reports/`` that no other report
    already uses.
    """
    if not photo_url or not photo_url.strip():
        return None

    photo_url = photo_url.strip()
    if report is not None and report.photo_url == photo_url:
        return None

    path = file_storage.backend.path_from_url(photo_url)
    parts = path.split("/") if path else []
    if (
        len(parts) != 2
        or parts[0] != "reports"
        or parts[1] in ("", ".", "..")
        or not await file_storage.backend.file_exists(path)
    ):
        raise ValidationError("Photo URL does not refer to an uploaded photo", field="photoUrl")

    stmt = select(Report.id).where(Report.photo_url == photo_url)
    if report is not None:
        stmt = stmt.where(Report.id != report.id)
    if await session.scalar(stmt.limit(1)) is not None:
        raise ValidationError("Photo is already attached to another report", field="photoUrl")

    return photo_url


# =============================================================================
# Report Submission
# =============================================================================

@router.post("", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_report(
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    location: Optional[str] = Form(None),
    lat: Optional[float] = Form(None),
    lng: Optional[float] = Form(None),
    address: Optional[str] = Form(None),
    maps_link: Optional[str] = Form(None, alias="mapsLink"),
    occurred_at: Optional[str] = Form(None, alias="date"),
    ai_analysis: Optional[str] = Form(None, alias="aiAnalysis"),
    photo_url: Optional[str] = Form(None, alias="photoUrl"),
    photo: Optional[UploadFile] = File(None),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """
    Submit a new damage report.

    Requires a title, a location and either a photo or a description. The
    report starts in ``pending`` with an automatic acknowledgement comment.
    The photo is either uploaded here or given as the ``photoUrl`` returned
    by ``/analyze-image``.
    """
    fields = _report_fields(
        title, description, category, location, lat, lng, address, maps_link, occurred_at, ai_analysis
    )
    request = parse_model(ReportCreate, fields)

    stored_url = await _store_photo(photo)
    request.photo_url = stored_url or await _claim_photo_url(session, photo_url)

    try:
        report = await ReportService(session, file_storage).create_report(current_user, request)
    except CampusReportException:
        await file_storage.delete_by_url(stored_url)
        raise

    return success_response(format_report_response(report), message=get_text("api.report.created"))


@router.get("/my-reports", response_model=Dict[str, Any])
async def list_my_reports(
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """Reports owned by the caller, newest first."""
    filters = ReportFilter(owner_id=current_user.id)
    reports = await ReportService(session, file_storage).list_reports(filters, current_user)
    return success_response([format_report_response(r) for r in reports])


@router.get("", response_model=Dict[str, Any])
async def list_reports(
    status_filter: Optional[str] = Query(None, alias="status"),
    category: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    owner_id: Optional[str] = Query(None, alias="ownerId"),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    """Admin listing of every report with optional filters."""
    filters = parse_model(ReportFilter, {
        "status": parse_status(status_filter) if status_filter else None,
        "category": category or None,
        "priority": priority or None,
        "search": search.strip() if search and search.strip() else None,
        "start_date": start_date,
        "end_date": end_date,
        "owner_id": owner_id or None,
    })

    reports = await ReportService(session, file_storage).list_reports(filters, current_user)
    return success_response([format_report_response(r) for r in reports], count=len(reports))


# =============================================================================
# Statistics and Analytics
# =============================================================================

@router.get("/stats", response_model=Dict[str, Any])
async def get_report_stats(
    scope: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """Status counts. Non-admins always get their own numbers."""
    stats_scope = StatsScope.for_actor(current_user, scope)
    counts = await StatisticsService(session).compute_counts(stats_scope)
    return success_response(counts, scope=stats_scope.name)


@router.get("/analytics", response_model=Dict[str, Any])
async def get_report_analytics(
    scope: Optional[str] = Query(None),
    months: int = Query(6, ge=1, le=24),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    stats_scope = StatsScope.for_actor(current_user, scope)
    return success_response(await StatisticsService(session).analytics(stats_scope, months))


@router.get("/distribution/{dimension}", response_model=Dict[str, Any])
async def get_report_distribution(
    dimension: str,
    scope: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    stats_scope = StatsScope.for_actor(current_user, scope)
    distribution = await StatisticsService(session).compute_distribution(dimension, stats_scope)
    return success_response(distribution, scope=stats_scope.name)


@router.get("/activity", response_model=Dict[str, Any])
async def get_recent_activity(
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Dict[str, Any]:
    """Newest reports and admin comments, merged."""
    return success_response(await StatisticsService(session).recent_activity(limit))


@router.get("/export")
async def export_reports(
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(require_admin()),
) -> Response:
    content = await ReportService(session, file_storage).export_csv(current_user)

    filename = f"reports_{datetime.now().strftime('%Y%m%d')}.csv"
    logger.info("Reports exported", admin_id=str(current_user.id))
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# =============================================================================
# Image Analysis
# =============================================================================

@router.post("/analyze-image", response_model=Dict[str, Any])
async def analyze_report_image(
    image: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """
    Store a photo and return an AI description of it.

    The returned ``photoUrl`` is sent back as the ``photoUrl`` field of a
    report create or edit. If the analysis fails the photo is removed again.
    """
    data = await image.read()
    content_type = image.content_type or "application/octet-stream"
    stored = await file_storage.upload_file(
        file_data=data,
        filename=image.filename or "image",
        content_type=content_type,
        folder="reports",
    )

    try:
        description = await ai_service.analyze_image(data, content_type)
    except AiAnalysisError:
        await file_storage.delete_by_url(stored["url"])
        raise

    logger.info("Report image analyzed", user_id=str(current_user.id))
    return success_response({"description": description, "photoUrl": stored["url"]})


# =============================================================================
# Single Report Operations
# =============================================================================

@router.get("/{report_id}", response_model=Dict[str, Any])
async def get_report(
    report_id: str,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    report = await ReportService(session, file_storage).get_report(report_id, current_user)
    return success_response(format_report_response(report))


@router.put("/{report_id}", response_model=Dict[str, Any])
async def update_report(
    report_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    location: Optional[str] = Form(None),
    lat: Optional[float] = Form(None),
    lng: Optional[float] = Form(None),
    address: Optional[str] = Form(None),
    maps_link: Optional[str] = Form(None, alias="mapsLink"),
    occurred_at: Optional[str] = Form(None, alias="date"),
    ai_analysis: Optional[str] = Form(None, alias="aiAnalysis"),
    photo_url: Optional[str] = Form(None, alias="photoUrl"),
    photo: Optional[UploadFile] = File(None),
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """Owner edit of an open report. Only the sent fields change."""
    fields = _report_fields(
        title, description, category, location, lat, lng, address, maps_link, occurred_at, ai_analysis
    )
    request = parse_model(ReportUpdate, fields)

    service = ReportService(session, file_storage)
    # Check ownership before anything is written to disk
    existing = await service.get_report(report_id, current_user)
    claimed_url = await _claim_photo_url(session, photo_url, existing)

    stored_url = await _store_photo(photo)
    if stored_url or claimed_url:
        request.photo_url = stored_url or claimed_url

    try:
        report = await service.update_report(report_id, request, current_user)
    except CampusReportException:
        await file_storage.delete_by_url(stored_url)
        raise

    return success_response(format_report_response(report), message=get_text("api.report.updated"))


@router.delete("/{report_id}", response_model=Dict[str, Any])
async def delete_report(
    report_id: str,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    await ReportService(session, file_storage).delete_report(report_id, current_user)
    return success_response(message=get_text("api.report.deleted"))


# =============================================================================
# Status Updates and Admin Actions
# =============================================================================

@router.patch("/{report_id}/status", response_model=Dict[str, Any])
async def update_report_status(
    report_id: str,
    request: StatusUpdateRequest,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """
    Move a report through its lifecycle (admin only).

    Unknown statuses and backward moves are rejected with 400 and leave the
    report untouched.
    """
    report = await ReportService(session, file_storage).update_status(
        report_id, request.status, current_user, priority=request.priority
    )
    return success_response(format_report_response(report), message=get_text("api.report.status_updated"))


@router.post("/{report_id}/comments", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def add_report_comment(
    report_id: str,
    request: CommentRequest,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    report = await ReportService(session, file_storage).add_comment(report_id, request.comment, current_user)
    return success_response(format_report_response(report), message=get_text("api.report.comment_added"))


@router.delete("/{report_id}/comments/{comment_id}", response_model=Dict[str, Any])
async def delete_report_comment(
    report_id: str,
    comment_id: str,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    report = await ReportService(session, file_storage).delete_comment(report_id, comment_id, current_user)
    return success_response(format_report_response(report), message=get_text("api.report.comment_deleted"))


@router.post("/{report_id}/feedback", response_model=Dict[str, Any])
async def submit_report_feedback(
    report_id: str,
    request: FeedbackRequest,
    session: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """Reporter feedback and a 1-5 rating once the report is done."""
    if request.rating is None and not (request.feedback or "").strip():
        raise ValidationError("Feedback or rating is required", field="rating")

    report = await ReportService(session, file_storage).submit_feedback(
        report_id, request.feedback, request.rating, current_user
    )
    return success_response(format_report_response(report), message=get_text("api.report.feedback_submitted"))
