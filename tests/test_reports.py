import csv
import io
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from PIL import Image

from app.core.config import settings
from app.core.exceptions import AuthorizationError, NotFoundError, ReportStatusError, ValidationError
from app.models.database import PriorityLevel, Report, ReportCategory, ReportStatus
from app.services.reports import (
    ALLOWED_TRANSITIONS,
    LocationInput,
    ReportCreate,
    ReportFilter,
    ReportService,
    ReportUpdate,
    can_transition,
)

from conftest import auth_headers

LOCATION = {"lat": -6.2, "lng": 106.8, "address": "Building A"}


def png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 10, 10)).save(buf, format="PNG")
    return buf.getvalue()


async def create(session, owner, **overrides) -> Report:
    fields = {"title": "Broken window", "description": "Glass cracked", "location": LOCATION}
    fields.update(overrides)
    return await ReportService(session).create_report(owner, ReportCreate.model_validate(fields))


# =============================================================================
# Lifecycle rules
# =============================================================================

def test_transitions_only_move_forward():
    assert can_transition(ReportStatus.PENDING, ReportStatus.IN_PROGRESS)
    assert can_transition(ReportStatus.PENDING, ReportStatus.DONE)
    assert can_transition(ReportStatus.IN_PROGRESS, ReportStatus.REJECTED)
    assert can_transition(ReportStatus.DONE, ReportStatus.DONE)
    assert not can_transition(ReportStatus.IN_PROGRESS, ReportStatus.PENDING)
    assert not can_transition(ReportStatus.DONE, ReportStatus.IN_PROGRESS)
    assert not can_transition(ReportStatus.REJECTED, ReportStatus.DONE)
    assert ALLOWED_TRANSITIONS[ReportStatus.DONE] == frozenset()


def test_location_accepts_geojson_point():
    location = LocationInput.model_validate({"type": "Point", "coordinates": [106.8, -6.2], "address": "Gate"})
    assert (location.lat, location.lng, location.address) == (-6.2, 106.8, "Gate")


def test_location_rejects_out_of_range_latitude():
    with pytest.raises(Exception):
        LocationInput.model_validate({"lat": 91, "lng": 0})


@pytest.mark.parametrize("coordinates", [5, "106.8,-6.2", [106.8], None])
def test_location_rejects_malformed_point(coordinates):
    with pytest.raises(Exception):
        LocationInput.model_validate({"type": "Point", "coordinates": coordinates})


# =============================================================================
# Service
# =============================================================================

@pytest.mark.asyncio
async def test_create_report_starts_pending_with_acknowledgement(session, user):
    report = await create(session, user, category="facility")

    assert report.status == ReportStatus.PENDING
    assert report.priority == PriorityLevel.MEDIUM
    assert report.owner_id == user.id
    assert len(report.comments) == 1
    assert report.comments[0].admin_name == settings.SYSTEM_ADMIN_NAME


@pytest.mark.asyncio
async def test_create_report_requires_photo_or_description(session, user):
    with pytest.raises(ValidationError):
        await create(session, user, description=None)
    with pytest.raises(ValidationError):
        await create(session, user, title="   ")
    with pytest.raises(ValidationError):
        await create(session, user, location=None)


@pytest.mark.asyncio
async def test_update_status_full_lifecycle(session, user, admin):
    report = await create(session, user)
    service = ReportService(session)

    report = await service.update_status(report.id, "in_progress", admin)
    assert report.status == ReportStatus.IN_PROGRESS
    assert report.first_response_at is not None
    assert report.resolved_at is None

    report = await service.update_status(report.id, "done", admin, priority="high")
    assert report.status == ReportStatus.DONE
    assert report.priority == PriorityLevel.HIGH
    assert report.resolved_at is not None
    # acknowledgement + one template comment per status change
    assert len(report.comments) == 3

    with pytest.raises(ReportStatusError):
        await service.update_status(report.id, "pending", admin)


@pytest.mark.asyncio
async def test_reapplying_status_only_refreshes_updated_at(session, user, admin):
    report = await create(session, user)
    service = ReportService(session)
    report = await service.update_status(report.id, "in_progress", admin)
    before = report.updated_at
    comments = len(report.comments)

    report = await service.update_status(report.id, "in progress", admin)
    assert report.status == ReportStatus.IN_PROGRESS
    assert report.updated_at >= before
    assert len(report.comments) == comments


@pytest.mark.asyncio
async def test_update_status_checks_role_then_value(session, user, admin):
    report = await create(session, user)
    service = ReportService(session)

    with pytest.raises(AuthorizationError):
        await service.update_status(report.id, "done", user)
    with pytest.raises(ValidationError):
        await service.update_status(report.id, "archived", admin)
    with pytest.raises(NotFoundError):
        await service.update_status("not-a-uuid", "done", admin)


@pytest.mark.asyncio
async def test_comments_are_admin_only_and_keep_status(session, user, admin):
    report = await create(session, user)
    service = ReportService(session)

    with pytest.raises(AuthorizationError):
        await service.add_comment(report.id, "hello", user)
    with pytest.raises(ValidationError):
        await service.add_comment(report.id, "   ", admin)

    report = await service.add_comment(report.id, "Technician scheduled", admin)
    assert report.status == ReportStatus.PENDING
    added = report.comments[-1]
    assert added.admin_name == "admin"

    report = await service.delete_comment(report.id, added.id, admin)
    assert all(c.id != added.id for c in report.comments)

    with pytest.raises(NotFoundError):
        await service.delete_comment(report.id, added.id, admin)


@pytest.mark.asyncio
async def test_list_reports_scoping_and_filters(session, user, other_user, admin):
    await create(session, user, title="Leaking pipe", category="facility")
    await create(session, user, title="Lost keys", category="other")
    await create(session, other_user, title="Broken chair", category="facility")
    service = ReportService(session)

    mine = await service.list_reports(None, user)
    assert {r.title for r in mine} == {"Leaking pipe", "Lost keys"}

    # A non-admin cannot widen the scope through the owner filter
    sneaky = await service.list_reports(ReportFilter(owner_id=other_user.id), user)
    assert {r.title for r in sneaky} == {"Leaking pipe", "Lost keys"}

    everything = await service.list_reports(None, admin)
    assert len(everything) == 3
    assert everything[0].created_at >= everything[-1].created_at

    facility = await service.list_reports(ReportFilter(category=ReportCategory.FACILITY), admin)
    assert len(facility) == 2

    searched = await service.list_reports(ReportFilter(search="PIPE"), admin)
    assert [r.title for r in searched] == ["Leaking pipe"]


@pytest.mark.asyncio
async def test_owner_edits_until_closed(session, user, other_user, admin):
    report = await create(session, user)
    service = ReportService(session)

    with pytest.raises(AuthorizationError):
        await service.update_report(report.id, ReportUpdate(title="Mine now"), other_user)

    report = await service.update_report(report.id, ReportUpdate(title="Cracked window"), user)
    assert report.title == "Cracked window"
    assert report.description == "Glass cracked"

    await service.update_status(report.id, "rejected", admin)
    with pytest.raises(ValidationError) as exc:
        await service.update_report(report.id, ReportUpdate(title="Again"), user)
    assert exc.value.error_code == "REPORT_CLOSED"


@pytest.mark.asyncio
async def test_feedback_only_on_done_reports(session, user, admin):
    report = await create(session, user)
    service = ReportService(session)

    with pytest.raises(ValidationError):
        await service.submit_feedback(report.id, "thanks", 5, user)

    await service.update_status(report.id, "done", admin)
    with pytest.raises(ValidationError):
        await service.submit_feedback(report.id, None, 6, user)
    with pytest.raises(AuthorizationError):
        await service.submit_feedback(report.id, "ok", 4, admin)

    report = await service.submit_feedback(report.id, "Fixed quickly", 5, user)
    assert (report.feedback, report.rating) == ("Fixed quickly", 5)


@pytest.mark.asyncio
async def test_delete_report_by_owner_or_admin(session, user, other_user, admin):
    first = await create(session, user)
    second = await create(session, user)
    service = ReportService(session)

    with pytest.raises(AuthorizationError):
        await service.delete_report(first.id, other_user)

    await service.delete_report(first.id, user)
    await service.delete_report(second.id, admin)
    assert await service.list_reports(None, admin) == []


@pytest.mark.asyncio
async def test_export_csv_escapes_quotes_and_commas(session, user, admin):
    await create(session, user, title='The "big" leak, again', description="line one\nline two")
    service = ReportService(session)

    with pytest.raises(AuthorizationError):
        await service.export_csv(user)

    content = await service.export_csv(admin)
    rows = list(csv.reader(io.StringIO(content)))
    assert rows[0][0] == "ID"
    assert rows[1][1] == 'The "big" leak, again'
    assert rows[1][7] == "line one line two"
    assert '"The ""big"" leak, again"' in content


# =============================================================================
# HTTP
# =============================================================================

@pytest.mark.asyncio
async def test_create_report_over_http_with_photo_and_geojson(client, user):
    resp = await client.post(
        "/api/v1/reports",
        headers=auth_headers(user),
        data={
            "title": "Fallen tree",
            "category": "incident",
            "location": json.dumps({"type": "Point", "coordinates": [106.8, -6.2]}),
            "aiAnalysis": json.dumps({
                "detectedObject": "tree",
                "damageType": "fallen",
                "severity": "HIGH",
                "recommendation": "remove",
                "confidence": 1.4,
            }),
        },
        files={"photo": ("tree.png", png_bytes(), "image/png")},
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    assert data["status"] == "pending"
    assert data["location"] == {"lat": -6.2, "lng": 106.8, "address": None}
    assert data["photoUrl"].startswith("/uploads/reports/")
    assert data["aiAnalysis"]["severity"] == "high"
    assert data["aiAnalysis"]["confidence"] == 1.0
    assert len(data["comments"]) == 1

    photo = await client.get(data["photoUrl"])
    assert photo.status_code == 200


@pytest.mark.asyncio
async def test_create_report_rejects_bad_category(client, user):
    resp = await client.post(
        "/api/v1/reports",
        headers=auth_headers(user),
        data={"title": "x", "description": "y", "category": "weather", "lat": "1", "lng": "2"},
    )
    assert resp.status_code == 400
    assert resp.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_bogus_status_is_rejected_and_report_unchanged(client, session, user, admin):
    report = await create(session, user)

    resp = await client.patch(
        f"/api/v1/reports/{report.id}/status",
        headers=auth_headers(admin),
        json={"status": "bogus"},
    )
    assert resp.status_code == 400

    resp = await client.patch(
        f"/api/v1/reports/{report.id}/status",
        headers=auth_headers(user),
        json={"status": "done"},
    )
    assert resp.status_code == 403

    resp = await client.get(f"/api/v1/reports/{report.id}", headers=auth_headers(user))
    assert resp.json()["data"]["status"] == "pending"


@pytest.mark.asyncio
async def test_admin_list_and_user_forbidden(client, session, user, admin):
    await create(session, user)

    assert (await client.get("/api/v1/reports", headers=auth_headers(user))).status_code == 403

    resp = await client.get("/api/v1/reports?status=pending", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json()["count"] == 1

    resp = await client.get("/api/v1/reports/my-reports", headers=auth_headers(user))
    assert len(resp.json()["data"]) == 1


@pytest.mark.asyncio
async def test_other_user_cannot_read_report(client, session, user, other_user):
    report = await create(session, user)
    resp = await client.get(f"/api/v1/reports/{report.id}", headers=auth_headers(other_user))
    assert resp.status_code == 403
    assert resp.json()["error_code"] == "PERMISSION_DENIED"


@pytest.mark.asyncio
async def test_export_endpoint_returns_csv(client, session, user, admin):
    await create(session, user)
    resp = await client.get("/api/v1/reports/export", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]


@pytest.mark.asyncio
async def test_create_report_with_malformed_point_is_400(client, user):
    resp = await client.post(
        "/api/v1/reports",
        headers=auth_headers(user),
        data={
            "title": "Leak",
            "description": "Water on the floor",
            "location": json.dumps({"type": "Point", "coordinates": 5}),
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_submitted_fields_come_back_from_my_reports(client, user):
    analysis = {
        "detectedObject": "projector",
        "damageType": "no signal",
        "severity": "medium",
        "recommendation": "Replace the cable",
        "confidence": 0.6,
    }
    resp = await client.post(
        "/api/v1/reports",
        headers=auth_headers(user),
        data={
            "title": "Projector dead",
            "description": "Room 204 projector shows nothing",
            "category": "facility",
            "lat": "-6.21",
            "lng": "106.85",
            "address": "Room 204",
            "mapsLink": "https://maps.example/room204",
            "date": "2024-03-10T08:30:00Z",
            "aiAnalysis": json.dumps(analysis),
        },
    )
    assert resp.status_code == 201, resp.text

    resp = await client.get("/api/v1/reports/my-reports", headers=auth_headers(user))
    [report] = resp.json()["data"]

    assert report["title"] == "Projector dead"
    assert report["description"] == "Room 204 projector shows nothing"
    assert report["category"] == "facility"
    assert report["location"] == {"lat": -6.21, "lng": 106.85, "address": "Room 204"}
    assert report["mapsLink"] == "https://maps.example/room204"
    assert datetime.fromisoformat(report["occurredAt"]) == datetime(2024, 3, 10, 8, 30, tzinfo=timezone.utc)
    assert report["aiAnalysis"] == analysis
    assert report["status"] == "pending"
    assert report["ownerId"] == str(user.id)


async def analyzed_photo_url(client, user) -> str:
    with patch("app.api.v1.reports.ai_service.analyze_image", new=AsyncMock(return_value="A cracked tile.")):
        resp = await client.post(
            "/api/v1/reports/analyze-image",
            headers=auth_headers(user),
            files={"image": ("tile.png", png_bytes(), "image/png")},
        )
    assert resp.status_code == 200
    return resp.json()["data"]["photoUrl"]


@pytest.mark.asyncio
async def test_analyzed_photo_is_attached_by_url(client, user):
    photo_url = await analyzed_photo_url(client, user)

    resp = await client.post(
        "/api/v1/reports",
        headers=auth_headers(user),
        data={"title": "Cracked tile", "lat": "1", "lng": "2", "photoUrl": photo_url},
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["data"]["photoUrl"] == photo_url

    # A stored photo belongs to one report only
    resp = await client.post(
        "/api/v1/reports",
        headers=auth_headers(user),
        data={"title": "Same tile", "lat": "1", "lng": "2", "photoUrl": photo_url},
    )
    assert resp.status_code == 400
    assert resp.json()["details"]["field"] == "photoUrl"


@pytest.mark.asyncio
async def test_analyzed_photo_can_be_attached_on_edit(client, session, user):
    report = await create(session, user)
    photo_url = await analyzed_photo_url(client, user)

    resp = await client.put(
        f"/api/v1/reports/{report.id}",
        headers=auth_headers(user),
        data={"photoUrl": photo_url},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"]["photoUrl"] == photo_url


@pytest.mark.asyncio
@pytest.mark.parametrize("photo_url", [
    "/uploads/reports/missing.png",
    "/uploads/reports/../../outside.png",
    "/uploads/other/file.png",
    "https://example.com/photo.png",
])
async def test_unknown_photo_url_is_rejected(client, user, photo_url):
    resp = await client.post(
        "/api/v1/reports",
        headers=auth_headers(user),
        data={"title": "Leak", "description": "Water", "lat": "1", "lng": "2", "photoUrl": photo_url},
    )
    assert resp.status_code == 400
    assert resp.json()["details"]["field"] == "photoUrl"
