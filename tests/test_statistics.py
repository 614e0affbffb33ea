import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from unittest.mock import AsyncMock, patch

from app.core.exceptions import InternalError, ValidationError
from app.models.database import PriorityLevel, Report, ReportCategory, ReportStatus
from app.services.statistics import StatisticsService, StatsScope, round_half_up

from conftest import auth_headers, make_user

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


async def add_report(session, owner, **fields) -> Report:
    values = {
        "id": uuid.uuid4(),
        "owner_id": owner.id,
        "title": "Report",
        "description": "Something broke",
        "category": ReportCategory.FACILITY,
        "latitude": 0.0,
        "longitude": 0.0,
        "status": ReportStatus.PENDING,
        "priority": PriorityLevel.MEDIUM,
        "created_at": NOW,
    }
    values.update(fields)
    report = Report(**values)
    session.add(report)
    await session.commit()
    return report


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(4.25, 1) == 4.3


@pytest.mark.asyncio
async def test_counts_sum_to_total(session, user):
    for status in (ReportStatus.PENDING, ReportStatus.PENDING, ReportStatus.IN_PROGRESS,
                   ReportStatus.DONE, ReportStatus.REJECTED):
        await add_report(session, user, status=status)

    counts = await StatisticsService(session).compute_counts(StatsScope.global_())
    assert counts == {"total": 5, "pending": 2, "inProgress": 1, "done": 1, "rejected": 1}
    assert counts["total"] == sum(v for k, v in counts.items() if k != "total")


@pytest.mark.asyncio
async def test_empty_store_gives_zeroes(session):
    service = StatisticsService(session)
    scope = StatsScope.global_()

    assert (await service.compute_counts(scope))["total"] == 0
    performance = await service.compute_performance(scope)
    assert performance["avgResolutionHours"] == 0
    assert all(c["completionRate"] == 0 and c["avgRating"] == 0 for c in performance["categoryPerformance"])
    assert {c["name"] for c in performance["categoryPerformance"]} == {c.value for c in ReportCategory}


@pytest.mark.asyncio
async def test_personal_scope_counts_only_own_reports(session, user, other_user):
    await add_report(session, user)
    await add_report(session, other_user)
    await add_report(session, other_user, status=ReportStatus.DONE)

    service = StatisticsService(session)
    personal = await service.compute_counts(StatsScope.personal(user))
    assert personal["total"] == 1

    # Non-admins cannot ask for the global view
    scope = StatsScope.for_actor(user, "global")
    assert scope.name == "personal"
    assert (await service.compute_counts(scope))["total"] == 1


@pytest.mark.asyncio
async def test_scope_for_admin_and_invalid_scope(admin):
    assert StatsScope.for_actor(admin).name == "global"
    assert StatsScope.for_actor(admin, "personal").owner_id == admin.id
    with pytest.raises(ValidationError):
        StatsScope.for_actor(admin, "everyone")


@pytest.mark.asyncio
async def test_distribution_includes_every_key(session, user):
    await add_report(session, user, category=ReportCategory.INCIDENT, priority=PriorityLevel.CRITICAL)
    await add_report(session, user, category=ReportCategory.INCIDENT, priority=None)
    await add_report(session, user, category=ReportCategory.EVENT)

    service = StatisticsService(session)
    scope = StatsScope.global_()

    category = await service.compute_distribution("category", scope)
    assert category == {"incident": 2, "event": 1, "facility": 0, "other": 0, "unknown": 0}

    priority = await service.compute_distribution("priority", scope)
    assert priority["critical"] == 1
    assert priority["unknown"] == 1
    assert sum(priority.values()) == 3

    with pytest.raises(ValidationError):
        await service.compute_distribution("colour", scope)


@pytest.mark.asyncio
async def test_monthly_trend_has_six_entries_oldest_first(session, user):
    await add_report(session, user, created_at=NOW)
    await add_report(session, user, created_at=NOW - timedelta(days=1))
    await add_report(session, user, created_at=datetime(2024, 1, 10, tzinfo=timezone.utc))
    await add_report(session, user, created_at=datetime(2023, 10, 2, tzinfo=timezone.utc))
    # Outside the window
    await add_report(session, user, created_at=datetime(2023, 9, 30, tzinfo=timezone.utc))

    trend = await StatisticsService(session).compute_monthly_trend(StatsScope.global_(), months=6, now=NOW)

    assert [m["label"] for m in trend] == ["10/2023", "11/2023", "12/2023", "1/2024", "2/2024", "3/2024"]
    assert [m["count"] for m in trend] == [1, 0, 0, 1, 0, 2]


@pytest.mark.asyncio
async def test_performance_rounds_resolution_hours(session, user):
    created = NOW - timedelta(days=2)
    await add_report(session, user, status=ReportStatus.DONE, created_at=created,
                     resolved_at=created + timedelta(hours=10), rating=4)
    await add_report(session, user, status=ReportStatus.DONE, created_at=created,
                     resolved_at=created + timedelta(hours=15), rating=5)
    await add_report(session, user, status=ReportStatus.PENDING)

    performance = await StatisticsService(session).compute_performance(StatsScope.global_())

    # mean of 10h and 15h is 12.5h
    assert performance["avgResolutionHours"] == 13
    facility = next(c for c in performance["categoryPerformance"] if c["name"] == "facility")
    assert facility == {"name": "facility", "completionRate": 67, "avgRating": 4.5, "total": 3, "resolved": 2}


@pytest.mark.asyncio
async def test_top_contributors_tie_goes_to_earliest_reporter(session):
    early = await make_user(session, "early")
    late = await make_user(session, "late")
    busy = await make_user(session, "busy")

    await add_report(session, late, created_at=NOW)
    await add_report(session, early, created_at=NOW - timedelta(days=3))
    for _ in range(3):
        await add_report(session, busy)

    top = await StatisticsService(session).top_contributors(limit=10)
    assert [t["username"] for t in top] == ["busy", "early", "late"]
    assert top[0]["reportCount"] == 3


@pytest.mark.asyncio
async def test_priority_reports_put_critical_first(session, user):
    await add_report(session, user, title="high", priority=PriorityLevel.HIGH)
    await add_report(session, user, title="critical", priority=PriorityLevel.CRITICAL, created_at=NOW - timedelta(days=5))
    await add_report(session, user, title="closed", priority=PriorityLevel.CRITICAL, status=ReportStatus.DONE)
    await add_report(session, user, title="low", priority=PriorityLevel.LOW)

    reports = await StatisticsService(session).priority_reports()
    assert [r.title for r in reports] == ["critical", "high"]


@pytest.mark.asyncio
async def test_stats_endpoints_scope_by_role(client, session, user, other_user, admin):
    await add_report(session, user)
    await add_report(session, other_user)

    resp = await client.get("/api/v1/reports/stats?scope=global", headers=auth_headers(user))
    assert resp.status_code == 200
    assert resp.json()["scope"] == "personal"
    assert resp.json()["data"]["total"] == 1

    resp = await client.get("/api/v1/reports/stats", headers=auth_headers(admin))
    assert resp.json()["data"]["total"] == 2

    resp = await client.get("/api/v1/reports/analytics", headers=auth_headers(admin))
    data = resp.json()["data"]
    assert len(data["monthly"]) == 6
    assert set(data) >= {"counts", "category", "status", "priority", "performance"}

    resp = await client.get("/api/v1/reports/distribution/colour", headers=auth_headers(admin))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_user_admin_endpoints(client, session, user, admin):
    await add_report(session, user, created_at=datetime.now(timezone.utc))

    assert (await client.get("/api/v1/users/stats", headers=auth_headers(user))).status_code == 403

    resp = await client.get("/api/v1/users/stats", headers=auth_headers(admin))
    data = resp.json()["data"]
    assert data["totalUsers"] == 2
    assert data["activeUsers"] == 1
    assert data["topContributors"][0]["username"] == "alice"

    resp = await client.get("/api/v1/reports/activity", headers=auth_headers(admin))
    assert resp.json()["data"][0]["type"] == "new_report"


@pytest.mark.asyncio
async def test_store_failure_becomes_internal_error(session, user, monkeypatch):
    await add_report(session, user)
    failure = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("database is locked")))
    monkeypatch.setattr(session, "execute", failure)

    service = StatisticsService(session)
    with pytest.raises(InternalError):
        await service.compute_counts(StatsScope.global_())
    with pytest.raises(InternalError):
        await service.analytics(StatsScope.global_())


@pytest.mark.asyncio
async def test_store_failure_over_http_is_500_envelope(client, user):
    original_execute = AsyncSession.execute

    async def execute(self, statement, *args, **kwargs):
        # Let the user lookup through, fail the report aggregates
        if "reports" in str(statement):
            raise OperationalError(str(statement), {}, Exception("database is locked"))
        return await original_execute(self, statement, *args, **kwargs)

    with patch.object(AsyncSession, "execute", new=execute):
        resp = await client.get("/api/v1/reports/stats", headers=auth_headers(user))

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "INTERNAL_ERROR"
    assert "data" not in body
