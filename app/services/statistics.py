"""
Statistics Service

Dashboard aggregates over the report table: status counts, distributions,
monthly trend, resolution performance and contributor rankings.

Every aggregate is computed for a scope: ``global`` (all reports) or
``personal`` (one owner's reports). Counts always add up to the scope's
total. A failed query surfaces as a single InternalError.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InternalError, ValidationError
from app.models.database import (
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

logger = structlog.get_logger(__name__)

UNKNOWN_BUCKET = "unknown"

COUNT_KEYS = {
    ReportStatus.PENDING: "pending",
    ReportStatus.IN_PROGRESS: "inProgress",
    ReportStatus.DONE: "done",
    ReportStatus.REJECTED: "rejected",
}

DIMENSIONS = {
    "category": (Report.category, ReportCategory),
    "status": (Report.status, ReportStatus),
    "priority": (Report.priority, PriorityLevel),
}

OPEN_STATUSES = (ReportStatus.PENDING, ReportStatus.IN_PROGRESS)
URGENT_PRIORITIES = (PriorityLevel.HIGH, PriorityLevel.CRITICAL)


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


# =============================================================================
# Scope
# =============================================================================

@dataclass(frozen=True)
class StatsScope:
    """Which reports an aggregate covers. ``owner_id=None`` means all of them."""

    owner_id: Optional[uuid.UUID] = None

    @property
    def name(self) -> str:
        return "global" if self.owner_id is None else "personal"

    @classmethod
    def global_(cls) -> "StatsScope":
        return cls()

    @classmethod
    def personal(cls, user: User) -> "StatsScope":
        return cls(owner_id=user.id)

    @classmethod
    def for_actor(cls, actor: User, requested: Optional[str] = None) -> "StatsScope":
        """Admins get the requested scope (global by default); users always get personal."""
        if requested not in (None, "global", "personal"):
            raise ValidationError(f"Invalid scope '{requested}'", field="scope")
        if actor.role != UserRole.ADMIN or requested == "personal":
            return cls.personal(actor)
        return cls.global_()

    def apply(self, stmt):
        if self.owner_id is not None:
            stmt = stmt.where(Report.owner_id == self.owner_id)
        return stmt


# =============================================================================
# Service
# =============================================================================

class StatisticsService:
    """Aggregate queries bound to one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _execute(self, stmt, aggregate: str):
        try:
            return await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Statistics query failed", aggregate=aggregate, error=str(e))
            raise InternalError(f"Failed to compute {aggregate}")

    # -------------------------------------------------------------------------
    # Counts and Distributions
    # -------------------------------------------------------------------------

    async def compute_counts(self, scope: StatsScope) -> Dict[str, int]:
        """Per-status counts plus their total."""
        stmt = scope.apply(select(Report.status, func.count(Report.id)).group_by(Report.status))
        result = await self._execute(stmt, "report counts")

        counts = {key: 0 for key in COUNT_KEYS.values()}
        for status_value, count in result.all():
            counts[COUNT_KEYS[ReportStatus(status_value)]] = count

        return {"total": sum(counts.values()), **counts}

    async def compute_distribution(self, dimension: str, scope: StatsScope) -> Dict[str, int]:
        """Count per enum value of ``dimension``; unset values land in ``unknown``."""
        if dimension not in DIMENSIONS:
            raise ValidationError(
                f"Invalid dimension '{dimension}'",
                field="dimension",
                details={"field": "dimension", "allowed": sorted(DIMENSIONS)},
            )
        column, enum_cls = DIMENSIONS[dimension]

        stmt = scope.apply(select(column, func.count(Report.id)).group_by(column))
        result = await self._execute(stmt, f"{dimension} distribution")

        distribution = {member.value: 0 for member in enum_cls}
        distribution[UNKNOWN_BUCKET] = 0
        for value, count in result.all():
            key = enum_cls(value).value if value is not None else UNKNOWN_BUCKET
            distribution[key] += count

        return distribution

    async def compute_monthly_trend(
        self,
        scope: StatsScope,
        months: int = 6,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Report counts for the trailing calendar months, oldest first.

        Always returns exactly ``months`` entries labelled ``M/YYYY``; the
        current month is the last one and empty months count as zero.
        """
        if months < 1:
            raise ValidationError("months must be at least 1", field="months")

        now = as_utc(now) or utcnow()
        buckets = []
        year, month = now.year, now.month
        for _ in range(months):
            buckets.append((year, month))
            year, month = (year - 1, 12) if month == 1 else (year, month - 1)
        buckets.reverse()

        start_year, start_month = buckets[0]
        start = now.replace(year=start_year, month=start_month, day=1, hour=0, minute=0, second=0, microsecond=0)

        stmt = scope.apply(select(Report.created_at).where(Report.created_at >= start))
        result = await self._execute(stmt, "monthly trend")

        counts = {bucket: 0 for bucket in buckets}
        for (created_at,) in result.all():
            created_at = as_utc(created_at)
            key = (created_at.year, created_at.month)
            if key in counts:
                counts[key] += 1

        return [{"label": f"{m}/{y}", "count": counts[(y, m)]} for y, m in buckets]

    # -------------------------------------------------------------------------
    # Performance
    # -------------------------------------------------------------------------

    async def compute_performance(self, scope: StatsScope) -> Dict[str, Any]:
        """Average resolution time in hours and completion rate per category."""
        durations_stmt = scope.apply(
            select(Report.created_at, Report.resolved_at).where(
                Report.status == ReportStatus.DONE,
                Report.resolved_at.is_not(None),
            )
        )
        durations = await self._execute(durations_stmt, "resolution time")

        hours = [
            (as_utc(resolved_at) - as_utc(created_at)).total_seconds() / 3600
            for created_at, resolved_at in durations.all()
        ]
        avg_resolution_hours = int(round_half_up(sum(hours) / len(hours))) if hours else 0

        per_category_stmt = scope.apply(
            select(
                Report.category,
                func.count(Report.id),
                func.sum(case((Report.status == ReportStatus.DONE, 1), else_=0)),
                func.avg(Report.rating),
            ).group_by(Report.category)
        )
        per_category = await self._execute(per_category_stmt, "category performance")

        rows = {ReportCategory(category): (total, resolved, avg_rating)
                for category, total, resolved, avg_rating in per_category.all()}

        category_performance = []
        for category in ReportCategory:
            total, resolved, avg_rating = rows.get(category, (0, 0, None))
            resolved = int(resolved or 0)
            category_performance.append({
                "name": category.value,
                "completionRate": int(round_half_up(resolved / total * 100)) if total else 0,
                "avgRating": round_half_up(float(avg_rating), 1) if avg_rating is not None else 0,
                "total": total,
                "resolved": resolved,
            })

        return {
            "avgResolutionHours": avg_resolution_hours,
            "categoryPerformance": category_performance,
        }

    async def analytics(self, scope: StatsScope, months: int = 6) -> Dict[str, Any]:
        """Everything the analytics dashboard renders, in one payload."""
        return {
            "scope": scope.name,
            "counts": await self.compute_counts(scope),
            "monthly": await self.compute_monthly_trend(scope, months),
            "category": await self.compute_distribution("category", scope),
            "status": await self.compute_distribution("status", scope),
            "priority": await self.compute_distribution("priority", scope),
            "performance": await self.compute_performance(scope),
        }

    # -------------------------------------------------------------------------
    # Admin Views
    # -------------------------------------------------------------------------

    async def top_contributors(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Users with the most reports; ties go to whoever reported first."""
        report_count = func.count(Report.id).label("report_count")
        first_report = func.min(Report.created_at).label("first_report")

        stmt = (
            select(User.id, User.username, User.email, report_count, first_report)
            .join(Report, Report.owner_id == User.id)
            .group_by(User.id, User.username, User.email)
            .order_by(report_count.desc(), first_report.asc())
            .limit(limit)
        )
        result = await self._execute(stmt, "top contributors")

        return [
            {
                "userId": str(user_id),
                "username": username,
                "email": email,
                "reportCount": count,
            }
            for user_id, username, email, count, _ in result.all()
        ]

    async def user_stats(self) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=settings.ACTIVE_USER_WINDOW_DAYS)

        total_users = await self._execute(select(func.count(User.id)), "user count")
        active_users = await self._execute(
            select(func.count(func.distinct(Report.owner_id))).where(Report.created_at >= since),
            "active users",
        )

        return {
            "totalUsers": total_users.scalar_one(),
            "activeUsers": active_users.scalar_one(),
            "topContributors": await self.top_contributors(),
        }

    async def priority_reports(self, limit: int = 20) -> List[Report]:
        """Open high and critical reports, critical first, newest first."""
        stmt = (
            select(Report)
            .where(Report.status.in_(OPEN_STATUSES), Report.priority.in_(URGENT_PRIORITIES))
            .order_by(
                case((Report.priority == PriorityLevel.CRITICAL, 0), else_=1),
                Report.created_at.desc(),
            )
            .limit(limit)
        )
        result = await self._execute(stmt, "priority reports")
        return list(result.scalars().all())

    async def recent_activity(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest reports and admin comments merged into one feed, newest first."""
        reports = await self._execute(
            select(Report.id, Report.title, Report.category, Report.created_at)
            .order_by(Report.created_at.desc())
            .limit(limit),
            "recent reports",
        )
        comments = await self._execute(
            select(ReportComment.id, ReportComment.report_id, Report.title,
                   ReportComment.comment, ReportComment.admin_name, ReportComment.timestamp)
            .join(Report, Report.id == ReportComment.report_id)
            .order_by(ReportComment.timestamp.desc())
            .limit(limit),
            "recent comments",
        )

        activities = [
            {
                "id": str(report_id),
                "type": "new_report",
                "reportId": str(report_id),
                "title": title,
                "date": as_utc(created_at),
                "details": f"New {ReportCategory(category).value} report submitted",
            }
            for report_id, title, category, created_at in reports.all()
        ]
        for comment_id, report_id, title, text, admin_name, timestamp in comments.all():
            snippet = text[:30] + ("..." if len(text) > 30 else "")
            activities.append({
                "id": str(comment_id),
                "type": "comment",
                "reportId": str(report_id),
                "title": title,
                "date": as_utc(timestamp),
                "details": f'Admin {admin_name} commented: "{snippet}"',
            })

        activities.sort(key=lambda item: item["date"], reverse=True)
        for item in activities:
            item["date"] = item["date"].isoformat()
        return activities[:limit]


__all__ = [
    "StatsScope",
    "StatisticsService",
    "UNKNOWN_BUCKET",
]
