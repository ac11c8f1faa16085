from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import distinct, func
from sqlalchemy.orm import Session

from eoty_library import models
from eoty_library.core.config import settings


COVERAGE_TARGET = 0.80


@dataclass(frozen=True)
class CoverageSnapshot:
    audience_size: int
    active_users: int
    resources_with_usage: int
    coverage_ratio: float
    meets_target: bool
    window_days: int


@dataclass(frozen=True)
class UsageRow:
    resource_id: int | None
    user_id: str
    action: models.UsageAction
    count: int


def record(
    db: Session,
    *,
    user_id: str,
    action: models.UsageAction,
    resource_id: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> models.UsageEvent:
    event = models.UsageEvent(
        user_id=user_id,
        resource_id=resource_id,
        action=action,
        event_metadata=metadata or {},
        created_at=models.utc_now(),
    )
    db.add(event)
    return event


def distinct_user_count(db: Session) -> int:
    return int(db.query(func.count(distinct(models.UsageEvent.user_id))).scalar() or 0)


def coverage_statistics(
    db: Session,
    *,
    audience_size: int,
    now: datetime | None = None,
    window_days: int | None = None,
) -> CoverageSnapshot:
    days = window_days or settings.COVERAGE_WINDOW_DAYS
    since = (now or models.utc_now()) - timedelta(days=days)
    views = db.query(models.UsageEvent).filter(
        models.UsageEvent.action == models.UsageAction.view,
        models.UsageEvent.created_at >= since,
    )
    active_users = int(
        views.with_entities(func.count(distinct(models.UsageEvent.user_id))).scalar() or 0
    )
    resources_with_usage = int(
        views.with_entities(func.count(distinct(models.UsageEvent.resource_id))).scalar() or 0
    )

    ratio = active_users / audience_size if audience_size > 0 else 0.0
    return CoverageSnapshot(
        audience_size=audience_size,
        active_users=active_users,
        resources_with_usage=resources_with_usage,
        coverage_ratio=round(ratio, 4),
        meets_target=ratio >= COVERAGE_TARGET,
        window_days=days,
    )


def usage_report(
    db: Session,
    *,
    since: datetime,
    until: datetime,
    action: models.UsageAction | None = None,
    row_cap: int | None = None,
) -> tuple[list[UsageRow], bool]:
    """Event counts grouped by resource, user and action over ``[since, until]``.

    Returns the rows and whether the result was cut at the row cap.
    """
    cap = min(row_cap or settings.USAGE_REPORT_ROW_CAP, settings.USAGE_REPORT_ROW_CAP)
    event = models.UsageEvent
    count = func.count(event.id).label("count")
    query = db.query(event.resource_id, event.user_id, event.action, count).filter(
        event.created_at >= since,
        event.created_at <= until,
    )
    if action is not None:
        query = query.filter(event.action == action)

    rows = (
        query.group_by(event.resource_id, event.user_id, event.action)
        .order_by(count.desc(), event.resource_id.asc(), event.user_id.asc())
        .limit(cap + 1)
        .all()
    )
    truncated = len(rows) > cap
    return (
        [
            UsageRow(resource_id=row[0], user_id=row[1], action=row[2], count=int(row[3]))
            for row in rows[:cap]
        ],
        truncated,
    )
