"""Quota evaluation with pure functions and no I/O.

Numeric quotas compare a metric from UserActivity against the quota's
target. Custom quotas have no target; their state is the most recent
manual completion record for the (quota, user) pair.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from roster.models import QuotaType
from roster.services.activity_aggregator import UserActivity

SESSION_TYPE_ALL = "all"

_SESSION_METRICS = {
    QuotaType.sessions_hosted.value: ("sessions_hosted", "hosted_by_type"),
    QuotaType.sessions_attended.value: ("sessions_attended", "attended_by_type"),
    QuotaType.sessions_logged.value: ("sessions_logged", "logged_by_type"),
}


@dataclass
class QuotaProgress:
    quota_id: Any
    name: str
    type: str
    requirement: int | None
    value: int
    percentage: float
    completed: bool | None = None
    completed_at: datetime | None = None
    completed_by: int | None = None
    notes: str | None = None
    completion_type: str | None = None
    session_type: str | None = None

    @property
    def is_met(self) -> bool:
        if self.type == QuotaType.custom.value:
            return bool(self.completed)
        return self.percentage >= 100

    def to_storage(self) -> dict[str, Any]:
        """JSON-safe form written into ActivityHistory.quota_progress."""
        data: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "requirement": self.requirement,
            "value": self.value,
            "percentage": self.percentage,
        }
        if self.type == QuotaType.custom.value:
            data.update(
                completed=bool(self.completed),
                completed_at=self.completed_at.isoformat() if self.completed_at else None,
                completed_by=self.completed_by,
                notes=self.notes,
            )
        if self.session_type:
            data["session_type"] = self.session_type
        return data


@dataclass
class QuotaReport:
    quotas: list[QuotaProgress] = field(default_factory=list)

    @property
    def meets_quota(self) -> bool:
        return bool(self.quotas) and all(q.is_met for q in self.quotas)

    def by_id(self) -> dict[Any, QuotaProgress]:
        return {q.quota_id: q for q in self.quotas}


def progress_map_to_storage(report: QuotaReport) -> dict[str, dict[str, Any]]:
    return {str(q.quota_id): q.to_storage() for q in report.quotas}


def collect_user_quotas(*quota_groups: Iterable[Any]) -> list[Any]:
    """Merge role and department quotas, keeping the first of each id."""
    seen: set[Any] = set()
    merged = []
    for group in quota_groups:
        for quota in group:
            if quota.id in seen:
                continue
            seen.add(quota.id)
            merged.append(quota)
    return merged


def latest_completions(completions: Iterable[Any]) -> dict[Any, Any]:
    """Most recent completion record per quota id."""
    latest: dict[Any, Any] = {}
    for record in completions:
        current = latest.get(record.quota_id)
        if current is None or _completion_key(record) >= _completion_key(current):
            latest[record.quota_id] = record
    return latest


def _completion_key(record: Any) -> datetime:
    return record.created_at


def metric_value(activity: UserActivity, quota_type: str, session_type: str | None) -> int:
    if quota_type == QuotaType.minutes.value:
        return activity.minutes
    if quota_type == QuotaType.alliance_visits.value:
        return activity.alliance_visits
    if quota_type in _SESSION_METRICS:
        total_attr, by_type_attr = _SESSION_METRICS[quota_type]
        if not session_type or session_type == SESSION_TYPE_ALL:
            return getattr(activity, total_attr)
        return getattr(activity, by_type_attr).get(session_type, 0)
    raise ValueError(f"Unknown quota type: {quota_type}")


def percentage_of(value: int, target: int | None) -> float:
    """Progress in [0, 100]; exactly 100 only when the target is reached."""
    if not target or target <= 0:
        return 100.0 if value >= 0 else 0.0
    if value >= target:
        return 100.0
    pct = max(0.0, 100.0 * value / target)
    # Below target never reads as 100.
    return min(pct, 99.99)


def evaluate_quota(
    activity: UserActivity, quota: Any, completion: Any | None = None
) -> QuotaProgress:
    base = dict(
        quota_id=quota.id,
        name=quota.name,
        type=quota.type,
        requirement=quota.value,
        completion_type=getattr(quota, "completion_type", None),
        session_type=quota.session_type,
    )
    if quota.type == QuotaType.custom.value:
        completed = bool(completion.completed) if completion is not None else False
        return QuotaProgress(
            **base,
            value=int(completed),
            percentage=100.0 if completed else 0.0,
            completed=completed,
            completed_at=completion.completed_at if completion is not None and completed else None,
            completed_by=completion.completed_by if completion is not None and completed else None,
            notes=completion.notes if completion is not None else None,
        )

    value = metric_value(activity, quota.type, quota.session_type)
    return QuotaProgress(**base, value=value, percentage=percentage_of(value, quota.value))


def evaluate_quotas(
    activity: UserActivity,
    quotas: Iterable[Any],
    completions: Iterable[Any] = (),
) -> QuotaReport:
    """Evaluate every quota in scope for one user."""
    latest = latest_completions(completions)
    return QuotaReport(
        quotas=[evaluate_quota(activity, q, latest.get(q.id)) for q in quotas]
    )
