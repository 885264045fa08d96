"""Pydantic v2 schemas: workspace activity configuration and API payloads."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
RESET_FREQUENCY_DAYS = {"weekly": 7, "biweekly": 14, "monthly": 28}


# ---------------------------------------------------------------------------
# Workspace activity configuration
# ---------------------------------------------------------------------------


class ResetSchedule(BaseModel):
    enabled: bool = False
    day: str = "monday"
    frequency: str = "weekly"

    @field_validator("day")
    @classmethod
    def _normalize_day(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in WEEKDAYS:
            raise ValueError(f"unknown weekday: {v}")
        return v

    @field_validator("frequency")
    @classmethod
    def _check_frequency(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in RESET_FREQUENCY_DAYS:
            raise ValueError(f"unknown frequency: {v}")
        return v

    @property
    def interval_days(self) -> int:
        return RESET_FREQUENCY_DAYS[self.frequency]


class ActivityConfig(BaseModel):
    """Typed view of ``Workspace.activity_config``."""

    model_config = ConfigDict(populate_by_name=True)

    min_tracked_rank: int = Field(default=0, alias="minTrackedRole")
    leaderboard_rank: int | None = Field(default=None, alias="leaderboardRole")
    idle_tracking_enabled: bool = Field(default=True, alias="idleTimeEnabled")
    reset_schedule: ResetSchedule | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | None) -> "ActivityConfig":
        """Parse the stored document; unknown keys are ignored."""
        data = dict(raw or {})
        if "lRole" in data and "leaderboardRole" not in data and "leaderboard_rank" not in data:
            data["leaderboard_rank"] = data.pop("lRole")
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


class UserActivityResponse(BaseModel):
    minutes: int
    idle_minutes: int
    messages: int
    sessions_hosted: int
    sessions_attended: int
    sessions_logged: int
    hosted_by_type: dict[str, int]
    attended_by_type: dict[str, int]
    logged_by_type: dict[str, int]
    alliance_visits: int
    wall_posts: int


class QuotaProgressResponse(BaseModel):
    quota_id: UUID
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


class QuotaReportResponse(BaseModel):
    user_id: int
    workspace_id: int
    period_start: datetime
    period_end: datetime
    meets_quota: bool
    quotas: list[QuotaProgressResponse]


class UserMetricsResponse(BaseModel):
    user_id: int
    workspace_id: int
    period_start: datetime
    period_end: datetime
    activity: UserActivityResponse
    quotas: QuotaReportResponse


class LeaderboardEntry(BaseModel):
    user_id: int
    username: str
    minutes: int
    picture: str | None = None


class OnlineUser(BaseModel):
    user_id: int
    username: str


class LeaderboardResponse(BaseModel):
    workspace_id: int
    period_start: datetime
    top_staff: list[LeaderboardEntry]
    active_users: list[OnlineUser]


# ---------------------------------------------------------------------------
# Quota completion
# ---------------------------------------------------------------------------


class QuotaCompletionRequest(BaseModel):
    user_id: int | None = Field(default=None, description="Target user for sign-off")
    notes: str | None = Field(default=None, max_length=2000)


class QuotaCompletionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quota_id: UUID
    user_id: int
    completed: bool
    completed_at: datetime | None
    completed_by: int | None
    notes: str | None


# ---------------------------------------------------------------------------
# Reset / sync
# ---------------------------------------------------------------------------


class ResetResponse(BaseModel):
    workspace_id: int
    period_start: datetime
    period_end: datetime
    users_archived: int
    history_rows: int
    rows_archived: dict[str, int]


class ScheduledResetResult(BaseModel):
    workspace_id: int
    success: bool
    error: str | None = None


class ReconcileResponse(BaseModel):
    workspace_id: int
    added: int
    removed: int
    users_created: int
    users_updated: int
    memberships_created: int
    ranks_updated: int
    departments_removed: int
    members_seen: int
    writes: int
    skipped: bool
    owner_roles_migrated: int
    conflicts: list[int]
    errors: list[int]


class CronRunResponse(BaseModel):
    processed: int
    failed: int
    results: list[dict[str, Any]] = Field(default_factory=list)
