"""Activity endpoints: leaderboard, per-user metrics and period reset."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from roster.clients.membership_source import MembershipSourceClient
from roster.database import get_db
from roster.exceptions import PermissionDeniedError
from roster.logging_config import get_logger
from roster.routes.deps import (
    Caller,
    get_aggregator,
    get_caller,
    get_membership_client,
    get_notifier,
    get_permissions,
    get_reset_service,
    require_permission,
)
from roster.schemas import (
    LeaderboardEntry,
    LeaderboardResponse,
    OnlineUser,
    QuotaProgressResponse,
    QuotaReportResponse,
    ResetResponse,
    UserActivityResponse,
    UserMetricsResponse,
)
from roster.services.activity_aggregator import ActivityAggregator
from roster.services.notification_sink import NotificationSink
from roster.services.period_reset import PeriodResetService
from roster.services.permission_cache import CachedPermissions
from roster.services.quota_service import UserEvaluation, evaluate_user, get_workspace_config

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workspaces/{workspace_id}", tags=["activity"])

VIEW_MEMBERS = "view_members"
RESET_ACTIVITY = "reset_activity"


def report_response(evaluation: UserEvaluation) -> QuotaReportResponse:
    return QuotaReportResponse(
        user_id=evaluation.user_id,
        workspace_id=evaluation.workspace_id,
        period_start=evaluation.period_start,
        period_end=evaluation.period_end,
        meets_quota=evaluation.report.meets_quota,
        quotas=[QuotaProgressResponse(**vars(q)) for q in evaluation.report.quotas],
    )


@router.get("/activity/users", response_model=LeaderboardResponse)
async def leaderboard(
    workspace_id: int,
    _permissions: CachedPermissions = Depends(get_permissions),
    db: AsyncSession = Depends(get_db),
    aggregator: ActivityAggregator = Depends(get_aggregator),
    client: MembershipSourceClient = Depends(get_membership_client),
):
    """Members ranked by active minutes, plus who is online now."""
    config = await get_workspace_config(db, workspace_id)
    role_ranks = None
    if config.leaderboard_rank is not None:
        roles = await client.list_group_roles(workspace_id)
        if roles.complete:
            role_ranks = roles.rank_map()
        else:
            # Unknown ranks would hide members; show the board unfiltered.
            logger.warning(
                "leaderboard_rank_filter_skipped",
                workspace_id=workspace_id,
                skipped_pages=roles.skipped_pages,
            )

    board = await aggregator.leaderboard(
        workspace_id,
        leaderboard_rank=config.leaderboard_rank,
        role_ranks=role_ranks,
        idle_tracking_enabled=config.idle_tracking_enabled,
    )
    return LeaderboardResponse(
        workspace_id=workspace_id,
        period_start=board.period_start,
        top_staff=[LeaderboardEntry(**vars(row)) for row in board.top_staff],
        active_users=[OnlineUser(user_id=uid, username=name) for uid, name in board.active_users],
    )


@router.get("/activity/users/{user_id}", response_model=UserMetricsResponse)
async def user_metrics(
    workspace_id: int,
    user_id: int,
    caller: Caller = Depends(get_caller),
    permissions: CachedPermissions = Depends(get_permissions),
    db: AsyncSession = Depends(get_db),
    aggregator: ActivityAggregator = Depends(get_aggregator),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Activity metrics and quota report for one user (self, or with view_members)."""
    if caller.user_id != user_id and not permissions.allows(VIEW_MEMBERS):
        raise PermissionDeniedError()

    evaluation = await evaluate_user(db, aggregator, workspace_id, user_id, notifier=notifier)
    return UserMetricsResponse(
        user_id=user_id,
        workspace_id=workspace_id,
        period_start=evaluation.period_start,
        period_end=evaluation.period_end,
        activity=UserActivityResponse(**evaluation.activity.to_dict()),
        quotas=report_response(evaluation),
    )


@router.post("/activity/reset", response_model=ResetResponse)
async def reset_activity(
    workspace_id: int,
    caller: Caller = Depends(get_caller),
    _permissions: CachedPermissions = Depends(require_permission(RESET_ACTIVITY)),
    reset_service: PeriodResetService = Depends(get_reset_service),
):
    """Close the open period now. 409 when a reset is already running."""
    result = await reset_service.reset_workspace(workspace_id, reset_by=caller.user_id)
    return ResetResponse(
        workspace_id=workspace_id,
        period_start=result.period_start,
        period_end=result.period_end,
        users_archived=result.users_archived,
        history_rows=result.history_rows,
        rows_archived=result.rows_archived,
    )
