"""Quota lookup, evaluation for one user, and custom-quota completion records."""

from collections import defaultdict
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roster.exceptions import (
    PermissionDeniedError,
    QuotaCompletionError,
    QuotaNotFoundError,
    WorkspaceNotFoundError,
)
from roster.logging_config import get_logger
from roster.models import (
    CompletionType,
    DepartmentMember,
    Quota,
    QuotaCompletion,
    QuotaDepartment,
    QuotaRole,
    QuotaType,
    RoleAssignment,
    Workspace,
)
from roster.schemas import ActivityConfig
from roster.services.activity_aggregator import (
    ActivityAggregator,
    UserActivity,
    period_start_for,
)
from roster.services.notification_sink import (
    QUOTA_COMPLETED,
    QUOTA_EVALUATED,
    NotificationSink,
)
from roster.services.permission_cache import CachedPermissions
from roster.services.quota_evaluator import (
    QuotaReport,
    collect_user_quotas,
    evaluate_quotas,
    latest_completions,
)
from roster.utils.datetime_utils import utcnow

logger = get_logger(__name__)

SIGNOFF_PERMISSION = "signoff_custom_quotas"


@dataclass
class UserEvaluation:
    user_id: int
    workspace_id: int
    period_start: datetime
    period_end: datetime
    activity: UserActivity
    report: QuotaReport


async def load_quotas_for_users(
    db: AsyncSession, workspace_id: int, user_ids: Collection[int]
) -> dict[int, list[Quota]]:
    """Quotas in scope per user through their roles and departments, deduplicated."""
    if not user_ids:
        return {}
    user_ids = list(user_ids)

    role_rows = (
        await db.execute(
            select(RoleAssignment.user_id, Quota)
            .join(QuotaRole, QuotaRole.role_id == RoleAssignment.role_id)
            .join(Quota, Quota.id == QuotaRole.quota_id)
            .where(
                RoleAssignment.workspace_id == workspace_id,
                RoleAssignment.user_id.in_(user_ids),
                Quota.workspace_id == workspace_id,
            )
            .order_by(Quota.created_at)
        )
    ).all()
    department_rows = (
        await db.execute(
            select(DepartmentMember.user_id, Quota)
            .join(QuotaDepartment, QuotaDepartment.department_id == DepartmentMember.department_id)
            .join(Quota, Quota.id == QuotaDepartment.quota_id)
            .where(
                DepartmentMember.workspace_id == workspace_id,
                DepartmentMember.user_id.in_(user_ids),
                Quota.workspace_id == workspace_id,
            )
            .order_by(Quota.created_at)
        )
    ).all()

    by_role: dict[int, list[Quota]] = defaultdict(list)
    by_department: dict[int, list[Quota]] = defaultdict(list)
    for user_id, quota in role_rows:
        by_role[user_id].append(quota)
    for user_id, quota in department_rows:
        by_department[user_id].append(quota)

    return {
        user_id: collect_user_quotas(by_role[user_id], by_department[user_id])
        for user_id in user_ids
    }


async def load_user_quotas(db: AsyncSession, workspace_id: int, user_id: int) -> list[Quota]:
    quotas = await load_quotas_for_users(db, workspace_id, [user_id])
    return quotas.get(user_id, [])


async def load_completions(
    db: AsyncSession,
    workspace_id: int,
    user_ids: Collection[int],
) -> dict[int, list[QuotaCompletion]]:
    """Open-period (non-archived) completion records per user, oldest first."""
    if not user_ids:
        return {}
    rows = (
        await db.execute(
            select(QuotaCompletion)
            .where(
                QuotaCompletion.workspace_id == workspace_id,
                QuotaCompletion.user_id.in_(list(user_ids)),
                QuotaCompletion.archived.is_(False),
            )
            .order_by(QuotaCompletion.created_at)
        )
    ).scalars().all()
    grouped: dict[int, list[QuotaCompletion]] = defaultdict(list)
    for row in rows:
        grouped[row.user_id].append(row)
    return dict(grouped)


async def get_workspace_config(db: AsyncSession, workspace_id: int) -> ActivityConfig:
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)
    return ActivityConfig.from_raw(workspace.activity_config)


async def evaluate_user(
    db: AsyncSession,
    aggregator: ActivityAggregator,
    workspace_id: int,
    user_id: int,
    now: datetime | None = None,
    notifier: NotificationSink | None = None,
) -> UserEvaluation:
    """Activity and quota report for one user over the open period."""
    config = await get_workspace_config(db, workspace_id)
    period_start = await period_start_for(db, workspace_id)
    period_end = now or utcnow()

    activity = await aggregator.aggregate(
        workspace_id,
        period_start=period_start,
        period_end=period_end,
        user_ids=[user_id],
        idle_tracking_enabled=config.idle_tracking_enabled,
    )
    quotas = await load_user_quotas(db, workspace_id, user_id)
    completions = await load_completions(db, workspace_id, [user_id])
    report = evaluate_quotas(activity[user_id], quotas, completions.get(user_id, []))

    if notifier is not None and quotas:
        notifier.emit(
            QUOTA_EVALUATED,
            workspace_id,
            {
                "user_id": user_id,
                "meets_quota": report.meets_quota,
                "quotas": {str(q.quota_id): q.percentage for q in report.quotas},
            },
        )

    return UserEvaluation(
        user_id=user_id,
        workspace_id=workspace_id,
        period_start=period_start,
        period_end=period_end,
        activity=activity[user_id],
        report=report,
    )


# ---------------------------------------------------------------------------
# Custom quota completion
# ---------------------------------------------------------------------------


async def _get_custom_quota(db: AsyncSession, workspace_id: int, quota_id: UUID) -> Quota:
    quota = await db.get(Quota, quota_id)
    if quota is None or quota.workspace_id != workspace_id:
        raise QuotaNotFoundError(quota_id)
    if quota.type != QuotaType.custom.value:
        raise QuotaCompletionError("Only custom quotas can be completed manually")
    return quota


async def _ensure_in_scope(
    db: AsyncSession, workspace_id: int, quota: Quota, user_id: int
) -> None:
    quotas = await load_user_quotas(db, workspace_id, user_id)
    if not any(q.id == quota.id for q in quotas):
        raise QuotaCompletionError("This quota is not assigned to the user")


async def _append_completion(
    db: AsyncSession,
    quota: Quota,
    user_id: int,
    completed: bool,
    actor_id: int,
    notes: str | None,
    notifier: NotificationSink | None,
) -> QuotaCompletion:
    now = utcnow()
    record = QuotaCompletion(
        quota_id=quota.id,
        user_id=user_id,
        workspace_id=quota.workspace_id,
        completed=completed,
        completed_at=now if completed else None,
        completed_by=actor_id if completed else None,
        notes=notes if completed else None,
        created_at=now,
    )
    db.add(record)
    await db.commit()

    logger.info(
        "quota_completion_recorded",
        workspace_id=quota.workspace_id,
        quota_id=str(quota.id),
        user_id=user_id,
        actor_id=actor_id,
        completed=completed,
    )
    if notifier is not None:
        notifier.emit(
            QUOTA_COMPLETED,
            quota.workspace_id,
            {
                "quota_id": str(quota.id),
                "user_id": user_id,
                "completed": completed,
                "actor_id": actor_id,
            },
        )
    return record


async def complete_quota(
    db: AsyncSession,
    workspace_id: int,
    quota_id: UUID,
    user_id: int,
    notes: str | None = None,
    notifier: NotificationSink | None = None,
) -> QuotaCompletion:
    """Self-completion of a ``user_complete`` custom quota."""
    quota = await _get_custom_quota(db, workspace_id, quota_id)
    if quota.completion_type != CompletionType.user_complete.value:
        raise QuotaCompletionError("This quota requires manager sign-off")
    await _ensure_in_scope(db, workspace_id, quota, user_id)
    return await _append_completion(db, quota, user_id, True, user_id, notes, notifier)


async def sign_off_quota(
    db: AsyncSession,
    workspace_id: int,
    quota_id: UUID,
    target_user_id: int,
    manager_id: int,
    notes: str | None = None,
    notifier: NotificationSink | None = None,
) -> QuotaCompletion:
    """Manager sign-off of a ``manager_signoff`` custom quota."""
    quota = await _get_custom_quota(db, workspace_id, quota_id)
    if quota.completion_type != CompletionType.manager_signoff.value:
        raise QuotaCompletionError("This quota does not require manager sign-off")
    await _ensure_in_scope(db, workspace_id, quota, target_user_id)
    return await _append_completion(
        db, quota, target_user_id, True, manager_id, notes, notifier
    )


def can_uncomplete(
    permissions: CachedPermissions, actor_id: int, target_user_id: int, quota: Any
) -> bool:
    if permissions.is_admin:
        return True
    if quota.completion_type == CompletionType.user_complete.value:
        return actor_id == target_user_id
    if quota.completion_type == CompletionType.manager_signoff.value:
        return SIGNOFF_PERMISSION in permissions.permissions
    return False


async def uncomplete_quota(
    db: AsyncSession,
    workspace_id: int,
    quota_id: UUID,
    target_user_id: int,
    actor_id: int,
    permissions: CachedPermissions,
    notifier: NotificationSink | None = None,
) -> QuotaCompletion:
    """Append a ``completed=False`` record; earlier records are kept."""
    quota = await _get_custom_quota(db, workspace_id, quota_id)
    completions = await load_completions(db, workspace_id, [target_user_id])
    latest = latest_completions(completions.get(target_user_id, [])).get(quota.id)
    if latest is None:
        raise QuotaCompletionError("Completion record not found")
    if not can_uncomplete(permissions, actor_id, target_user_id, quota):
        raise PermissionDeniedError("You do not have permission to uncomplete this quota")
    return await _append_completion(
        db, quota, target_user_id, False, actor_id, None, notifier
    )
