"""Quota endpoints: own report and custom-quota completion."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from roster.database import get_db
from roster.routes.activity import report_response
from roster.routes.deps import (
    Caller,
    get_aggregator,
    get_caller,
    get_notifier,
    get_permissions,
    require_permission,
)
from roster.schemas import (
    QuotaCompletionRequest,
    QuotaCompletionResponse,
    QuotaReportResponse,
)
from roster.services.activity_aggregator import ActivityAggregator
from roster.services.notification_sink import NotificationSink
from roster.services.permission_cache import CachedPermissions
from roster.services.quota_service import (
    SIGNOFF_PERMISSION,
    complete_quota,
    evaluate_user,
    sign_off_quota,
    uncomplete_quota,
)

router = APIRouter(prefix="/api/workspaces/{workspace_id}/quotas", tags=["quotas"])


def _require_user(caller: Caller) -> int:
    if caller.user_id is None:
        raise HTTPException(status_code=400, detail="A user id is required")
    return caller.user_id


@router.get("/me", response_model=QuotaReportResponse)
async def my_quotas(
    workspace_id: int,
    caller: Caller = Depends(get_caller),
    _permissions: CachedPermissions = Depends(get_permissions),
    db: AsyncSession = Depends(get_db),
    aggregator: ActivityAggregator = Depends(get_aggregator),
    notifier: NotificationSink = Depends(get_notifier),
):
    user_id = _require_user(caller)
    evaluation = await evaluate_user(db, aggregator, workspace_id, user_id, notifier=notifier)
    return report_response(evaluation)


@router.post("/{quota_id}/complete", response_model=QuotaCompletionResponse)
async def complete(
    workspace_id: int,
    quota_id: UUID,
    body: QuotaCompletionRequest,
    caller: Caller = Depends(get_caller),
    _permissions: CachedPermissions = Depends(get_permissions),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Mark a self-completable custom quota as done."""
    user_id = _require_user(caller)
    return await complete_quota(db, workspace_id, quota_id, user_id, body.notes, notifier)


@router.post("/{quota_id}/signoff", response_model=QuotaCompletionResponse)
async def signoff(
    workspace_id: int,
    quota_id: UUID,
    body: QuotaCompletionRequest,
    caller: Caller = Depends(get_caller),
    _permissions: CachedPermissions = Depends(require_permission(SIGNOFF_PERMISSION)),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Manager sign-off of a custom quota for another user."""
    manager_id = _require_user(caller)
    if body.user_id is None:
        raise HTTPException(status_code=400, detail="Target user ID is required")
    return await sign_off_quota(
        db, workspace_id, quota_id, body.user_id, manager_id, body.notes, notifier
    )


@router.post("/{quota_id}/uncomplete", response_model=QuotaCompletionResponse)
async def uncomplete(
    workspace_id: int,
    quota_id: UUID,
    body: QuotaCompletionRequest,
    caller: Caller = Depends(get_caller),
    permissions: CachedPermissions = Depends(get_permissions),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier),
):
    """Withdraw a completion. Defaults to the caller's own record."""
    actor_id = _require_user(caller)
    target_user_id = body.user_id if body.user_id is not None else actor_id
    return await uncomplete_quota(
        db, workspace_id, quota_id, target_user_id, actor_id, permissions, notifier
    )
