"""Reconciliation endpoints and cron triggers."""

from fastapi import APIRouter, Depends, Query, Request

from roster.logging_config import get_logger
from roster.routes.deps import (
    get_reconciler,
    get_reset_service,
    require_admin,
    verify_cron_secret,
)
from roster.schemas import CronRunResponse, ReconcileResponse
from roster.services.membership_reconciler import MembershipReconciler
from roster.services.period_reset import PeriodResetService
from roster.services.permission_cache import CachedPermissions

logger = get_logger(__name__)
router = APIRouter(tags=["sync"])


@router.post("/api/workspaces/{workspace_id}/sync", response_model=ReconcileResponse)
async def sync_workspace(
    workspace_id: int,
    _permissions: CachedPermissions = Depends(require_admin),
    reconciler: MembershipReconciler = Depends(get_reconciler),
):
    """Run a reconciliation pass now and return its summary."""
    summary = await reconciler.reconcile_workspace(workspace_id)
    return ReconcileResponse(**summary.to_dict())


@router.post(
    "/api/cron/update-roles",
    response_model=CronRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_update_roles(
    request: Request,
    workspace_id: int | None = Query(default=None),
    reconciler: MembershipReconciler = Depends(get_reconciler),
):
    """Reconcile one workspace, or run a full cycle (active batch in multi-container mode)."""
    if workspace_id is not None:
        summary = await reconciler.reconcile_workspace(workspace_id)
        return CronRunResponse(processed=1, failed=0, results=[summary.to_dict()])

    outcomes = await request.app.state.scheduler.run_reconcile_cycle()
    return CronRunResponse(
        processed=len(outcomes),
        failed=sum(1 for o in outcomes if not o.success),
        results=[o.to_dict() for o in outcomes],
    )


@router.post(
    "/api/cron/reset-activity",
    response_model=CronRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_reset_activity(
    reset_service: PeriodResetService = Depends(get_reset_service),
):
    """Run every reset schedule that is due now."""
    outcomes = await reset_service.run_scheduled_resets()
    return CronRunResponse(
        processed=len(outcomes),
        failed=sum(1 for o in outcomes if not o.success),
        results=[vars(o) for o in outcomes],
    )
