"""Period reset: snapshot the open period into history and archive raw rows.

Everything happens in one transaction bounded by a timeout: history rows,
the new period boundary and the archive flags are either all written or
none are. Raw rows are only flagged, never deleted.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster.exceptions import PeriodResetError, WorkspaceNotFoundError
from roster.locks import RESET, WorkspaceLocks
from roster.logging_config import get_logger
from roster.models import (
    ActivityAdjustment,
    ActivityHistory,
    ActivitySession,
    PeriodBoundary,
    QuotaCompletion,
    SessionParticipation,
    StaffSession,
    Workspace,
    WorkspaceMembership,
)
from roster.schemas import WEEKDAYS, ActivityConfig
from roster.services.activity_aggregator import (
    ActivityAggregator,
    earliest_unarchived_activity,
    period_start_for,
)
from roster.services.notification_sink import PERIOD_RESET, NotificationSink
from roster.services.quota_evaluator import evaluate_quotas, progress_map_to_storage
from roster.services.quota_service import load_completions, load_quotas_for_users
from roster.utils.datetime_utils import ensure_utc, start_of_day, utcnow

logger = get_logger(__name__)


@dataclass
class ResetResult:
    workspace_id: int
    period_start: datetime
    period_end: datetime
    users_archived: int = 0
    history_rows: int = 0
    rows_archived: dict[str, int] = field(default_factory=dict)


@dataclass
class ScheduledResetOutcome:
    workspace_id: int
    success: bool
    error: str | None = None


class PeriodResetService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        aggregator: ActivityAggregator,
        locks: WorkspaceLocks | None = None,
        notifier: NotificationSink | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._session_factory = session_factory
        self._aggregator = aggregator
        self._locks = locks or WorkspaceLocks()
        self._notifier = notifier
        self._timeout = timeout_seconds

    async def reset_workspace(
        self,
        workspace_id: int,
        reset_by: int | None = None,
        now: datetime | None = None,
    ) -> ResetResult:
        """Close the open period for a workspace.

        Raises WorkspaceBusyError when a reset is already running and
        PeriodResetError for any other failure, after rolling back.
        """
        now = ensure_utc(now) if now is not None else utcnow()

        async with self._locks.hold(RESET, workspace_id):
            try:
                result = await asyncio.wait_for(
                    self._reset(workspace_id, reset_by, now), timeout=self._timeout
                )
            except WorkspaceNotFoundError:
                raise
            except Exception as e:
                logger.exception(
                    "period_reset_failed",
                    workspace_id=workspace_id,
                    reset_by=reset_by,
                    error_type=type(e).__name__,
                )
                raise PeriodResetError(workspace_id) from e

        logger.info(
            "period_reset_completed",
            workspace_id=workspace_id,
            reset_by=reset_by,
            period_start=result.period_start.isoformat(),
            period_end=result.period_end.isoformat(),
            history_rows=result.history_rows,
            **{f"archived_{k}": v for k, v in result.rows_archived.items()},
        )
        if self._notifier is not None:
            self._notifier.emit(
                PERIOD_RESET,
                workspace_id,
                {
                    "reset_by": reset_by,
                    "period_start": result.period_start.isoformat(),
                    "period_end": result.period_end.isoformat(),
                    "history_rows": result.history_rows,
                },
            )
        return result

    async def _reset(
        self, workspace_id: int, reset_by: int | None, now: datetime
    ) -> ResetResult:
        async with self._session_factory() as db:
            async with db.begin():
                workspace = await db.get(Workspace, workspace_id)
                if workspace is None:
                    raise WorkspaceNotFoundError(workspace_id)
                config = ActivityConfig.from_raw(workspace.activity_config)

                boundary = await earliest_unarchived_activity(db, workspace_id) or now
                boundary = min(boundary, now)
                result = ResetResult(workspace_id, period_start=boundary, period_end=now)

                # Scheduled sessions, visits and wall posts can predate the
                # oldest timed session; they still belong to this period.
                window_start = min(boundary, await period_start_for(db, workspace_id))
                await self._snapshot(db, workspace_id, config, result, window_start)
                db.add(
                    PeriodBoundary(
                        workspace_id=workspace_id,
                        reset_at=now,
                        reset_by=reset_by,
                        previous_period_start=boundary,
                        previous_period_end=now,
                    )
                )
                await db.flush()
                result.rows_archived = await self._archive_rows(db, workspace_id, boundary, now)
        return result

    async def _snapshot(
        self,
        db: AsyncSession,
        workspace_id: int,
        config: ActivityConfig,
        result: ResetResult,
        window_start: datetime,
    ) -> None:
        member_ids = list(
            (
                await db.execute(
                    select(WorkspaceMembership.user_id).where(
                        WorkspaceMembership.workspace_id == workspace_id
                    )
                )
            ).scalars().all()
        )
        result.users_archived = len(member_ids)
        if not member_ids:
            return

        activity = await self._aggregator.aggregate(
            workspace_id,
            period_start=window_start,
            period_end=result.period_end,
            user_ids=member_ids,
            idle_tracking_enabled=config.idle_tracking_enabled,
            session=db,
        )
        quotas = await load_quotas_for_users(db, workspace_id, member_ids)
        completions = await load_completions(db, workspace_id, member_ids)

        for user_id in member_ids:
            user_activity = activity[user_id]
            user_quotas = quotas.get(user_id, [])
            if not user_activity.has_activity and not user_quotas:
                continue
            report = evaluate_quotas(user_activity, user_quotas, completions.get(user_id, []))
            db.add(
                ActivityHistory(
                    workspace_id=workspace_id,
                    user_id=user_id,
                    period_start=result.period_start,
                    period_end=result.period_end,
                    minutes=user_activity.minutes,
                    messages=user_activity.messages,
                    sessions_hosted=user_activity.sessions_hosted,
                    sessions_attended=user_activity.sessions_attended,
                    sessions_logged=user_activity.sessions_logged,
                    idle_minutes=user_activity.idle_minutes,
                    wall_posts=user_activity.wall_posts,
                    alliance_visits=user_activity.alliance_visits,
                    quota_progress=progress_map_to_storage(report),
                )
            )
            result.history_rows += 1

    async def _archive_rows(
        self,
        db: AsyncSession,
        workspace_id: int,
        boundary: datetime,
        now: datetime,
    ) -> dict[str, int]:
        stamp = {"archived": True, "archive_start_date": boundary, "archive_end_date": now}
        counts: dict[str, int] = {}

        past_sessions = select(StaffSession.id).where(
            StaffSession.workspace_id == workspace_id,
            StaffSession.date <= now,
        )
        statements = {
            "session_participations": update(SessionParticipation).where(
                SessionParticipation.session_id.in_(past_sessions),
                SessionParticipation.archived.is_(False),
            ),
            "activity_sessions": update(ActivitySession).where(
                ActivitySession.workspace_id == workspace_id,
                ActivitySession.archived.is_(False),
            ),
            "activity_adjustments": update(ActivityAdjustment).where(
                ActivityAdjustment.workspace_id == workspace_id,
                ActivityAdjustment.archived.is_(False),
            ),
            "sessions": update(StaffSession).where(
                StaffSession.workspace_id == workspace_id,
                StaffSession.date <= now,
                StaffSession.archived.is_(False),
            ),
            "quota_completions": update(QuotaCompletion).where(
                QuotaCompletion.workspace_id == workspace_id,
                QuotaCompletion.archived.is_(False),
            ),
        }
        for name, statement in statements.items():
            outcome = await db.execute(
                statement.values(**stamp).execution_options(synchronize_session=False)
            )
            counts[name] = outcome.rowcount or 0
        return counts

    # ------------------------------------------------------------------
    # Scheduled resets
    # ------------------------------------------------------------------

    async def run_scheduled_resets(
        self, now: datetime | None = None
    ) -> list[ScheduledResetOutcome]:
        """Reset every workspace whose schedule is due. Failures are collected."""
        now = ensure_utc(now) if now is not None else utcnow()
        today = WEEKDAYS[now.weekday()]

        async with self._session_factory() as db:
            workspaces = (
                await db.execute(select(Workspace.id, Workspace.activity_config))
            ).all()

        outcomes: list[ScheduledResetOutcome] = []
        for workspace_id, raw_config in workspaces:
            try:
                if not await self._is_due(workspace_id, raw_config, now, today):
                    continue
                await self.reset_workspace(workspace_id, reset_by=None, now=now)
                outcomes.append(ScheduledResetOutcome(workspace_id, success=True))
            except Exception as e:
                logger.warning(
                    "scheduled_reset_failed",
                    workspace_id=workspace_id,
                    error_type=type(e).__name__,
                )
                outcomes.append(
                    ScheduledResetOutcome(workspace_id, success=False, error=str(e))
                )

        logger.info(
            "scheduled_resets_checked",
            workspaces=len(workspaces),
            reset=sum(1 for o in outcomes if o.success),
            failed=sum(1 for o in outcomes if not o.success),
        )
        return outcomes

    async def _is_due(
        self, workspace_id: int, raw_config, now: datetime, today: str
    ) -> bool:
        schedule = ActivityConfig.from_raw(raw_config).reset_schedule
        if schedule is None or not schedule.enabled or schedule.day != today:
            return False

        async with self._session_factory() as db:
            last_scheduled = (
                await db.execute(
                    select(func.max(PeriodBoundary.reset_at)).where(
                        PeriodBoundary.workspace_id == workspace_id,
                        PeriodBoundary.reset_by.is_(None),
                    )
                )
            ).scalar()
        if last_scheduled is None:
            return True

        last_day = start_of_day(last_scheduled)
        days_since = (start_of_day(now) - last_day).days
        return days_since >= schedule.interval_days
