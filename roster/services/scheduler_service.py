"""Background scheduler for role reconciliation and scheduled resets.

Runs as asyncio tasks during the application lifespan. One loop
reconciles workspaces every ``reconcile_interval_minutes``; the other
checks reset schedules every ``reset_check_interval_minutes``. A failure
in one workspace or one cycle never stops a loop.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster.config import RosterSettings
from roster.logging_config import get_logger
from roster.models import Workspace
from roster.services.membership_reconciler import MembershipReconciler, ReconcileSummary
from roster.services.period_reset import PeriodResetService
from roster.utils.datetime_utils import utcnow

logger = get_logger(__name__)


def current_batch(now: datetime, batch_count: int = 8, window_minutes: int = 15) -> int:
    """Batch whose window contains ``now``; batches are numbered from 1."""
    minutes = now.hour * 60 + now.minute
    cycle_position = minutes % (batch_count * window_minutes)
    return cycle_position // window_minutes + 1


@dataclass
class ReconcileOutcome:
    workspace_id: int
    summary: ReconcileSummary | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        data = {"workspace_id": self.workspace_id, "success": self.success}
        if self.summary is not None:
            data["writes"] = self.summary.writes
            data["skipped"] = self.summary.skipped
        if self.error is not None:
            data["error"] = self.error
        return data


class RosterScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: MembershipReconciler,
        reset_service: PeriodResetService,
        settings: RosterSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._reconciler = reconciler
        self._reset_service = reset_service
        self._settings = settings
        self._sleep = sleep
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def _workspace_ids(self, batch_id: int | None) -> list[int]:
        query = select(Workspace.id).order_by(Workspace.id)
        if batch_id is not None:
            query = query.where(Workspace.batch_id == batch_id)
        async with self._session_factory() as db:
            return list((await db.execute(query)).scalars().all())

    async def _reconcile_one(self, workspace_id: int) -> ReconcileOutcome:
        try:
            summary = await self._reconciler.reconcile_workspace(workspace_id)
            return ReconcileOutcome(workspace_id, summary=summary)
        except Exception as e:
            logger.exception("scheduled_reconcile_failed", workspace_id=workspace_id)
            return ReconcileOutcome(workspace_id, error=type(e).__name__)

    async def run_reconcile_cycle(self, now: datetime | None = None) -> list[ReconcileOutcome]:
        """Reconcile all workspaces, or only the active batch in multi-container mode."""
        settings = self._settings
        if settings.multi_container:
            batch_id = current_batch(
                now or utcnow(), settings.batch_count, settings.batch_window_minutes
            )
            workspace_ids = await self._workspace_ids(batch_id)
            logger.info("reconcile_batch_started", batch_id=batch_id, workspaces=len(workspace_ids))
            outcomes = []
            for index, workspace_id in enumerate(workspace_ids):
                if index:
                    await self._sleep(settings.batch_workspace_delay_seconds)
                outcomes.append(await self._reconcile_one(workspace_id))
            return outcomes

        workspace_ids = await self._workspace_ids(None)
        semaphore = asyncio.Semaphore(max(1, settings.reconcile_concurrency))

        async def bounded(workspace_id: int) -> ReconcileOutcome:
            async with semaphore:
                return await self._reconcile_one(workspace_id)

        outcomes = await asyncio.gather(*(bounded(w) for w in workspace_ids))
        logger.info(
            "reconcile_cycle_complete",
            workspaces=len(outcomes),
            failed=sum(1 for o in outcomes if not o.success),
        )
        return list(outcomes)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _loop(self, name: str, interval_seconds: float, cycle) -> None:
        logger.info("scheduler_started", loop=name, interval_seconds=interval_seconds)
        while not self._stop_event.is_set():
            try:
                await cycle()
            except Exception:
                logger.exception("scheduler_cycle_error", loop=name)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        settings = self._settings
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(
                self._loop(
                    "reconcile",
                    settings.reconcile_interval_minutes * 60,
                    self.run_reconcile_cycle,
                )
            ),
            asyncio.create_task(
                self._loop(
                    "reset",
                    settings.reset_check_interval_minutes * 60,
                    self._reset_service.run_scheduled_resets,
                )
            ),
        ]

    async def stop(self) -> None:
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("scheduler_stopped")
