"""Activity aggregator: per-user totals over the open period.

Five independent reads (activity sessions, adjustments, scheduled sessions
with their participations, alliance visits, wall posts) are issued
concurrently, each on its own database session, and joined in memory by
user id. Only non-archived rows inside ``[period_start, period_end]`` count.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster.logging_config import get_logger
from roster.models import (
    ActivityAdjustment,
    ActivitySession,
    AllianceVisit,
    PeriodBoundary,
    Rank,
    SessionParticipation,
    StaffSession,
    User,
    WallPost,
)
from roster.services.session_classifier import (
    ParticipationKind,
    classify_participation,
    session_type_of,
)
from roster.utils.datetime_utils import EPOCH, ensure_utc, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class UserActivity:
    minutes: int = 0
    idle_minutes: int = 0
    messages: int = 0
    sessions_hosted: int = 0
    sessions_attended: int = 0
    sessions_logged: int = 0
    hosted_by_type: dict[str, int] = field(default_factory=dict)
    attended_by_type: dict[str, int] = field(default_factory=dict)
    logged_by_type: dict[str, int] = field(default_factory=dict)
    alliance_visits: int = 0
    wall_posts: int = 0

    @property
    def has_activity(self) -> bool:
        return any(
            (
                self.minutes,
                self.idle_minutes,
                self.messages,
                self.sessions_logged,
                self.alliance_visits,
                self.wall_posts,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "minutes": self.minutes,
            "idle_minutes": self.idle_minutes,
            "messages": self.messages,
            "sessions_hosted": self.sessions_hosted,
            "sessions_attended": self.sessions_attended,
            "sessions_logged": self.sessions_logged,
            "hosted_by_type": dict(self.hosted_by_type),
            "attended_by_type": dict(self.attended_by_type),
            "logged_by_type": dict(self.logged_by_type),
            "alliance_visits": self.alliance_visits,
            "wall_posts": self.wall_posts,
        }


@dataclass
class _SessionView:
    id: Any
    owner_id: int | None
    session_type: str | None
    slots: list[Any]


@dataclass
class _ParticipationView:
    user_id: int
    role_id: str | None
    slot: int


@dataclass
class LeaderboardRow:
    user_id: int
    username: str
    minutes: int
    picture: str | None = None


@dataclass
class Leaderboard:
    period_start: datetime
    top_staff: list[LeaderboardRow]
    active_users: list[tuple[int, str]]


async def period_start_for(db: AsyncSession, workspace_id: int) -> datetime:
    """Start of the workspace's open period."""
    last_reset = (
        await db.execute(
            select(func.max(PeriodBoundary.reset_at)).where(
                PeriodBoundary.workspace_id == workspace_id
            )
        )
    ).scalar()
    if last_reset is not None:
        return ensure_utc(last_reset)
    earliest = await earliest_unarchived_activity(db, workspace_id)
    return earliest or EPOCH


async def earliest_unarchived_activity(
    db: AsyncSession, workspace_id: int
) -> datetime | None:
    first_session = (
        await db.execute(
            select(func.min(ActivitySession.start_time)).where(
                ActivitySession.workspace_id == workspace_id,
                ActivitySession.archived.is_(False),
            )
        )
    ).scalar()
    first_adjustment = (
        await db.execute(
            select(func.min(ActivityAdjustment.created_at)).where(
                ActivityAdjustment.workspace_id == workspace_id,
                ActivityAdjustment.archived.is_(False),
            )
        )
    ).scalar()
    candidates = [ensure_utc(d) for d in (first_session, first_adjustment) if d is not None]
    return min(candidates) if candidates else None


class ActivityAggregator:
    """Computes UserActivity for a workspace and period."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def aggregate(
        self,
        workspace_id: int,
        *,
        period_start: datetime,
        period_end: datetime,
        user_ids: Collection[int] | None = None,
        idle_tracking_enabled: bool = True,
        session: AsyncSession | None = None,
    ) -> dict[int, UserActivity]:
        """Aggregate activity per user.

        When ``session`` is given (a reset transaction) the reads run
        sequentially on it so they see the transaction's snapshot.
        """
        users = set(user_ids) if user_ids is not None else None
        fetches: list[Callable[[AsyncSession], Awaitable[Any]]] = [
            lambda db: self._fetch_activity_sessions(db, workspace_id, period_start, period_end, users),
            lambda db: self._fetch_adjustments(db, workspace_id, period_start, period_end, users),
            lambda db: self._fetch_staff_sessions(db, workspace_id, period_start, period_end),
            lambda db: self._fetch_alliance_visits(db, workspace_id, period_start, period_end),
            lambda db: self._fetch_wall_posts(db, workspace_id, period_start, period_end, users),
        ]

        if session is not None:
            results = [await fetch(session) for fetch in fetches]
        else:
            results = await asyncio.gather(*(self._on_own_session(f) for f in fetches))

        activity_rows, adjustments, staff_sessions, visits, wall_posts = results
        totals: dict[int, UserActivity] = defaultdict(UserActivity)
        if users is not None:
            for user_id in users:
                totals[user_id] = UserActivity()

        self._join_activity(totals, activity_rows, adjustments, idle_tracking_enabled)
        self._join_sessions(totals, staff_sessions, users)
        self._join_visits(totals, visits, users)
        for user_id, count in wall_posts:
            totals[user_id].wall_posts = int(count)

        logger.debug(
            "activity_aggregated",
            workspace_id=workspace_id,
            users=len(totals),
            period_start=period_start.isoformat(),
        )
        return dict(totals)

    async def _on_own_session(self, fetch: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as db:
            return await fetch(db)

    # ------------------------------------------------------------------
    # Fetches
    # ------------------------------------------------------------------

    @staticmethod
    async def _fetch_activity_sessions(db, workspace_id, start, end, users):
        query = select(
            ActivitySession.user_id,
            ActivitySession.start_time,
            ActivitySession.end_time,
            ActivitySession.idle_seconds,
            ActivitySession.message_count,
        ).where(
            ActivitySession.workspace_id == workspace_id,
            ActivitySession.archived.is_(False),
            ActivitySession.start_time >= start,
            ActivitySession.start_time <= end,
        )
        if users is not None:
            query = query.where(ActivitySession.user_id.in_(users))
        return (await db.execute(query)).all()

    @staticmethod
    async def _fetch_adjustments(db, workspace_id, start, end, users):
        query = select(ActivityAdjustment.user_id, ActivityAdjustment.minutes).where(
            ActivityAdjustment.workspace_id == workspace_id,
            ActivityAdjustment.archived.is_(False),
            ActivityAdjustment.created_at >= start,
            ActivityAdjustment.created_at <= end,
        )
        if users is not None:
            query = query.where(ActivityAdjustment.user_id.in_(users))
        return (await db.execute(query)).all()

    @staticmethod
    async def _fetch_staff_sessions(db, workspace_id, start, end):
        sessions = (
            await db.execute(
                select(
                    StaffSession.id,
                    StaffSession.owner_id,
                    StaffSession.session_type,
                    StaffSession.slots,
                ).where(
                    StaffSession.workspace_id == workspace_id,
                    StaffSession.archived.is_(False),
                    StaffSession.date >= start,
                    StaffSession.date <= end,
                )
            )
        ).all()
        views = {row.id: _SessionView(row.id, row.owner_id, row.session_type, row.slots or []) for row in sessions}
        if not views:
            return views, []

        participations = (
            await db.execute(
                select(
                    SessionParticipation.session_id,
                    SessionParticipation.user_id,
                    SessionParticipation.role_id,
                    SessionParticipation.slot,
                ).where(
                    SessionParticipation.session_id.in_(list(views)),
                    SessionParticipation.archived.is_(False),
                )
            )
        ).all()
        return views, [
            (row.session_id, _ParticipationView(row.user_id, row.role_id, row.slot))
            for row in participations
        ]

    @staticmethod
    async def _fetch_alliance_visits(db, workspace_id, start, end):
        return (
            await db.execute(
                select(AllianceVisit.host_id, AllianceVisit.participants).where(
                    AllianceVisit.workspace_id == workspace_id,
                    AllianceVisit.time >= start,
                    AllianceVisit.time <= end,
                )
            )
        ).all()

    @staticmethod
    async def _fetch_wall_posts(db, workspace_id, start, end, users):
        query = (
            select(WallPost.author_id, func.count(WallPost.id))
            .where(
                WallPost.workspace_id == workspace_id,
                WallPost.created_at >= start,
                WallPost.created_at <= end,
            )
            .group_by(WallPost.author_id)
        )
        if users is not None:
            query = query.where(WallPost.author_id.in_(users))
        return (await db.execute(query)).all()

    # ------------------------------------------------------------------
    # In-memory join
    # ------------------------------------------------------------------

    @staticmethod
    def _join_activity(totals, activity_rows, adjustments, idle_tracking_enabled) -> None:
        active_seconds: dict[int, float] = defaultdict(float)
        idle_seconds: dict[int, float] = defaultdict(float)

        for row in activity_rows:
            totals[row.user_id].messages += row.message_count or 0
            if row.end_time is None:
                continue
            duration = (ensure_utc(row.end_time) - ensure_utc(row.start_time)).total_seconds()
            idle = float(row.idle_seconds or 0)
            idle_seconds[row.user_id] += idle
            active_seconds[row.user_id] += duration - (idle if idle_tracking_enabled else 0.0)

        for row in adjustments:
            active_seconds[row.user_id] += row.minutes * 60

        for user_id, seconds in active_seconds.items():
            totals[user_id].minutes = round(seconds / 60)
        for user_id, seconds in idle_seconds.items():
            totals[user_id].idle_minutes = round(seconds / 60)

    @staticmethod
    def _join_sessions(totals, staff_sessions, users) -> None:
        views, participations = staff_sessions
        logged: dict[int, set[Any]] = defaultdict(set)
        hosted: dict[int, set[Any]] = defaultdict(set)
        attended: dict[int, set[Any]] = defaultdict(set)

        for view in views.values():
            if view.owner_id is not None:
                hosted[view.owner_id].add(view.id)
                logged[view.owner_id].add(view.id)

        for session_id, participation in participations:
            view = views[session_id]
            kind = classify_participation(participation, view)
            logged[participation.user_id].add(session_id)
            if kind is ParticipationKind.CO_HOST:
                hosted[participation.user_id].add(session_id)

        # A co-host slot outranks a plain slot in the same session.
        for session_id, participation in participations:
            user_id = participation.user_id
            if session_id in hosted[user_id]:
                continue
            attended[user_id].add(session_id)

        for user_id, session_ids in logged.items():
            if users is not None and user_id not in users:
                continue
            activity = totals[user_id]
            activity.sessions_hosted = len(hosted[user_id])
            activity.sessions_attended = len(attended[user_id])
            activity.sessions_logged = len(session_ids)
            activity.hosted_by_type = _count_by_type(hosted[user_id], views)
            activity.attended_by_type = _count_by_type(attended[user_id], views)
            activity.logged_by_type = _count_by_type(session_ids, views)

    @staticmethod
    def _join_visits(totals, visits, users) -> None:
        for host_id, participants in visits:
            involved = {int(p) for p in (participants or [])}
            if host_id is not None:
                involved.add(host_id)
            for user_id in involved:
                if users is not None and user_id not in users:
                    continue
                totals[user_id].alliance_visits += 1

    # ------------------------------------------------------------------
    # Leaderboard
    # ------------------------------------------------------------------

    async def leaderboard(
        self,
        workspace_id: int,
        *,
        leaderboard_rank: int | None = None,
        role_ranks: dict[int, int] | None = None,
        idle_tracking_enabled: bool = True,
        now: datetime | None = None,
    ) -> Leaderboard:
        """Rank group members by active minutes in the open period.

        ``role_ranks`` maps external role ids to rank numbers; it is needed
        only when ``leaderboard_rank`` filters out lower ranks.
        """
        now = now or utcnow()
        async with self._session_factory() as db:
            period_start = await period_start_for(db, workspace_id)
            members = (
                await db.execute(
                    select(User.id, User.username, User.picture, Rank.external_role_id)
                    .join(Rank, Rank.user_id == User.id)
                    .where(Rank.workspace_id == workspace_id, Rank.external_role_id != 0)
                )
            ).all()
            online_ids = (
                await db.execute(
                    select(ActivitySession.user_id)
                    .where(
                        ActivitySession.workspace_id == workspace_id,
                        ActivitySession.archived.is_(False),
                        ActivitySession.end_time.is_(None),
                    )
                    .distinct()
                )
            ).scalars().all()

        if leaderboard_rank is not None and role_ranks is not None:
            members = [
                m
                for m in members
                if role_ranks.get(m.external_role_id) is not None
                and role_ranks[m.external_role_id] >= leaderboard_rank
            ]

        usernames = {m.id: m.username or "Unknown" for m in members}
        activity = await self.aggregate(
            workspace_id,
            period_start=period_start,
            period_end=now,
            user_ids=list(usernames),
            idle_tracking_enabled=idle_tracking_enabled,
        )
        rows = [
            LeaderboardRow(
                user_id=m.id,
                username=usernames[m.id],
                minutes=activity[m.id].minutes,
                picture=m.picture,
            )
            for m in members
        ]
        rows.sort(key=lambda r: (-r.minutes, r.username.lower()))
        active = [(uid, usernames.get(uid, "Unknown")) for uid in sorted(set(online_ids))]
        return Leaderboard(period_start=period_start, top_staff=rows, active_users=active)


def _count_by_type(session_ids: set[Any], views: dict[Any, _SessionView]) -> dict[str, int]:
    counts: dict[str, int] = defaultdict(int)
    for session_id in session_ids:
        counts[session_type_of(views[session_id])] += 1
    return dict(counts)
