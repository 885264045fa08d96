"""Membership reconciler: keeps workspace roles in step with the external group.

A pass fetches the group's roles and its full member list once, derives the
desired internal role for every tracked member from the role mapping and
applies the difference one user at a time. Every write is conditional on a
change, so a pass over unchanged external state writes nothing.

Rules that hold for every pass:

* manually added assignments are never removed;
* the workspace admin flag is never cleared here;
* owner roles and conflicted external roles leave their holders untouched.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster.clients.membership_source import (
    GroupMember,
    MembershipSourceClient,
    RoleCatalogue,
)
from roster.exceptions import (
    ConfigurationConflictError,
    IncompleteMembershipError,
    MembershipSourceError,
    PerRecordError,
    WorkspaceBusyError,
    WorkspaceNotFoundError,
)
from roster.locks import RECONCILE, WorkspaceLocks
from roster.logging_config import get_logger
from roster.models import (
    DepartmentMember,
    Rank,
    Role,
    RoleAssignment,
    User,
    Workspace,
    WorkspaceMembership,
)
from roster.schemas import ActivityConfig
from roster.services.notification_sink import ROLE_CHANGED, NotificationSink
from roster.services.owner_migration import (
    OwnerMigrationResult,
    has_owner_roles,
    migrate_owner_roles,
)
from roster.services.permission_cache import PermissionCache
from roster.services.role_mapping import RoleInfo, RoleMapping, build_role_mapping
from roster.utils.datetime_utils import utcnow

logger = get_logger(__name__)


@dataclass
class ReconcileSummary:
    workspace_id: int
    added: int = 0
    removed: int = 0
    users_created: int = 0
    users_updated: int = 0
    memberships_created: int = 0
    ranks_updated: int = 0
    departments_removed: int = 0
    members_seen: int = 0
    skipped: bool = False
    owner_migration: OwnerMigrationResult | None = None
    conflicts: list[ConfigurationConflictError] = field(default_factory=list)
    errors: list[PerRecordError] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return (
            self.added
            + self.removed
            + self.users_created
            + self.users_updated
            + self.memberships_created
            + self.ranks_updated
            + self.departments_removed
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "added": self.added,
            "removed": self.removed,
            "users_created": self.users_created,
            "users_updated": self.users_updated,
            "memberships_created": self.memberships_created,
            "ranks_updated": self.ranks_updated,
            "departments_removed": self.departments_removed,
            "members_seen": self.members_seen,
            "writes": self.writes,
            "skipped": self.skipped,
            "owner_roles_migrated": (
                self.owner_migration.owner_roles_removed if self.owner_migration else 0
            ),
            "conflicts": [c.external_role_id for c in self.conflicts],
            "errors": [e.user_id for e in self.errors],
        }


@dataclass
class _UserChanges:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    user_created: bool = False
    user_updated: bool = False
    membership_created: bool = False
    rank_updated: bool = False
    departments_removed: int = 0

    @property
    def roles_changed(self) -> bool:
        return bool(self.added or self.removed)

    def apply_to(self, summary: ReconcileSummary) -> None:
        summary.added += len(self.added)
        summary.removed += len(self.removed)
        summary.users_created += int(self.user_created)
        summary.users_updated += int(self.user_updated)
        summary.memberships_created += int(self.membership_created)
        summary.ranks_updated += int(self.rank_updated)
        summary.departments_removed += self.departments_removed


@dataclass
class _PassContext:
    workspace_id: int
    min_tracked_rank: int
    roles_by_id: dict[Any, RoleInfo]
    mapping: RoleMapping
    rank_of: dict[int, int]


class MembershipReconciler:
    """Synchronizes role assignments and cached ranks for workspaces."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: MembershipSourceClient,
        permission_cache: PermissionCache | None = None,
        notifier: NotificationSink | None = None,
        locks: WorkspaceLocks | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._permission_cache = permission_cache
        self._notifier = notifier
        self._locks = locks or WorkspaceLocks()

    # ------------------------------------------------------------------
    # Workspace pass
    # ------------------------------------------------------------------

    async def reconcile_workspace(self, workspace_id: int) -> ReconcileSummary:
        """Run one reconciliation pass. A pass already running makes this a no-op."""
        try:
            async with self._locks.hold(RECONCILE, workspace_id):
                return await self._reconcile_locked(workspace_id)
        except WorkspaceBusyError:
            logger.warning("reconcile_skipped_busy", workspace_id=workspace_id)
            return ReconcileSummary(workspace_id=workspace_id, skipped=True)

    async def _reconcile_locked(self, workspace_id: int) -> ReconcileSummary:
        summary = ReconcileSummary(workspace_id=workspace_id)
        config = await self._load_config(workspace_id)

        # Fetched once per pass; a fatal error or a short listing aborts
        # before any write, owner migration included.
        group_roles = await self._fetch_roles(workspace_id)
        listing = await self._client.list_group_members(workspace_id)
        if not listing.complete:
            logger.warning(
                "reconcile_aborted_incomplete_listing",
                workspace_id=workspace_id,
                listing="member",
                skipped_pages=listing.skipped_pages,
            )
            raise IncompleteMembershipError(workspace_id, listing.skipped_pages)

        ctx_roles = await self._load_roles(workspace_id, summary)
        ctx = self._build_context(workspace_id, config, ctx_roles, group_roles)
        summary.conflicts = list(ctx.mapping.conflicts)
        for conflict in ctx.mapping.conflicts:
            logger.warning(
                "role_mapping_conflict",
                workspace_id=workspace_id,
                external_role_id=conflict.external_role_id,
                role_ids=[str(r) for r in conflict.role_ids],
            )

        members = {m.user_id: m for m in listing}
        summary.members_seen = len(members)

        async with self._session_factory() as db:
            holders = set(
                (
                    await db.execute(
                        select(RoleAssignment.user_id).where(
                            RoleAssignment.workspace_id == workspace_id
                        )
                    )
                ).scalars().all()
            )
            cached = set(
                (
                    await db.execute(
                        select(Rank.user_id).where(Rank.workspace_id == workspace_id)
                    )
                ).scalars().all()
            )

        for user_id, member in members.items():
            await self._run_user(ctx, user_id, member, summary)
        for user_id in sorted((holders | cached) - members.keys()):
            await self._run_user(ctx, user_id, None, summary)

        await self._finish(workspace_id, summary)
        return summary

    async def _load_config(self, workspace_id: int) -> ActivityConfig:
        async with self._session_factory() as db:
            workspace = await db.get(Workspace, workspace_id)
            if workspace is None:
                raise WorkspaceNotFoundError(workspace_id)
            return ActivityConfig.from_raw(workspace.activity_config)

    async def _fetch_roles(self, workspace_id: int) -> RoleCatalogue:
        """The group's role catalogue. Without every rank, members would
        read as untracked and lose their synced roles."""
        catalogue = await self._client.list_group_roles(workspace_id)
        if not catalogue.complete:
            logger.warning(
                "reconcile_aborted_incomplete_listing",
                workspace_id=workspace_id,
                listing="role",
                skipped_pages=catalogue.skipped_pages,
            )
            raise IncompleteMembershipError(
                workspace_id, catalogue.skipped_pages, listing="role"
            )
        return catalogue

    async def _load_roles(
        self, workspace_id: int, summary: ReconcileSummary
    ) -> list[RoleInfo]:
        async with self._session_factory() as db:
            if await has_owner_roles(db, workspace_id):
                summary.owner_migration = await migrate_owner_roles(
                    db, workspace_id, self._permission_cache
                )

            roles = (
                await db.execute(select(Role).where(Role.workspace_id == workspace_id))
            ).scalars().all()
            return [RoleInfo.from_row(r) for r in roles]

    @staticmethod
    def _build_context(
        workspace_id: int,
        config: ActivityConfig,
        roles: Iterable[RoleInfo],
        group_roles: RoleCatalogue,
    ) -> _PassContext:
        roles = list(roles)
        return _PassContext(
            workspace_id=workspace_id,
            min_tracked_rank=config.min_tracked_rank,
            roles_by_id={r.id: r for r in roles},
            mapping=build_role_mapping(roles),
            rank_of=group_roles.rank_map(),
        )

    async def _finish(self, workspace_id: int, summary: ReconcileSummary) -> None:
        if summary.writes:
            async with self._session_factory() as db:
                workspace = await db.get(Workspace, workspace_id)
                if workspace is not None:
                    workspace.last_synced_at = utcnow()
                    await db.commit()

        logger.info(
            "reconcile_completed",
            workspace_id=workspace_id,
            added=summary.added,
            removed=summary.removed,
            ranks_updated=summary.ranks_updated,
            writes=summary.writes,
            conflicts=len(summary.conflicts),
            errors=len(summary.errors),
        )

    # ------------------------------------------------------------------
    # Single user
    # ------------------------------------------------------------------

    async def reconcile_user(self, user_id: int) -> list[ReconcileSummary]:
        """Refresh one user's roles in every workspace (e.g. after login)."""
        async with self._session_factory() as db:
            workspace_ids = (
                await db.execute(select(Workspace.id).order_by(Workspace.id))
            ).scalars().all()

        summaries = []
        for workspace_id in workspace_ids:
            summary = ReconcileSummary(workspace_id=workspace_id)
            try:
                async with self._locks.hold(RECONCILE, workspace_id):
                    config = await self._load_config(workspace_id)
                    group_roles = await self._fetch_roles(workspace_id)
                    member = await self._client.get_user_membership(workspace_id, user_id)
                    roles = await self._load_roles(workspace_id, summary)
                    ctx = self._build_context(workspace_id, config, roles, group_roles)
                    summary.conflicts = list(ctx.mapping.conflicts)
                    summary.members_seen = int(member is not None)
                    await self._run_user(ctx, user_id, member, summary)
            except WorkspaceBusyError:
                summary.skipped = True
            except MembershipSourceError as e:
                logger.warning(
                    "reconcile_user_source_failed",
                    workspace_id=workspace_id,
                    user_id=user_id,
                    error_type=e.error_type,
                )
                summary.errors.append(PerRecordError(user_id, e))
            summaries.append(summary)

        logger.info(
            "reconcile_user_completed",
            user_id=user_id,
            workspaces=len(summaries),
            writes=sum(s.writes for s in summaries),
        )
        return summaries

    # ------------------------------------------------------------------
    # Per-user unit of work
    # ------------------------------------------------------------------

    async def _run_user(
        self,
        ctx: _PassContext,
        user_id: int,
        member: GroupMember | None,
        summary: ReconcileSummary,
    ) -> None:
        async with self._session_factory() as db:
            try:
                changes = await self._sync_user(db, ctx, user_id, member)
            except Exception as e:
                await db.rollback()
                summary.errors.append(PerRecordError(user_id, e))
                logger.exception(
                    "reconcile_user_failed",
                    workspace_id=ctx.workspace_id,
                    user_id=user_id,
                )
                return

        changes.apply_to(summary)
        if changes.roles_changed:
            if self._permission_cache is not None:
                self._permission_cache.invalidate(user_id, ctx.workspace_id)
            if self._notifier is not None:
                self._notifier.emit(
                    ROLE_CHANGED,
                    ctx.workspace_id,
                    {"user_id": user_id, "added": changes.added, "removed": changes.removed},
                )

    async def _sync_user(
        self,
        db: AsyncSession,
        ctx: _PassContext,
        user_id: int,
        member: GroupMember | None,
    ) -> _UserChanges:
        changes = _UserChanges()
        workspace_id = ctx.workspace_id

        external_role_id = member.role_id if member is not None else 0
        rank = ctx.rank_of.get(external_role_id, 0) if member is not None else 0
        tracked = member is not None and rank != 0 and rank >= ctx.min_tracked_rank
        conflicted = tracked and external_role_id in ctx.mapping.conflicted_ids
        desired = (
            ctx.mapping.role_for(external_role_id) if tracked and not conflicted else None
        )

        user = await db.get(User, user_id)
        if user is None:
            if not tracked:
                return changes
            db.add(User(id=user_id, username=member.username))
            await db.flush()
            changes.user_created = True
        elif member is not None and member.username and user.username != member.username:
            user.username = member.username
            changes.user_updated = True

        assignments = (
            await db.execute(
                select(RoleAssignment).where(
                    RoleAssignment.workspace_id == workspace_id,
                    RoleAssignment.user_id == user_id,
                )
            )
        ).scalars().all()
        membership = (
            await db.execute(
                select(WorkspaceMembership).where(
                    WorkspaceMembership.workspace_id == workspace_id,
                    WorkspaceMembership.user_id == user_id,
                )
            )
        ).scalar_one_or_none()
        is_admin = membership is not None and membership.is_admin

        held = [(a, ctx.roles_by_id.get(a.role_id)) for a in assignments]
        auto_synced = [
            (a, r)
            for a, r in held
            if r is not None and not a.manually_added and not r.is_owner_role and r.is_synced
        ]

        if desired is not None:
            if not self._keeps_current_roles(held, desired, is_admin):
                await self._replace_synced_roles(db, ctx, user_id, desired, auto_synced, changes)
                if membership is None:
                    db.add(
                        WorkspaceMembership(
                            workspace_id=workspace_id, user_id=user_id, is_admin=False
                        )
                    )
                    changes.membership_created = True
        elif not conflicted and not is_admin and auto_synced:
            for assignment, role in auto_synced:
                await db.delete(assignment)
                changes.removed.append(role.name)
            if len(auto_synced) == len(assignments):
                result = await db.execute(
                    delete(DepartmentMember).where(
                        DepartmentMember.workspace_id == workspace_id,
                        DepartmentMember.user_id == user_id,
                    )
                )
                changes.departments_removed = result.rowcount or 0

        rank_row = (
            await db.execute(
                select(Rank).where(Rank.workspace_id == workspace_id, Rank.user_id == user_id)
            )
        ).scalar_one_or_none()
        if rank_row is None:
            db.add(Rank(user_id=user_id, workspace_id=workspace_id, external_role_id=external_role_id))
            changes.rank_updated = True
        elif rank_row.external_role_id != external_role_id:
            rank_row.external_role_id = external_role_id
            rank_row.updated_at = utcnow()
            changes.rank_updated = True

        await db.commit()

        if changes.roles_changed:
            logger.info(
                "user_roles_reconciled",
                workspace_id=workspace_id,
                user_id=user_id,
                added=changes.added,
                removed=changes.removed,
            )
        return changes

    @staticmethod
    def _keeps_current_roles(
        held: list[tuple[RoleAssignment, RoleInfo | None]],
        desired: RoleInfo,
        is_admin: bool,
    ) -> bool:
        """True when the user's current assignments must be left as they are."""
        for assignment, role in held:
            if assignment.role_id == desired.id:
                return True
            if role is not None and role.is_owner_role:
                return True
            if assignment.manually_added and role is not None and role.is_synced:
                return True
        return is_admin and bool(held)

    @staticmethod
    async def _replace_synced_roles(
        db: AsyncSession,
        ctx: _PassContext,
        user_id: int,
        desired: RoleInfo,
        auto_synced: list[tuple[RoleAssignment, RoleInfo]],
        changes: _UserChanges,
    ) -> None:
        for assignment, role in auto_synced:
            await db.delete(assignment)
            changes.removed.append(role.name)
        db.add(
            RoleAssignment(
                role_id=desired.id,
                user_id=user_id,
                workspace_id=ctx.workspace_id,
                manually_added=False,
            )
        )
        changes.added.append(desired.name)
