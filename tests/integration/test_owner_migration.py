"""Integration tests for the owner-role migration."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from roster.models import (
    QuotaRole,
    Role,
    RoleAssignment,
    WorkspaceMembership,
    WorkspaceMigration,
)
from roster.services.membership_reconciler import MembershipReconciler
from roster.services.owner_migration import (
    DEFAULT_ROLE_NAME,
    OWNER_ROLE_MIGRATION,
    has_owner_roles,
    migrate_owner_roles,
)
from tests.factories.workspace_factory import WorkspaceFactory

WS = 1000
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def _memberships(session_factory):
    async with session_factory() as db:
        rows = (
            await db.execute(
                select(WorkspaceMembership).where(WorkspaceMembership.workspace_id == WS)
            )
        ).scalars().all()
        return {m.user_id: m.is_admin for m in rows}


class TestMigrateOwnerRoles:
    """Tests for migrate_owner_roles."""

    @pytest.mark.asyncio
    async def test_owners_become_admins_on_matching_role(
        self, db_session, session_factory, permission_cache
    ):
        f = WorkspaceFactory(db_session, WS)
        await f.workspace()
        await f.user(1)
        await f.user(2)
        guest = await f.role("Guest", [5], created_at=T0)
        staff = await f.role("Staff", [20], created_at=T0 + timedelta(days=1))
        owner = await f.role("Owner", [255], permissions=["*"], is_owner_role=True)
        await f.assign(owner, 1)
        await f.assign(owner, 2)
        await f.rank(1, 20)
        quota = await f.quota("Owner minutes", "minutes", 60, roles=[owner, staff])
        await db_session.commit()
        permission_cache.set(1, WS, ["*"], False)
        # Every entry in the migrated workspace goes; other workspaces keep theirs.
        permission_cache.set(7, WS, ["view_activity"], False)
        permission_cache.set(1, WS + 1, ["view_activity"], False)

        async with session_factory() as db:
            result = await migrate_owner_roles(db, WS, permission_cache)

        assert result.owner_roles_removed == 1
        assert sorted(result.members_migrated) == [1, 2]
        assert result.default_role_created is False
        assert await _memberships(session_factory) == {1: True, 2: True}
        assert permission_cache.get(1, WS) is None
        assert permission_cache.get(7, WS) is None
        assert permission_cache.get(1, WS + 1) is not None

        async with session_factory() as db:
            assert not await has_owner_roles(db, WS)
            held = dict(
                (
                    await db.execute(
                        select(RoleAssignment.user_id, RoleAssignment.role_id).where(
                            RoleAssignment.workspace_id == WS
                        )
                    )
                ).all()
            )
            # Cached rank 20 picks Staff; no rank falls back to the oldest role.
            assert held == {1: staff.id, 2: guest.id}
            quota_roles = (
                await db.execute(select(QuotaRole.role_id).where(QuotaRole.quota_id == quota.id))
            ).scalars().all()
            assert quota_roles == [staff.id]
            record = (
                await db.execute(
                    select(WorkspaceMigration).where(WorkspaceMigration.workspace_id == WS)
                )
            ).scalar_one()
            assert record.name == OWNER_ROLE_MIGRATION
            assert record.details["owner_roles_removed"] == 1

    @pytest.mark.asyncio
    async def test_creates_default_role_when_none_exists(self, db_session, session_factory):
        f = WorkspaceFactory(db_session, WS)
        await f.workspace()
        await f.user(1)
        await f.member(1)
        owner = await f.role("Owner", [], is_owner_role=True)
        await f.assign(owner, 1)
        await db_session.commit()

        async with session_factory() as db:
            result = await migrate_owner_roles(db, WS)

        assert result.default_role_created
        async with session_factory() as db:
            roles = (await db.execute(select(Role).where(Role.workspace_id == WS))).scalars().all()
            assert [r.name for r in roles] == [DEFAULT_ROLE_NAME]
            assert not roles[0].is_synced
        assert await _memberships(session_factory) == {1: True}

    @pytest.mark.asyncio
    async def test_no_owner_roles_is_noop(self, db_session, session_factory):
        f = WorkspaceFactory(db_session, WS)
        await f.workspace()
        await f.role("Staff", [20])
        await db_session.commit()

        async with session_factory() as db:
            assert await migrate_owner_roles(db, WS) is None
            migrations = (await db.execute(select(WorkspaceMigration))).scalars().all()
            assert migrations == []


class TestMigrationDuringReconcile:
    """The reconciler runs the migration before syncing."""

    @pytest.mark.asyncio
    async def test_reconcile_migrates_then_keeps_admin(
        self, db_session, session_factory, membership_source, locks
    ):
        f = WorkspaceFactory(db_session, WS)
        await f.workspace()
        await f.user(1)
        staff = await f.role("Staff", [20])
        owner = await f.role("Owner", [255], is_owner_role=True)
        await f.assign(owner, 1)
        await db_session.commit()

        # The owner now holds an unmapped external role.
        membership_source.set_group(WS, [(1, 255)], [(20, 50, "Staff"), (255, 255, "Owner")])
        reconciler = MembershipReconciler(session_factory, membership_source, locks=locks)
        summary = await reconciler.reconcile_workspace(WS)

        assert summary.owner_migration is not None
        assert summary.to_dict()["owner_roles_migrated"] == 1
        assert await _memberships(session_factory) == {1: True}
        async with session_factory() as db:
            held = (
                await db.execute(
                    select(RoleAssignment.role_id).where(RoleAssignment.user_id == 1)
                )
            ).scalars().all()
            assert held == [staff.id]

        second = await reconciler.reconcile_workspace(WS)
        assert second.owner_migration is None
        assert second.writes == 0
