"""Integration tests for the membership reconciler against SQLite."""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select

from roster.exceptions import FatalExternalError, IncompleteMembershipError
from roster.locks import RECONCILE
from roster.models import (
    DepartmentMember,
    Rank,
    RoleAssignment,
    User,
    Workspace,
    WorkspaceMembership,
)
from roster.services.membership_reconciler import MembershipReconciler
from roster.services.notification_sink import ROLE_CHANGED
from tests.factories.workspace_factory import WorkspaceFactory

WS = 1000

# External role id -> rank; 0 is the guest rank.
GROUP_ROLES = [(1, 0, "Guest"), (10, 1, "Member"), (20, 50, "Staff"), (30, 100, "Manager")]


@pytest.fixture
def reconciler(session_factory, membership_source, permission_cache, notifier, locks):
    return MembershipReconciler(
        session_factory,
        membership_source,
        permission_cache=permission_cache,
        notifier=notifier,
        locks=locks,
    )


async def _assignments(session_factory, user_id):
    async with session_factory() as db:
        rows = (
            await db.execute(
                select(RoleAssignment).where(
                    RoleAssignment.workspace_id == WS, RoleAssignment.user_id == user_id
                )
            )
        ).scalars().all()
        return {(r.role_id, r.manually_added) for r in rows}


async def _rank(session_factory, user_id):
    async with session_factory() as db:
        row = (
            await db.execute(
                select(Rank).where(Rank.workspace_id == WS, Rank.user_id == user_id)
            )
        ).scalar_one_or_none()
        return row.external_role_id if row else None


@pytest_asyncio.fixture
async def roles(db_session):
    f = WorkspaceFactory(db_session, WS)
    await f.workspace({"minTrackedRole": 1})
    staff = await f.role("Staff", [20])
    manager = await f.role("Manager", [30])
    manual = await f.role("Event Team", [])
    await db_session.commit()
    return {"staff": staff, "manager": manager, "manual": manual, "factory": f}


class TestReconcileWorkspace:
    """Tests for MembershipReconciler.reconcile_workspace."""

    @pytest.mark.asyncio
    async def test_assigns_mapped_roles_and_caches_ranks(
        self, reconciler, membership_source, session_factory, roles, notifier
    ):
        membership_source.set_group(WS, [(1, 20), (2, 30), (3, 10), (4, 1)], GROUP_ROLES)

        summary = await reconciler.reconcile_workspace(WS)

        assert summary.added == 2
        assert await _assignments(session_factory, 1) == {(roles["staff"].id, False)}
        assert await _assignments(session_factory, 2) == {(roles["manager"].id, False)}
        # Tracked but unmapped, and below the tracked rank: no role.
        assert await _assignments(session_factory, 3) == set()
        assert await _assignments(session_factory, 4) == set()
        assert await _rank(session_factory, 3) == 10
        assert len(notifier.of_type(ROLE_CHANGED)) == 2

        async with session_factory() as db:
            assert (await db.get(User, 1)).username == "user1"
            membership = (
                await db.execute(
                    select(WorkspaceMembership).where(WorkspaceMembership.user_id == 1)
                )
            ).scalar_one()
            assert membership.is_admin is False
            assert (await db.get(Workspace, WS)).last_synced_at is not None

    @pytest.mark.asyncio
    async def test_second_pass_writes_nothing(
        self, reconciler, membership_source, session_factory, roles, notifier
    ):
        membership_source.set_group(WS, [(1, 20), (2, 30), (3, 10)], GROUP_ROLES)
        await reconciler.reconcile_workspace(WS)
        async with session_factory() as db:
            first_sync = (await db.get(Workspace, WS)).last_synced_at
        events = len(notifier.events)

        summary = await reconciler.reconcile_workspace(WS)

        assert summary.writes == 0
        assert summary.errors == []
        assert len(notifier.events) == events
        async with session_factory() as db:
            assert (await db.get(Workspace, WS)).last_synced_at == first_sync

    @pytest.mark.asyncio
    async def test_promotion_replaces_synced_role(
        self, reconciler, membership_source, session_factory, roles, permission_cache
    ):
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        await reconciler.reconcile_workspace(WS)
        permission_cache.set(1, WS, ["old"], False)

        membership_source.set_group(WS, [(1, 30)], GROUP_ROLES)
        summary = await reconciler.reconcile_workspace(WS)

        assert (summary.added, summary.removed) == (1, 1)
        assert await _assignments(session_factory, 1) == {(roles["manager"].id, False)}
        assert await _rank(session_factory, 1) == 30
        assert permission_cache.get(1, WS) is None

    @pytest.mark.asyncio
    async def test_manual_assignment_survives(
        self, reconciler, membership_source, session_factory, roles, db_session
    ):
        f = roles["factory"]
        await f.user(5)
        await f.assign(roles["manual"], 5, manually_added=True)
        await f.assign(roles["staff"], 5, manually_added=True)
        await db_session.commit()

        # User 5 left the group entirely.
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        await reconciler.reconcile_workspace(WS)

        assert await _assignments(session_factory, 5) == {
            (roles["manual"].id, True),
            (roles["staff"].id, True),
        }
        assert await _rank(session_factory, 5) == 0

    @pytest.mark.asyncio
    async def test_leaving_removes_synced_role_and_departments(
        self, reconciler, membership_source, session_factory, roles, db_session
    ):
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        await reconciler.reconcile_workspace(WS)
        await roles["factory"].department("Support", members=[1])
        await db_session.commit()

        membership_source.set_group(WS, [], GROUP_ROLES)
        summary = await reconciler.reconcile_workspace(WS)

        assert summary.removed == 1
        assert summary.departments_removed == 1
        assert await _assignments(session_factory, 1) == set()
        assert await _rank(session_factory, 1) == 0
        async with session_factory() as db:
            remaining = (
                await db.execute(select(DepartmentMember).where(DepartmentMember.user_id == 1))
            ).scalars().all()
            assert remaining == []
            # Users are never hard-deleted.
            assert await db.get(User, 1) is not None

    @pytest.mark.asyncio
    async def test_admin_keeps_roles_and_flag(
        self, reconciler, membership_source, session_factory, roles, db_session
    ):
        f = roles["factory"]
        await f.user(7)
        await f.member(7, is_admin=True)
        await f.assign(roles["staff"], 7)
        await db_session.commit()

        # Admin dropped to an unmapped rank, then out of the group.
        membership_source.set_group(WS, [(7, 10)], GROUP_ROLES)
        await reconciler.reconcile_workspace(WS)
        membership_source.set_group(WS, [], GROUP_ROLES)
        await reconciler.reconcile_workspace(WS)

        assert await _assignments(session_factory, 7) == {(roles["staff"].id, False)}
        async with session_factory() as db:
            membership = (
                await db.execute(
                    select(WorkspaceMembership).where(WorkspaceMembership.user_id == 7)
                )
            ).scalar_one()
            assert membership.is_admin is True

    @pytest.mark.asyncio
    async def test_conflicting_roles_leave_holders_untouched(
        self, reconciler, membership_source, session_factory, roles, db_session
    ):
        f = roles["factory"]
        duplicate = await f.role("Staff (copy)", [20])
        await f.user(8)
        await f.assign(roles["manager"], 8)
        await db_session.commit()

        membership_source.set_group(WS, [(8, 20), (9, 20)], GROUP_ROLES)
        summary = await reconciler.reconcile_workspace(WS)

        assert [c.external_role_id for c in summary.conflicts] == [20]
        assert set(summary.conflicts[0].role_ids) == {roles["staff"].id, duplicate.id}
        assert await _assignments(session_factory, 8) == {(roles["manager"].id, False)}
        assert await _assignments(session_factory, 9) == set()
        assert await _rank(session_factory, 8) == 20

    @pytest.mark.asyncio
    async def test_incomplete_listing_aborts_before_writes(
        self, reconciler, membership_source, session_factory, roles
    ):
        membership_source.set_group(WS, [(1, 20), (2, 20)], GROUP_ROLES)
        membership_source.incomplete.add(WS)

        with pytest.raises(IncompleteMembershipError):
            await reconciler.reconcile_workspace(WS)

        assert await _assignments(session_factory, 1) == set()
        assert await _rank(session_factory, 1) is None

    @pytest.mark.asyncio
    async def test_incomplete_role_catalogue_keeps_synced_roles(
        self, reconciler, membership_source, session_factory, roles, db_session
    ):
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        await reconciler.reconcile_workspace(WS)
        await roles["factory"].department("Support", members=[1])
        await db_session.commit()
        assert await _assignments(session_factory, 1) == {(roles["staff"].id, False)}

        # Same members, but the role catalogue lost the page holding rank 50.
        membership_source.incomplete_roles.add(WS)
        with pytest.raises(IncompleteMembershipError) as exc_info:
            await reconciler.reconcile_workspace(WS)

        assert exc_info.value.listing == "role"
        assert await _assignments(session_factory, 1) == {(roles["staff"].id, False)}
        assert await _rank(session_factory, 1) == 20
        async with session_factory() as db:
            departments = (
                await db.execute(select(DepartmentMember).where(DepartmentMember.user_id == 1))
            ).scalars().all()
            assert len(departments) == 1

    @pytest.mark.asyncio
    async def test_incomplete_role_catalogue_skips_owner_migration(
        self, reconciler, membership_source, session_factory, roles, db_session
    ):
        await roles["factory"].user(1)
        owner = await roles["factory"].role("Owner", [255], is_owner_role=True)
        await roles["factory"].assign(owner, 1)
        await db_session.commit()
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        membership_source.incomplete_roles.add(WS)

        with pytest.raises(IncompleteMembershipError):
            await reconciler.reconcile_workspace(WS)

        assert await _assignments(session_factory, 1) == {(owner.id, False)}
        assert ("list_group_members", WS) not in membership_source.calls

    @pytest.mark.asyncio
    async def test_fatal_source_error_aborts_pass(
        self, reconciler, membership_source, session_factory, roles
    ):
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        membership_source.errors[WS] = FatalExternalError("HTTP 401", 401)

        with pytest.raises(FatalExternalError):
            await reconciler.reconcile_workspace(WS)
        assert await _rank(session_factory, 1) is None

    @pytest.mark.asyncio
    async def test_busy_workspace_is_skipped(
        self, reconciler, membership_source, roles, locks
    ):
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        async with locks.hold(RECONCILE, WS):
            summary = await reconciler.reconcile_workspace(WS)

        assert summary.skipped
        assert membership_source.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_passes_run_once(
        self, reconciler, membership_source, roles
    ):
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)

        first, second = await asyncio.gather(
            reconciler.reconcile_workspace(WS),
            reconciler.reconcile_workspace(WS),
        )

        assert sorted([first.skipped, second.skipped]) == [False, True]
        assert membership_source.calls.count(("list_group_members", WS)) == 1

    @pytest.mark.asyncio
    async def test_per_user_failure_is_isolated(
        self, reconciler, membership_source, session_factory, roles, monkeypatch
    ):
        membership_source.set_group(WS, [(1, 20), (2, 30)], GROUP_ROLES)
        original = reconciler._sync_user

        async def flaky(db, ctx, user_id, member):
            if user_id == 1:
                raise RuntimeError("row lock")
            return await original(db, ctx, user_id, member)

        monkeypatch.setattr(reconciler, "_sync_user", flaky)
        summary = await reconciler.reconcile_workspace(WS)

        assert [e.user_id for e in summary.errors] == [1]
        assert await _assignments(session_factory, 1) == set()
        assert await _assignments(session_factory, 2) == {(roles["manager"].id, False)}


class TestReconcileUser:
    """Tests for MembershipReconciler.reconcile_user."""

    @pytest.mark.asyncio
    async def test_refreshes_every_workspace(
        self, reconciler, membership_source, session_factory, roles, db_session
    ):
        other = WorkspaceFactory(db_session, 2000)
        await other.workspace()
        other_staff = await other.role("Crew", [20])
        await db_session.commit()

        membership_source.set_group(WS, [(1, 30)], GROUP_ROLES)
        membership_source.set_group(2000, [(1, 20)], GROUP_ROLES)

        summaries = await reconciler.reconcile_user(1)

        assert [s.workspace_id for s in summaries] == [WS, 2000]
        assert await _assignments(session_factory, 1) == {(roles["manager"].id, False)}
        async with session_factory() as db:
            crew = (
                await db.execute(
                    select(RoleAssignment).where(RoleAssignment.workspace_id == 2000)
                )
            ).scalar_one()
            assert crew.role_id == other_staff.id

    @pytest.mark.asyncio
    async def test_source_failure_in_one_workspace_is_recorded(
        self, reconciler, membership_source, roles, db_session
    ):
        await WorkspaceFactory(db_session, 2000).workspace()
        await db_session.commit()
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        membership_source.errors[2000] = FatalExternalError("HTTP 403", 403)

        summaries = await reconciler.reconcile_user(1)

        by_id = {s.workspace_id: s for s in summaries}
        assert by_id[WS].added == 1
        assert [e.user_id for e in by_id[2000].errors] == [1]

    @pytest.mark.asyncio
    async def test_incomplete_role_catalogue_is_recorded_without_writes(
        self, reconciler, membership_source, session_factory, roles, permission_cache
    ):
        membership_source.set_group(WS, [(1, 20)], GROUP_ROLES)
        await reconciler.reconcile_user(1)
        permission_cache.set(1, WS, ["view_activity"], False)

        membership_source.incomplete_roles.add(WS)
        summaries = await reconciler.reconcile_user(1)

        assert summaries[0].writes == 0
        assert [e.user_id for e in summaries[0].errors] == [1]
        assert await _assignments(session_factory, 1) == {(roles["staff"].id, False)}
        assert permission_cache.get(1, WS) is not None
