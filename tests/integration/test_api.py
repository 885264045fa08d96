"""Integration tests for the HTTP routes against SQLite."""

from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from roster.config import get_settings
from roster.database import get_db
from roster.locks import RESET
from roster.main import app, build_services
from roster.models import Workspace
from roster.services.quota_service import SIGNOFF_PERMISSION
from roster.utils.datetime_utils import utcnow
from tests.factories.workspace_factory import WorkspaceFactory

WS = 1000
BASE = f"/api/workspaces/{WS}"

GROUP_ROLES = [(1, 0, "Guest"), (20, 50, "Staff"), (30, 100, "Manager")]


def as_user(user_id: int) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}


def as_service() -> dict[str, str]:
    return {"X-Service-Key": get_settings().service_key}


def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": get_settings().cron_secret}


@pytest_asyncio.fixture
async def client(session_factory, membership_source, notifier):
    """HTTP client for the application with services bound to the test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    build_services(app, session_factory, None, membership_source)
    app.state.notifier = notifier
    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def workspace(db_session):
    """Admin 1, staff 2 with activity, manager 3 with sign-off rights, outsider 99."""
    f = WorkspaceFactory(db_session, WS)
    await f.workspace()
    for user_id, name in ((1, "alice"), (2, "bob"), (3, "carol"), (99, "mallory")):
        await f.user(user_id, name)
    await f.member(1, is_admin=True)
    await f.member(2)
    await f.member(3)
    staff = await f.role("Staff", [20], permissions=["view_activity"])
    manager = await f.role(
        "Manager", [30], permissions=["view_members", "reset_activity", SIGNOFF_PERMISSION]
    )
    await f.assign(staff, 2)
    await f.assign(manager, 3)
    await f.rank(2, 20)
    await f.rank(3, 30)

    self_quota = await f.quota("Read handbook", "custom", roles=[staff], completion_type="user_complete")
    signoff_quota = await f.quota(
        "Shadow a shift", "custom", roles=[staff], completion_type="manager_signoff"
    )
    await f.quota("Minutes", "minutes", 60, roles=[staff])

    start = utcnow() - timedelta(hours=3)
    await f.activity(2, start, minutes=45, messages=5)
    await f.activity(3, start + timedelta(minutes=30), minutes=20)
    await db_session.commit()
    return {"self_quota": self_quota, "signoff_quota": signoff_quota}


class TestAccess:
    """Caller identification and membership checks."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

        generated = await client.get("/health")
        assert len(generated.headers["X-Request-ID"]) == 32

    @pytest.mark.asyncio
    async def test_missing_user_is_unauthorized(self, client, workspace):
        response = await client.get(f"{BASE}/activity/users")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_non_member_is_forbidden(self, client, workspace):
        response = await client.get(f"{BASE}/activity/users", headers=as_user(99))
        assert response.status_code == 403
        assert response.json()["error"] == "permission_denied"

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, client, workspace):
        response = await client.get(
            "/api/workspaces/5/activity/users/2", headers=as_service()
        )
        assert response.status_code == 404
        assert response.json()["error"] == "workspace_not_found"


class TestActivityRoutes:
    """Leaderboard, per-user metrics and manual reset."""

    @pytest.mark.asyncio
    async def test_leaderboard(self, client, workspace):
        response = await client.get(f"{BASE}/activity/users", headers=as_user(2))

        assert response.status_code == 200
        body = response.json()
        assert [(r["username"], r["minutes"]) for r in body["top_staff"]] == [
            ("bob", 45),
            ("carol", 20),
        ]
        assert body["active_users"] == []

    @pytest.mark.asyncio
    async def test_leaderboard_rank_filter(self, client, workspace, membership_source, db_session):
        ws = await db_session.get(Workspace, WS)
        ws.activity_config = {"leaderboardRole": 100}
        await db_session.commit()
        membership_source.set_group(WS, [(2, 20), (3, 30)], GROUP_ROLES)

        filtered = await client.get(f"{BASE}/activity/users", headers=as_user(2))
        assert [r["username"] for r in filtered.json()["top_staff"]] == ["carol"]

        # Without the full catalogue nobody is hidden.
        membership_source.incomplete_roles.add(WS)
        unfiltered = await client.get(f"{BASE}/activity/users", headers=as_user(2))
        assert unfiltered.status_code == 200
        assert [r["username"] for r in unfiltered.json()["top_staff"]] == ["bob", "carol"]

    @pytest.mark.asyncio
    async def test_own_metrics(self, client, workspace):
        response = await client.get(f"{BASE}/activity/users/2", headers=as_user(2))

        assert response.status_code == 200
        body = response.json()
        assert body["activity"]["minutes"] == 45
        assert body["activity"]["messages"] == 5
        quotas = {q["name"]: q for q in body["quotas"]["quotas"]}
        assert quotas["Minutes"]["percentage"] == 75.0
        assert body["quotas"]["meets_quota"] is False

    @pytest.mark.asyncio
    async def test_other_users_metrics_need_view_members(self, client, workspace):
        denied = await client.get(f"{BASE}/activity/users/3", headers=as_user(2))
        assert denied.status_code == 403

        allowed = await client.get(f"{BASE}/activity/users/2", headers=as_user(3))
        assert allowed.status_code == 200

        service = await client.get(
            f"{BASE}/activity/users/2", headers=as_service()
        )
        assert service.status_code == 200

    @pytest.mark.asyncio
    async def test_reset_requires_permission(self, client, workspace):
        response = await client.post(f"{BASE}/activity/reset", headers=as_user(2))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_reset(self, client, workspace, notifier):
        response = await client.post(f"{BASE}/activity/reset", headers=as_user(3))

        assert response.status_code == 200
        body = response.json()
        # Bob has activity and quotas, carol has activity; alice has neither.
        assert body["history_rows"] == 2
        assert body["rows_archived"]["activity_sessions"] == 2

        after = await client.get(f"{BASE}/activity/users/2", headers=as_user(2))
        assert after.json()["activity"]["minutes"] == 0

    @pytest.mark.asyncio
    async def test_reset_while_busy_conflicts(self, client, workspace):
        async with app.state.locks.hold(RESET, WS):
            response = await client.post(f"{BASE}/activity/reset", headers=as_user(1))

        assert response.status_code == 409
        assert response.json()["error"] == "workspace_busy"


class TestQuotaRoutes:
    """Own report and custom-quota completion."""

    @pytest.mark.asyncio
    async def test_complete_then_uncomplete(self, client, workspace, notifier):
        quota_id = workspace["self_quota"].id

        done = await client.post(f"{BASE}/quotas/{quota_id}/complete", headers=as_user(2), json={})
        assert done.status_code == 200
        assert done.json()["completed"] is True
        assert done.json()["completed_by"] == 2

        report = await client.get(f"{BASE}/quotas/me", headers=as_user(2))
        progress = {q["name"]: q for q in report.json()["quotas"]}
        assert progress["Read handbook"]["completed"] is True
        assert progress["Read handbook"]["percentage"] == 100.0

        undone = await client.post(
            f"{BASE}/quotas/{quota_id}/uncomplete", headers=as_user(2), json={}
        )
        assert undone.status_code == 200
        assert undone.json()["completed"] is False
        assert len(notifier.of_type("quota_completed")) == 2

    @pytest.mark.asyncio
    async def test_signoff_quota_cannot_be_self_completed(self, client, workspace):
        quota_id = workspace["signoff_quota"].id

        response = await client.post(
            f"{BASE}/quotas/{quota_id}/complete", headers=as_user(2), json={}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "quota_completion_error"

    @pytest.mark.asyncio
    async def test_manager_signoff(self, client, workspace):
        quota_id = workspace["signoff_quota"].id

        denied = await client.post(
            f"{BASE}/quotas/{quota_id}/signoff", headers=as_user(2), json={"user_id": 2}
        )
        assert denied.status_code == 403

        missing_target = await client.post(
            f"{BASE}/quotas/{quota_id}/signoff", headers=as_user(3), json={}
        )
        assert missing_target.status_code == 400

        signed = await client.post(
            f"{BASE}/quotas/{quota_id}/signoff",
            headers=as_user(3),
            json={"user_id": 2, "notes": "Shadowed Friday close"},
        )
        assert signed.status_code == 200
        assert signed.json()["completed_by"] == 3
        assert signed.json()["notes"] == "Shadowed Friday close"

        # The target cannot withdraw a manager sign-off.
        undone = await client.post(
            f"{BASE}/quotas/{quota_id}/uncomplete", headers=as_user(2), json={}
        )
        assert undone.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_quota(self, client, workspace):
        response = await client.post(
            f"{BASE}/quotas/00000000-0000-0000-0000-000000000000/complete",
            headers=as_user(2),
            json={},
        )
        assert response.status_code == 404


class TestSyncRoutes:
    """Manual reconciliation and cron triggers."""

    @pytest.mark.asyncio
    async def test_sync_requires_admin(self, client, workspace, membership_source):
        membership_source.set_group(WS, [(2, 20), (3, 30)], GROUP_ROLES)

        denied = await client.post(f"{BASE}/sync", headers=as_user(2))
        assert denied.status_code == 403

        response = await client.post(f"{BASE}/sync", headers=as_user(1))
        assert response.status_code == 200
        body = response.json()
        assert body["workspace_id"] == WS
        assert body["skipped"] is False
        assert body["errors"] == []

    @pytest.mark.asyncio
    async def test_cron_requires_secret(self, client, workspace):
        missing = await client.post("/api/cron/reset-activity")
        assert missing.status_code == 401

        wrong = await client.post("/api/cron/reset-activity", headers={"X-Cron-Secret": "nope"})
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_cron_reset_with_nothing_due(self, client, workspace):
        response = await client.post(
            "/api/cron/reset-activity", headers=cron_headers()
        )
        assert response.status_code == 200
        assert response.json() == {"processed": 0, "failed": 0, "results": []}

    @pytest.mark.asyncio
    async def test_cron_update_roles_for_one_workspace(self, client, workspace, membership_source):
        membership_source.set_group(WS, [(2, 20), (3, 30)], GROUP_ROLES)

        response = await client.post(
            "/api/cron/update-roles",
            params={"workspace_id": WS},
            headers=cron_headers(),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 1
        assert body["results"][0]["workspace_id"] == WS
