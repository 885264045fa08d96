"""Short-lived memo of (permissions, is_admin) per user and workspace.

The cache is an explicit object created once at startup and handed to the
request layer and to every writer that changes roles or admin status.
Writers invalidate synchronously; the TTL only bounds staleness for
changes made outside the engine.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roster.logging_config import get_logger
from roster.models import Role, RoleAssignment, WorkspaceMembership

logger = get_logger(__name__)


@dataclass(frozen=True)
class CachedPermissions:
    permissions: frozenset[str]
    is_admin: bool
    is_member: bool = True

    def allows(self, permission: str) -> bool:
        return self.is_admin or permission in self.permissions


class PermissionCache:
    """TTL cache keyed by (user_id, workspace_id)."""

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[int, int], tuple[float, CachedPermissions]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, user_id: int, workspace_id: int) -> CachedPermissions | None:
        key = (user_id, workspace_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(
        self,
        user_id: int,
        workspace_id: int,
        permissions: list[str] | frozenset[str],
        is_admin: bool,
        is_member: bool = True,
    ) -> CachedPermissions:
        value = CachedPermissions(frozenset(permissions), is_admin, is_member)
        self._entries[(user_id, workspace_id)] = (self._clock() + self._ttl, value)
        return value

    def invalidate(self, user_id: int, workspace_id: int) -> None:
        self._entries.pop((user_id, workspace_id), None)

    def invalidate_workspace(self, workspace_id: int) -> None:
        for key in [k for k in self._entries if k[1] == workspace_id]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()


async def resolve_permissions(
    db: AsyncSession,
    cache: PermissionCache,
    user_id: int,
    workspace_id: int,
) -> CachedPermissions:
    """Return the caller's permissions, from cache or from the database.

    A membership row is created when the user holds a role in the
    workspace but has none yet.
    """
    cached = cache.get(user_id, workspace_id)
    if cached is not None:
        return cached

    result = await db.execute(
        select(Role.permissions)
        .join(RoleAssignment, RoleAssignment.role_id == Role.id)
        .where(
            RoleAssignment.user_id == user_id,
            Role.workspace_id == workspace_id,
        )
    )
    permissions: set[str] = set()
    has_role = False
    for (role_permissions,) in result.all():
        has_role = True
        permissions.update(role_permissions or [])

    membership = (
        await db.execute(
            select(WorkspaceMembership).where(
                WorkspaceMembership.workspace_id == workspace_id,
                WorkspaceMembership.user_id == user_id,
            )
        )
    ).scalar_one_or_none()

    if membership is None and has_role:
        membership = WorkspaceMembership(
            workspace_id=workspace_id, user_id=user_id, is_admin=False
        )
        db.add(membership)
        await db.commit()
        logger.info("membership_created_lazily", workspace_id=workspace_id, user_id=user_id)

    is_admin = membership.is_admin if membership is not None else False
    return cache.set(
        user_id,
        workspace_id,
        frozenset(permissions),
        is_admin,
        is_member=has_role or membership is not None,
    )
