"""Shared request dependencies: caller identity, service objects, permission checks."""

import secrets
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from roster.clients.membership_source import MembershipSourceClient
from roster.config import get_settings
from roster.database import get_db
from roster.exceptions import PermissionDeniedError
from roster.logging_config import bind_caller
from roster.services.activity_aggregator import ActivityAggregator
from roster.services.membership_reconciler import MembershipReconciler
from roster.services.notification_sink import NotificationSink
from roster.services.period_reset import PeriodResetService
from roster.services.permission_cache import (
    CachedPermissions,
    PermissionCache,
    resolve_permissions,
)

SERVICE_PERMISSIONS = CachedPermissions(frozenset(), is_admin=True, is_member=True)


@dataclass(frozen=True)
class Caller:
    user_id: int | None
    is_service: bool = False


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_service_key: str | None = Header(default=None),
) -> Caller:
    """Identify the caller from headers set by the upstream session layer."""
    service_key = get_settings().service_key
    if x_service_key and service_key and secrets.compare_digest(x_service_key, service_key):
        return Caller(user_id=None, is_service=True)
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user id")
    bind_caller(user_id)
    return Caller(user_id=user_id)


def verify_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    expected = get_settings().cron_secret
    if not expected:
        raise HTTPException(status_code=500, detail="Cron secret not configured")
    if not x_cron_secret or not secrets.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_permission_cache(request: Request) -> PermissionCache:
    return request.app.state.permission_cache


def get_aggregator(request: Request) -> ActivityAggregator:
    return request.app.state.aggregator


def get_reconciler(request: Request) -> MembershipReconciler:
    return request.app.state.reconciler


def get_reset_service(request: Request) -> PeriodResetService:
    return request.app.state.reset_service


def get_notifier(request: Request) -> NotificationSink:
    return request.app.state.notifier


def get_membership_client(request: Request) -> MembershipSourceClient:
    return request.app.state.membership_client


async def get_permissions(
    workspace_id: int,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
) -> CachedPermissions:
    """Caller's permissions in the workspace; non-members are rejected."""
    if caller.is_service:
        return SERVICE_PERMISSIONS
    permissions = await resolve_permissions(db, cache, caller.user_id, workspace_id)
    if not permissions.is_member:
        raise PermissionDeniedError("Not a member of this workspace")
    return permissions


def require_permission(permission: str):
    """Dependency factory: the caller must be an admin or hold ``permission``."""

    async def dependency(
        permissions: CachedPermissions = Depends(get_permissions),
    ) -> CachedPermissions:
        if not permissions.allows(permission):
            raise PermissionDeniedError()
        return permissions

    return dependency


async def require_admin(
    permissions: CachedPermissions = Depends(get_permissions),
) -> CachedPermissions:
    if not permissions.is_admin:
        raise PermissionDeniedError("Admin access required")
    return permissions
