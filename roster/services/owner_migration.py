"""One-time migration of legacy owner roles to the membership admin flag.

Owner roles used to carry administrative rights. The admin flag on the
workspace membership replaces them: owners become admins, are moved to an
ordinary role and the owner role is deleted. The run is recorded so the
migration is visible and never repeated once no owner roles remain.
"""

from dataclasses import dataclass, field

from sqlalchemy import delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from roster.logging_config import get_logger
from roster.models import (
    QuotaRole,
    Rank,
    Role,
    RoleAssignment,
    WorkspaceMembership,
    WorkspaceMigration,
)
from roster.services.permission_cache import PermissionCache
from roster.utils.datetime_utils import utcnow

logger = get_logger(__name__)

OWNER_ROLE_MIGRATION = "0001_owner_role_to_admin_flag"
DEFAULT_ROLE_NAME = "Default"


@dataclass
class OwnerMigrationResult:
    workspace_id: int
    owner_roles_removed: int = 0
    members_migrated: list[int] = field(default_factory=list)
    default_role_created: bool = False


async def has_owner_roles(db: AsyncSession, workspace_id: int) -> bool:
    result = await db.execute(
        select(
            exists().where(Role.workspace_id == workspace_id, Role.is_owner_role.is_(True))
        )
    )
    return bool(result.scalar())


async def _set_admin(db: AsyncSession, workspace_id: int, user_id: int) -> None:
    membership = (
        await db.execute(
            select(WorkspaceMembership).where(
                WorkspaceMembership.workspace_id == workspace_id,
                WorkspaceMembership.user_id == user_id,
            )
        )
    ).scalar_one_or_none()
    if membership is None:
        db.add(WorkspaceMembership(workspace_id=workspace_id, user_id=user_id, is_admin=True))
    elif not membership.is_admin:
        membership.is_admin = True


async def migrate_owner_roles(
    db: AsyncSession,
    workspace_id: int,
    permission_cache: PermissionCache | None = None,
) -> OwnerMigrationResult | None:
    """Convert every owner role in the workspace. Returns None when there are none.

    Commits on success; the caller owns the session.
    """
    owner_roles = (
        await db.execute(
            select(Role).where(
                Role.workspace_id == workspace_id, Role.is_owner_role.is_(True)
            )
        )
    ).scalars().all()
    if not owner_roles:
        return None

    available = list(
        (
            await db.execute(
                select(Role)
                .where(Role.workspace_id == workspace_id, Role.is_owner_role.is_(False))
                .order_by(Role.created_at, Role.name)
            )
        ).scalars().all()
    )
    ranks = dict(
        (
            await db.execute(
                select(Rank.user_id, Rank.external_role_id).where(
                    Rank.workspace_id == workspace_id
                )
            )
        ).all()
    )

    result = OwnerMigrationResult(workspace_id=workspace_id)
    if not available:
        default_role = Role(
            workspace_id=workspace_id,
            name=DEFAULT_ROLE_NAME,
            permissions=[],
            group_roles=[],
            is_owner_role=False,
        )
        db.add(default_role)
        await db.flush()
        available.append(default_role)
        result.default_role_created = True
        logger.info("default_role_created", workspace_id=workspace_id, role_id=str(default_role.id))

    for owner_role in owner_roles:
        assignments = (
            await db.execute(
                select(RoleAssignment).where(RoleAssignment.role_id == owner_role.id)
            )
        ).scalars().all()

        for assignment in assignments:
            user_id = assignment.user_id
            await _set_admin(db, workspace_id, user_id)

            rank = ranks.get(user_id)
            target = next(
                (r for r in available if rank and rank in (r.group_roles or [])),
                available[0],
            )
            already_holds = (
                await db.execute(
                    select(RoleAssignment.id).where(
                        RoleAssignment.role_id == target.id,
                        RoleAssignment.user_id == user_id,
                    )
                )
            ).scalar_one_or_none()
            if already_holds is None:
                db.add(
                    RoleAssignment(
                        role_id=target.id,
                        user_id=user_id,
                        workspace_id=workspace_id,
                        manually_added=False,
                    )
                )
            result.members_migrated.append(user_id)
            logger.info(
                "owner_member_migrated",
                workspace_id=workspace_id,
                user_id=user_id,
                target_role=target.name,
            )

        await db.execute(delete(RoleAssignment).where(RoleAssignment.role_id == owner_role.id))
        await db.execute(delete(QuotaRole).where(QuotaRole.role_id == owner_role.id))
        await db.delete(owner_role)
        result.owner_roles_removed += 1

    record = (
        await db.execute(
            select(WorkspaceMigration).where(
                WorkspaceMigration.workspace_id == workspace_id,
                WorkspaceMigration.name == OWNER_ROLE_MIGRATION,
            )
        )
    ).scalar_one_or_none()
    details = {
        "owner_roles_removed": result.owner_roles_removed,
        "members_migrated": result.members_migrated,
        "default_role_created": result.default_role_created,
    }
    if record is None:
        db.add(
            WorkspaceMigration(
                workspace_id=workspace_id, name=OWNER_ROLE_MIGRATION, details=details
            )
        )
    else:
        record.applied_at = utcnow()
        record.details = details

    await db.commit()

    if permission_cache is not None:
        permission_cache.invalidate_workspace(workspace_id)

    logger.info(
        "owner_migration_applied",
        workspace_id=workspace_id,
        migration=OWNER_ROLE_MIGRATION,
        **details,
    )
    return result
