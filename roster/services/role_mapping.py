"""Mapping from external role ids to internal workspace roles."""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from roster.exceptions import ConfigurationConflictError


@dataclass(frozen=True)
class RoleInfo:
    """Detached view of a Role row, safe to use after a rollback."""

    id: UUID
    name: str
    is_owner_role: bool
    group_roles: tuple[int, ...]
    permissions: tuple[str, ...] = ()

    @property
    def is_synced(self) -> bool:
        return bool(self.group_roles)

    @classmethod
    def from_row(cls, role: Any) -> "RoleInfo":
        return cls(
            id=role.id,
            name=role.name,
            is_owner_role=bool(role.is_owner_role),
            group_roles=tuple(int(r) for r in (role.group_roles or [])),
            permissions=tuple(role.permissions or []),
        )


@dataclass
class RoleMapping:
    by_external_id: dict[int, RoleInfo] = field(default_factory=dict)
    conflicts: list[ConfigurationConflictError] = field(default_factory=list)

    @property
    def conflicted_ids(self) -> set[int]:
        return {c.external_role_id for c in self.conflicts}

    def role_for(self, external_role_id: int) -> RoleInfo | None:
        return self.by_external_id.get(external_role_id)


def build_role_mapping(roles: Iterable[RoleInfo]) -> RoleMapping:
    """Index synced roles by the external role ids they claim.

    Owner roles and roles without external ids are left out. An external
    id claimed by more than one role is reported as a conflict and not
    mapped at all.
    """
    claims: dict[int, list[RoleInfo]] = defaultdict(list)
    for role in roles:
        if role.is_owner_role or not role.is_synced:
            continue
        for external_id in set(role.group_roles):
            claims[external_id].append(role)

    mapping = RoleMapping()
    for external_id, claimants in claims.items():
        if len(claimants) > 1:
            mapping.conflicts.append(
                ConfigurationConflictError(external_id, [r.id for r in claimants])
            )
        else:
            mapping.by_external_id[external_id] = claimants[0]
    return mapping
