"""SQLAlchemy ORM models for workspaces, roles, activity and quotas."""

import enum
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from roster.utils.datetime_utils import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class ArchiveMixin:
    """Archive flags stamped by a period reset. Rows are never deleted."""

    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archive_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    archive_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class QuotaType(str, enum.Enum):
    minutes = "minutes"
    sessions_hosted = "sessions_hosted"
    sessions_attended = "sessions_attended"
    sessions_logged = "sessions_logged"
    alliance_visits = "alliance_visits"
    custom = "custom"


class CompletionType(str, enum.Enum):
    user_complete = "user_complete"
    manager_signoff = "manager_signoff"


# ---------------------------------------------------------------------------
# Workspaces and users
# ---------------------------------------------------------------------------


class Workspace(Base):
    """A tenant bound to exactly one external group (id = group id)."""

    __tablename__ = "workspaces"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    activity_config: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    batch_id: Mapped[int | None] = mapped_column(Integer)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class User(Base):
    """An external user. Rows are never hard-deleted by the engine."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str | None] = mapped_column(Text)
    display_name: Mapped[str | None] = mapped_column(Text)
    picture: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class WorkspaceMembership(Base):
    __tablename__ = "workspace_memberships"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_membership_workspace_user"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timezone: Mapped[str | None] = mapped_column(Text)
    chat_user_id: Mapped[str | None] = mapped_column(Text)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ---------------------------------------------------------------------------
# Roles and ranks
# ---------------------------------------------------------------------------


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (Index("idx_roles_workspace", "workspace_id"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    color: Mapped[str | None] = mapped_column(Text)
    is_owner_role: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # External role ids mapped onto this role; null or empty means manual only.
    group_roles: Mapped[list[int] | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def is_synced(self) -> bool:
        return bool(self.group_roles)


class RoleAssignment(Base):
    __tablename__ = "role_assignments"
    __table_args__ = (
        UniqueConstraint("role_id", "user_id", name="uq_role_assignment"),
        Index("idx_role_assignments_workspace_user", "workspace_id", "user_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    role_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    manually_added: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Rank(Base):
    """Cached external role id per (user, workspace); 0 means not in the group."""

    __tablename__ = "ranks"
    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_rank_user_workspace"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    workspace_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    external_role_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    color: Mapped[str | None] = mapped_column(Text)


class DepartmentMember(Base):
    __tablename__ = "department_members"
    __table_args__ = (
        UniqueConstraint("department_id", "user_id", name="uq_department_member"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    department_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("departments.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------


class Quota(Base):
    __tablename__ = "quotas"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[int | None] = mapped_column(Integer)
    session_type: Mapped[str | None] = mapped_column(Text)
    completion_type: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class QuotaRole(Base):
    __tablename__ = "quota_roles"

    quota_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("quotas.id", ondelete="CASCADE"), primary_key=True
    )
    role_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True
    )


class QuotaDepartment(Base):
    __tablename__ = "quota_departments"

    quota_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("quotas.id", ondelete="CASCADE"), primary_key=True
    )
    department_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True
    )


class QuotaCompletion(ArchiveMixin, Base):
    """Append-only manual completion record; the latest row wins."""

    __tablename__ = "quota_completions"
    __table_args__ = (
        Index("idx_quota_completions_lookup", "workspace_id", "user_id", "quota_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    quota_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("quotas.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[int | None] = mapped_column(BigInteger)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ---------------------------------------------------------------------------
# Raw activity
# ---------------------------------------------------------------------------


class ActivitySession(ArchiveMixin, Base):
    """A timed presence record; open while ``end_time`` is null."""

    __tablename__ = "activity_sessions"
    __table_args__ = (
        Index("idx_activity_sessions_workspace_start", "workspace_id", "start_time"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    idle_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ActivityAdjustment(ArchiveMixin, Base):
    __tablename__ = "activity_adjustments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class StaffSession(ArchiveMixin, Base):
    """A scheduled event (shift, training, ...) with an owner and named slots."""

    __tablename__ = "sessions"
    __table_args__ = (Index("idx_sessions_workspace_date", "workspace_id", "date"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    owner_id: Mapped[int | None] = mapped_column(BigInteger)
    session_type: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str | None] = mapped_column(Text)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    slots: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )


class SessionParticipation(ArchiveMixin, Base):
    __tablename__ = "session_participations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    role_id: Mapped[str | None] = mapped_column(Text)
    slot: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AllianceVisit(Base):
    __tablename__ = "alliance_visits"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    host_id: Mapped[int | None] = mapped_column(BigInteger)
    participants: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WallPost(Base):
    __tablename__ = "wall_posts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    author_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ---------------------------------------------------------------------------
# History and bookkeeping
# ---------------------------------------------------------------------------


class ActivityHistory(Base):
    """Immutable per-user snapshot written by a period reset."""

    __tablename__ = "activity_history"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "user_id", "period_end", name="uq_history_user_period"
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions_hosted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions_attended: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions_logged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    idle_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wall_posts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alliance_visits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_progress: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class PeriodBoundary(Base):
    __tablename__ = "period_boundaries"
    __table_args__ = (Index("idx_period_boundaries_workspace", "workspace_id", "reset_at"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Null for scheduled resets.
    reset_by: Mapped[int | None] = mapped_column(BigInteger)
    previous_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    previous_period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class WorkspaceMigration(Base):
    """One row per versioned data migration applied to a workspace."""

    __tablename__ = "workspace_migrations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_workspace_migration"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
