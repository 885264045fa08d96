"""Initial schema: workspaces, roles, ranks, activity, quotas and history.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _archive_columns() -> list[sa.Column]:
    return [
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("archive_start_date", sa.DateTime(timezone=True)),
        sa.Column("archive_end_date", sa.DateTime(timezone=True)),
    ]


def upgrade() -> None:
    # --- Workspaces / users ---
    op.create_table(
        "workspaces",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("activity_config", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("batch_id", sa.Integer()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("username", sa.Text()),
        sa.Column("display_name", sa.Text()),
        sa.Column("picture", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_table(
        "workspace_memberships",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("timezone", sa.Text()),
        sa.Column("chat_user_id", sa.Text()),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("workspace_id", "user_id", name="uq_membership_workspace_user"),
    )

    # --- Roles / ranks / departments ---
    op.create_table(
        "roles",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("permissions", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("color", sa.Text()),
        sa.Column("is_owner_role", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("group_roles", JSONB()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_roles_workspace", "roles", ["workspace_id"])

    op.create_table(
        "role_assignments",
        _id(),
        sa.Column("role_id", UUID(as_uuid=True), sa.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("manually_added", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("role_id", "user_id", name="uq_role_assignment"),
    )
    op.create_index("idx_role_assignments_workspace_user", "role_assignments", ["workspace_id", "user_id"])

    op.create_table(
        "ranks",
        _id(),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("workspace_id", sa.BigInteger(), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_role_id", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("user_id", "workspace_id", name="uq_rank_user_workspace"),
    )

    op.create_table(
        "departments",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("color", sa.Text()),
    )
    op.create_table(
        "department_members",
        _id(),
        sa.Column("department_id", UUID(as_uuid=True), sa.ForeignKey("departments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("department_id", "user_id", name="uq_department_member"),
    )

    # --- Quotas ---
    op.create_table(
        "quotas",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("value", sa.Integer()),
        sa.Column("session_type", sa.Text()),
        sa.Column("completion_type", sa.Text()),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "type IN ('minutes','sessions_hosted','sessions_attended','sessions_logged','alliance_visits','custom')",
            name="ck_quota_type",
        ),
    )
    op.create_table(
        "quota_roles",
        sa.Column("quota_id", UUID(as_uuid=True), sa.ForeignKey("quotas.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", UUID(as_uuid=True), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "quota_departments",
        sa.Column("quota_id", UUID(as_uuid=True), sa.ForeignKey("quotas.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("department_id", UUID(as_uuid=True), sa.ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "quota_completions",
        _id(),
        sa.Column("quota_id", UUID(as_uuid=True), sa.ForeignKey("quotas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_by", sa.BigInteger()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        *_archive_columns(),
    )
    op.create_index(
        "idx_quota_completions_lookup", "quota_completions", ["workspace_id", "user_id", "quota_id"]
    )

    # --- Raw activity ---
    op.create_table(
        "activity_sessions",
        _id(),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        sa.Column("idle_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_archive_columns(),
    )
    op.create_index(
        "idx_activity_sessions_workspace_start", "activity_sessions", ["workspace_id", "start_time"]
    )
    op.create_table(
        "activity_adjustments",
        _id(),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("minutes", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("actor_id", sa.BigInteger()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        *_archive_columns(),
    )
    op.create_table(
        "sessions",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("owner_id", sa.BigInteger()),
        sa.Column("session_type", sa.Text()),
        sa.Column("name", sa.Text()),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("slots", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        *_archive_columns(),
    )
    op.create_index("idx_sessions_workspace_date", "sessions", ["workspace_id", "date"])
    op.create_table(
        "session_participations",
        _id(),
        sa.Column("session_id", UUID(as_uuid=True), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("role_id", sa.Text()),
        sa.Column("slot", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_archive_columns(),
    )
    op.create_table(
        "alliance_visits",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("host_id", sa.BigInteger()),
        sa.Column("participants", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "wall_posts",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("author_id", sa.BigInteger(), nullable=False),
        sa.Column("content", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # --- History / bookkeeping ---
    op.create_table(
        "activity_history",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("messages", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sessions_hosted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sessions_attended", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sessions_logged", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("idle_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("wall_posts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("alliance_visits", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("quota_progress", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("workspace_id", "user_id", "period_end", name="uq_history_user_period"),
    )
    op.create_table(
        "period_boundaries",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reset_by", sa.BigInteger()),
        sa.Column("previous_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("previous_period_end", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_period_boundaries_workspace", "period_boundaries", ["workspace_id", "reset_at"]
    )
    op.create_table(
        "workspace_migrations",
        _id(),
        sa.Column("workspace_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("details", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.UniqueConstraint("workspace_id", "name", name="uq_workspace_migration"),
    )


def downgrade() -> None:
    for table in (
        "workspace_migrations",
        "period_boundaries",
        "activity_history",
        "wall_posts",
        "alliance_visits",
        "session_participations",
        "sessions",
        "activity_adjustments",
        "activity_sessions",
        "quota_completions",
        "quota_departments",
        "quota_roles",
        "quotas",
        "department_members",
        "departments",
        "ranks",
        "role_assignments",
        "roles",
        "workspace_memberships",
        "users",
        "workspaces",
    ):
        op.drop_table(table)
