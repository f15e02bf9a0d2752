# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Control plane schema.

Revision ID: 001_control_plane
Revises: None
Create Date: 2025-02-03

Creates the tenant directory tables and the migration, configuration
and provisioning stores.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_control_plane"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    """Create control plane tables."""
    # ==========================================================================
    # 1. Tenant directory
    # ==========================================================================
    op.create_table(
        "institutions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("legal_name", sa.String(255), nullable=True),
        sa.Column("document_number", sa.String(32), nullable=True, unique=True),
        sa.Column("type", sa.String(30), nullable=False, server_default="prefeitura"),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("address", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("plan_id", sa.String(100), nullable=True),
        sa.Column("settings", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.CheckConstraint(
            "type IN ('prefeitura', 'secretaria', 'organizacao', 'empresa')",
            name="valid_institution_type",
        ),
    )

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "institution_id",
            sa.String(36),
            sa.ForeignKey("institutions.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("subdomain", sa.String(100), nullable=False, unique=True),
        sa.Column("settings", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(30), nullable=False, server_default="admin"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "institution_users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "institution_id",
            sa.String(36),
            sa.ForeignKey("institutions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("role", sa.String(30), nullable=False, server_default="institution_admin"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.UniqueConstraint("institution_id", "user_id", name="uq_institution_users"),
    )

    op.create_table(
        "tenant_users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(36),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("role", sa.String(30), nullable=False, server_default="tenant_admin"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_users"),
    )

    # ==========================================================================
    # 2. Migration store
    # ==========================================================================
    op.create_table(
        "migration_definitions",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("up_sql", sa.Text, nullable=False),
        sa.Column("down_sql", sa.Text, nullable=False),
        sa.Column("tenant_specific", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("dependencies", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("position", sa.Integer, nullable=False, unique=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )

    op.create_table(
        "migration_executions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "migration_id",
            sa.String(255),
            sa.ForeignKey("migration_definitions.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("tenant_id", sa.String(36), nullable=True, index=True),
        sa.Column("scope", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("execution_time_ms", sa.Integer, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("migration_id", "scope", name="uq_migration_executions_scope"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'rolled_back')",
            name="valid_migration_status",
        ),
    )

    # ==========================================================================
    # 3. Configuration store
    # ==========================================================================
    op.create_table(
        "tenant_configuration_versions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False, index=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("source", sa.String(30), nullable=False, server_default="update"),
        sa.Column("source_version", sa.Integer, nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("tenant_id", "version", name="uq_tenant_configuration_version"),
        sa.CheckConstraint("version >= 1", name="positive_configuration_version"),
    )

    op.create_table(
        "configuration_change_requests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False, index=True),
        sa.Column("changes", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("requested_by", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("auto_apply", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_comment", sa.Text, nullable=True),
        sa.Column("applied_version", sa.Integer, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'applied')",
            name="valid_change_request_status",
        ),
    )

    # ==========================================================================
    # 4. Provisioning progress
    # ==========================================================================
    op.create_table(
        "tenant_provisioning_progress",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("kind", sa.String(20), nullable=False, server_default="provisioning", index=True),
        sa.Column("tenant_id", sa.String(36), nullable=True, index=True),
        sa.Column("institution_id", sa.String(36), nullable=True),
        sa.Column("template_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("current_step", sa.Integer, nullable=False, server_default="0"),
        sa.Column("steps", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("request_data", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("warnings", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="valid_provisioning_status",
        ),
    )


def downgrade() -> None:
    """Drop control plane tables."""
    op.drop_table("tenant_provisioning_progress")
    op.drop_table("configuration_change_requests")
    op.drop_table("tenant_configuration_versions")
    op.drop_table("migration_executions")
    op.drop_table("migration_definitions")
    op.drop_table("tenant_users")
    op.drop_table("institution_users")
    op.drop_table("users")
    op.drop_table("tenants")
    op.drop_table("institutions")
