# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration store models.

MigrationDefinition rows are immutable once created. MigrationExecution
rows track one migration in one scope: a tenant id for tenant-specific
migrations, or the global scope. The ``scope`` column holds the tenant id
or GLOBAL_SCOPE so the unique constraint also covers global executions.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from mealplane.infrastructure.database.models.base import (
    Base,
    JSONType,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)
from mealplane.utils.datetime import utc_now

GLOBAL_SCOPE = "__global__"


def scope_for(tenant_id: str | None) -> str:
    """Storage scope key for a tenant id, or the global scope."""
    return tenant_id if tenant_id else GLOBAL_SCOPE


class MigrationDefinition(Base):
    """A reversible schema or data change."""

    __tablename__ = "migration_definitions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    up_sql: Mapped[str] = mapped_column(Text, nullable=False)
    down_sql: Mapped[str] = mapped_column(Text, nullable=False)
    tenant_specific: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dependencies: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)
    position: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<MigrationDefinition {self.id}>"


class MigrationExecution(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Execution status of one migration in one scope."""

    __tablename__ = "migration_executions"
    __table_args__ = (
        UniqueConstraint("migration_id", "scope", name="uq_migration_executions_scope"),
    )

    migration_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("migration_definitions.id"), nullable=False, index=True
    )
    tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    scope: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<MigrationExecution {self.migration_id}@{self.scope} {self.status}>"
