# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration store models.

Versions are append-only: (tenant_id, version) is unique and a version
row is never updated after insert.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mealplane.infrastructure.database.models.base import (
    Base,
    JSONType,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)
from mealplane.utils.datetime import utc_now


class TenantConfigurationVersion(UUIDPrimaryKeyMixin, Base):
    """Immutable numbered snapshot of a tenant's configuration overrides."""

    __tablename__ = "tenant_configuration_versions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "version", name="uq_tenant_configuration_version"),
    )

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="update")
    source_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<TenantConfigurationVersion {self.tenant_id} v{self.version}>"


class ConfigurationChangeRequest(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Proposed set of configuration changes awaiting review."""

    __tablename__ = "configuration_change_requests"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    changes: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    auto_apply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<ConfigurationChangeRequest {self.id} {self.status}>"
