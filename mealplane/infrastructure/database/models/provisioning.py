# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning progress model.

One row per provisioning or deprovisioning run. The ordered step list is
stored as JSON and rewritten as a whole on every step transition.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mealplane.infrastructure.database.models.base import (
    Base,
    JSONType,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)


class ProvisioningProgress(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Persisted state of one provisioning or deprovisioning run."""

    __tablename__ = "tenant_provisioning_progress"

    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="provisioning", index=True)
    tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    institution_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    template_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    steps: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    request_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ProvisioningProgress {self.id} {self.kind} {self.status}>"
