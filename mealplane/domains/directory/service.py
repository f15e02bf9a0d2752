# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant directory: institutions, tenants, users and memberships.

Thin data access used by provisioning. The directory applies no business
rules beyond existence lookups; callers own the transaction.

Example:
    >>> async with session_scope(session_factory) as session:
    ...     directory = TenantDirectory(session)
    ...     tenant = await directory.find_tenant_by_slug("escola-central")
"""

import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mealplane.infrastructure.database.models.directory import (
    Institution,
    InstitutionUser,
    Tenant,
    TenantUser,
    User,
)

logger = logging.getLogger(__name__)


class TenantDirectory:
    """Directory lookups and writes bound to one session.

    Attributes:
        _db: Async database session.
    """

    def __init__(self, db: AsyncSession) -> None:
        """Initialize the directory.

        Args:
            db: Async database session.
        """
        self._db = db

    # =========================================================================
    # Institutions
    # =========================================================================

    async def get_institution(self, institution_id: str) -> Institution | None:
        return await self._db.get(Institution, institution_id)

    async def find_institution_by_slug(self, slug: str) -> Institution | None:
        result = await self._db.execute(select(Institution).where(Institution.slug == slug))
        return result.scalar_one_or_none()

    async def create_institution(self, **fields: Any) -> Institution:
        """Insert an institution and flush to surface unique violations."""
        institution = Institution(**fields)
        self._db.add(institution)
        await self._db.flush()
        logger.info("Institution created: %s (%s)", institution.slug, institution.id)
        return institution

    async def delete_institution(self, institution_id: str) -> bool:
        result = await self._db.execute(delete(Institution).where(Institution.id == institution_id))
        return result.rowcount > 0

    async def count_institution_users(self, institution_id: str) -> int:
        """Number of active members of an institution."""
        count = await self._db.scalar(
            select(func.count())
            .select_from(InstitutionUser)
            .where(
                InstitutionUser.institution_id == institution_id,
                InstitutionUser.status == "active",
            )
        )
        return count or 0

    async def list_institution_members(
        self,
        institution_id: str,
    ) -> list[tuple[User, InstitutionUser]]:
        """Active members of an institution with their membership rows."""
        result = await self._db.execute(
            select(User, InstitutionUser)
            .join(InstitutionUser, InstitutionUser.user_id == User.id)
            .where(
                InstitutionUser.institution_id == institution_id,
                InstitutionUser.status == "active",
            )
            .order_by(InstitutionUser.created_at, User.email)
        )
        return [(user, link) for user, link in result.all()]

    # =========================================================================
    # Tenants
    # =========================================================================

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        return await self._db.get(Tenant, tenant_id)

    async def find_tenant_by_slug(self, slug: str) -> Tenant | None:
        result = await self._db.execute(select(Tenant).where(Tenant.slug == slug))
        return result.scalar_one_or_none()

    async def count_tenants(self, institution_id: str) -> int:
        """Number of tenants owned by an institution."""
        count = await self._db.scalar(
            select(func.count()).select_from(Tenant).where(Tenant.institution_id == institution_id)
        )
        return count or 0

    async def list_tenants(self, institution_id: str) -> list[Tenant]:
        result = await self._db.execute(
            select(Tenant).where(Tenant.institution_id == institution_id).order_by(Tenant.slug)
        )
        return list(result.scalars())

    async def create_tenant(self, **fields: Any) -> Tenant:
        """Insert a tenant and flush to surface unique violations."""
        tenant = Tenant(**fields)
        self._db.add(tenant)
        await self._db.flush()
        logger.info("Tenant created: %s (%s)", tenant.slug, tenant.id)
        return tenant

    async def delete_tenant_data(self, tenant_id: str) -> int:
        """Delete rows scoped to the tenant.

        Returns:
            Number of rows removed.
        """
        result = await self._db.execute(delete(TenantUser).where(TenantUser.tenant_id == tenant_id))
        return result.rowcount or 0

    async def delete_tenant(self, tenant_id: str) -> bool:
        result = await self._db.execute(delete(Tenant).where(Tenant.id == tenant_id))
        return result.rowcount > 0

    # =========================================================================
    # Users and memberships
    # =========================================================================

    async def get_user(self, user_id: str) -> User | None:
        return await self._db.get(User, user_id)

    async def find_user_by_email(self, email: str) -> User | None:
        result = await self._db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def create_user(self, name: str, email: str, password_hash: str, role: str) -> User:
        """Insert a user; the email is stored lowercased."""
        user = User(name=name, email=email.lower(), password_hash=password_hash, role=role)
        self._db.add(user)
        await self._db.flush()
        logger.info("User created: %s (%s)", user.email, user.id)
        return user

    async def delete_user(self, user_id: str) -> bool:
        result = await self._db.execute(delete(User).where(User.id == user_id))
        return result.rowcount > 0

    async def link_institution_user(
        self,
        institution_id: str,
        user_id: str,
        role: str = "institution_admin",
    ) -> InstitutionUser:
        """Link a user to an institution; an existing link is returned as is."""
        result = await self._db.execute(
            select(InstitutionUser).where(
                InstitutionUser.institution_id == institution_id,
                InstitutionUser.user_id == user_id,
            )
        )
        link = result.scalar_one_or_none()
        if link is None:
            link = InstitutionUser(institution_id=institution_id, user_id=user_id, role=role)
            self._db.add(link)
            await self._db.flush()
        return link

    async def link_tenant_user(
        self,
        tenant_id: str,
        user_id: str,
        role: str = "tenant_admin",
    ) -> TenantUser:
        """Link a user to a tenant; an existing link is returned as is."""
        result = await self._db.execute(
            select(TenantUser).where(
                TenantUser.tenant_id == tenant_id,
                TenantUser.user_id == user_id,
            )
        )
        link = result.scalar_one_or_none()
        if link is None:
            link = TenantUser(tenant_id=tenant_id, user_id=user_id, role=role)
            self._db.add(link)
            await self._db.flush()
        return link

    async def list_user_tenant_ids(self, user_ids: list[str]) -> dict[str, list[str]]:
        """Tenant ids per user for the given users."""
        memberships: dict[str, list[str]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return memberships
        result = await self._db.execute(
            select(TenantUser.user_id, TenantUser.tenant_id).where(TenantUser.user_id.in_(user_ids))
        )
        for user_id, tenant_id in result.all():
            memberships[user_id].append(tenant_id)
        return memberships

    async def list_tenant_users(self, tenant_id: str) -> list[User]:
        """Users linked to a tenant."""
        result = await self._db.execute(
            select(User).join(TenantUser, TenantUser.user_id == User.id).where(
                TenantUser.tenant_id == tenant_id
            )
        )
        return list(result.scalars())
