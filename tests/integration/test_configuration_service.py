# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for ConfigurationService against SQLite."""

import uuid

import pytest
from sqlalchemy.exc import IntegrityError

from mealplane.core.config import ControlPlaneSettings
from mealplane.core.exceptions import (
    InvalidConfigurationValue,
    InvalidRequestState,
    NotFoundError,
    ValidationError,
    VersionNotFound,
)
from mealplane.domains.configuration import ConfigurationService
from mealplane.infrastructure.database.connection import DatabaseError
from mealplane.models.configuration import (
    ChangeItem,
    ChangeOperation,
    ChangeRequestCreate,
    ChangeRequestStatus,
    ValidationResult,
    VersionSource,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def tenant_id() -> str:
    return str(uuid.uuid4())


class LaggingConfigurationService(ConfigurationService):
    """Sees the version before the latest for the next ``lag`` lookups.

    Stands in for a writer that read the latest version just before
    another writer appended one.
    """

    lag = 0

    async def _latest(self, session, tenant_id):
        latest = await super()._latest(session, tenant_id)
        if self.lag and latest is not None and latest.version > 1:
            self.lag -= 1
            return await self._get_version(session, tenant_id, latest.version - 1)
        return latest


class TestReads:
    """Effective configuration and inheritance."""

    async def test_unconfigured_tenant_resolves_to_defaults(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        resolved = await configuration_service.get_configuration(tenant_id)

        assert resolved.version is None
        assert resolved.configuration == configuration_service.schema.defaults()
        assert set(resolved.provenance.values()) == {"default"}

    async def test_overrides_only_without_inheritance(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(
            tenant_id, {"limits": {"maxSchools": 5}}
        )

        resolved = await configuration_service.get_configuration(tenant_id, include_inheritance=False)

        assert resolved.version == 1
        assert resolved.configuration == {"limits": {"maxSchools": 5}}
        assert resolved.provenance == {"limits.maxSchools": "tenant"}

    async def test_removed_override_inherits_default_again(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        """Setting then clearing a key returns the effective value to the default."""
        before = await configuration_service.get_configuration(tenant_id)

        await configuration_service.update_configuration(tenant_id, {"limits": {"maxUsers": 300}})
        await configuration_service.update_configuration(tenant_id, {"limits": {"maxUsers": None}})

        after = await configuration_service.get_configuration(tenant_id)
        assert after.configuration == before.configuration
        assert after.provenance["limits.maxUsers"] == "default"
        assert after.version == 2


class TestVersions:
    """Version numbering, rollback and diffs."""

    async def test_versions_are_gap_free(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(tenant_id)
        await configuration_service.update_configuration(tenant_id, {"limits": {"maxSchools": 10}})
        await configuration_service.apply_template(tenant_id, "municipality")
        await configuration_service.rollback_configuration(tenant_id, 2, "Template too generous")

        versions = await configuration_service.list_versions(tenant_id)

        assert [v.version for v in versions] == [1, 2, 3, 4]
        assert [v.source for v in versions] == [
            VersionSource.INITIAL,
            VersionSource.UPDATE,
            VersionSource.TEMPLATE,
            VersionSource.ROLLBACK,
        ]

    async def test_lost_version_race_retries_with_next_number(
        self, session_factory, control_plane_settings: ControlPlaneSettings, tenant_id: str
    ) -> None:
        service = LaggingConfigurationService(session_factory, control_plane_settings)
        await service.initialize_configuration(tenant_id)
        await service.update_configuration(tenant_id, {"limits": {"maxSchools": 10}})

        service.lag = 1
        written = await service.update_configuration(tenant_id, {"limits": {"maxUsers": 40}})

        versions = await service.list_versions(tenant_id)
        assert written.version == 3
        assert [v.version for v in versions] == [1, 2, 3]
        assert versions[2].payload["limits"] == {"maxSchools": 10, "maxUsers": 40}

    async def test_version_race_gives_up_after_configured_attempts(
        self, session_factory, control_plane_settings: ControlPlaneSettings, tenant_id: str
    ) -> None:
        settings = control_plane_settings.model_copy(update={"version_write_attempts": 1})
        service = LaggingConfigurationService(session_factory, settings)
        await service.initialize_configuration(tenant_id)
        await service.update_configuration(tenant_id, {"limits": {"maxSchools": 10}})

        service.lag = 1
        with pytest.raises(DatabaseError) as exc_info:
            await service.update_configuration(tenant_id, {"limits": {"maxUsers": 40}})

        assert isinstance(exc_info.value.original_error, IntegrityError)
        assert [v.version for v in await service.list_versions(tenant_id)] == [1, 2]

    async def test_rollback_copies_target_payload(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(
            tenant_id, {"branding": {"primaryColor": "#123456"}}
        )
        await configuration_service.update_configuration(
            tenant_id, {"branding": {"primaryColor": "#abcdef"}, "limits": {"maxSchools": 3}}
        )

        rolled = await configuration_service.rollback_configuration(
            tenant_id, 1, "Wrong colors", user_id="ops"
        )
        original = await configuration_service.get_version(tenant_id, 1)

        assert rolled.version == 3
        assert rolled.payload == original.payload
        assert rolled.source_version == 1
        assert rolled.created_by == "ops"
        assert "Wrong colors" in rolled.description

    async def test_rollback_leaves_other_tenants_alone(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        other = str(uuid.uuid4())
        await configuration_service.initialize_configuration(tenant_id, {"limits": {"maxSchools": 2}})
        await configuration_service.update_configuration(tenant_id, {"limits": {"maxSchools": 4}})
        await configuration_service.initialize_configuration(other, {"limits": {"maxSchools": 9}})

        await configuration_service.rollback_configuration(tenant_id, 1, "Undo")

        assert [v.version for v in await configuration_service.list_versions(other)] == [1]
        resolved = await configuration_service.get_configuration(other)
        assert resolved.configuration["limits"]["maxSchools"] == 9

    async def test_rollback_requires_reason_and_existing_version(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(tenant_id)

        with pytest.raises(ValidationError):
            await configuration_service.rollback_configuration(tenant_id, 1, "  ")
        with pytest.raises(VersionNotFound):
            await configuration_service.rollback_configuration(tenant_id, 7, "Missing")

    async def test_diff_between_versions(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(
            tenant_id, {"limits": {"maxSchools": 5, "maxUsers": 50}}
        )
        await configuration_service.update_configuration(
            tenant_id, {"limits": {"maxSchools": 8, "maxUsers": None}, "features": {"analytics": True}}
        )

        diff = await configuration_service.get_diff(tenant_id, 1, 2)

        assert diff.added == {"features.analytics": True}
        assert diff.removed == {"limits.maxUsers": 50}
        assert diff.changed["limits.maxSchools"].new_value == 8


class TestValidation:
    """Validation on writes."""

    async def test_invalid_update_is_not_written(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(tenant_id)

        with pytest.raises(InvalidConfigurationValue) as exc_info:
            await configuration_service.update_configuration(
                tenant_id, {"limits": {"maxSchools": 0}, "branding": {"primaryColor": "green"}}
            )

        assert len(exc_info.value.errors) == 2
        assert [v.version for v in await configuration_service.list_versions(tenant_id)] == [1]

    async def test_validate_only_never_writes(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        result = await configuration_service.update_configuration(
            tenant_id, {"features": {"contracts": False}}, validate_only=True
        )

        assert isinstance(result, ValidationResult)
        assert not result.is_valid
        assert await configuration_service.list_versions(tenant_id) == []

    async def test_empty_changes_rejected(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        with pytest.raises(ValidationError):
            await configuration_service.update_configuration(tenant_id, {})

    async def test_initialize_is_idempotent(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        first = await configuration_service.initialize_configuration(
            tenant_id, {"limits": {"maxSchools": 5}}
        )
        second = await configuration_service.initialize_configuration(
            tenant_id, {"limits": {"maxSchools": 99}}
        )

        assert second.version == first.version == 1
        assert second.payload == {"limits": {"maxSchools": 5}}


class TestChangeRequests:
    """Review workflow for configuration changes."""

    def _request(self, auto_apply: bool = False) -> ChangeRequestCreate:
        return ChangeRequestCreate(
            changes=[
                ChangeItem(category="limits", key="maxSchools", new_value=12),
                ChangeItem(category="branding", key="logo", operation=ChangeOperation.DELETE),
            ],
            description="Expand to twelve schools",
            requested_by="gestor@escolacentral.edu.br",
            auto_apply=auto_apply,
        )

    async def test_approve_applies_new_version(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(
            tenant_id, {"limits": {"maxSchools": 4}, "branding": {"logo": "https://cdn.example.org/l.png"}}
        )
        request = await configuration_service.request_change(tenant_id, self._request())

        assert request.status == ChangeRequestStatus.PENDING
        assert request.changes[0].old_value == 4

        approved = await configuration_service.approve_change(request.id, "diretor")

        assert approved.status == ChangeRequestStatus.APPLIED
        assert approved.reviewed_by == "diretor"
        assert approved.applied_version == 2
        latest = await configuration_service.get_version(tenant_id, 2)
        assert latest.payload == {"limits": {"maxSchools": 12}}
        assert latest.source == VersionSource.CHANGE_REQUEST

    async def test_reject_keeps_configuration(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(tenant_id)
        request = await configuration_service.request_change(tenant_id, self._request())

        rejected = await configuration_service.reject_change(request.id, "diretor", "Budget freeze")

        assert rejected.status == ChangeRequestStatus.REJECTED
        assert rejected.review_comment == "Budget freeze"
        assert [v.version for v in await configuration_service.list_versions(tenant_id)] == [1]

    async def test_decided_request_cannot_be_approved(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        request = await configuration_service.request_change(tenant_id, self._request())
        await configuration_service.reject_change(request.id, "diretor", "No")

        with pytest.raises(InvalidRequestState):
            await configuration_service.approve_change(request.id, "diretor")
        with pytest.raises(InvalidRequestState):
            await configuration_service.reject_change(request.id, "diretor", "Again")

    async def test_auto_apply(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        request = await configuration_service.request_change(tenant_id, self._request(auto_apply=True))

        assert request.status == ChangeRequestStatus.APPLIED
        assert request.applied_version == 1

    async def test_auto_apply_denied_by_policy(
        self, session_factory, control_plane_settings, tenant_id: str
    ) -> None:
        service = ConfigurationService(
            session_factory, control_plane_settings, can_auto_apply=lambda t, r: False
        )

        request = await service.request_change(tenant_id, self._request(auto_apply=True))

        assert request.status == ChangeRequestStatus.PENDING

    async def test_invalid_proposal_rejected_up_front(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        bad = ChangeRequestCreate(
            changes=[ChangeItem(category="limits", key="maxUsers", new_value=-1)],
            requested_by="gestor",
        )

        with pytest.raises(InvalidConfigurationValue):
            await configuration_service.request_change(tenant_id, bad)
        assert await configuration_service.list_change_requests(tenant_id) == []

    async def test_list_by_status(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        first = await configuration_service.request_change(tenant_id, self._request())
        await configuration_service.request_change(tenant_id, self._request())
        await configuration_service.reject_change(first.id, "diretor", "Duplicate")

        pending = await configuration_service.list_change_requests(
            tenant_id, ChangeRequestStatus.PENDING
        )

        assert len(pending) == 1
        assert pending[0].id != first.id

    async def test_unknown_request(self, configuration_service: ConfigurationService) -> None:
        with pytest.raises(NotFoundError):
            await configuration_service.approve_change(str(uuid.uuid4()), "diretor")


class TestTemplatesAndTransfer:
    """Templates, export and import."""

    def test_templates_filtered_by_tenant_type(
        self, configuration_service: ConfigurationService
    ) -> None:
        ids = [t.id for t in configuration_service.list_templates("prefeitura")]

        assert ids[0] == "default-system"
        assert "municipality" in ids
        assert "educational-institution" not in ids

    def test_unknown_template(self, configuration_service: ConfigurationService) -> None:
        with pytest.raises(NotFoundError):
            configuration_service.get_template("enterprise")

    async def test_apply_template(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        version = await configuration_service.apply_template(tenant_id, "small-school", user_id="ops")

        resolved = await configuration_service.get_configuration(tenant_id)
        assert version.source == VersionSource.TEMPLATE
        assert resolved.configuration["limits"]["maxSchools"] == 1
        assert resolved.configuration["features"]["deliveries"] is False

    async def test_export_then_import_into_another_tenant(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        await configuration_service.initialize_configuration(
            tenant_id, {"limits": {"maxSchools": 7}, "features": {"analytics": True}}
        )
        exported = await configuration_service.export_configuration(tenant_id)
        target = str(uuid.uuid4())

        imported = await configuration_service.import_configuration(
            target, exported.model_dump(mode="json", by_alias=True)
        )

        assert exported.version == 1
        assert imported.source == VersionSource.IMPORT
        assert imported.payload == {"limits": {"maxSchools": 7}, "features": {"analytics": True}}

    async def test_import_validate_only(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        result = await configuration_service.import_configuration(
            tenant_id, {"limits": {"maxSchools": 5000}}, validate_only=True
        )

        assert isinstance(result, ValidationResult)
        assert not result.is_valid

    async def test_export_unknown_version(
        self, configuration_service: ConfigurationService, tenant_id: str
    ) -> None:
        with pytest.raises(VersionNotFound):
            await configuration_service.export_configuration(tenant_id, version=3)
