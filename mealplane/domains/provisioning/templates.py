# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning template catalogue.

Templates live in ``provisioning-templates/<id>.yaml``. Each one holds
institution and tenant defaults, the id of a configuration template and
configuration overrides applied on top of it.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from mealplane.core.config.yaml_loader import YAMLLoadError, load_yaml_directory
from mealplane.models.provisioning import ProvisioningTemplate

logger = logging.getLogger(__name__)

TEMPLATES_DIR = "provisioning-templates"


@lru_cache(maxsize=8)
def load_provisioning_templates(config_dir: Path) -> dict[str, ProvisioningTemplate]:
    """Load every provisioning template in the directory.

    Raises:
        YAMLLoadError: If a template file is unreadable or malformed.
    """
    path = config_dir / TEMPLATES_DIR
    templates: dict[str, ProvisioningTemplate] = {}
    for template_id, data in load_yaml_directory(path).items():
        try:
            templates[template_id] = ProvisioningTemplate(id=template_id, **data)
        except PydanticValidationError as e:
            raise YAMLLoadError(path / f"{template_id}.yaml", str(e)) from e

    logger.debug("Loaded %d provisioning templates from %s", len(templates), path)
    return templates
