# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration template catalogue.

Templates live in ``configuration-templates/<id>.yaml``; the file stem
is the template id.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from mealplane.core.config.yaml_loader import YAMLLoadError, load_yaml_directory
from mealplane.models.configuration import ConfigurationTemplate

logger = logging.getLogger(__name__)

TEMPLATES_DIR = "configuration-templates"


@lru_cache(maxsize=8)
def load_templates(config_dir: Path) -> dict[str, ConfigurationTemplate]:
    """Load every configuration template in the directory.

    Args:
        config_dir: Root configuration directory.

    Returns:
        Templates keyed by id.

    Raises:
        YAMLLoadError: If a template file is unreadable or malformed.
    """
    path = config_dir / TEMPLATES_DIR
    templates: dict[str, ConfigurationTemplate] = {}
    for template_id, data in load_yaml_directory(path).items():
        try:
            templates[template_id] = ConfigurationTemplate(id=template_id, **data)
        except PydanticValidationError as e:
            raise YAMLLoadError(path / f"{template_id}.yaml", str(e)) from e

    logger.debug("Loaded %d configuration templates from %s", len(templates), path)
    return templates
