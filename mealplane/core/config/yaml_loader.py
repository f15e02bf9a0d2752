# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Readers for the YAML files shipped under ``config/``.

The configuration schema is a single mapping file; configuration and
provisioning templates are directories with one template per file, keyed
by file stem. ``deep_merge`` implements the inheritance used when a
template, tenant overrides and request values are layered.

Example:
    >>> from pathlib import Path
    >>> schema = load_yaml(Path("config/configuration-schema.yaml"))
    >>> templates = load_yaml_directory(Path("config/provisioning-templates"))
    >>> templates["municipality"]["institution"]["type"]
    'prefeitura'
"""

import copy
from pathlib import Path
from typing import Any

import yaml

TEMPLATE_SUFFIXES = (".yaml", ".yml")


class YAMLLoadError(Exception):
    """A bundled YAML file is missing, unreadable or not a mapping.

    Attributes:
        path: File or directory that failed.
        reason: What went wrong.
    """

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load YAML file '{path}': {reason}")


def load_yaml(path: Path) -> dict[str, Any]:
    """Parse one YAML file whose root is a mapping.

    An empty file reads as an empty mapping.

    Raises:
        YAMLLoadError: Missing file, read error, bad syntax or a
            non-mapping root.
    """
    if not path.is_file():
        raise YAMLLoadError(path, "File does not exist")

    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise YAMLLoadError(path, f"Cannot read file: {e}") from e
    except yaml.YAMLError as e:
        raise YAMLLoadError(path, f"Invalid YAML syntax: {e}") from e

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise YAMLLoadError(path, f"YAML root must be a mapping, got {type(parsed).__name__}")
    return parsed


def load_yaml_directory(path: Path) -> dict[str, dict[str, Any]]:
    """Load every template file in a directory, keyed by file stem.

    Args:
        path: Template directory.

    Returns:
        Parsed files in stem order.

    Raises:
        YAMLLoadError: Missing directory, a file that fails to load, or two
            files sharing a stem (``a.yaml`` and ``a.yml``).
    """
    if not path.is_dir():
        raise YAMLLoadError(path, "Directory does not exist")

    templates: dict[str, dict[str, Any]] = {}
    files = sorted(p for p in path.iterdir() if p.suffix in TEMPLATE_SUFFIXES and p.is_file())
    for template_file in files:
        if template_file.stem in templates:
            raise YAMLLoadError(template_file, f"Duplicate template '{template_file.stem}'")
        templates[template_file.stem] = load_yaml(template_file)
    return dict(sorted(templates.items()))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Layer ``override`` on top of ``base``.

    Mappings present on both sides merge key by key; any other override
    value replaces the base value. The result shares no nested objects
    with either input, so cached templates stay untouched when a merged
    configuration is later edited.

    Example:
        >>> deep_merge({"limits": {"maxUsers": 100}}, {"limits": {"maxSchools": 50}})
        {'limits': {'maxUsers': 100, 'maxSchools': 50}}
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
