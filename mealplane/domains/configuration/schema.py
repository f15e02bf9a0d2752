# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration schema: field types, defaults, validation and inheritance.

The schema is loaded from ``configuration-schema.yaml``:

    limits:
      maxSchools:
        type: number
        required: true
        default: 50
        validation: {min: 1, max: 1000}

Every field belongs to a category. Schema defaults form the global
layer that tenant overrides are resolved against.
"""

import copy
import logging
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

from mealplane.core.config.yaml_loader import YAMLLoadError, deep_merge, load_yaml
from mealplane.domains.configuration.payload import iter_paths, lookup, path_name
from mealplane.models.configuration import ConfigurationIssue, IssueCode, ValidationResult

logger = logging.getLogger(__name__)

SCHEMA_FILE = "configuration-schema.yaml"

FIELD_TYPES = frozenset({"boolean", "number", "string", "object", "array"})
INHERIT_RULES = frozenset({"override", "merge", "append"})
CONDITIONS = frozenset(
    {"equals", "not_equals", "greater_than", "less_than", "exists", "not_exists"}
)


@dataclass(frozen=True)
class FieldDependency:
    """Condition another field must satisfy while this one is enabled."""

    category: str
    key: str
    condition: str = "equals"
    value: Any = True
    message: str | None = None

    def is_met(self, resolved: Mapping[str, Any]) -> bool:
        actual = lookup(resolved, self.category, self.key)
        if self.condition == "exists":
            return actual is not None
        if self.condition == "not_exists":
            return actual is None
        if self.condition == "not_equals":
            return actual != self.value
        if self.condition in ("greater_than", "less_than"):
            if not _matches_type("number", actual):
                return False
            if self.condition == "greater_than":
                return actual > self.value
            return actual < self.value
        return actual == self.value


@dataclass(frozen=True)
class FieldSchema:
    """Definition of one configuration key."""

    category: str
    key: str
    type: str
    required: bool = False
    default: Any = None
    validation: Mapping[str, Any] = field(default_factory=dict)
    dependencies: tuple[FieldDependency, ...] = ()
    deprecated: bool = False
    inherit: str = "override"
    description: str | None = None

    @property
    def path(self) -> str:
        return path_name(self.category, self.key)

    def check(self, value: Any) -> list[ConfigurationIssue]:
        """Type and value checks for a single value.

        Returns:
            Errors found, empty when the value is acceptable.
        """
        if not _matches_type(self.type, value):
            return [
                self._issue(
                    f"Expected {self.type}, got {type(value).__name__}",
                    IssueCode.INVALID_TYPE,
                )
            ]

        issues: list[ConfigurationIssue] = []
        rules = self.validation

        if self.type == "number":
            if "min" in rules and value < rules["min"]:
                issues.append(
                    self._issue(f"Value must be at least {rules['min']}", IssueCode.VALIDATION_FAILED)
                )
            if "max" in rules and value > rules["max"]:
                issues.append(
                    self._issue(f"Value must be at most {rules['max']}", IssueCode.VALIDATION_FAILED)
                )

        if self.type == "string" and "pattern" in rules:
            if not re.search(rules["pattern"], value):
                issues.append(
                    self._issue(
                        f"Value does not match pattern {rules['pattern']}",
                        IssueCode.VALIDATION_FAILED,
                    )
                )

        if "enum" in rules and value not in rules["enum"]:
            issues.append(
                self._issue(
                    f"Value must be one of: {', '.join(map(str, rules['enum']))}",
                    IssueCode.INVALID_VALUE,
                )
            )

        return issues

    def _issue(self, message: str, code: IssueCode) -> ConfigurationIssue:
        return ConfigurationIssue(category=self.category, key=self.key, message=message, code=code)


def _matches_type(field_type: str, value: Any) -> bool:
    if field_type == "boolean":
        return isinstance(value, bool)
    if field_type == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return not (isinstance(value, float) and (math.isnan(value) or math.isinf(value)))
    if field_type == "string":
        return isinstance(value, str)
    if field_type == "object":
        return isinstance(value, Mapping)
    if field_type == "array":
        return isinstance(value, list)
    return False


class ConfigurationSchema:
    """Indexed set of field definitions.

    Example:
        >>> schema = ConfigurationSchema.from_mapping(load_yaml(path))
        >>> result = schema.validate({"limits": {"maxSchools": 0}}, resolved)
        >>> result.is_valid
        False
    """

    def __init__(self, fields: Iterable[FieldSchema]) -> None:
        self._fields: dict[tuple[str, str], FieldSchema] = {
            (f.category, f.key): f for f in fields
        }
        self._categories = frozenset(category for category, _ in self._fields)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConfigurationSchema":
        """Build a schema from the YAML structure.

        Raises:
            ValueError: If a field declares an unknown type, inherit rule
                or dependency condition.
        """
        fields: list[FieldSchema] = []
        for category, entries in data.items():
            if not isinstance(entries, Mapping):
                raise ValueError(f"Category {category} must map keys to field definitions")
            for key, declaration in entries.items():
                fields.append(_parse_field(category, key, declaration or {}))
        return cls(fields)

    @property
    def fields(self) -> list[FieldSchema]:
        return list(self._fields.values())

    @property
    def categories(self) -> frozenset[str]:
        return self._categories

    def get(self, category: str | None, key: str) -> FieldSchema | None:
        if category is None:
            return None
        return self._fields.get((category, key))

    def defaults(self) -> dict[str, Any]:
        """Global default layer as a nested payload."""
        result: dict[str, Any] = {}
        for f in self._fields.values():
            if f.default is not None:
                result.setdefault(f.category, {})[f.key] = copy.deepcopy(f.default)
        return result

    # =========================================================================
    # Inheritance
    # =========================================================================

    def resolve(self, overrides: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        """Overlay tenant overrides on the defaults.

        Each key's ``inherit`` rule decides how an override combines with
        the default: ``override`` replaces it, ``merge`` deep-merges two
        objects and ``append`` concatenates two arrays.

        Args:
            overrides: Tenant payload.

        Returns:
            Tuple of (resolved configuration, provenance per dotted path).
        """
        resolved = self.defaults()
        provenance = {path_name(c, k): "default" for c, k, _ in iter_paths(resolved)}

        for category, key, value in iter_paths(overrides):
            provenance[path_name(category, key)] = "tenant"
            if category is None:
                resolved[key] = copy.deepcopy(value)
                continue

            section = resolved.get(category)
            if not isinstance(section, dict):
                section = resolved[category] = {}
            base = section.get(key)
            f = self.get(category, key)
            rule = f.inherit if f else "override"

            if rule == "merge" and isinstance(base, dict) and isinstance(value, Mapping):
                section[key] = deep_merge(base, dict(value))
            elif rule == "append" and isinstance(base, list) and isinstance(value, list):
                section[key] = base + [copy.deepcopy(v) for v in value if v not in base]
            else:
                section[key] = copy.deepcopy(value)

        return resolved, provenance

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(
        self,
        changes: Mapping[str, Any],
        resolved: Mapping[str, Any],
    ) -> ValidationResult:
        """Validate changed values and the configuration they produce.

        Type and value rules apply to the changed paths. Required fields
        and field dependencies are checked on ``resolved``, the effective
        configuration after the changes. A dependency is only enforced
        while the dependent field holds a truthy value. All violations are
        collected.

        Args:
            changes: Values being written. ``None`` marks a removal.
            resolved: Effective configuration after the change.

        Returns:
            Validation result with errors and warnings.
        """
        errors: list[ConfigurationIssue] = []
        warnings: list[ConfigurationIssue] = []

        for category, key, value in iter_paths(changes):
            if category is None:
                if key in self._categories and value is not None:
                    errors.append(
                        ConfigurationIssue(
                            key=key,
                            message=f"Category {key} must be an object",
                            code=IssueCode.INVALID_TYPE,
                        )
                    )
                elif key not in self._categories:
                    warnings.append(
                        ConfigurationIssue(
                            key=key,
                            message=f"Unknown configuration key: {key}",
                            code=IssueCode.UNKNOWN_FIELD,
                        )
                    )
                continue

            f = self.get(category, key)
            if f is None:
                warnings.append(
                    ConfigurationIssue(
                        category=category,
                        key=key,
                        message=f"Unknown configuration key: {path_name(category, key)}",
                        code=IssueCode.UNKNOWN_FIELD,
                    )
                )
                continue
            if f.deprecated:
                warnings.append(
                    f._issue(f"{f.path} is deprecated", IssueCode.DEPRECATED_FIELD)
                )
            if value is not None:
                errors.extend(f.check(value))

        for f in self._fields.values():
            current = lookup(resolved, f.category, f.key)
            if f.required and current is None:
                errors.append(
                    f._issue(f"{f.path} is required", IssueCode.REQUIRED_FIELD_MISSING)
                )
                continue
            if not current:
                continue
            for dep in f.dependencies:
                if not dep.is_met(resolved):
                    errors.append(
                        f._issue(
                            dep.message
                            or f"{f.path} requires {path_name(dep.category, dep.key)}"
                            f" {dep.condition} {dep.value}",
                            IssueCode.DEPENDENCY_NOT_MET,
                        )
                    )

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _parse_field(category: str, key: str, declaration: Mapping[str, Any]) -> FieldSchema:
    field_type = declaration.get("type", "string")
    if field_type not in FIELD_TYPES:
        raise ValueError(f"{category}.{key}: unknown type {field_type}")

    inherit = declaration.get("inherit", "override")
    if inherit not in INHERIT_RULES:
        raise ValueError(f"{category}.{key}: unknown inherit rule {inherit}")

    dependencies = []
    for dep in declaration.get("dependencies") or []:
        condition = dep.get("condition", "equals")
        if condition not in CONDITIONS:
            raise ValueError(f"{category}.{key}: unknown dependency condition {condition}")
        dependencies.append(
            FieldDependency(
                category=dep["category"],
                key=dep["key"],
                condition=condition,
                value=dep.get("value", True),
                message=dep.get("message"),
            )
        )

    return FieldSchema(
        category=category,
        key=key,
        type=field_type,
        required=bool(declaration.get("required", False)),
        default=declaration.get("default"),
        validation=dict(declaration.get("validation") or {}),
        dependencies=tuple(dependencies),
        deprecated=bool(declaration.get("deprecated", False)),
        inherit=inherit,
        description=declaration.get("description"),
    )


@lru_cache(maxsize=8)
def load_schema(config_dir: Path) -> ConfigurationSchema:
    """Load and cache the schema from a configuration directory.

    Raises:
        YAMLLoadError: If the schema file is missing or malformed.
    """
    path = config_dir / SCHEMA_FILE
    try:
        schema = ConfigurationSchema.from_mapping(load_yaml(path))
    except ValueError as e:
        raise YAMLLoadError(path, str(e)) from e
    logger.debug("Loaded configuration schema with %d fields from %s", len(schema.fields), path)
    return schema
