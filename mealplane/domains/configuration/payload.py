# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pure helpers over configuration payloads.

Payloads are addressed two levels deep: ``category.key``. Values below
that level (an object or an array) are treated as a single value.
"""

import copy
from collections.abc import Iterator, Mapping
from typing import Any

from mealplane.models.configuration import ValueChange

Path = tuple[str | None, str]


def path_name(category: str | None, key: str) -> str:
    """Render a ``(category, key)`` pair as a dotted path."""
    return f"{category}.{key}" if category else key


def iter_paths(payload: Mapping[str, Any]) -> Iterator[tuple[str | None, str, Any]]:
    """Yield ``(category, key, value)`` for every addressable value.

    A top-level entry whose value is a mapping is a category; any other
    top-level entry is yielded with a ``None`` category.
    """
    for name, value in payload.items():
        if isinstance(value, Mapping):
            for key, item in value.items():
                yield name, key, item
        else:
            yield None, name, value


def flatten(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Map dotted paths to values."""
    return {path_name(category, key): value for category, key, value in iter_paths(payload)}


def lookup(payload: Mapping[str, Any], category: str | None, key: str) -> Any:
    """Value at ``category.key``, or None when absent."""
    if category is None:
        return payload.get(key)
    section = payload.get(category)
    if not isinstance(section, Mapping):
        return None
    return section.get(key)


def apply_changes(payload: Mapping[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``payload`` with ``changes`` applied.

    A ``None`` value deletes the key; categories left empty are dropped.

    Args:
        payload: Current tenant overrides.
        changes: Nested or top-level values to set.

    Returns:
        New payload; the input is not modified.
    """
    result = copy.deepcopy(dict(payload))

    for category, key, value in iter_paths(changes):
        if category is None:
            if value is None:
                result.pop(key, None)
            else:
                result[key] = copy.deepcopy(value)
            continue

        section = result.get(category)
        if not isinstance(section, dict):
            section = {}
        if value is None:
            section.pop(key, None)
        else:
            section[key] = copy.deepcopy(value)

        if section:
            result[category] = section
        else:
            result.pop(category, None)

    return result


def diff_payloads(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
) -> tuple[dict[str, Any], dict[str, Any], dict[str, ValueChange]]:
    """Compare two payloads path by path.

    Returns:
        Tuple of (added, removed, changed) keyed by dotted path.
    """
    before = flatten(old)
    after = flatten(new)

    added = {path: value for path, value in after.items() if path not in before}
    removed = {path: value for path, value in before.items() if path not in after}
    changed = {
        path: ValueChange(old_value=before[path], new_value=value)
        for path, value in after.items()
        if path in before and before[path] != value
    }
    return added, removed, changed


def changes_from_items(items: list[tuple[str | None, str, Any]]) -> dict[str, Any]:
    """Build a nested change mapping from ``(category, key, value)`` triples."""
    changes: dict[str, Any] = {}
    for category, key, value in items:
        if category is None:
            changes[key] = value
        else:
            changes.setdefault(category, {})[key] = value
    return changes
