# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQL text helpers for migration scripts.

Drivers execute one statement per call, so scripts are split on
top-level semicolons. Quoted strings, quoted identifiers, dollar-quoted
bodies and comments are respected.
"""

import re

from mealplane.core.exceptions import ValidationError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")
_DOLLAR_TAG = re.compile(r"\$[A-Za-z_0-9]*\$")


def require_identifier(value: str, field: str) -> str:
    """Validate a table, column, index or policy name.

    Args:
        value: Identifier to check, optionally schema qualified.
        field: Parameter name used in the error.

    Returns:
        The identifier unchanged.

    Raises:
        ValidationError: If the value is not a plain SQL identifier.
    """
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"Invalid SQL identifier for {field}: {value!r}",
            {"field": field, "value": value},
        )
    return value


def require_fragment(value: str, field: str) -> str:
    """Validate a free-form SQL fragment such as a column type or predicate.

    Fragments are interpolated into a single statement, so they may not
    terminate it or open a comment.
    """
    if not value or not value.strip():
        raise ValidationError(f"{field} must not be empty", {"field": field})
    if ";" in value or "--" in value or "/*" in value:
        raise ValidationError(
            f"{field} must not contain statement separators or comments",
            {"field": field, "value": value},
        )
    return value.strip()


def quote_literal(value: str) -> str:
    """Render a string as a SQL literal."""
    return "'" + str(value).replace("'", "''") + "'"


def split_statements(script: str) -> list[str]:
    """Split a SQL script into individual statements.

    Comments are dropped and empty statements are skipped.

    Args:
        script: SQL script text.

    Returns:
        List of statements without trailing semicolons.
    """
    statements: list[str] = []
    current: list[str] = []
    i = 0
    length = len(script)

    while i < length:
        char = script[i]

        if script.startswith("--", i):
            end = script.find("\n", i)
            i = length if end == -1 else end
            continue

        if script.startswith("/*", i):
            end = script.find("*/", i + 2)
            i = length if end == -1 else end + 2
            current.append(" ")
            continue

        if char in ("'", '"'):
            end = i + 1
            while end < length:
                if script[end] == char:
                    if end + 1 < length and script[end + 1] == char:
                        end += 2
                        continue
                    break
                end += 1
            current.append(script[i : end + 1])
            i = end + 1
            continue

        if char == "$":
            tag = _DOLLAR_TAG.match(script, i)
            if tag:
                close = script.find(tag.group(0), tag.end())
                end = length if close == -1 else close + len(tag.group(0))
                current.append(script[i:end])
                i = end
                continue

        if char == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
            i += 1
            continue

        current.append(char)
        i += 1

    statement = "".join(current).strip()
    if statement:
        statements.append(statement)

    return statements
