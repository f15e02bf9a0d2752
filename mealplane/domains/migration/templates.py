# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Parameterized SQL generators for common multi-tenant migrations.

Every template is a pure function returning a MigrationScript with the
up and down scripts. Nothing here touches the database; the generated
scripts go through MigrationService.create_definition like hand-written
ones.

Available templates:
- add_column: add a column with an optional default and index
- add_tenant_id: add the tenant_id column with foreign key and index
- enable_rls: enable row level security with a tenant isolation policy
- create_tenant_table: create a tenant-scoped table with RLS
- data_migration: copy rows between tables under a tenant id
- update_tenant_data: stamp existing rows with a tenant id
- bulk_add_tenant_id / bulk_enable_rls: the same over a list of tables

Example:
    >>> script = enable_row_level_security("products")
    >>> "ENABLE ROW LEVEL SECURITY" in script.up_sql
    True
"""

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from mealplane.core.exceptions import ValidationError
from mealplane.domains.migration.sql import (
    quote_literal,
    require_fragment,
    require_identifier,
)

TENANT_SETTING = "app.current_tenant_id"


@dataclass(frozen=True)
class MigrationScript:
    """Generated up/down script pair."""

    up_sql: str
    down_sql: str


def _require_uuid(value: str, field: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError as e:
        raise ValidationError(f"{field} must be a UUID", {"field": field, "value": value}) from e


def _tenant_predicate() -> str:
    return f"tenant_id = current_setting('{TENANT_SETTING}')::UUID"


# =============================================================================
# Single-table templates
# =============================================================================


def add_column(
    table: str,
    column: str,
    column_type: str,
    default: str | None = None,
    not_null: bool = False,
    add_index: bool = False,
) -> MigrationScript:
    """Add a column, optionally with a default value and an index.

    Args:
        table: Table name.
        column: Column name.
        column_type: SQL type of the new column.
        default: SQL expression used as default and to backfill rows.
        not_null: Add a NOT NULL constraint.
        add_index: Create an index on the new column.
    """
    require_identifier(table, "table")
    require_identifier(column, "column")
    column_type = require_fragment(column_type, "column_type")

    definition = f"{column} {column_type}"
    if default is not None:
        definition += f" DEFAULT {require_fragment(default, 'default')}"
    if not_null:
        definition += " NOT NULL"

    up = [
        f"-- Add {column} to {table}",
        f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {definition};",
    ]
    down = [f"-- Remove {column} from {table}"]

    index_name = f"idx_{table.replace('.', '_')}_{column}"
    if add_index:
        up.append(f"CREATE INDEX IF NOT EXISTS {index_name} ON {table}({column});")
        down.append(f"DROP INDEX IF EXISTS {index_name};")
    down.append(f"ALTER TABLE {table} DROP COLUMN IF EXISTS {column};")

    return MigrationScript("\n".join(up) + "\n", "\n".join(down) + "\n")


def add_tenant_id_column(
    table: str,
    default_tenant_id: str | None = None,
    nullable: bool = False,
    add_index: bool = True,
    add_foreign_key: bool = True,
) -> MigrationScript:
    """Add the tenant_id column to an existing table.

    When a default tenant is given for a nullable column, existing rows are
    backfilled and the column is then made NOT NULL.

    Args:
        table: Table name.
        default_tenant_id: Tenant that owns the pre-existing rows.
        nullable: Add the column as nullable first.
        add_index: Create idx_<table>_tenant_id.
        add_foreign_key: Reference tenants(id) with ON DELETE CASCADE.
    """
    require_identifier(table, "table")
    suffix = table.replace(".", "_")
    default_literal = None
    if default_tenant_id is not None:
        default_literal = quote_literal(_require_uuid(default_tenant_id, "default_tenant_id"))

    column = f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS tenant_id UUID"
    if not nullable and default_literal:
        column += f" DEFAULT {default_literal}"
    if not nullable:
        column += " NOT NULL"

    up = [f"-- Add tenant_id column to {table}", column + ";"]
    if add_foreign_key:
        up.append(
            f"ALTER TABLE {table} ADD CONSTRAINT fk_{suffix}_tenant_id "
            "FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE;"
        )
    if add_index:
        up.append(f"CREATE INDEX IF NOT EXISTS idx_{suffix}_tenant_id ON {table}(tenant_id);")
    if default_literal and nullable:
        up.append(f"UPDATE {table} SET tenant_id = {default_literal} WHERE tenant_id IS NULL;")
        up.append(f"ALTER TABLE {table} ALTER COLUMN tenant_id SET NOT NULL;")

    down = [f"-- Remove tenant_id column from {table}"]
    if add_foreign_key:
        down.append(f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS fk_{suffix}_tenant_id;")
    if add_index:
        down.append(f"DROP INDEX IF EXISTS idx_{suffix}_tenant_id;")
    down.append(f"ALTER TABLE {table} DROP COLUMN IF EXISTS tenant_id;")

    return MigrationScript("\n".join(up) + "\n", "\n".join(down) + "\n")


def enable_row_level_security(
    table: str,
    policy_name: str | None = None,
    custom_policy: str | None = None,
) -> MigrationScript:
    """Enable row level security with a tenant isolation policy.

    Args:
        table: Table name.
        policy_name: Defaults to tenant_isolation_<table>.
        custom_policy: Policy clause replacing the default USING predicate.
    """
    require_identifier(table, "table")
    policy = require_identifier(
        policy_name or f"tenant_isolation_{table.replace('.', '_')}", "policy_name"
    )
    clause = (
        require_fragment(custom_policy, "custom_policy")
        if custom_policy
        else f"USING ({_tenant_predicate()})"
    )

    up = (
        f"-- Enable Row Level Security for {table}\n"
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;\n"
        f"CREATE POLICY {policy} ON {table} {clause};\n"
    )
    down = (
        f"-- Disable Row Level Security for {table}\n"
        f"DROP POLICY IF EXISTS {policy} ON {table};\n"
        f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY;\n"
    )
    return MigrationScript(up, down)


def create_tenant_table(
    table: str,
    columns: Sequence[dict[str, Any]],
    indexes: Sequence[dict[str, Any]] = (),
) -> MigrationScript:
    """Create a tenant-scoped table with RLS enabled.

    Args:
        table: Table name.
        columns: Items with ``name``, ``type`` and optional ``constraints``.
        indexes: Items with ``name``, ``columns`` and optional ``unique``.
    """
    require_identifier(table, "table")
    if not columns:
        raise ValidationError("create_tenant_table requires at least one column", {"table": table})
    suffix = table.replace(".", "_")

    column_lines = [
        "  id UUID PRIMARY KEY DEFAULT gen_random_uuid()",
        "  tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE",
    ]
    for column in columns:
        line = (
            f"  {require_identifier(column.get('name'), 'columns.name')} "
            f"{require_fragment(column.get('type', ''), 'columns.type')}"
        )
        if column.get("constraints"):
            line += f" {require_fragment(column['constraints'], 'columns.constraints')}"
        column_lines.append(line)
    column_lines.append("  created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP")
    column_lines.append("  updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP")

    up = [
        f"-- Create tenant-aware table {table}",
        f"CREATE TABLE IF NOT EXISTS {table} (\n" + ",\n".join(column_lines) + "\n);",
        f"CREATE INDEX IF NOT EXISTS idx_{suffix}_tenant_id ON {table}(tenant_id);",
    ]
    for index in indexes:
        name = require_identifier(index.get("name"), "indexes.name")
        index_columns = [require_identifier(c, "indexes.columns") for c in index.get("columns", [])]
        if not index_columns:
            raise ValidationError(f"Index {name} has no columns", {"index": name})
        kind = "UNIQUE INDEX" if index.get("unique") else "INDEX"
        up.append(f"CREATE {kind} IF NOT EXISTS {name} ON {table}({', '.join(index_columns)});")
    up.append(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;")
    up.append(f"CREATE POLICY tenant_isolation_{suffix} ON {table} USING ({_tenant_predicate()});")

    down = f"-- Drop tenant-aware table {table}\nDROP TABLE IF EXISTS {table} CASCADE;\n"
    return MigrationScript("\n".join(up) + "\n", down)


def data_migration(
    source_table: str,
    target_table: str,
    tenant_id: str,
    column_mapping: dict[str, str],
    where_clause: str | None = None,
) -> MigrationScript:
    """Copy rows from one table into a tenant-scoped table.

    Args:
        source_table: Table to read from.
        target_table: Tenant-scoped table to insert into.
        tenant_id: Tenant stamped on every copied row.
        column_mapping: Source column or expression to target column.
        where_clause: Optional filter on the source rows.
    """
    require_identifier(source_table, "source_table")
    require_identifier(target_table, "target_table")
    tenant_literal = quote_literal(_require_uuid(tenant_id, "tenant_id"))
    if not column_mapping:
        raise ValidationError("column_mapping must not be empty", {"field": "column_mapping"})

    targets = [require_identifier(t, "column_mapping") for t in column_mapping.values()]
    sources = [require_fragment(s, "column_mapping") for s in column_mapping.keys()]

    up = (
        f"-- Migrate data from {source_table} to {target_table}\n"
        f"INSERT INTO {target_table} ({', '.join(targets)}, tenant_id)\n"
        f"SELECT {', '.join(sources)}, {tenant_literal}::UUID FROM {source_table}"
    )
    down = f"-- Remove migrated data from {target_table}\nDELETE FROM {target_table} WHERE tenant_id = {tenant_literal}"
    if where_clause:
        predicate = require_fragment(where_clause, "where_clause")
        up += f" WHERE {predicate}"
        down += f" AND {predicate}"
    return MigrationScript(up + ";\n", down + ";\n")


def update_tenant_data(
    table: str,
    tenant_id: str,
    where_clause: str | None = None,
) -> MigrationScript:
    """Stamp existing rows with a tenant id.

    Without a filter only rows whose tenant_id is NULL are updated.
    """
    require_identifier(table, "table")
    tenant_literal = quote_literal(_require_uuid(tenant_id, "tenant_id"))
    predicate = require_fragment(where_clause, "where_clause") if where_clause else "tenant_id IS NULL"

    up = f"UPDATE {table} SET tenant_id = {tenant_literal} WHERE {predicate};\n"
    down = f"UPDATE {table} SET tenant_id = NULL WHERE tenant_id = {tenant_literal};\n"
    return MigrationScript(up, down)


# =============================================================================
# Bulk templates
# =============================================================================


def _combine(scripts: Sequence[MigrationScript], header: str) -> MigrationScript:
    # Down scripts run in reverse so later tables are torn down first
    up = "\n".join(script.up_sql for script in scripts)
    down = "\n".join(script.down_sql for script in reversed(scripts))
    return MigrationScript(f"-- Bulk {header}\n{up}", f"-- Bulk undo {header}\n{down}")


def bulk_add_tenant_id(
    tables: Sequence[str],
    default_tenant_id: str | None = None,
) -> MigrationScript:
    """add_tenant_id_column over several tables."""
    if not tables:
        raise ValidationError("tables must not be empty", {"field": "tables"})
    return _combine(
        [add_tenant_id_column(table, default_tenant_id=default_tenant_id) for table in tables],
        "add tenant_id",
    )


def bulk_enable_row_level_security(tables: Sequence[str]) -> MigrationScript:
    """enable_row_level_security over several tables."""
    if not tables:
        raise ValidationError("tables must not be empty", {"field": "tables"})
    return _combine([enable_row_level_security(table) for table in tables], "enable RLS")


TEMPLATES: dict[str, Callable[..., MigrationScript]] = {
    "add_column": add_column,
    "add_tenant_id": add_tenant_id_column,
    "enable_rls": enable_row_level_security,
    "create_tenant_table": create_tenant_table,
    "data_migration": data_migration,
    "update_tenant_data": update_tenant_data,
    "bulk_add_tenant_id": bulk_add_tenant_id,
    "bulk_enable_rls": bulk_enable_row_level_security,
}


def generate_from_template(name: str, params: dict[str, Any]) -> MigrationScript:
    """Render a named template.

    Args:
        name: Key in TEMPLATES.
        params: Keyword arguments for the template function.

    Raises:
        ValidationError: Unknown template or invalid parameters.
    """
    template = TEMPLATES.get(name)
    if template is None:
        raise ValidationError(
            f"Migration template not found: {name}",
            {"available": sorted(TEMPLATES)},
        )
    try:
        return template(**params)
    except TypeError as e:
        raise ValidationError(f"Invalid parameters for template {name}: {e}") from e
