# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dependency ordering for migrations.

Pure functions over (id, dependencies, position) nodes. Ordering is a
topological sort where ties are broken by creation position, so two
migrations with no relation always run in the order they were defined.
"""

import heapq
from collections.abc import Container, Iterable, Sequence
from dataclasses import dataclass, field

from mealplane.core.exceptions import ValidationError


@dataclass(frozen=True)
class MigrationNode:
    """Graph view of a migration definition."""

    id: str
    position: int
    dependencies: tuple[str, ...] = field(default_factory=tuple)


def topological_order(nodes: Sequence[MigrationNode]) -> list[MigrationNode]:
    """Order nodes so every node comes after the dependencies in the set.

    Dependencies that are not part of ``nodes`` (already applied, or in a
    different scope) do not constrain the order.

    Args:
        nodes: Migrations to order.

    Returns:
        Nodes in dependency order, ties broken by position.

    Raises:
        ValidationError: If the dependencies contain a cycle.
    """
    by_id = {node.id: node for node in nodes}
    indegree = {node.id: 0 for node in nodes}
    dependents: dict[str, list[str]] = {node.id: [] for node in nodes}

    for node in nodes:
        for dep in node.dependencies:
            if dep in by_id and dep != node.id:
                indegree[node.id] += 1
                dependents[dep].append(node.id)

    ready = [(node.position, node.id) for node in nodes if indegree[node.id] == 0]
    heapq.heapify(ready)

    ordered: list[MigrationNode] = []
    while ready:
        _, node_id = heapq.heappop(ready)
        ordered.append(by_id[node_id])
        for child in dependents[node_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (by_id[child].position, child))

    if len(ordered) != len(nodes):
        cyclic = sorted(node_id for node_id, degree in indegree.items() if degree > 0)
        raise ValidationError(
            "Migration dependencies contain a cycle",
            {"migrations": cyclic},
        )

    return ordered


def direct_dependents(migration_id: str, nodes: Iterable[MigrationNode]) -> list[str]:
    """Ids of nodes that declare ``migration_id`` as a dependency."""
    return [node.id for node in nodes if migration_id in node.dependencies]


def unsatisfied_dependencies(
    node: MigrationNode,
    completed: Container[str],
) -> list[str]:
    """Dependencies of ``node`` that are not in the completed set."""
    return [dep for dep in node.dependencies if dep not in completed]
