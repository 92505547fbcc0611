# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Dependency resolution for packs.

Depth-first walk with white/gray/black colouring: a gray pack seen again is
a cycle, reported with its full path. Each dependency resolves to the
greatest registry version satisfying its constraint; a later constraint on
an already chosen pack that the chosen version does not satisfy is a
VersionConflict.
"""

import logging
from typing import Dict, List, Tuple

from gitvan.errors import CircularDependency, VersionConflict
from gitvan.packs import semver
from gitvan.packs.registry import PackRegistry
from gitvan.schemas.pack import PackSpec

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


class DependencyResolver:
    def __init__(self, registry: PackRegistry):
        self.registry = registry

    def resolve(self, root: PackSpec) -> List[PackSpec]:
        """Packs to apply, dependencies first and `root` last.

        Raises:
            UnresolvedDependency: A constraint matches no available version.
            VersionConflict: Two constraints on one pack disagree.
            CircularDependency: The graph has a cycle.
        """
        color: Dict[str, int] = {}
        chosen: Dict[str, PackSpec] = {root.id: root}
        constraints: Dict[str, List[Tuple[str, str]]] = {}
        stack: List[str] = []
        order: List[PackSpec] = []

        def visit(pack: PackSpec) -> None:
            color[pack.id] = GRAY
            stack.append(pack.id)
            for dep_id, constraint in sorted(pack.all_dependencies().items()):
                constraints.setdefault(dep_id, []).append((constraint, pack.id))
                state = color.get(dep_id, WHITE)
                if state == GRAY:
                    raise CircularDependency(stack[stack.index(dep_id):] + [dep_id])
                if dep_id in chosen:
                    current = chosen[dep_id]
                    if not semver.satisfies(current.version, constraint):
                        wanted = ", ".join(f"{c} (from {by})" for c, by in constraints[dep_id])
                        raise VersionConflict(
                            f"{dep_id}@{current.version} does not satisfy all of: {wanted}"
                        )
                    continue
                dep = self.registry.resolve(dep_id, constraint, required_by=pack.id)
                logger.debug(f"{pack.id} -> {dep.id}@{dep.version} ({constraint})")
                chosen[dep_id] = dep
                visit(dep)
            color[pack.id] = BLACK
            stack.pop()
            order.append(pack)

        visit(root)
        return order
