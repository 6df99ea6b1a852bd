# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Ownership resolution

Every compiled unit ends up in exactly one top-level binary: vmlinux or a
loadable module. The resolver finds it by walking up the link graph from the
unit until it reaches a target that nothing else claims.

Parents are searched for in the unit's own directory first, which is where
kbuild almost always links a unit. Only if that finds nothing and the unit
isn't a known root do we search the whole tree, since some makefiles fold
units into an aggregate defined in another directory.
"""

import enum
import fnmatch
import logging
import posixpath
from typing import AbstractSet, Dict, List, NamedTuple, Optional, Set

from kpatch_build.config import CORE_IMAGE_NAME, CORE_IMAGE_ROOTS, MODULE_SUFFIX
from kpatch_build.depgraph import DependencyGraph
from kpatch_build.errors import AmbiguousOwnershipError, UnresolvableOwnershipError

logger = logging.getLogger(__name__)


class ContainerKind(enum.Enum):
    CORE = "core"
    MODULE = "module"


class Container(NamedTuple):
    kind: ContainerKind
    # "vmlinux" or the path of the module relative to the build-output tree.
    name: str

    def __str__(self) -> str:
        return self.name


VMLINUX = Container(ContainerKind.CORE, CORE_IMAGE_NAME)


def local_parents(graph: DependencyGraph, unit: str) -> AbstractSet[str]:
    """Records in the unit's own directory that claim the unit."""
    directory = posixpath.dirname(unit)
    return frozenset(
        parent
        for parent in graph.claimants(unit)
        if posixpath.dirname(parent) == directory
    )


def global_parents(graph: DependencyGraph, unit: str) -> AbstractSet[str]:
    """Records anywhere in the tree that claim the unit."""
    return graph.claimants(unit)


def root_container(unit: str) -> Optional[Container]:
    """
    Return the container that a root of the link graph names, or None if the
    unit isn't named like a root.
    """
    if unit.endswith(MODULE_SUFFIX):
        return Container(ContainerKind.MODULE, unit)
    if any(fnmatch.fnmatchcase(unit, pattern) for pattern in CORE_IMAGE_ROOTS):
        return VMLINUX
    return None


class OwnershipResolver:
    def __init__(self, graph: DependencyGraph) -> None:
        self._graph = graph
        self._cache: Dict[str, Container] = {}

    def _parent(self, current: str, unit: str) -> Optional[str]:
        parents = local_parents(self._graph, current)
        if not parents:
            if root_container(current) is not None:
                return None
            logger.debug(
                "no parent for %s in %s, searching the whole tree",
                current,
                posixpath.dirname(current) or ".",
            )
            parents = global_parents(self._graph, current)
            if not parents:
                raise UnresolvableOwnershipError(
                    f"invalid ancestor {current} for {unit}"
                )
        if len(parents) > 1:
            raise AmbiguousOwnershipError(
                f"{len(parents)} parent matches for {current}: "
                + ", ".join(sorted(parents))
            )
        (parent,) = parents
        return parent

    def resolve(self, unit: str) -> Container:
        walked: List[str] = []
        seen: Set[str] = set()
        current = unit
        while True:
            container = self._cache.get(current)
            if container is not None:
                break
            if current in seen:
                raise UnresolvableOwnershipError(
                    f"link graph cycle at {current} while resolving {unit}"
                )
            seen.add(current)
            walked.append(current)
            parent = self._parent(current, unit)
            if parent is None:
                container = root_container(current)
                assert container is not None
                break
            logger.debug("%s is linked into %s", current, parent)
            current = parent
        for walked_unit in walked:
            self._cache[walked_unit] = container
        return container
