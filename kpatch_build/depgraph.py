# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Dependency graph of a kbuild build-output tree

Kbuild saves the command line used to build every target in a file named
``.<target>.cmd`` next to the target. For link steps (``ld -r``, ``ar``), that
command line names the units that were combined into the target. This module
reads those files into a :class:`DependencyGraph` indexed by constituent so
that finding the aggregates that claim a unit is a dictionary lookup.
"""

from collections import defaultdict
import logging
import os
from pathlib import Path
import posixpath
import re
from typing import (
    AbstractSet,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Set,
)

logger = logging.getLogger(__name__)


_CMD_LINE_RE = re.compile(r"^(?:saved)?cmd_(?P<target>\S+)\s*:=\s*(?P<command>.*)$")
# Since Linux 5.x, built-in.a is created with something like
#   printf "drivers/net/%s " foo.o bar.o | xargs ar cDPrST drivers/net/built-in.a
# so the constituent paths only appear with the printf prefix applied.
_PRINTF_RE = re.compile(
    r"""printf\s+(["'])(?P<prefix>[^"'%]*)%s\s*\1(?P<args>[^|;]*)\|"""
)
_TOKEN_RE = re.compile(r"""[^\s;'"()|]+""")
_UNIT_SUFFIXES = (".o", ".a", ".ko")


class DependencyRecord(NamedTuple):
    target: str
    constituents: FrozenSet[str]

    @property
    def directory(self) -> str:
        return posixpath.dirname(self.target)


def _normalize(path: str) -> str:
    path = posixpath.normpath(path)
    if path.startswith("./"):
        path = path[2:]
    return path


def _is_unit(token: str) -> bool:
    return not token.startswith("-") and token.endswith(_UNIT_SUFFIXES)


def command_constituents(
    target: str, command: str, build_dir: Optional[Path] = None
) -> FrozenSet[str]:
    """
    Return the unit paths named on a saved kbuild command line.

    :param target: Target the command builds. It is never its own constituent.
    :param command: Command line, without the ``cmd_<target> :=`` prefix.
    :param build_dir: Build-output tree used to expand ``@file`` response
        files and to relativize absolute paths.
    """
    paths: Set[str] = set()
    for match in _PRINTF_RE.finditer(command):
        prefix = match.group("prefix")
        for arg in match.group("args").split():
            paths.add(prefix + arg)
    for token in _TOKEN_RE.findall(_PRINTF_RE.sub("|", command)):
        if token.startswith("@"):
            if build_dir is None:
                continue
            try:
                contents = (build_dir / token[1:]).read_text()
            except FileNotFoundError:
                logger.debug("response file %s for %s is missing", token, target)
                continue
            paths.update(contents.split())
        else:
            paths.add(token)

    constituents = set()
    for path in paths:
        if not _is_unit(path):
            continue
        if os.path.isabs(path):
            if build_dir is None:
                continue
            try:
                path = str(Path(path).relative_to(build_dir.resolve()))
            except ValueError:
                continue
        path = _normalize(path)
        if path != target:
            constituents.add(path)
    return frozenset(constituents)


def parse_cmd_file(path: Path, build_dir: Path) -> Optional[DependencyRecord]:
    """
    Parse one ``.<target>.cmd`` file. Returns None if the file doesn't contain
    a saved command or if its target isn't an object, archive, or module.
    Kbuild also saves commands for bookkeeping files like ``modules.order``
    and ``<module>.mod``; those name units without linking them.
    """
    name = path.name
    if not (name.startswith(".") and name.endswith(".cmd")):
        raise ValueError(f"not a kbuild command file: {path}")
    target = _normalize(
        str(path.parent.relative_to(build_dir) / name[len(".") : -len(".cmd")])
    )
    if not _is_unit(target):
        return None
    with open(path, "r", errors="replace") as f:
        for line in f:
            match = _CMD_LINE_RE.match(line.rstrip("\n"))
            if match:
                return DependencyRecord(
                    target,
                    command_constituents(target, match.group("command"), build_dir),
                )
    return None


class DependencyGraph:
    """
    Index from each unit to the dependency records that claim it as a
    constituent.
    """

    def __init__(self, records: Iterable[DependencyRecord] = ()) -> None:
        self._records: Dict[str, DependencyRecord] = {}
        self._claimants: Dict[str, List[str]] = defaultdict(list)
        for record in records:
            self.add(record)

    def add(self, record: DependencyRecord) -> None:
        if record.target in self._records:
            raise ValueError(f"duplicate dependency record for {record.target}")
        self._records[record.target] = record
        for constituent in record.constituents:
            self._claimants[constituent].append(record.target)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[DependencyRecord]:
        return iter(self._records.values())

    def __contains__(self, target: object) -> bool:
        return target in self._records

    def record(self, target: str) -> DependencyRecord:
        return self._records[target]

    def claimants(self, unit: str) -> AbstractSet[str]:
        """Return the targets of all records listing unit, except its own."""
        return frozenset(
            target for target in self._claimants.get(unit, ()) if target != unit
        )

    @classmethod
    def from_dict(cls, links: Dict[str, Iterable[str]]) -> "DependencyGraph":
        return cls(
            DependencyRecord(target, frozenset(constituents))
            for target, constituents in links.items()
        )


def read_dependency_graph(build_dir: Path) -> DependencyGraph:
    """Read every kbuild command file under build_dir."""
    logger.info("reading dependency records from %s", build_dir)
    graph = DependencyGraph()
    for dirpath, _, filenames in os.walk(build_dir):
        for filename in filenames:
            if filename.startswith(".") and filename.endswith(".cmd"):
                record = parse_cmd_file(Path(dirpath) / filename, build_dir)
                if record is not None:
                    graph.add(record)
    logger.info("read %d dependency records", len(graph))
    return graph
