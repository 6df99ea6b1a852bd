# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

from concurrent.futures import ThreadPoolExecutor
import logging
from pathlib import Path
import shutil
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence

from kpatch_build.differ import DiffResult, DiffStatus, Differ
from kpatch_build.errors import DifferCrashedError, DifferError
from kpatch_build.resolver import Container

logger = logging.getLogger(__name__)


class DeltaArtifact(NamedTuple):
    unit: str
    container: Container
    delta: Path


class Workspace(NamedTuple):
    """Directories in the scratch area that deltas are built from and into."""

    orig: Path
    patched: Path
    output: Path

    @classmethod
    def under(cls, scratch: Path) -> "Workspace":
        return cls(scratch / "orig", scratch / "patched", scratch / "output")


def _preserve_core_dump(search_dir: Optional[Path], dest_dir: Optional[Path]) -> str:
    if search_dir is not None and dest_dir is not None:
        cores = sorted(search_dir.glob("core*"))
        if cores:
            dest_dir.mkdir(parents=True, exist_ok=True)
            dest = dest_dir / cores[0].name
            shutil.move(str(cores[0]), dest)
            return f"core file saved to {dest}"
    return "no core file found, run 'ulimit -c unlimited' and try to recreate"


def _extract_one(
    unit: str,
    container: Container,
    container_binary: Path,
    workspace: Workspace,
    differ: Differ,
    debug: bool,
) -> Optional[DiffResult]:
    output = workspace.output / unit
    output.parent.mkdir(parents=True, exist_ok=True)
    original = workspace.orig / unit
    if not original.exists():
        # The unit is new in the patched build, so all of it is the delta.
        logger.info("%s is new, using it as is", unit)
        shutil.copyfile(workspace.patched / unit, output)
        return None
    logger.info("extracting changes from %s (%s)", unit, container)
    return differ.diff(
        original, workspace.patched / unit, container_binary, output, debug
    )


def extract_deltas(
    units: Sequence[str],
    containers: Mapping[str, Container],
    container_binaries: Mapping[Container, Path],
    workspace: Workspace,
    differ: Differ,
    *,
    jobs: int = 1,
    debug: bool = False,
    core_dir: Optional[Path] = None,
    preserve_dir: Optional[Path] = None,
) -> List[DeltaArtifact]:
    """
    Run the differ on every changed unit against the binary of the container
    that owns it.

    All invocations finish before any failure is reported. Failures are
    reported for the first failing unit in the order given.

    :param core_dir: Directory the differ runs in, where it dumps core.
    :param preserve_dir: Directory to move a core dump to when the differ
        crashes.
    :raises DifferCrashedError: if the differ was killed by a signal
    :raises DifferError: if the differ failed
    """
    args = [
        (
            unit,
            containers[unit],
            container_binaries[containers[unit]],
            workspace,
            differ,
            debug,
        )
        for unit in units
    ]
    if jobs > 1 and len(args) > 1:
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            futures = [executor.submit(_extract_one, *a) for a in args]
        results = [future.result() for future in futures]
    else:
        results = [_extract_one(*a) for a in args]

    artifacts = []
    for unit, result in zip(units, results):
        if result is not None and result.status == DiffStatus.CRASHED:
            raise DifferCrashedError(
                f"differ crashed ({result.describe()}) on {unit}; "
                + _preserve_core_dump(core_dir, preserve_dir)
            )
        if result is not None and result.status != DiffStatus.SUCCESS:
            raise DifferError(f"differ failed ({result.describe()}) on {unit}")
        artifacts.append(
            DeltaArtifact(unit, containers[unit], workspace.output / unit)
        )
    return artifacts


def group_by_container(
    artifacts: Sequence[DeltaArtifact],
) -> Dict[Container, List[DeltaArtifact]]:
    grouped: Dict[Container, List[DeltaArtifact]] = {}
    for artifact in artifacts:
        grouped.setdefault(artifact.container, []).append(artifact)
    return grouped
