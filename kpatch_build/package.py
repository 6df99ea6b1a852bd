# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
from pathlib import Path
import re
import shutil
from typing import List, NamedTuple, Optional, Sequence, Tuple

from kpatch_build.assemble import DeltaArtifact, group_by_container
from kpatch_build.config import MODULE_NAME_MAX, MODULE_NAME_PREFIX
from kpatch_build.kbuild import BuildSystem

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]")
_PATCH_SUFFIXES = (".patch", ".diff")
COMBINED_OBJECT = "output.o"


class PatchModuleDescriptor(NamedTuple):
    name: str
    artifacts: Tuple[DeltaArtifact, ...]
    path: Path


def sanitize_module_name(name: str) -> str:
    """
    Make a string usable as a kernel module name: anything other than
    alphanumerics, underscores and hyphens becomes a hyphen, and the result is
    cut to the longest name the kernel stores.
    """
    return _INVALID_NAME_CHARS_RE.sub("-", name)[:MODULE_NAME_MAX]


def default_module_name(patch: Path) -> str:
    name = patch.name
    for suffix in _PATCH_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return sanitize_module_name(MODULE_NAME_PREFIX + name)


def _write_kbuild(module_dir: Path, name: str, objects: Sequence[str]) -> None:
    (module_dir / "Kbuild").write_text(
        f"obj-m := {name}.o\n{name}-objs := {' '.join(objects)}\n"
    )


def _copy_hook_sources(data_dir: Path, module_dir: Path) -> List[str]:
    objects = []
    for src in sorted(data_dir.iterdir()):
        if src.suffix in (".c", ".h", ".lds", ".S"):
            shutil.copy(src, module_dir / src.name)
            if src.suffix in (".c", ".S"):
                objects.append(src.stem + ".o")
    return objects


def package_module(
    artifacts: Sequence[DeltaArtifact],
    name: str,
    build: BuildSystem,
    module_dir: Path,
    output_dir: Path,
    symbol_tables: Sequence[Path],
    data_dir: Optional[Path] = None,
) -> PatchModuleDescriptor:
    """
    Link the deltas into one object and build it into the patch module.

    :param module_dir: Empty scratch directory to build the module in.
    :param output_dir: Directory the finished module is copied to.
    :param symbol_tables: Module.symvers files of the patched containers.
    :param data_dir: Directory with the patch-module hook sources, if any.
    """
    if name != sanitize_module_name(name):
        raise ValueError(f"invalid module name {name!r}")
    if not artifacts:
        raise ValueError("no delta artifacts to package")

    for container, deltas in sorted(
        group_by_container(artifacts).items(), key=lambda item: item[0].name
    ):
        logger.info(
            "patched %s: %s", container, ", ".join(delta.unit for delta in deltas)
        )

    module_dir.mkdir(parents=True, exist_ok=True)
    build.link_relocatable(
        [artifact.delta for artifact in artifacts], module_dir / COMBINED_OBJECT
    )
    objects = [COMBINED_OBJECT]
    if data_dir is not None:
        objects.extend(_copy_hook_sources(data_dir, module_dir))
    _write_kbuild(module_dir, name, objects)

    module = build.build_module(module_dir, name, symbol_tables)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / module.name
    shutil.copy(module, path)
    logger.info("built %s", path)
    return PatchModuleDescriptor(name, tuple(artifacts), path)
