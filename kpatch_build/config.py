# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import os
from pathlib import Path
from typing import NamedTuple, Optional, Sequence

CACHE_DIR_ENV = "KPATCH_BUILD_CACHE"
DEFAULT_CACHE_DIR = Path("~/.kpatch")

DEFAULT_TARGETS = ("vmlinux", "modules")

# Every function and data object gets its own section so that the differ can
# pick out exactly the ones that changed.
SECTION_KCFLAGS = ("-ffunction-sections", "-fdata-sections")

# Units that are rebuilt on every build or that are generated build
# machinery, never part of the patch. These are fnmatch patterns.
EXCLUDED_UNITS = (
    "init/version.o",
    "init/version-timestamp.o",
    "scripts/mod/devicetable-offsets.s",
    "scripts/mod/file2alias.o",
    "*.mod.o",
)

# asm-offsets.s is regenerated when a structure used from assembly changes
# layout. Such a change can't be patched at the function level.
LAYOUT_CHANGE_UNITS = ("arch/*/kernel/asm-offsets.s",)

# Aggregates that are linked directly into vmlinux and have no dependency
# record naming them as a constituent.
CORE_IMAGE_ROOTS = (
    "built-in.a",
    "built-in.o",
    "*/built-in.a",
    "*/built-in.o",
    "lib/lib.a",
    "arch/*/lib/lib.a",
    "arch/x86/kernel/head*.o",
    "arch/x86/kernel/ebda.o",
    "arch/x86/kernel/platform-quirks.o",
)
MODULE_SUFFIX = ".ko"
CORE_IMAGE_NAME = "vmlinux"

# MODULE_NAME_LEN is 64 - sizeof(unsigned long) in the kernel, but the module
# name also ends up in sysfs paths next to a prefix, so keep some headroom.
MODULE_NAME_MAX = 48
MODULE_NAME_PREFIX = "kpatch-"

# Copy of the applied diff kept in the source tree for as long as the tree is
# patched.
APPLIED_PATCH_MARKER = "kpatch.patch"

DIFFER_PROGRAM = "create-diff-object"

KERNEL_ORG_URL = "https://cdn.kernel.org/pub/linux/kernel/"


class WorkspaceConfig(NamedTuple):
    cache_dir: Path
    # Caller-supplied source tree. If None, the cache manages the source.
    source_dir: Optional[Path] = None
    config: Optional[Path] = None
    vmlinux: Optional[Path] = None
    targets: Sequence[str] = DEFAULT_TARGETS
    output_dir: Path = Path(".")
    data_dir: Optional[Path] = None
    differ: str = DIFFER_PROGRAM
    name: Optional[str] = None
    jobs: Optional[int] = None
    debug: bool = False


def default_cache_dir() -> Path:
    env = os.getenv(CACHE_DIR_ENV)
    if env:
        return Path(env)
    return DEFAULT_CACHE_DIR.expanduser()
