# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Applying and reverting the source patch

While the source tree is patched, a copy of the diff is kept in the tree
(:data:`~kpatch_build.config.APPLIED_PATCH_MARKER`). Reverting always uses
that copy, so a tree left patched by a crashed session can be restored by
the next one even if the original diff is gone.
"""

import logging
from pathlib import Path
import shutil
import subprocess
from typing import Optional, Protocol

from kpatch_build.config import APPLIED_PATCH_MARKER
from kpatch_build.errors import PatchError

logger = logging.getLogger(__name__)


class SourcePatcher(Protocol):
    @property
    def source_dir(self) -> Path: ...

    def check(self, patch: Path) -> None: ...

    def apply(self, patch: Path) -> None: ...

    def revert(self, patch: Path) -> None: ...


class GnuPatch:
    def __init__(
        self, source_dir: Path, *, strip: int = 1, log_path: Optional[Path] = None
    ) -> None:
        self._source_dir = source_dir
        self._strip = strip
        self._log_path = log_path

    @property
    def source_dir(self) -> Path:
        return self._source_dir

    def _run(self, patch: Path, *args: str, action: str) -> None:
        cmd = ["patch", f"-p{self._strip}", *args, "-i", str(patch.resolve())]
        logger.debug("running %s", " ".join(cmd))
        proc = subprocess.run(
            cmd,
            cwd=self._source_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            universal_newlines=True,
        )
        if self._log_path is not None:
            with open(self._log_path, "a") as log:
                log.write(proc.stdout)
        if proc.returncode != 0:
            raise PatchError(
                f"{patch.name} failed to {action}:\n{proc.stdout.rstrip()}"
            )

    def check(self, patch: Path) -> None:
        self._run(patch, "-N", "--dry-run", action="apply")

    def apply(self, patch: Path) -> None:
        self._run(patch, "-N", action="apply")

    def revert(self, patch: Path) -> None:
        self._run(patch, "-R", action="revert")


def marker_path(source_dir: Path) -> Path:
    return source_dir / APPLIED_PATCH_MARKER


def is_applied(patcher: SourcePatcher) -> bool:
    return marker_path(patcher.source_dir).exists()


def apply_patch(patcher: SourcePatcher, patch: Path) -> None:
    """Apply a patch after verifying that it applies cleanly."""
    if is_applied(patcher):
        raise PatchError(f"{patcher.source_dir} already has a patch applied")
    logger.info("testing patch %s", patch.name)
    patcher.check(patch)
    marker = marker_path(patcher.source_dir)
    # The marker goes in first so that an interrupted apply is still reverted.
    shutil.copyfile(patch, marker)
    logger.info("applying patch %s", patch.name)
    try:
        patcher.apply(marker)
    except PatchError:
        marker.unlink()
        raise


def revert_patch(patcher: SourcePatcher) -> bool:
    """
    Revert the applied patch, if any. Returns whether anything was reverted.
    """
    marker = marker_path(patcher.source_dir)
    if not marker.exists():
        return False
    logger.info("reverting patch")
    patcher.revert(marker)
    marker.unlink()
    return True
