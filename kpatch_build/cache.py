# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
from pathlib import Path
import shutil
import tempfile
from typing import Optional

logger = logging.getLogger(__name__)


class KernelCache:
    """
    Source and build-output trees kept between sessions, keyed by the kernel
    version they were prepared for.

    Layout::

        <root>/src        managed kernel source tree
        <root>/obj        build-output tree (O=)
        <root>/version    kernel version the trees belong to
        <root>/tmp        parent of session scratch directories
        <root>/build.log  log of the last session
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def src_dir(self) -> Path:
        return self.root / "src"

    @property
    def obj_dir(self) -> Path:
        return self.root / "obj"

    @property
    def version_file(self) -> Path:
        return self.root / "version"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    @property
    def log_file(self) -> Path:
        return self.root / "build.log"

    def cached_version(self) -> Optional[str]:
        try:
            return self.version_file.read_text().strip() or None
        except FileNotFoundError:
            return None

    def is_current(self, version: str) -> bool:
        return self.cached_version() == version

    def reset(self) -> None:
        logger.info("clearing cache at %s", self.root)
        try:
            self.version_file.unlink()
        except FileNotFoundError:
            pass
        for dir in (self.src_dir, self.obj_dir):
            shutil.rmtree(dir, ignore_errors=True)

    def stamp(self, version: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.version_file.write_text(version + "\n")

    def make_scratch(self) -> Path:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="kpatch-build.", dir=self.tmp_dir))
