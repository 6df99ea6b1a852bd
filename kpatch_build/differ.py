# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import enum
import logging
from pathlib import Path
import shutil
import signal
import subprocess
from typing import NamedTuple, Optional, Protocol

from kpatch_build.errors import PreconditionError

logger = logging.getLogger(__name__)


class DiffStatus(enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    CRASHED = "crashed"


class DiffResult(NamedTuple):
    status: DiffStatus
    returncode: int

    def describe(self) -> str:
        if self.status == DiffStatus.CRASHED:
            try:
                return f"killed by {signal.Signals(self.signum).name}"
            except ValueError:
                return f"killed by signal {self.signum}"
        return f"exit status {self.returncode}"

    @property
    def signum(self) -> Optional[int]:
        if self.returncode < 0:
            return -self.returncode
        # A shell between us and the tool reports death by signal as 128 + N.
        if self.returncode > 128:
            return self.returncode - 128
        return None


class Differ(Protocol):
    def diff(
        self,
        original: Path,
        patched: Path,
        container: Path,
        output: Path,
        debug: bool = False,
    ) -> DiffResult: ...


def classify_returncode(returncode: int) -> DiffStatus:
    if returncode == 0:
        return DiffStatus.SUCCESS
    if returncode < 0 or returncode > 128:
        return DiffStatus.CRASHED
    return DiffStatus.ERROR


class CreateDiffObject:
    """The create-diff-object binary object differ."""

    def __init__(
        self,
        program: str,
        *,
        cwd: Optional[Path] = None,
        log_path: Optional[Path] = None,
    ) -> None:
        path = shutil.which(program)
        if path is None:
            raise PreconditionError(f"differ {program!r} not found")
        self._program = path
        self._cwd = cwd
        self._log_path = log_path

    def diff(
        self,
        original: Path,
        patched: Path,
        container: Path,
        output: Path,
        debug: bool = False,
    ) -> DiffResult:
        cmd = [self._program]
        if debug:
            cmd.append("-d")
        cmd.extend([str(original), str(patched), str(container), str(output)])
        logger.debug("running %s", " ".join(cmd))
        if self._log_path is None:
            returncode = subprocess.call(cmd, cwd=self._cwd)
        else:
            with open(self._log_path, "a") as log:
                returncode = subprocess.call(
                    cmd, cwd=self._cwd, stdout=log, stderr=subprocess.STDOUT
                )
        return DiffResult(classify_returncode(returncode), returncode)
