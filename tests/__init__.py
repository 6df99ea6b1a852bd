# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import os
from pathlib import Path
import tempfile
from typing import List, Mapping, NamedTuple, Optional, Sequence
import unittest

from kpatch_build.differ import DiffResult, classify_returncode
from kpatch_build.errors import PatchError
from kpatch_build.kbuild import BuildResult, BuildTranscript
from kpatch_build.patch import is_applied


@contextlib.contextmanager
def modifyenv(vars: Mapping[str, Optional[str]]):
    to_restore = []
    for key, value in vars.items():
        old_value = os.environ.get(key)
        if value != old_value:
            if value is None:
                del os.environ[key]
            else:
                os.environ[key] = value
            to_restore.append((key, old_value))
    try:
        yield
    finally:
        for key, old_value in to_restore:
            if old_value is None:
                del os.environ[key]
            else:
                os.environ[key] = old_value


class TempDirTestCase(unittest.TestCase):
    def setUp(self):
        super().setUp()
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.temp_dir = Path(temp_dir.name)


def write_cmd_file(build_dir: Path, target: str, command: str) -> Path:
    """Write the kbuild command file that records how target was built."""
    target_path = build_dir / target
    path = target_path.parent / f".{target_path.name}.cmd"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"savedcmd_{target} := {command}\n")
    return path


def transcript(*units: str) -> str:
    """Quiet kbuild output that compiles the given units."""
    return "".join(f"  CC      {unit}\n" for unit in units)


class FakeBuildStep(NamedTuple):
    transcript: str = ""
    # Files (relative to the build directory) the step writes.
    files: Optional[Mapping[str, bytes]] = None
    returncode: int = 0
    exception: Optional[BaseException] = None


class FakeBuild:
    """
    Build system that replays scripted build steps instead of running make.
    """

    def __init__(
        self,
        build_dir: Path,
        steps: Sequence[FakeBuildStep],
        *,
        release: str = "6.1.0",
        patcher=None,
        mrproper: Sequence[Path] = (),
    ) -> None:
        self._build_dir = build_dir
        self._steps = list(steps)
        self.release = release
        self.patcher = patcher
        self.mrproper = mrproper
        self.calls: List[tuple] = []
        self.applied_during_build: List[bool] = []

    @property
    def build_dir(self) -> Path:
        return self._build_dir

    def configure(self, config: Path) -> None:
        self.calls.append(("configure", config.read_text()))

    def clean_source(self) -> None:
        self.calls.append(("clean_source",))
        for path in self.mrproper:
            if path.exists():
                path.unlink()

    def kernel_release(self) -> str:
        return self.release

    def build(
        self, targets: Sequence[str], flags: Sequence[str], transcript_path: Path
    ) -> BuildResult:
        self.calls.append(("build", tuple(targets), tuple(flags)))
        if self.patcher is not None:
            self.applied_during_build.append(is_applied(self.patcher))
        step = self._steps.pop(0)
        if step.exception is not None:
            raise step.exception
        for name, contents in (step.files or {}).items():
            path = self._build_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(contents)
        transcript_path.write_text(step.transcript)
        return BuildResult(BuildTranscript.from_file(transcript_path), step.returncode)

    def link_relocatable(self, objects: Sequence[Path], output: Path) -> None:
        self.calls.append(("link", tuple(o.name for o in objects)))
        output.write_bytes(b"".join(o.read_bytes() for o in objects))

    def build_module(
        self, module_dir: Path, name: str, extra_symbols: Sequence[Path]
    ) -> Path:
        self.calls.append(("build_module", name, tuple(extra_symbols)))
        module = module_dir / f"{name}.ko"
        module.write_bytes((module_dir / "output.o").read_bytes())
        return module


class FakePatcher:
    def __init__(self, source_dir: Path, *, fail: Sequence[str] = ()) -> None:
        self._source_dir = source_dir
        self.fail = set(fail)
        self.calls: List[str] = []

    @property
    def source_dir(self) -> Path:
        return self._source_dir

    def _run(self, action: str, patch: Path) -> None:
        self.calls.append(action)
        if action in self.fail:
            raise PatchError(f"{patch.name} failed to {action}")

    def check(self, patch: Path) -> None:
        self._run("check", patch)

    def apply(self, patch: Path) -> None:
        self._run("apply", patch)

    def revert(self, patch: Path) -> None:
        self._run("revert", patch)


class DifferCall(NamedTuple):
    original: bytes
    patched: bytes
    container: str
    debug: bool


class FakeDiffer:
    """
    Differ that writes a marker delta. Exit statuses are looked up by the
    file name of the patched unit.
    """

    def __init__(self, returncodes: Optional[Mapping[str, int]] = None) -> None:
        self.returncodes = returncodes or {}
        self.calls: List[DifferCall] = []

    def diff(
        self,
        original: Path,
        patched: Path,
        container: Path,
        output: Path,
        debug: bool = False,
    ) -> DiffResult:
        self.calls.append(
            DifferCall(
                original.read_bytes(), patched.read_bytes(), container.name, debug
            )
        )
        returncode = self.returncodes.get(patched.name, 0)
        if returncode == 0:
            output.write_bytes(b"delta:" + patched.read_bytes())
        return DiffResult(classify_returncode(returncode), returncode)
