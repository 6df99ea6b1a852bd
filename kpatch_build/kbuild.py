# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import os
from pathlib import Path
import shutil
import subprocess
from typing import Mapping, NamedTuple, Optional, Protocol, Sequence, Tuple

from kpatch_build.errors import BuildError
from kpatch_build.util import nproc, out_of_date

logger = logging.getLogger(__name__)


class BuildTranscript(NamedTuple):
    lines: Tuple[str, ...]
    # File the transcript was captured in, if any.
    path: Optional[Path] = None

    @classmethod
    def from_file(cls, path: Path) -> "BuildTranscript":
        with open(path, "r", errors="replace") as f:
            return cls(tuple(line.rstrip("\n") for line in f), path)

    @classmethod
    def from_text(cls, text: str) -> "BuildTranscript":
        return cls(tuple(text.splitlines()))


class BuildResult(NamedTuple):
    transcript: BuildTranscript
    returncode: int


class BuildSystem(Protocol):
    """What the build pipeline needs from the kernel build system."""

    @property
    def build_dir(self) -> Path: ...

    def configure(self, config: Path) -> None: ...

    def clean_source(self) -> None: ...

    def kernel_release(self) -> str: ...

    def build(
        self, targets: Sequence[str], flags: Sequence[str], transcript_path: Path
    ) -> BuildResult: ...

    def link_relocatable(self, objects: Sequence[Path], output: Path) -> None: ...

    def build_module(
        self, module_dir: Path, name: str, extra_symbols: Sequence[Path]
    ) -> Path: ...


class KBuild:
    """Out-of-tree (O=) kbuild driven through make."""

    def __init__(
        self,
        kernel_dir: Path,
        build_dir: Path,
        *,
        jobs: Optional[int] = None,
        local_version: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        log_path: Optional[Path] = None,
    ) -> None:
        self._kernel_dir = kernel_dir
        self._build_dir = build_dir
        self._jobs = jobs or nproc()
        self._local_version = local_version
        self._env = env
        self._log_path = log_path
        self._cached_kernel_release: Optional[str] = None

    @property
    def build_dir(self) -> Path:
        return self._build_dir

    def _make_args(self) -> Tuple[str, ...]:
        self._build_dir.mkdir(parents=True, exist_ok=True)
        args = [
            "-C",
            str(self._kernel_dir),
            "O=" + str(self._build_dir.resolve()),
            "-j",
            str(self._jobs),
        ]
        if self._local_version is not None:
            args.append("LOCALVERSION=" + self._local_version)
        return tuple(args)

    def _tool(self, name: str) -> str:
        return (os.environ if self._env is None else self._env).get(
            "CROSS_COMPILE", ""
        ) + name

    def _check_make(self, *args: str, description: str) -> None:
        cmd = ("make", *args)
        logger.debug("running %s", " ".join(cmd))
        if self._log_path is None:
            returncode = subprocess.call(cmd, env=self._env)
        else:
            with open(self._log_path, "a") as log:
                returncode = subprocess.call(
                    cmd, stdout=log, stderr=subprocess.STDOUT, env=self._env
                )
        if returncode != 0:
            raise BuildError(
                f"{description} failed with exit status {returncode}", self._log_path
            )

    def configure(self, config: Path) -> None:
        dst = self._build_dir / ".config"
        make_args = self._make_args()
        if not out_of_date(dst, config):
            logger.info("kernel configuration did not change")
            return
        logger.info("configuring %s from %s", self._build_dir, config)
        shutil.copy(config, dst)
        self._check_make(*make_args, "olddefconfig", description="kernel configuration")
        self._cached_kernel_release = None

    def clean_source(self) -> None:
        # An O= build refuses to run if the source tree has build artifacts.
        logger.info("cleaning source tree %s", self._kernel_dir)
        self._check_make(
            "-C", str(self._kernel_dir), "mrproper", description="source tree clean"
        )

    def kernel_release(self) -> str:
        if self._cached_kernel_release is None:
            try:
                output = subprocess.check_output(
                    ["make", *self._make_args(), "-s", "kernelrelease"],
                    env=self._env,
                    universal_newlines=True,
                )
            except subprocess.CalledProcessError as e:
                raise BuildError(
                    f"kernelrelease failed with exit status {e.returncode}"
                ) from e
            self._cached_kernel_release = output.strip()
        return self._cached_kernel_release

    def build(
        self, targets: Sequence[str], flags: Sequence[str], transcript_path: Path
    ) -> BuildResult:
        cmd = ["make", *self._make_args()]
        if flags:
            cmd.append("KCFLAGS=" + " ".join(flags))
        cmd.extend(targets)
        logger.info("building %s in %s", " ".join(targets), self._build_dir)
        logger.debug("running %s", " ".join(cmd))
        with open(transcript_path, "w") as transcript:
            returncode = subprocess.call(
                cmd, stdout=transcript, stderr=subprocess.STDOUT, env=self._env
            )
        return BuildResult(BuildTranscript.from_file(transcript_path), returncode)

    def link_relocatable(self, objects: Sequence[Path], output: Path) -> None:
        cmd = [self._tool("ld"), "-r", "-o", str(output), *[str(o) for o in objects]]
        logger.debug("running %s", " ".join(cmd))
        try:
            subprocess.check_call(cmd, env=self._env)
        except subprocess.CalledProcessError as e:
            raise BuildError(
                f"linking {output.name} failed with exit status {e.returncode}"
            ) from e

    def build_module(
        self, module_dir: Path, name: str, extra_symbols: Sequence[Path]
    ) -> Path:
        logger.info("building patch module %s.ko", name)
        self._check_make(
            *self._make_args(),
            "M=" + str(module_dir.resolve()),
            "KBUILD_EXTRA_SYMBOLS=" + " ".join(str(p) for p in extra_symbols),
            "modules",
            description=f"building module {name}",
        )
        module = module_dir / f"{name}.ko"
        if not module.exists():
            raise BuildError(f"module build did not produce {module}", self._log_path)
        return module
