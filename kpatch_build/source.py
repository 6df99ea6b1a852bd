# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Kernel source acquisition

The build either uses a caller-supplied source tree or a tree managed in the
cache. A managed tree is reused while it matches the target version;
otherwise the vanilla release is downloaded from kernel.org.
"""

import logging
from pathlib import Path
import re
import shutil
import subprocess
import tempfile
from typing import NamedTuple, Optional, Tuple
import urllib.error
import urllib.request

from kpatch_build.cache import KernelCache
from kpatch_build.config import KERNEL_ORG_URL
from kpatch_build.errors import PreconditionError, SourceError

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(
    r"(?P<major>[0-9]+)\.(?P<minor>[0-9]+)(?:\.(?P<sublevel>[0-9]+))?(?P<local>.*)"
)


class SourceTree(NamedTuple):
    source_dir: Path
    build_dir: Path
    config: Path
    # Reference vmlinux; None means the one in build_dir.
    vmlinux: Optional[Path]
    # LOCALVERSION needed for the build to report the target version.
    local_version: Optional[str]
    user_supplied: bool


def upstream_release(version: str) -> Tuple[str, str]:
    """
    Split a kernel version into the kernel.org release it is based on and the
    local version suffix.

    >>> upstream_release("6.1.0-13-amd64")
    ('6.1', '-13-amd64')
    """
    match = _VERSION_RE.fullmatch(version)
    if not match:
        raise SourceError(f"can't parse kernel version {version!r}")
    release = f"{match.group('major')}.{match.group('minor')}"
    sublevel = match.group("sublevel")
    if sublevel and sublevel != "0":
        release += "." + sublevel
    return release, match.group("local")


def upstream_tarball_url(release: str) -> str:
    major = release.split(".", 1)[0]
    return f"{KERNEL_ORG_URL}v{major}.x/linux-{release}.tar.xz"


def download_source(release: str, dir: Path) -> None:
    url = upstream_tarball_url(release)
    logger.info("downloading kernel %s from %s to %s", release, url, dir)
    dir.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=dir.parent) as tmp_name:
        tmp_dir = Path(tmp_name)
        with subprocess.Popen(
            ["xz", "--decompress"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
        ) as xz_proc, subprocess.Popen(
            ["tar", "-C", str(tmp_dir), "-x"],
            stdin=xz_proc.stdout,
        ) as tar_proc:
            assert xz_proc.stdin is not None
            try:
                with urllib.request.urlopen(url) as resp:
                    shutil.copyfileobj(resp, xz_proc.stdin)
            except urllib.error.URLError as e:
                raise SourceError(f"downloading {url} failed: {e}") from e
            finally:
                xz_proc.stdin.close()
        if xz_proc.returncode != 0:
            raise SourceError(f"decompressing {url} failed")
        if tar_proc.returncode != 0:
            raise SourceError(f"extracting {url} failed")
        archive_subdir = tmp_dir / f"linux-{release}"
        if not (archive_subdir / "Makefile").exists():
            raise SourceError(f"downloaded archive does not contain linux-{release}")
        archive_subdir.rename(dir)


def _require_file(path: Path, what: str) -> Path:
    if not path.is_file():
        raise PreconditionError(f"{what} {path} not found")
    return path


def prepare_source(
    cache: KernelCache,
    version: str,
    *,
    source_dir: Optional[Path] = None,
    config: Optional[Path] = None,
    vmlinux: Optional[Path] = None,
) -> SourceTree:
    """
    Find or acquire the source tree for a kernel version.

    :param source_dir: Caller-supplied source tree. Its ``.config`` and
        ``vmlinux`` are the defaults for config and vmlinux.
    :param config: Kernel configuration. Defaults to ``/boot/config-<version>``
        for managed trees.
    :param vmlinux: Reference vmlinux of the running kernel.
    """
    if source_dir is not None:
        if not (source_dir / "Makefile").is_file():
            raise PreconditionError(f"{source_dir} is not a kernel source tree")
        config = _require_file(
            config if config is not None else source_dir / ".config", "kernel config"
        )
        vmlinux = _require_file(
            vmlinux if vmlinux is not None else source_dir / "vmlinux", "vmlinux"
        )
        logger.info("using source directory at %s", source_dir)
        # The build-output tree is only reusable for the same source tree.
        key = f"{version} {source_dir.resolve()}"
        if not cache.is_current(key):
            cache.reset()
            cache.stamp(key)
        return SourceTree(
            source_dir=source_dir,
            build_dir=cache.obj_dir,
            config=config,
            vmlinux=vmlinux,
            local_version=None,
            user_supplied=True,
        )

    config = _require_file(
        config if config is not None else Path(f"/boot/config-{version}"),
        "kernel config",
    )
    if vmlinux is not None:
        _require_file(vmlinux, "vmlinux")
    release, local_version = upstream_release(version)
    if cache.is_current(version) and cache.src_dir.is_dir():
        logger.info("using cache at %s", cache.src_dir)
    else:
        cache.reset()
        download_source(release, cache.src_dir)
        cache.stamp(version)
    return SourceTree(
        source_dir=cache.src_dir,
        build_dir=cache.obj_dir,
        config=config,
        vmlinux=vmlinux,
        local_version=local_version,
        user_supplied=False,
    )
