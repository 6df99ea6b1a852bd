# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import logging
import os
from pathlib import Path
import signal
import sys
from types import FrameType
from typing import List, Optional, Sequence

from kpatch_build.cache import KernelCache
from kpatch_build.config import (
    DEFAULT_TARGETS,
    DIFFER_PROGRAM,
    WorkspaceConfig,
    default_cache_dir,
)
from kpatch_build.errors import KpatchBuildError
from kpatch_build.session import run
from kpatch_build.version import __version__

logger = logging.getLogger("kpatch_build")

_LOG_FORMAT = "%(asctime)s:%(levelname)s:%(name)s:%(message)s"


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="kpatch-build",
        description="build a live patch module from a kernel source patch",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("patch", metavar="PATCH", type=Path, help="patch file")
    parser.add_argument(
        "-s",
        "--sourcedir",
        metavar="DIR",
        type=Path,
        help="kernel source tree to use instead of downloading one; "
        "its .config and vmlinux are the defaults for --config and --vmlinux",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        type=Path,
        help="kernel configuration (default: /boot/config-VERSION, "
        "or .config in --sourcedir)",
    )
    parser.add_argument(
        "-v",
        "--vmlinux",
        metavar="FILE",
        type=Path,
        help="vmlinux of the kernel being patched",
    )
    parser.add_argument(
        "-r",
        "--kernel-version",
        metavar="VERSION",
        default=os.uname().release,
        help="kernel version to build the patch module for",
    )
    parser.add_argument(
        "-t",
        "--target",
        dest="targets",
        action="append",
        default=argparse.SUPPRESS,
        help="make target to build; may be given multiple times "
        f"(default: {' '.join(DEFAULT_TARGETS)})",
    )
    parser.add_argument(
        "-n", "--name", help="patch module name (default: derived from PATCH)"
    )
    parser.add_argument(
        "-o",
        "--output",
        metavar="DIR",
        type=Path,
        default=Path("."),
        help="directory to write the patch module to",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        help="number of parallel build jobs (default: number of CPUs)",
    )
    parser.add_argument(
        "--cachedir",
        metavar="DIR",
        type=Path,
        default=default_cache_dir(),
        help="directory for the kernel source, build output, and build log",
    )
    parser.add_argument(
        "--datadir",
        metavar="DIR",
        type=Path,
        help="directory with the patch module hook sources",
    )
    parser.add_argument(
        "--differ",
        metavar="PROGRAM",
        default=DIFFER_PROGRAM,
        help="object differ program",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="log debugging output and keep the scratch directory and build log",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser.parse_args(argv)


def _workspace_config(args: argparse.Namespace) -> WorkspaceConfig:
    return WorkspaceConfig(
        cache_dir=args.cachedir,
        source_dir=args.sourcedir,
        config=args.config,
        vmlinux=args.vmlinux,
        targets=tuple(getattr(args, "targets", DEFAULT_TARGETS)),
        output_dir=args.output,
        data_dir=args.datadir,
        differ=args.differ,
        name=args.name,
        jobs=args.jobs,
        debug=args.debug,
    )


def _setup_logging(debug: bool, log_file: Path) -> List[logging.Handler]:
    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if debug else logging.INFO)
    # Build and tool output is appended to the same file.
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.write_text("")
    file_handler = logging.FileHandler(log_file, mode="a")
    file_handler.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    formatter = logging.Formatter(_LOG_FORMAT)
    handlers: List[logging.Handler] = [console, file_handler]
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return handlers


def _raise_system_exit(signum: int, frame: Optional[FrameType]) -> None:
    # Unwind like any other error so that the session cleans up.
    raise SystemExit(128 + signum)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    workspace = _workspace_config(args)
    log_file = KernelCache(workspace.cache_dir).log_file
    handlers = _setup_logging(args.debug, log_file)
    previous_sigterm = signal.signal(signal.SIGTERM, _raise_system_exit)

    succeeded = False
    try:
        descriptor = run(args.patch, args.kernel_version, workspace)
        succeeded = True
    except KpatchBuildError as e:
        logger.error("%s", e)
        logger.error("see %s for the session log", log_file)
        return 1
    except KeyboardInterrupt:
        logger.error("interrupted")
        return 130
    finally:
        signal.signal(signal.SIGTERM, previous_sigterm)
        for handler in handlers:
            logging.getLogger().removeHandler(handler)
            handler.close()
        if succeeded and not args.debug:
            log_file.unlink()
    print(descriptor.path)
    return 0


def _main() -> None:
    sys.exit(main())


if __name__ == "__main__":
    _main()
