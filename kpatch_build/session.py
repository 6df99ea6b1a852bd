# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Patch build session

A session builds the kernel unpatched, patched, and unpatched again, works
out which units the patch changed and which binaries own them, extracts the
binary difference of each unit and packages the differences as a module.

Whatever happens, the source tree is left unpatched and the scratch
directory is removed when the session ends.
"""

import logging
from pathlib import Path
import shutil
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    Sequence,
    Tuple,
)

from kpatch_build.assemble import DeltaArtifact, Workspace, extract_deltas
from kpatch_build.cache import KernelCache
from kpatch_build.config import SECTION_KCFLAGS, WorkspaceConfig
from kpatch_build.depgraph import DependencyGraph, read_dependency_graph
from kpatch_build.detect import compiled_unit, detect_changes
from kpatch_build.differ import CreateDiffObject, Differ
from kpatch_build.errors import BuildError, PreconditionError
from kpatch_build.kbuild import BuildSystem, BuildTranscript, KBuild
from kpatch_build.package import (
    PatchModuleDescriptor,
    default_module_name,
    package_module,
    sanitize_module_name,
)
from kpatch_build.patch import (
    GnuPatch,
    SourcePatcher,
    apply_patch,
    is_applied,
    revert_patch,
)
from kpatch_build.resolver import Container, ContainerKind, OwnershipResolver
from kpatch_build.source import SourceTree, prepare_source
from kpatch_build.util import nproc, tail_lines

logger = logging.getLogger(__name__)


class Session:
    """
    State shared by the stages of one build session. Used as a context
    manager, it cleans up when the block exits, however it exits.
    """

    def __init__(
        self,
        patch: Path,
        version: str,
        patcher: SourcePatcher,
        scratch: Path,
        *,
        log_path: Optional[Path] = None,
        debug: bool = False,
    ) -> None:
        self.patch = patch
        self.version = version
        self.patcher = patcher
        self.scratch = scratch
        self.log_path = log_path
        self.debug = debug
        self._relocated: List[Tuple[Path, Path]] = []

    @property
    def source_dir(self) -> Path:
        return self.patcher.source_dir

    @property
    def patch_applied(self) -> bool:
        return is_applied(self.patcher)

    def relocate(self, path: Path) -> Path:
        """
        Save a copy of a file from the source tree that is put back when the
        session ends. Returns the saved copy.
        """
        saved_dir = self.scratch / "relocated"
        saved_dir.mkdir(parents=True, exist_ok=True)
        saved = saved_dir / path.name
        shutil.copy2(path, saved)
        self._relocated.append((path, saved))
        return saved

    def _restore_relocated(self) -> None:
        while self._relocated:
            original, saved = self._relocated.pop()
            if saved.exists():
                logger.debug("restoring %s", original)
                shutil.copy2(saved, original)

    def cleanup(self) -> None:
        """
        Revert the patch if it is still applied, restore relocated files and
        remove the scratch directory unless debugging. Safe to call more than
        once.
        """
        try:
            revert_patch(self.patcher)
        finally:
            # Scratch holds the saved copies and must outlive a failed restore.
            self._restore_relocated()
            if self.debug:
                if self.scratch.exists():
                    logger.info("keeping scratch directory %s", self.scratch)
            else:
                shutil.rmtree(self.scratch, ignore_errors=True)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.cleanup()


def _within(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory.resolve())
    except ValueError:
        return False
    return True


class PatchSession:
    def __init__(
        self,
        session: Session,
        build: BuildSystem,
        differ: Differ,
        source: SourceTree,
        *,
        name: str,
        targets: Sequence[str],
        output_dir: Path,
        data_dir: Optional[Path] = None,
        jobs: int = 1,
        preserve_dir: Optional[Path] = None,
        read_graph: Callable[[Path], DependencyGraph] = read_dependency_graph,
    ) -> None:
        self._session = session
        self._build = build
        self._differ = differ
        self._source = source
        self._name = name
        self._targets = targets
        self._output_dir = output_dir
        self._data_dir = data_dir
        self._jobs = jobs
        self._preserve_dir = preserve_dir
        self._read_graph = read_graph
        self._config = source.config
        self._vmlinux = source.vmlinux
        self._workspace = Workspace.under(session.scratch)

    def _append_to_log(self, transcript: BuildTranscript) -> None:
        if self._session.log_path is not None:
            with open(self._session.log_path, "a") as log:
                for line in transcript.lines:
                    log.write(line + "\n")

    def _run_build(self, what: str) -> BuildTranscript:
        transcript_path = self._session.scratch / f"{what}_build.log"
        result = self._build.build(self._targets, SECTION_KCFLAGS, transcript_path)
        self._append_to_log(result.transcript)
        if result.returncode != 0:
            if result.transcript.path is not None:
                for line in tail_lines(result.transcript.path, 20):
                    logger.error("%s", line)
            raise BuildError(
                f"{what} build failed with exit status {result.returncode}",
                result.transcript.path,
            )
        return result.transcript

    def _stash(self, units: Sequence[str], dest: Path) -> None:
        for unit in units:
            src = self._build.build_dir / unit
            if not src.exists():
                raise BuildError(f"{unit} not found in {self._build.build_dir}")
            dst = dest / unit
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)

    def _prepare_workspace(self) -> None:
        if revert_patch(self._session.patcher):
            logger.warning("reverted a patch left applied by an earlier session")
        if self._source.user_supplied:
            # mrproper deletes .config and vmlinux from the tree.
            source_dir = self._source.source_dir
            if _within(self._config, source_dir):
                self._config = self._session.relocate(self._config)
            if self._vmlinux is not None and _within(self._vmlinux, source_dir):
                self._vmlinux = self._session.relocate(self._vmlinux)
            self._build.clean_source()

    def _build_baseline(self) -> None:
        logger.info("building original kernel")
        self._build.configure(self._config)
        release = self._build.kernel_release()
        if release != self._session.version:
            logger.warning(
                "kernel release %s does not match target version %s",
                release,
                self._session.version,
            )
        self._run_build("original")

    def _build_patched(self) -> FrozenSet[str]:
        apply_patch(self._session.patcher, self._session.patch)
        logger.info("building patched kernel")
        transcript = self._run_build("patched")
        logger.info("detecting changed objects")
        changed = detect_changes(transcript)
        self._stash(sorted(changed), self._workspace.patched)
        return changed

    def _rebuild_original(self, changed: FrozenSet[str]) -> None:
        revert_patch(self._session.patcher)
        logger.info("rebuilding original kernel")
        transcript = self._run_build("reverted")
        rebuilt = {compiled_unit(line) for line in transcript.lines}
        for unit in sorted(changed):
            if unit in rebuilt:
                self._stash([unit], self._workspace.orig)
            else:
                logger.info("%s has no original counterpart", unit)

    def _resolve(self, changed: FrozenSet[str]) -> Dict[str, Container]:
        resolver = OwnershipResolver(self._read_graph(self._build.build_dir))
        containers = {}
        for unit in sorted(changed):
            containers[unit] = resolver.resolve(unit)
            logger.info("%s is part of %s", unit, containers[unit])
        return containers

    def _container_binaries(
        self, containers: Dict[str, Container]
    ) -> Dict[Container, Path]:
        binaries = {}
        for container in set(containers.values()):
            if container.kind == ContainerKind.CORE:
                binary = self._vmlinux or self._build.build_dir / container.name
                if not binary.exists():
                    raise PreconditionError(f"{binary} not found")
            else:
                src = self._build.build_dir / container.name
                if not src.exists():
                    raise PreconditionError(f"module {src} not found")
                binary = self._session.scratch / "module" / container.name
                binary.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, binary)
            binaries[container] = binary
        return binaries

    def _extract(self, containers: Dict[str, Container]) -> List[DeltaArtifact]:
        logger.info("extracting new and modified ELF sections")
        return extract_deltas(
            sorted(containers),
            containers,
            self._container_binaries(containers),
            self._workspace,
            self._differ,
            jobs=self._jobs,
            debug=self._session.debug,
            core_dir=self._session.scratch,
            preserve_dir=self._preserve_dir,
        )

    def _package(self, artifacts: List[DeltaArtifact]) -> PatchModuleDescriptor:
        symvers = self._build.build_dir / "Module.symvers"
        return package_module(
            artifacts,
            self._name,
            self._build,
            self._session.scratch / "patch",
            self._output_dir,
            [symvers] if symvers.exists() else [],
            self._data_dir,
        )

    def run(self) -> PatchModuleDescriptor:
        self._prepare_workspace()
        self._build_baseline()
        changed = self._build_patched()
        self._rebuild_original(changed)
        containers = self._resolve(changed)
        artifacts = self._extract(containers)
        return self._package(artifacts)


def run(patch: Path, version: str, workspace: WorkspaceConfig) -> PatchModuleDescriptor:
    """Build a patch module for a kernel version from a source patch."""
    if not patch.is_file():
        raise PreconditionError(f"patch file {patch} not found")
    if workspace.name is not None:
        name = sanitize_module_name(workspace.name)
    else:
        name = default_module_name(patch)
    if not name.strip("-"):
        raise PreconditionError(f"invalid module name {name!r}")
    for program in ("make", "patch", workspace.differ):
        if shutil.which(program) is None:
            raise PreconditionError(f"{program} not found")

    cache = KernelCache(workspace.cache_dir)
    source = prepare_source(
        cache,
        version,
        source_dir=workspace.source_dir,
        config=workspace.config,
        vmlinux=workspace.vmlinux,
    )
    jobs = workspace.jobs or nproc()

    scratch = cache.make_scratch()
    log_path = cache.log_file
    patcher = GnuPatch(source.source_dir, log_path=log_path)
    with Session(
        patch, version, patcher, scratch, log_path=log_path, debug=workspace.debug
    ) as session:
        build = KBuild(
            source.source_dir,
            source.build_dir,
            jobs=jobs,
            local_version=source.local_version,
            log_path=log_path,
        )
        differ = CreateDiffObject(workspace.differ, cwd=scratch, log_path=log_path)
        return PatchSession(
            session,
            build,
            differ,
            source,
            name=name,
            targets=workspace.targets,
            output_dir=workspace.output_dir,
            data_dir=workspace.data_dir,
            jobs=jobs,
            preserve_dir=cache.root,
        ).run()
