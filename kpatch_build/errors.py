# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

from pathlib import Path
from typing import Optional


class KpatchBuildError(Exception):
    """Base class for every error that aborts a build session."""


class PreconditionError(KpatchBuildError):
    pass


class SourceError(KpatchBuildError):
    pass


class PatchError(KpatchBuildError):
    pass


class BuildError(KpatchBuildError):
    def __init__(self, message: str, transcript_path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.transcript_path = transcript_path


class SemanticError(KpatchBuildError):
    """The build succeeded but its result cannot be turned into a patch."""


class NoChangesError(SemanticError):
    pass


class LayoutChangeError(SemanticError):
    pass


class AmbiguousOwnershipError(SemanticError):
    pass


class UnresolvableOwnershipError(SemanticError):
    pass


class DifferError(KpatchBuildError):
    pass


class DifferCrashedError(DifferError):
    pass
