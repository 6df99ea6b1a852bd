# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import fnmatch
import logging
import re
from typing import FrozenSet, Iterable, Optional, Set

from kpatch_build.config import EXCLUDED_UNITS, LAYOUT_CHANGE_UNITS
from kpatch_build.errors import LayoutChangeError, NoChangesError
from kpatch_build.kbuild import BuildTranscript

logger = logging.getLogger(__name__)

# Kbuild's quiet output, e.g.:
#   "  CC      kernel/fork.o"
#   "  CC [M]  drivers/net/dummy.o"
_COMPILE_EVENT_RE = re.compile(r"^\s*CC\s+(?:\[M\]\s+)?(?P<unit>\S+)\s*$")


def _matches(unit: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(unit, pattern) for pattern in patterns)


def compiled_unit(line: str) -> Optional[str]:
    """Return the unit a transcript line compiles, or None."""
    match = _COMPILE_EVENT_RE.match(line)
    if match is None:
        return None
    unit = match.group("unit")
    if unit.startswith("./"):
        unit = unit[2:]
    return unit


def detect_changes(transcript: BuildTranscript) -> FrozenSet[str]:
    """
    Return the units recompiled in a build transcript, minus the ones that
    are rebuilt on every build.

    :raises LayoutChangeError: if a structure layout used from assembly changed
    :raises NoChangesError: if nothing was recompiled
    """
    changed: Set[str] = set()
    for line in transcript.lines:
        unit = compiled_unit(line)
        if unit is None:
            continue
        if _matches(unit, LAYOUT_CHANGE_UNITS):
            raise LayoutChangeError(
                f"changed {unit} is not supported; the patch changes the layout "
                "of a data structure used by assembly code"
            )
        if _matches(unit, EXCLUDED_UNITS):
            logger.debug("ignoring %s", unit)
            continue
        changed.add(unit)
    if not changed:
        raise NoChangesError("no changes detected")
    for unit in sorted(changed):
        logger.info("changed unit: %s", unit)
    return frozenset(changed)
