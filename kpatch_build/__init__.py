# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Live patch module builder

kpatch_build turns a source patch against the Linux kernel into a loadable
module that replaces the changed functions of the running kernel. See
:func:`kpatch_build.session.run`.
"""

from kpatch_build.version import __version__

__all__ = ("__version__",)
