#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import re

from setuptools import Command, find_packages, setup
from setuptools.errors import BaseError

logger = logging.getLogger(__name__)


class test(Command):
    description = "run unit tests"

    user_options = [
        ("pattern=", "p", "only run test modules matching this pattern"),
    ]

    def initialize_options(self):
        self.pattern = None

    def finalize_options(self):
        pass

    def run(self):
        import unittest

        argv = ["discover"]
        if self.verbose:
            argv.append("-v")
        if self.pattern is not None:
            argv.extend(["-p", self.pattern])
        test = unittest.main(module=None, argv=argv, exit=False)
        if not test.result.wasSuccessful():
            raise BaseError("some tests failed")
        logger.info("all tests passed")


def get_version():
    with open("kpatch_build/version.py", "r") as f:
        version_py = f.read()
    match = re.search(r'^__version__ = "([^"]+)"$', version_py, re.M)
    if not match:
        raise BaseError("kpatch_build/version.py is invalid")
    return match.group(1)


with open("README.rst", "r") as f:
    long_description = f.read()


setup(
    name="kpatch-build",
    version=get_version(),
    packages=find_packages(include=["kpatch_build", "kpatch_build.*"]),
    cmdclass={
        "test": test,
    },
    entry_points={
        "console_scripts": [
            "kpatch-build=kpatch_build.__main__:_main",
        ],
    },
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
    description="Build live patch modules from Linux kernel source patches",
    long_description=long_description,
    long_description_content_type="text/x-rst",
    license="LGPL-2.1-or-later",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: GNU Lesser General Public License v2 or later (LGPLv2+)",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Topic :: System :: Operating System Kernels :: Linux",
    ],
)
