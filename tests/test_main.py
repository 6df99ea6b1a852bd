# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import io
from pathlib import Path
import unittest.mock

from kpatch_build.__main__ import _parse_args, _workspace_config, main
from kpatch_build.config import DEFAULT_TARGETS, DIFFER_PROGRAM, WorkspaceConfig
from kpatch_build.errors import BuildError, NoChangesError
from kpatch_build.package import PatchModuleDescriptor
from tests import TempDirTestCase


class TestArguments(TempDirTestCase):
    def test_defaults(self):
        args = _parse_args(["fix.patch", "--cachedir", str(self.temp_dir)])
        self.assertEqual(args.patch, Path("fix.patch"))
        self.assertEqual(
            _workspace_config(args),
            WorkspaceConfig(cache_dir=self.temp_dir, targets=DEFAULT_TARGETS),
        )
        self.assertEqual(_workspace_config(args).differ, DIFFER_PROGRAM)

    def test_options(self):
        args = _parse_args(
            [
                "-s",
                "/usr/src/linux",
                "-c",
                "/boot/config-6.1.0",
                "-v",
                "/usr/lib/debug/vmlinux",
                "-r",
                "6.1.0",
                "-t",
                "vmlinux",
                "-t",
                "drivers/net/dummy.ko",
                "-n",
                "fix",
                "-o",
                "/tmp/out",
                "-j",
                "8",
                "--cachedir",
                str(self.temp_dir),
                "--datadir",
                "/usr/share/kpatch",
                "--differ",
                "/usr/libexec/kpatch/create-diff-object",
                "-d",
                "fix.patch",
            ]
        )
        self.assertEqual(args.kernel_version, "6.1.0")
        self.assertEqual(
            _workspace_config(args),
            WorkspaceConfig(
                cache_dir=self.temp_dir,
                source_dir=Path("/usr/src/linux"),
                config=Path("/boot/config-6.1.0"),
                vmlinux=Path("/usr/lib/debug/vmlinux"),
                targets=("vmlinux", "drivers/net/dummy.ko"),
                output_dir=Path("/tmp/out"),
                data_dir=Path("/usr/share/kpatch"),
                differ="/usr/libexec/kpatch/create-diff-object",
                name="fix",
                jobs=8,
                debug=True,
            ),
        )


class TestMain(TempDirTestCase):
    def setUp(self):
        super().setUp()
        self.log_file = self.temp_dir / "build.log"

    def _main(self, *args, **kwargs):
        stdout = io.StringIO()
        with unittest.mock.patch(
            "kpatch_build.__main__.run", **kwargs
        ) as run, contextlib.redirect_stdout(stdout):
            returncode = main(
                ["-r", "6.1.0", "--cachedir", str(self.temp_dir), *args, "fix.patch"]
            )
        return returncode, run, stdout.getvalue()

    def test_success(self):
        module = self.temp_dir / "kpatch-fix.ko"
        returncode, run, stdout = self._main(
            return_value=PatchModuleDescriptor("kpatch-fix", (), module)
        )
        self.assertEqual(returncode, 0)
        self.assertEqual(stdout, f"{module}\n")
        run.assert_called_once()
        self.assertEqual(run.call_args[0][:2], (Path("fix.patch"), "6.1.0"))
        self.assertFalse(self.log_file.exists())

    def test_success_debug_keeps_log(self):
        returncode, _, _ = self._main(
            "-d",
            return_value=PatchModuleDescriptor("kpatch-fix", (), Path("x.ko")),
        )
        self.assertEqual(returncode, 0)
        self.assertTrue(self.log_file.exists())

    def test_error(self):
        returncode, _, stdout = self._main(
            side_effect=NoChangesError("no changes detected")
        )
        self.assertEqual(returncode, 1)
        self.assertEqual(stdout, "")
        self.assertIn("no changes detected", self.log_file.read_text())

    def test_build_error_points_to_log(self):
        returncode, _, _ = self._main(side_effect=BuildError("patched build failed"))
        self.assertEqual(returncode, 1)
        log = self.log_file.read_text()
        self.assertIn("patched build failed", log)
        self.assertIn(f"see {self.log_file}", log)

    def test_interrupted(self):
        returncode, _, _ = self._main(side_effect=KeyboardInterrupt)
        self.assertEqual(returncode, 130)
        self.assertTrue(self.log_file.exists())
