# Copyright (c) Meta Platforms, Inc. and affiliates.
# SPDX-License-Identifier: LGPL-2.1-or-later

import subprocess
import unittest.mock

from kpatch_build.errors import BuildError
from kpatch_build.kbuild import BuildTranscript, KBuild
from tests import TempDirTestCase


class TestBuildTranscript(TempDirTestCase):
    def test_from_file(self):
        path = self.temp_dir / "build.log"
        path.write_text("  CC      kernel/fork.o\n  LD      vmlinux\n")
        self.assertEqual(
            BuildTranscript.from_file(path),
            BuildTranscript(("  CC      kernel/fork.o", "  LD      vmlinux"), path),
        )

    def test_from_text(self):
        self.assertEqual(
            BuildTranscript.from_text("a\nb\n"), BuildTranscript(("a", "b"))
        )


class TestKBuild(TempDirTestCase):
    def setUp(self):
        super().setUp()
        self.kernel_dir = self.temp_dir / "src"
        self.build_dir = self.temp_dir / "obj"
        self.kbuild = KBuild(
            self.kernel_dir, self.build_dir, jobs=4, local_version="-13-amd64"
        )

    def _make_args(self):
        return [
            "-C",
            str(self.kernel_dir),
            "O=" + str(self.build_dir.resolve()),
            "-j",
            "4",
            "LOCALVERSION=-13-amd64",
        ]

    def test_build(self):
        def fake_call(cmd, stdout, **kwargs):
            stdout.write("  CC      kernel/fork.o\n")
            return 0

        transcript_path = self.temp_dir / "transcript"
        with unittest.mock.patch("subprocess.call", side_effect=fake_call) as call:
            result = self.kbuild.build(
                ["vmlinux", "modules"],
                ["-ffunction-sections", "-fdata-sections"],
                transcript_path,
            )
        self.assertEqual(
            call.call_args[0][0],
            [
                "make",
                *self._make_args(),
                "KCFLAGS=-ffunction-sections -fdata-sections",
                "vmlinux",
                "modules",
            ],
        )
        self.assertEqual(result.returncode, 0)
        self.assertEqual(result.transcript.lines, ("  CC      kernel/fork.o",))
        self.assertEqual(result.transcript.path, transcript_path)

    def test_build_failure_is_reported(self):
        with unittest.mock.patch("subprocess.call", return_value=2):
            result = self.kbuild.build(["vmlinux"], [], self.temp_dir / "transcript")
        self.assertEqual(result.returncode, 2)

    def test_configure(self):
        config = self.temp_dir / "config"
        config.write_text("CONFIG_LIVEPATCH=y\n")
        with unittest.mock.patch("subprocess.call", return_value=0) as call:
            self.kbuild.configure(config)
            self.assertEqual(
                call.call_args[0][0], ("make", *self._make_args(), "olddefconfig")
            )
            self.assertEqual(
                (self.build_dir / ".config").read_text(), "CONFIG_LIVEPATCH=y\n"
            )
            call.reset_mock()
            self.kbuild.configure(config)
            call.assert_not_called()

    def test_configure_failure(self):
        config = self.temp_dir / "config"
        config.write_text("")
        with unittest.mock.patch("subprocess.call", return_value=2):
            self.assertRaises(BuildError, self.kbuild.configure, config)

    def test_clean_source(self):
        with unittest.mock.patch("subprocess.call", return_value=0) as call:
            self.kbuild.clean_source()
        self.assertEqual(
            call.call_args[0][0], ("make", "-C", str(self.kernel_dir), "mrproper")
        )

    def test_kernel_release(self):
        with unittest.mock.patch(
            "subprocess.check_output", return_value="6.1.0-13-amd64\n"
        ) as check_output:
            self.assertEqual(self.kbuild.kernel_release(), "6.1.0-13-amd64")
            self.assertEqual(self.kbuild.kernel_release(), "6.1.0-13-amd64")
        check_output.assert_called_once()

    def test_kernel_release_failure(self):
        with unittest.mock.patch(
            "subprocess.check_output",
            side_effect=subprocess.CalledProcessError(2, "make"),
        ):
            self.assertRaises(BuildError, self.kbuild.kernel_release)

    def test_link_relocatable_cross_compile(self):
        kbuild = KBuild(
            self.kernel_dir,
            self.build_dir,
            jobs=1,
            env={"CROSS_COMPILE": "aarch64-linux-gnu-"},
        )
        output = self.temp_dir / "output.o"
        with unittest.mock.patch("subprocess.check_call") as check_call:
            kbuild.link_relocatable([self.temp_dir / "a.o"], output)
        self.assertEqual(
            check_call.call_args[0][0],
            [
                "aarch64-linux-gnu-ld",
                "-r",
                "-o",
                str(output),
                str(self.temp_dir / "a.o"),
            ],
        )

    def test_link_relocatable_failure(self):
        with unittest.mock.patch(
            "subprocess.check_call",
            side_effect=subprocess.CalledProcessError(1, "ld"),
        ):
            self.assertRaises(
                BuildError,
                self.kbuild.link_relocatable,
                [self.temp_dir / "a.o"],
                self.temp_dir / "output.o",
            )

    def test_build_module(self):
        module_dir = self.temp_dir / "patch"
        module_dir.mkdir()
        symvers = self.temp_dir / "Module.symvers"

        def fake_call(cmd, **kwargs):
            (module_dir / "kpatch-fix.ko").write_bytes(b"")
            return 0

        with unittest.mock.patch("subprocess.call", side_effect=fake_call) as call:
            module = self.kbuild.build_module(module_dir, "kpatch-fix", [symvers])
        self.assertEqual(module, module_dir / "kpatch-fix.ko")
        cmd = call.call_args[0][0]
        self.assertIn("M=" + str(module_dir.resolve()), cmd)
        self.assertIn(f"KBUILD_EXTRA_SYMBOLS={symvers}", cmd)
        self.assertEqual(cmd[-1], "modules")

    def test_build_module_missing_output(self):
        module_dir = self.temp_dir / "patch"
        module_dir.mkdir()
        with unittest.mock.patch("subprocess.call", return_value=0):
            self.assertRaises(
                BuildError, self.kbuild.build_module, module_dir, "kpatch-fix", []
            )
