#!/usr/bin/env python3
"""
Tests for the unixtool command surface
"""

import io
import os
from contextlib import redirect_stderr, redirect_stdout

from rich.console import Console

import unixtool
from mkimage import ImageBuilder
from sysvfs import INODE_FT_CHAR, ROOT_INODE
from testing import TestCase

PASSWD = b"root::0:0:Super-User:/:/bin/sh\n"


class CommandTestCase(TestCase):

    def setUp(self):
        super().setUp()
        builder = ImageBuilder(fname=b"root", fpack=b"band1")
        bin_dir = builder.mkdir(ROOT_INODE, "bin")
        etc_dir = builder.mkdir(ROOT_INODE, "etc")
        builder.add_file(bin_dir, "sh", bytes(range(256)) * 20, mode=0o755)
        builder.add_file(etc_dir, "passwd", PASSWD)
        builder.add_file(etc_dir, "broken", b"\x00" * 1024, size=5000)
        builder.add_node(ROOT_INODE, "console", INODE_FT_CHAR, mode=0o622)
        builder.save(self.image_path)
        self.dest_path = os.path.join(self.tmpdir, "out.bin")

    def run_tool(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = unixtool.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def run_tool_encoded(self, *argv):
        """Run with a byte-backed UTF-8 stdout, the way a pipe encodes output"""
        raw = io.BytesIO()
        stdout = io.TextIOWrapper(raw, encoding="utf-8")
        with redirect_stdout(stdout):
            code = unixtool.main(list(argv))
        stdout.flush()
        return code, raw.getvalue()


class TestUsage(CommandTestCase):

    def test_help(self):
        for argv in ([], ["help"], ["-?"]):
            code, out, _ = self.run_tool(*argv)
            self.assertEqual(code, unixtool.EXIT_OK)
            self.assertTrue("TI/LMI unixtool v0.0.1" in out)
            self.assertTrue("read" in out and "ls" in out)

    def test_image_required(self):
        code, out, _ = self.run_tool("ls")
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("Band image file name is required" in out)

    def test_unknown_command(self):
        code, out, _ = self.run_tool("fsck", self.image_path)
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("Unknown parameters" in out)

    def test_bad_magic(self):
        ImageBuilder(magic=0x12345678).save(self.image_path)
        code, out, _ = self.run_tool("ls", self.image_path, "/")
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("Bad superblock magic" in out)

    def test_missing_image(self):
        code, out, _ = self.run_tool("ls", self.image_path + ".nope", "/")
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("disk open()" in out)


class TestLs(CommandTestCase):

    def test_root_listing(self):
        code, out, _ = self.run_tool("ls", self.image_path, "/")
        self.assertEqual(code, unixtool.EXIT_OK)
        lines = out.splitlines()
        self.assertEqual(lines[0], "/:")
        self.assertEqual(len(lines), 1 + 5)
        self.assertTrue(lines[3].startswith("drwxr-xr-x"))
        self.assertTrue(lines[3].endswith(" bin"))
        self.assertTrue(lines[5].startswith("crw--w--w-"))

    def test_subdirectory_listing(self):
        code, out, _ = self.run_tool("ls", self.image_path, "/etc")
        self.assertEqual(code, unixtool.EXIT_OK)
        passwd_line = [line for line in out.splitlines() if line.endswith(" passwd")][0]
        self.assertTrue(passwd_line.startswith("-rw-r--r--   1 000000  000000 "))
        self.assertTrue(f" {len(PASSWD)} " in passwd_line)

    def test_relative_path_rejected(self):
        code, out, _ = self.run_tool("ls", self.image_path, "etc")
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("ls: Invalid path" in out)

    def test_missing_directory(self):
        code, out, _ = self.run_tool("ls", self.image_path, "/usr")
        self.assertEqual(code, unixtool.EXIT_NOT_FOUND)
        self.assertTrue("No such file or directory" in out)

    def test_file_is_not_listable(self):
        code, _, _ = self.run_tool("ls", self.image_path, "/etc/passwd")
        self.assertEqual(code, unixtool.EXIT_NOT_FOUND)

    def test_long_component(self):
        code, _, _ = self.run_tool("ls", self.image_path, "/averyveryverylongname")
        self.assertEqual(code, unixtool.EXIT_NOT_FOUND)

    def test_listing_through_encoded_stdout(self):
        code, out = self.run_tool_encoded("ls", self.image_path, "/etc")
        self.assertEqual(code, unixtool.EXIT_OK)
        self.assertTrue(out.startswith(b"/etc:\n"))
        self.assertTrue(b" passwd\n" in out)

    def test_non_utf8_name(self):
        builder = ImageBuilder()
        builder.add_file(ROOT_INODE, b"caf\xe9", b"menu\n")
        builder.mkdir(ROOT_INODE, "caf\xe9 bar".encode("latin-1"))
        builder.save(self.image_path)

        code, out = self.run_tool_encoded("ls", self.image_path, "/")
        self.assertEqual(code, unixtool.EXIT_OK)
        lines = out.decode("utf-8").splitlines()
        self.assertTrue(lines[3].endswith(" caf\\xe9"))
        self.assertTrue(lines[4].endswith(" caf\\xe9 bar"))

    def test_directory_name_with_space_is_highlighted_whole(self):
        builder = ImageBuilder()
        builder.mkdir(ROOT_INODE, "old bin")
        builder.save(self.image_path)

        out = io.StringIO()
        console = Console(file=out, force_terminal=True, color_system="standard",
                          highlight=False, width=200)
        real_print = unixtool.print
        unixtool.print = console.print
        try:
            code = unixtool.main(["ls", self.image_path, "/"])
        finally:
            unixtool.print = real_print
        self.assertEqual(code, unixtool.EXIT_OK)
        self.assertTrue("\x1b[1;34mold bin\x1b[0m" in out.getvalue())

    def test_verbose_trace(self):
        code, out, err = self.run_tool("-v", "ls", self.image_path, "/etc")
        self.assertEqual(code, unixtool.EXIT_OK)
        self.assertTrue("pathpart: etc" in err)
        self.assertTrue("inode_block_read(0) =>" in err)
        self.assertTrue("pathpart" not in out)


class TestRead(CommandTestCase):

    def test_copies_file(self):
        code, out, _ = self.run_tool("read", self.image_path, "/bin/sh", self.dest_path)
        self.assertEqual(code, unixtool.EXIT_OK)
        self.assertTrue("Copying 5120 bytes" in out)
        self.assertTrue("Wrote 5120 of 5120 bytes" in out)
        with open(self.dest_path, "rb") as f:
            self.assertEqual(f.read(), bytes(range(256)) * 20)

    def test_missing_source_creates_nothing(self):
        code, _, _ = self.run_tool("read", self.image_path, "/bin/csh", self.dest_path)
        self.assertEqual(code, unixtool.EXIT_NOT_FOUND)
        self.assertTrue(not os.path.exists(self.dest_path))

    def test_directory_source(self):
        code, out, _ = self.run_tool("read", self.image_path, "/etc", self.dest_path)
        self.assertEqual(code, unixtool.EXIT_NOT_FOUND)
        self.assertTrue("file read" in out)

    def test_file_in_path_middle(self):
        code, _, _ = self.run_tool("read", self.image_path, "/etc/passwd/x", self.dest_path)
        self.assertEqual(code, unixtool.EXIT_NOT_FOUND)

    def test_missing_parameters(self):
        code, out, _ = self.run_tool("read", self.image_path)
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("source path is required" in out)
        code, out, _ = self.run_tool("read", self.image_path, "/etc/passwd")
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("destination path is required" in out)

    def test_truncated_address_map_leaves_partial_output(self):
        code, out, _ = self.run_tool("read", self.image_path, "/etc/broken", self.dest_path)
        self.assertEqual(code, unixtool.EXIT_FATAL)
        self.assertTrue("Unexpected end-of-file" in out)
        self.assertEqual(os.path.getsize(self.dest_path), 1024)


class TestOtherCommands(CommandTestCase):

    def test_cat(self):
        raw = io.BytesIO()
        stdout = io.TextIOWrapper(raw, encoding="utf-8")
        with redirect_stdout(stdout):
            code = unixtool.main(["cat", self.image_path, "/etc/passwd"])
        stdout.flush()
        self.assertEqual(code, unixtool.EXIT_OK)
        self.assertEqual(raw.getvalue(), PASSWD)

    def test_stat(self):
        code, out, _ = self.run_tool("stat", self.image_path, "/etc/passwd")
        self.assertEqual(code, unixtool.EXIT_OK)
        self.assertTrue(f"Size: {len(PASSWD)}" in out)
        self.assertTrue("Mode: 0644" in out)

    def test_info(self):
        code, out, _ = self.run_tool("info", self.image_path)
        self.assertEqual(code, unixtool.EXIT_OK)
        self.assertTrue("Filesystem name: root" in out)
        self.assertTrue("Pack name:       band1" in out)
        self.assertTrue("0x207E18FD" in out)


if __name__ == "__main__":
    from testing import TestRunner

    runner = TestRunner()
    runner.run(TestUsage)
    runner.run(TestLs)
    runner.run(TestRead)
    runner.run(TestOtherCommands)
    runner.summary()
