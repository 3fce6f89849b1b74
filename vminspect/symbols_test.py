# vminspect Memory Introspection
# Copyright 2013 Google Inc. All Rights Reserved.
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or (at
# your option) any later version.
#
# This program is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 59 Temple Place, Suite 330, Boston, MA 02111-1307 USA
#

import json
import logging
import os
import shutil
import struct
import tempfile
import unittest

from vminspect import errors
from vminspect import symbols
from vminspect import testlib


KALLSYMS = b"""ffffffff81000000 T _stext
ffffffff81000100 t do_one_initcall
ffffffff81001000 r __ksymtab_strings
ffffffff82000000 D init_task
ffffffffc0000000 t ext4_fill_super\t[ext4]
"""


def BuildElf(elf_symbols):
    """Builds a minimal x86_64 ELF file with a .symtab.

    Args:
      elf_symbols: A list of (name, value, size, st_type).
    """
    strtab = b"\x00"
    symtab = b"\x00" * 24
    for name, value, size, st_type in elf_symbols:
        symtab += struct.pack("<IBBHQQ", len(strtab), (1 << 4) | st_type, 0,
                              0xfff1, value, size)
        strtab += name.encode("ascii") + b"\x00"

    shstrtab = b"\x00.symtab\x00.strtab\x00.shstrtab\x00"

    symtab_offset = 64
    strtab_offset = symtab_offset + len(symtab)
    shstrtab_offset = strtab_offset + len(strtab)
    shoff = (shstrtab_offset + len(shstrtab) + 7) & ~7

    header = (b"\x7fELF\x02\x01\x01\x00" + b"\x00" * 8 +
              struct.pack("<HHIQQQIHHHHHH", 2, 62, 1, 0, 0, shoff, 0, 64, 56,
                          0, 64, 4, 3))
    body = header + symtab + strtab + shstrtab
    body += b"\x00" * (shoff - len(body))

    section_header = "<IIQQQQIIQQ"
    body += struct.pack(section_header, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)
    body += struct.pack(section_header, 1, 2, 0, 0, symtab_offset,
                        len(symtab), 2, 1, 8, 24)
    body += struct.pack(section_header, 9, 3, 0, 0, strtab_offset,
                        len(strtab), 0, 0, 1, 0)
    body += struct.pack(section_header, 17, 3, 0, 0, shstrtab_offset,
                        len(shstrtab), 0, 0, 1, 0)

    return body


class ModuleSymbolsTest(testlib.VmiBaseUnitTestCase):

    def testLookups(self):
        module = symbols.ModuleSymbols("libc.so.6")
        module.add_symbol("malloc", 0x9000, size=0x100)
        module.add_symbol("__libc_malloc", 0x9000)
        module.add_symbol("free", 0x9800)

        self.assertEqual(module.get_address("free"), 0x9800)
        self.assertIsNone(module.get_address("calloc"))
        self.assertErrorKind("MissingSymbol", module.require_address, "calloc")

        self.assertEqual(module.get_symbol(0x9000), "malloc")
        self.assertIsNone(module.get_symbol(0x9001))
        self.assertEqual(module.get_symbol_inexact(0x9010), ("malloc", 0x10))
        self.assertEqual(module.get_symbol_inexact(0x9800), ("free", 0))
        self.assertErrorKind("NoSymbolFound", module.get_symbol_inexact,
                             0x8fff)
        self.assertEqual(module.symbol_size("malloc"), 0x100)
        self.assertEqual(len(module), 3)

    def testRedefinition(self):
        module = symbols.ModuleSymbols("kernel")
        module.add_symbol("init_task", 0x1000)
        module.add_symbol("init_task", 0x2000)

        self.assertEqual(module.get_address("init_task"), 0x2000)
        self.assertIsNone(module.get_symbol(0x1000))
        self.assertEqual(list(module.symbols()), [("init_task", 0x2000)])

    def testStructs(self):
        module = symbols.ModuleSymbols("kernel")
        module.add_struct("task_struct", size=0x200, fields=dict(pid=0x50))

        definition = module.require_struct("task_struct")
        self.assertEqual(definition.get_offset("pid"), 0x50)
        self.assertIn("pid", definition)
        error = self.assertErrorKind(
            "MissingSymbol", definition.require_offset, "comm")
        self.assertEqual(error.symbol, "task_struct.comm")
        self.assertErrorKind("MissingSymbol", module.require_struct, "mm")
        self.assertEqual(module.structs(), ["task_struct"])


class SymbolsTest(testlib.VmiBaseUnitTestCase):
    """Test loading the payload formats."""

    def setUp(self):
        super(SymbolsTest, self).setUp()
        self.symbols = symbols.Symbols(session=self.session)
        self.builder = testlib.GuestBuilder()

    def testProfile(self):
        module = self.symbols.load_from_bytes(self.builder.profile_json())

        self.assertEqual(module.name, "kernel")
        self.assertEqual(module.metadata["ProfileClass"], "Linux")
        self.assertEqual(module.get_address("init_task"),
                         self.builder.init_task)
        self.assertEqual(module.symbol_size("do_syscall_64"), 0x100)
        self.assertEqual(
            module.require_struct("task_struct").require_offset("comm"), 0x58)
        self.assertEqual(module.require_struct("list_head").size, 0x10)
        self.assertIs(self.symbols.require_module("kernel"), module)

    def testProfileNames(self):
        data = json.dumps({"$CONSTANTS": {"a": 1}})

        # No name anywhere.
        self.assertErrorKind("InvalidArgument", self.symbols.load_from_bytes,
                             data)

        module = self.symbols.load_from_bytes(data, name="explicit")
        self.assertEqual(module.name, "explicit")

        # An explicit name wins over the declared one.
        module = self.symbols.load_from_bytes(
            self.builder.profile_json(), name="vmlinux")
        self.assertEqual(module.name, "vmlinux")

    def testMalformedProfiles(self):
        self.assertErrorKind("ParseFailure", self.symbols.load_from_bytes,
                             b"{ not json")
        self.assertErrorKind("ParseFailure", self.symbols.load_from_bytes,
                             json.dumps({"$METADATA": {"Name": "x"},
                                         "$STRUCTS": {"task_struct": 5}}))
        self.assertErrorKind("ParseFailure", self.symbols.load_from_bytes,
                             b"\x00\x01\x02")
        self.assertEqual(len(self.symbols), 0)

    def testUnknownSection(self):
        with self.assertLogs(self.session.GetLogger("Symbols"), "WARNING"):
            module = self.symbols.load_from_bytes(json.dumps(
                {"$METADATA": {"Name": "k"}, "$ENUMS": {},
                 "$CONSTANTS": {"a": 1}}))

        self.assertEqual(module.get_address("a"), 1)

    def testReloadReplaces(self):
        generation = self.symbols.generation
        self.symbols.load_from_bytes(json.dumps(
            {"$METADATA": {"Name": "kernel"}, "$CONSTANTS": {"old": 1}}))
        self.symbols.load_from_bytes(json.dumps(
            {"$METADATA": {"Name": "kernel"}, "$CONSTANTS": {"new": 2}}))

        module = self.symbols.require_module("kernel")
        self.assertIsNone(module.get_address("old"))
        self.assertEqual(module.get_address("new"), 2)
        self.assertEqual(self.symbols.generation, generation + 2)
        self.assertEqual(len(self.symbols), 1)

    def testKAllSyms(self):
        self.assertErrorKind("InvalidArgument", self.symbols.load_from_bytes,
                             KALLSYMS)

        module = self.symbols.load_from_bytes(KALLSYMS, name="kernel")
        self.assertEqual(module.get_address("_stext"), 0xffffffff81000000)
        self.assertEqual(module.get_address("init_task"), 0xffffffff82000000)

        # Read only data and module symbols are dropped.
        self.assertIsNone(module.get_address("__ksymtab_strings"))
        self.assertIsNone(module.get_address("ext4_fill_super"))

        self.assertEqual(module.get_symbol_inexact(0xffffffff81000123),
                         ("do_one_initcall", 0x23))

    def testNmUndefinedSymbols(self):
        data = (b"                 U printf\n"
                b"0000000000001130 T main\n"
                b"                 w __gmon_start__\n")

        module = self.symbols.load_from_bytes(data, name="a.out")
        self.assertEqual(module.get_address("main"), 0x1130)
        self.assertIsNone(module.get_address("printf"))

        self.assertErrorKind("ParseFailure", self.symbols.load_from_bytes,
                             b"0000000000001130 T main\nnot a symbol\n",
                             name="b.out")

    def testElf(self):
        data = BuildElf([("main", 0x1130, 0x20, 2),
                         ("environ", 0x4000, 8, 1),
                         ("a_label", 0x1100, 0, 0)])

        self.assertErrorKind("InvalidArgument", self.symbols.load_from_bytes,
                             data)

        module = self.symbols.load_from_bytes(data, name="bash")
        self.assertEqual(module.metadata["Type"], "ELF")
        self.assertEqual(module.get_address("main"), 0x1130)
        self.assertEqual(module.symbol_size("main"), 0x20)
        self.assertEqual(module.get_address("environ"), 0x4000)
        self.assertIsNone(module.get_address("a_label"))
        self.assertEqual(module.get_symbol_inexact(0x1138), ("main", 8))

    def testCorruptElf(self):
        self.assertErrorKind(
            "ParseFailure", self.symbols.load_from_bytes,
            b"\x7fELF\x09\x01\x01\x00" + b"\x00" * 56, name="bad")

    def testModules(self):
        self.symbols.load_from_bytes(KALLSYMS, name="vmlinux")
        self.symbols.load_from_bytes(KALLSYMS, name="kernel")

        self.assertEqual([x.name for x in self.symbols.modules()],
                         ["kernel", "vmlinux"])
        self.assertIn("kernel", self.symbols)
        self.assertIsNone(self.symbols.get_module("libc.so.6"))
        error = self.assertErrorKind(
            "MissingSymbol", self.symbols.require_module, "libc.so.6")
        self.assertEqual(error.symbol, "libc.so.6")


class LoadDirTest(testlib.VmiBaseUnitTestCase):

    def setUp(self):
        super(LoadDirTest, self).setUp()
        self.temp_directory = tempfile.mkdtemp()
        self.symbols = symbols.Symbols(session=self.session)

    def tearDown(self):
        shutil.rmtree(self.temp_directory)
        super(LoadDirTest, self).tearDown()

    def _write(self, name, data):
        with open(os.path.join(self.temp_directory, name), "wb") as fd:
            fd.write(data)

    def testLoadDir(self):
        self._write("kernel.json", testlib.GuestBuilder().profile_json())
        self._write("System.map", KALLSYMS)
        self._write("garbage.bin", b"\x00\x01\x02")
        self._write(".hidden", b"\x00")
        os.mkdir(os.path.join(self.temp_directory, "subdir"))

        with self.assertLogs(self.session.GetLogger("Symbols"), "WARNING"):
            self.assertEqual(self.symbols.load_dir(self.temp_directory), 2)

        # Payloads without a declared name are named after their file.
        self.assertEqual([x.name for x in self.symbols.modules()],
                         ["System.map", "kernel"])

    def testAllFilesFail(self):
        self._write("garbage.bin", b"\x00\x01\x02")

        error = self.assertErrorKind(
            "ParseFailure", self.symbols.load_dir, self.temp_directory)
        self.assertIn("garbage.bin", str(error))

    def testEmptyAndMissing(self):
        self.assertEqual(self.symbols.load_dir(self.temp_directory), 0)
        self.assertErrorKind("InvalidArgument", self.symbols.load_dir,
                             os.path.join(self.temp_directory, "missing"))

    def testLoadFileErrorsCarryContext(self):
        path = os.path.join(self.temp_directory, "broken.json")
        self._write("broken.json", b"{ broken")

        error = self.assertErrorKind(
            "ParseFailure", self.symbols.load_from_file, path)
        self.assertIsInstance(error, errors.ContextError)
        self.assertIn("loading symbols from %s" % path, str(error))

        self.assertErrorKind("InvalidArgument", self.symbols.load_from_file,
                             path + ".missing")


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
