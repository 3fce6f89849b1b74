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

import logging
import unittest

from vminspect import errors
from vminspect import testlib


class ErrorChainTest(testlib.VmiBaseUnitTestCase):

    def testContextPrintsOutermostFirst(self):
        error = errors.MissingSymbol("task_struct").with_context(
            "resolving current process")

        text = str(error)
        self.assertIn("resolving current process", text)
        self.assertIn("task_struct", text)
        self.assertLess(text.index("resolving current process"),
                        text.index("task_struct"))
        self.assertEqual(text,
                         "resolving current process: missing symbol: "
                         "task_struct")

    def testKindFollowsCause(self):
        error = errors.ReadFailure(0x1000, 8).with_context("a").with_context(
            "b")

        self.assertEqual(error.kind, "ReadFailure")
        self.assertIsInstance(error.root_cause(), errors.ReadFailure)
        self.assertEqual(error.contexts, ["b", "a"])
        self.assertEqual(len(list(error.chain())), 3)
        self.assertIs(error.find(errors.ReadFailure), error.root_cause())
        self.assertIsNone(error.find(errors.ParseFailure))

    def testMissingSymbolCarriesName(self):
        error = errors.MissingSymbol("task_struct.comm").with_context("x")
        self.assertEqual(
            error.find(errors.MissingSymbol).symbol, "task_struct.comm")

    def testContextManager(self):
        with self.assertRaises(errors.Error) as context:
            with errors.context("reading comm of task %#x", 0x1234):
                raise errors.TranslationFailure("PTE", "0x1000")

        error = context.exception
        self.assertEqual(error.kind, "TranslationFailure")
        self.assertEqual(str(error),
                         "reading comm of task 0x1234: invalid PTE "
                         "translating 0x1000")
        self.assertIsInstance(error.__cause__, errors.TranslationFailure)

    def testContextManagerIgnoresOtherExceptions(self):
        with self.assertRaises(KeyError):
            with errors.context("looking up"):
                raise KeyError("x")

    def testPrintToReportsRequiredLength(self):
        error = errors.MissingSymbol("init_task").with_context("walking")
        text = str(error).encode("utf8")

        # A buffer which is too small is filled and the real length reported.
        buf = bytearray(4)
        self.assertEqual(error.print_to(buf), len(text))
        self.assertEqual(bytes(buf), text[:4])

        # Nothing is written to an empty buffer.
        buf = bytearray()
        self.assertEqual(error.print_to(buf), len(text))
        self.assertEqual(buf, bytearray())

        buf = bytearray(len(text) + 10)
        self.assertEqual(error.print_to(buf), len(text))
        self.assertEqual(bytes(buf[:len(text)]), text)

    def testLeafErrors(self):
        self.assertEqual(errors.BufferTooSmall(12).required, 12)
        self.assertEqual(errors.OutOfMemory(100, 10).kind, "OutOfMemory")
        self.assertEqual(errors.InvalidArgument().message, "InvalidArgument")
        self.assertEqual(errors.CorruptedData("loop").kind, "CorruptedData")
        self.assertEqual(errors.NoSymbolFound("x").kind, "NoSymbolFound")

        with self.assertRaises(TypeError):
            errors.ContextError("no cause")


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
