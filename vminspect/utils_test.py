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

from vminspect import testlib
from vminspect import utils


class FastStoreTest(testlib.VmiBaseUnitTestCase):
    """Test the FastStore."""

    def testExpiresOldestFirst(self):
        cache = utils.FastStore(max_size=2)
        cache.Put("a", 1)
        cache.Put("b", 2)

        # Touching a makes b the oldest.
        self.assertEqual(cache.Get("a"), 1)
        cache.Put("c", 3)

        self.assertIn("a", cache)
        self.assertNotIn("b", cache)
        self.assertEqual(len(cache), 2)
        self.assertRaises(KeyError, cache.Get, "b")

    def testFlush(self):
        cache = utils.FastStore(max_size=10, lock=True)
        for i in range(5):
            cache.Put(i, i * 2)

        cache.Flush()
        self.assertEqual(len(cache), 0)
        self.assertRaises(KeyError, cache.Get, 1)


class SortedCollectionTest(testlib.VmiBaseUnitTestCase):

    def testNearestLookups(self):
        collection = utils.SortedCollection()
        collection[0x100] = "a"
        collection[0x300] = "b"

        self.assertEqual(collection.get_value_smaller_than(0x2ff),
                         (0x100, "a"))
        self.assertEqual(collection.get_value_smaller_than(0x300),
                         (0x300, "b"))
        self.assertEqual(collection.get_value_smaller_than(0xff),
                         (None, None))
        self.assertEqual(collection.get_value_larger_than(0x101),
                         (0x300, "b"))
        self.assertEqual(collection.get_value_larger_than(0x301),
                         (None, None))


class WriteBoundedTest(testlib.VmiBaseUnitTestCase):

    def testZeroCapacityReportsCount(self):
        out = []
        self.assertEqual(utils.WriteBounded([1, 2, 3], out), 3)
        self.assertEqual(out, [])

    def testPartialFill(self):
        out = [None, None]
        self.assertEqual(utils.WriteBounded(iter([1, 2, 3]), out), 3)
        self.assertEqual(out, [1, 2])

        out = [None] * 5
        self.assertEqual(utils.WriteBounded([1, 2, 3], out), 3)
        self.assertEqual(out, [1, 2, 3, None, None])

    def testText(self):
        out = bytearray(3)
        self.assertEqual(utils.WriteBounded(u"h\xe9llo", out), 6)
        self.assertEqual(bytes(out), b"h\xc3\xa9")


class StringTest(testlib.VmiBaseUnitTestCase):

    def testCString(self):
        self.assertEqual(utils.CString(b"bash\x00garbage"), "bash")
        self.assertEqual(utils.CString(b"no terminator"), "no terminator")
        self.assertEqual(utils.CString(b"\xff\x00"), u"\ufffd")


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
