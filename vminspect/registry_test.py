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

from vminspect import backend
from vminspect import kernel
from vminspect import registry
from vminspect import testlib


class RegistryTest(testlib.VmiBaseUnitTestCase):

    def testBuiltinImplementations(self):
        self.assertIs(backend.Backend.ImplementationByName("buffer"),
                      backend.BufferBackend)
        self.assertIs(backend.Backend.ImplementationByClass("FileBackend"),
                      backend.FileBackend)
        self.assertIsNotNone(kernel.OperatingSystem.ImplementationByName(
            "linux"))
        self.assertIsNone(kernel.OperatingSystem.ImplementationByName(
            "windows"))

        # Abstract bases are not registered.
        self.assertNotIn("Backend", backend.Backend.classes)

    def testRegistration(self):
        class Base(object, metaclass=registry.MetaclassRegistry):
            __abstract = True

        class First(Base):
            name = "dup"

        class Second(First):
            name = "dup"

        self.assertEqual(sorted(Base.classes), ["First", "Second"])
        self.assertEqual(Base.classes_by_name["dup"], [First, Second])
        self.assertIs(Base.ImplementationByName("dup"), First)
        self.assertIs(Second.top_level_class, Base)

        with self.assertRaises(RuntimeError):
            class First(Base):  # pylint: disable=function-redefined,unused-variable
                pass


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
