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
import os
import tempfile
import unittest

from vminspect import addrspace
from vminspect import backend
from vminspect import testlib


class VcpuTest(testlib.VmiBaseUnitTestCase):

    def testDefaults(self):
        vcpu = backend.Vcpu()
        self.assertEqual(vcpu.registers.rip, 0)
        self.assertEqual(vcpu.special_registers.gs.base, 0)
        self.assertEqual(vcpu.special_registers.interrupt_bitmap, (0, 0, 0, 0))

    def testPointers(self):
        vcpu = backend.Vcpu(
            registers=backend.Registers(rip=0x401000, rsp=0x7ffe0000,
                                        rbp=0x7ffe0010),
            special_registers=backend.SpecialRegisters(cr3=0x1234567 | 0x18))

        self.assertEqual(vcpu.instruction_pointer,
                         addrspace.VirtualAddress(0x401000))
        self.assertEqual(vcpu.stack_pointer,
                         addrspace.VirtualAddress(0x7ffe0000))
        self.assertEqual(vcpu.frame_pointer,
                         addrspace.VirtualAddress(0x7ffe0010))

        # The PCID and flag bits are not part of the root.
        self.assertEqual(vcpu.cr3, addrspace.PhysicalAddress(0x1234000))


class BufferBackendTest(testlib.VmiBaseUnitTestCase):

    def setUp(self):
        super(BufferBackendTest, self).setUp()
        self.data = bytes(range(256)) * 32
        self.backend = backend.BufferBackend(
            data=self.data, vcpus=[backend.Vcpu()],
            memory_map=[(0, 0x1000), (0x1800, 0x2000)])

    def testRead(self):
        self.assertEqual(self.backend.read_physical(0x10, 4),
                         b"\x10\x11\x12\x13")
        self.assertEqual(
            self.backend.read_physical(addrspace.PhysicalAddress(0x1800), 2),
            b"\x00\x01")
        self.assertEqual(self.backend.read_physical(0x3000, 0), b"")
        self.assertEqual(len(self.backend.vcpus()), 1)

    def testReadOutsideMap(self):
        # A hole in the map.
        self.assertErrorKind("ReadFailure", self.backend.read_physical,
                             0x1400, 4)

        # Straddling the end of a range.
        self.assertErrorKind("ReadFailure", self.backend.read_physical,
                             0xffe, 4)

        self.assertErrorKind("ReadFailure", self.backend.read_physical,
                             0x10000, 1)

        self.assertErrorKind("InvalidArgument", self.backend.read_physical,
                             0, -1)

    def testVirtualAddressRejected(self):
        self.assertRaises(TypeError, self.backend.read_physical,
                          addrspace.VirtualAddress(0), 4)

    def testClose(self):
        with self.backend as data_source:
            data_source.read_physical(0, 1)

        self.assertTrue(self.backend.closed)
        self.backend.close()
        self.assertErrorKind("ReadFailure", self.backend.read_physical, 0, 1)


class CallbackBackendTest(testlib.VmiBaseUnitTestCase):

    def setUp(self):
        super(CallbackBackendTest, self).setUp()
        self.memory = bytearray(0x2000)
        self.mapping_calls = 0
        self.dropped = 0

    def _mapping(self):
        self.mapping_calls += 1
        return [(0, len(self.memory))]

    def _drop(self):
        self.dropped += 1

    def _backend(self, **kwargs):
        return backend.CallbackBackend(
            read_memory=lambda offset, length: bytes(
                self.memory[offset:offset + length]),
            memory_mapping=self._mapping,
            get_vcpus=lambda: [backend.Vcpu()],
            drop=self._drop, **kwargs)

    def testRead(self):
        data_source = self._backend()
        self.memory[0x100:0x104] = b"abcd"

        self.assertEqual(data_source.read_physical(0x100, 4), b"abcd")
        self.assertErrorKind("ReadFailure", data_source.read_physical,
                             0x2000, 1)
        self.assertEqual(data_source.vcpus(), [backend.Vcpu()])

    def testMemoryMapCaching(self):
        data_source = self._backend()
        data_source.memory_map()
        data_source.memory_map()
        self.assertEqual(self.mapping_calls, 1)

        live = self._backend(volatile=True)
        live.memory_map()
        live.memory_map()
        self.assertEqual(self.mapping_calls, 3)

    def testShortRead(self):
        data_source = backend.CallbackBackend(
            read_memory=lambda offset, length: b"x",
            memory_mapping=lambda: [(0, 0x1000)],
            get_vcpus=list)

        self.assertErrorKind("ReadFailure", data_source.read_physical, 0, 8)

    def testDropOnce(self):
        data_source = self._backend()
        data_source.close()
        data_source.close()
        self.assertEqual(self.dropped, 1)

    def testCallbacksRequired(self):
        self.assertErrorKind("InvalidArgument", backend.CallbackBackend,
                             read_memory=None, memory_mapping=list,
                             get_vcpus=list)


class FileBackendTest(testlib.VmiBaseUnitTestCase):

    def setUp(self):
        super(FileBackendTest, self).setUp()
        fd, self.filename = tempfile.mkstemp()
        with os.fdopen(fd, "wb") as image:
            image.write(b"\x00" * 0x1000 + b"PAGE" + b"\x00" * 0xffc)

    def tearDown(self):
        os.unlink(self.filename)
        super(FileBackendTest, self).tearDown()

    def testRead(self):
        with backend.FileBackend(filename=self.filename,
                                 session=self.session) as image:
            self.assertEqual(image.read_physical(0x1000, 4), b"PAGE")
            self.assertEqual(image.memory_map(),
                             addrspace.MemoryMap([(0, 0x2000)]))
            self.assertErrorKind("ReadFailure", image.read_physical,
                                 0x1ffe, 4)
            self.assertEqual(image.vcpus(), [])

        self.assertTrue(image.fhandle.closed)

    def testMissingFile(self):
        error = self.assertErrorKind("InvalidArgument", backend.FileBackend,
                                     filename=self.filename + ".missing")
        self.assertIn(".missing", str(error))


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
