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

"""Backends supply raw guest physical memory and virtual CPU state.

Any data source can drive the engine by subclassing Backend and implementing
read_raw(), memory_map() and vcpus(). The Backend base class validates every
physical read against the memory map before the subclass sees it.
"""
import collections
import os

from vminspect import addrspace
from vminspect import errors
from vminspect import registry
from vminspect import utils


def _namedtuple(name, fields, default=0):
    fields = fields.split()
    return collections.namedtuple(name, fields, defaults=[default] * len(fields))


# General purpose registers.
Registers = _namedtuple(
    "Registers",
    "rax rbx rcx rdx rsi rdi rsp rbp r8 r9 r10 r11 r12 r13 r14 r15 "
    "rip rflags")

Segment = _namedtuple(
    "Segment",
    "base limit selector type_ present dpl db s l g avl unusable")

# A descriptor table register (GDTR/IDTR).
Dtable = _namedtuple("Dtable", "base limit")

SpecialRegisters = collections.namedtuple(
    "SpecialRegisters",
    "cs ds es fs gs ss tr ldt gdt idt cr0 cr2 cr3 cr4 cr8 efer apic_base "
    "interrupt_bitmap".split(),
    defaults=[Segment()] * 8 + [Dtable()] * 2 + [0] * 7 + [(0, 0, 0, 0)])

# Model specific registers we care about.
OtherRegisters = _namedtuple("OtherRegisters", "lstar gs_kernel_base")


class Vcpu(collections.namedtuple(
        "Vcpu", "registers special_registers other_registers",
        defaults=[Registers(), SpecialRegisters(), OtherRegisters()])):
    """An immutable snapshot of one virtual CPU."""
    __slots__ = ()

    @utils.safe_property
    def instruction_pointer(self):
        return addrspace.VirtualAddress(self.registers.rip)

    @utils.safe_property
    def stack_pointer(self):
        return addrspace.VirtualAddress(self.registers.rsp)

    @utils.safe_property
    def frame_pointer(self):
        return addrspace.VirtualAddress(self.registers.rbp)

    @utils.safe_property
    def cr3(self):
        """The page table root, stripped of PCID and flag bits."""
        return addrspace.PhysicalAddress(
            self.special_registers.cr3 & 0x000ffffffffff000)


class Backend(object, metaclass=registry.MetaclassRegistry):
    """This is the base class of all backends."""

    __abstract = True

    # This can be used to name the backend.
    name = ""

    # This flag signifies whether this backend's contents are likely to change
    # between reads. If a backend is NOT volatile (this flag is False) then
    # reads from the same address MUST always return the same bytes.
    volatile = False

    def __init__(self, session=None):
        self.session = session
        self._closed = False

    def read_raw(self, offset, length):
        """Subclasses read length bytes at physical offset.

        The range is guaranteed to lie within the memory map.
        """
        raise NotImplementedError()

    def memory_map(self):
        """Returns the MemoryMap of readable physical memory."""
        raise NotImplementedError()

    def vcpus(self):
        """Returns a list of Vcpu."""
        raise NotImplementedError()

    def read_physical(self, address, length):
        """Reads exactly length bytes of physical memory.

        Raises:
          ReadFailure: if the range is not entirely in the memory map or the
          data source could not supply it.
        """
        address = addrspace.PhysicalAddress(address)
        length = int(length)
        if length < 0:
            raise errors.InvalidArgument("negative read length %d" % length)

        if self._closed:
            raise errors.ReadFailure(address, length, "backend is closed")

        if not length:
            return b""

        if not self.memory_map().contains(address, length):
            raise errors.ReadFailure(address, length, "not in memory map")

        data = self.read_raw(int(address), length)
        if data is None or len(data) != length:
            raise errors.ReadFailure(address, length, "short read")

        return bytes(data)

    def _close(self):
        """Implement this to release resources."""

    def close(self):
        if not self._closed:
            self._closed = True
            self._close()

    @utils.safe_property
    def closed(self):
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, unused_type, unused_value, unused_traceback):
        self.close()

    def __repr__(self):
        return "<%s %s>" % (self.__class__.__name__, self.name)


class BufferBackend(Backend):
    """A backend over an in-memory buffer.

    Physical address 0 is the start of the buffer unless a memory map is given.
    """

    name = "buffer"

    def __init__(self, data=b"", vcpus=None, memory_map=None, **kwargs):
        super(BufferBackend, self).__init__(**kwargs)
        self.data = data
        self._vcpus = list(vcpus or [])
        if memory_map is None:
            memory_map = addrspace.MemoryMap([(0, len(data))])
        elif not isinstance(memory_map, addrspace.MemoryMap):
            memory_map = addrspace.MemoryMap(memory_map)

        self._memory_map = memory_map

    def read_raw(self, offset, length):
        return self.data[offset:offset + length]

    def memory_map(self):
        return self._memory_map

    def vcpus(self):
        return list(self._vcpus)

    def __len__(self):
        return len(self.data)


class CallbackBackend(Backend):
    """A backend built from a table of callables.

    Args:
      read_memory: callable(offset, length) returning bytes.
      memory_mapping: callable() returning an iterable of (start, end).
      get_vcpus: callable() returning a list of Vcpu.
      drop: optional callable() invoked once on close.
      volatile: True for live data sources.
    """

    name = "callback"

    def __init__(self, read_memory=None, memory_mapping=None, get_vcpus=None,
                 drop=None, volatile=False, **kwargs):
        super(CallbackBackend, self).__init__(**kwargs)
        for callback_name, callback in (("read_memory", read_memory),
                                        ("memory_mapping", memory_mapping),
                                        ("get_vcpus", get_vcpus)):
            if not callable(callback):
                raise errors.InvalidArgument(
                    "%s must be callable" % callback_name)

        self._read_memory = read_memory
        self._memory_mapping = memory_mapping
        self._get_vcpus = get_vcpus
        self._drop = drop
        self._memory_map = None
        self.volatile = volatile

    def read_raw(self, offset, length):
        return self._read_memory(offset, length)

    def memory_map(self):
        if self._memory_map is None or self.volatile:
            self._memory_map = addrspace.MemoryMap(self._memory_mapping())

        return self._memory_map

    def vcpus(self):
        return list(self._get_vcpus())

    def _close(self):
        if self._drop is not None:
            self._drop()


class FileBackend(Backend):
    """A flat raw physical memory image on disk.

    Offset N in the file is physical address N. Structured dump formats must be
    unpacked by the caller first.
    """

    name = "file"

    def __init__(self, filename=None, vcpus=None, fhandle=None, **kwargs):
        super(FileBackend, self).__init__(**kwargs)
        if fhandle is None:
            if not filename:
                raise errors.InvalidArgument("Filename must be specified.")

            self.fname = os.path.abspath(filename)
            try:
                fhandle = open(self.fname, "rb")
            except (IOError, OSError) as e:
                raise errors.InvalidArgument(
                    "unable to open %s: %s" % (self.fname, e))
        else:
            self.fname = getattr(fhandle, "name", "filelike")

        self.fhandle = fhandle
        self._vcpus = list(vcpus or [])

        self.fhandle.seek(0, 2)
        self.fsize = self.fhandle.tell()
        self._memory_map = addrspace.MemoryMap([(0, self.fsize)])

        if self.session is not None:
            self.session.logging.debug(
                "Opened %s (%#x bytes)", self.fname, self.fsize)

    def read_raw(self, offset, length):
        self.fhandle.seek(offset)
        return self.fhandle.read(length)

    def memory_map(self):
        return self._memory_map

    def vcpus(self):
        return list(self._vcpus)

    def _close(self):
        self.fhandle.close()
