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

"""Address values and the building blocks of address translation.

Physical and virtual addresses are distinct value types. They are never
interchangeable and never silently behave like integers: use int(addr) to get
at the number.
"""
import intervaltree

from vminspect import constants
from vminspect import errors
from vminspect import registry
from vminspect import utils


ADDRESS_MASK = (1 << 64) - 1


class BaseAddress(object):
    """A 64 bit address tagged by the kind of address space it lives in."""
    __slots__ = ("_value",)

    def __init__(self, value=0):
        if isinstance(value, BaseAddress):
            if not isinstance(value, self.__class__):
                raise TypeError("Can not convert %s to %s" % (
                    value.__class__.__name__, self.__class__.__name__))
            value = value._value

        if not isinstance(value, int):
            raise TypeError("%s expects an integer, got %r" % (
                self.__class__.__name__, value))

        self._value = value & ADDRESS_MASK

    def __int__(self):
        return self._value

    def __hash__(self):
        return hash((self.__class__.__name__, self._value))

    def __eq__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self._value == other._value

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __lt__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self._value < other._value

    def __le__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self._value <= other._value

    def __gt__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self._value > other._value

    def __ge__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self._value >= other._value

    def __add__(self, other):
        if isinstance(other, BaseAddress) or not isinstance(other, int):
            return NotImplemented
        return self.__class__(self._value + other)

    def __sub__(self, other):
        if other.__class__ is self.__class__:
            return self._value - other._value

        if isinstance(other, BaseAddress) or not isinstance(other, int):
            return NotImplemented

        return self.__class__(self._value - other)

    @utils.safe_property
    def is_null(self):
        return self._value == 0

    @utils.safe_property
    def page_offset(self):
        return self._value & (constants.PAGE_SIZE - 1)

    def page_align(self):
        return self.__class__(self._value & ~(constants.PAGE_SIZE - 1))

    def __str__(self):
        return "%#x" % self._value

    def __repr__(self):
        return "%s(%#x)" % (self.__class__.__name__, self._value)


class PhysicalAddress(BaseAddress):
    """An address in guest physical memory."""
    __slots__ = ()


class VirtualAddress(BaseAddress):
    """An address in a guest virtual address space."""
    __slots__ = ()

    @utils.safe_property
    def is_kernel(self):
        """True for the canonical upper half."""
        return self._value >= constants.KERNEL_SPACE_START

    # Indexes into each level of the AMD64 paging structures.
    @utils.safe_property
    def pml4e(self):
        return (self._value >> 39) & 0x1ff

    @utils.safe_property
    def pdpte(self):
        return (self._value >> 30) & 0x1ff

    @utils.safe_property
    def pde(self):
        return (self._value >> 21) & 0x1ff

    @utils.safe_property
    def pte(self):
        return (self._value >> 12) & 0x1ff


class TranslationLookasideBuffer(object):
    """An implementation of a TLB.

    This can be used by an address space to cache translations. Entries are
    keyed by the page table root and the page aligned virtual address.
    """

    PAGE_ALIGNMENT = constants.PAGE_SIZE - 1
    PAGE_MASK = ~ PAGE_ALIGNMENT

    def __init__(self, max_size=10):
        self.page_cache = utils.FastStore(max_size)

    def Get(self, mmu_addr, vaddr):
        """Returns the cached physical address for this virtual address.

        Raises:
          KeyError: if the page is not cached.
        """
        vaddr = int(vaddr)

        # The cache only stores page aligned virtual addresses. We add the page
        # offset to the physical addresses automatically.
        result = self.page_cache.Get((int(mmu_addr), vaddr & self.PAGE_MASK))
        return PhysicalAddress(result + (vaddr & self.PAGE_ALIGNMENT))

    def Put(self, mmu_addr, vaddr, paddr):
        if int(vaddr) & self.PAGE_ALIGNMENT:
            raise TypeError("TLB must only cache aligned virtual addresses.")

        self.page_cache.Put((int(mmu_addr), int(vaddr)), int(paddr))

    def Flush(self):
        self.page_cache.Flush()


class Run(object):
    """A container for runs."""
    __slots__ = ("start", "end", "address_space", "file_offset", "data")

    def __init__(self, start=None, end=None, address_space=None,
                 file_offset=None, data=None):
        self.start = start
        self.end = end
        self.address_space = address_space
        self.file_offset = file_offset
        self.data = data

    @utils.safe_property
    def length(self):
        return int(self.end) - int(self.start)

    @length.setter
    def length(self, value):
        self.end = self.start + value

    def copy(self, **kw):
        kwargs = dict(start=self.start, end=self.end,
                      address_space=self.address_space,
                      file_offset=self.file_offset,
                      data=self.data)
        kwargs.update(kw)

        return self.__class__(**kwargs)

    def __eq__(self, other):
        if not isinstance(other, Run):
            return NotImplemented

        return ((self.start, self.end, self.file_offset) ==
                (other.start, other.end, other.file_offset))

    def __hash__(self):
        return hash((self.start, self.end, self.file_offset))

    def __str__(self):
        if self.file_offset is None:
            return u"<%#x, %#x>" % (int(self.start), int(self.end))

        return u"<%#x, %#x> -> %#x" % (
            int(self.start), int(self.end), int(self.file_offset))

    __repr__ = __str__


class MemoryMap(object):
    """The ranges of physical memory a backend can supply.

    Ranges are half open [start, end). Overlapping or adjacent ranges are
    merged, so iteration yields disjoint runs in ascending order.
    """

    def __init__(self, ranges=()):
        self._tree = intervaltree.IntervalTree()
        for start, end in ranges:
            self.add(start, end)

    def add(self, start, end):
        start, end = int(start), int(end)
        if end < start:
            raise errors.InvalidArgument(
                "invalid memory range %#x-%#x" % (start, end))

        # Empty ranges carry no memory.
        if end == start:
            return

        self._tree.addi(start, end)
        self._tree.merge_overlaps(strict=False)

    def contains(self, address, length=1):
        """Is every byte of [address, address + length) backed?"""
        address = int(address)
        for interval in self._tree.at(address):
            return address + max(length, 1) <= interval.end

        return False

    def available(self, address, length):
        """How many bytes from address onwards are backed, up to length."""
        address = int(address)
        for interval in self._tree.at(address):
            return min(length, interval.end - address)

        return 0

    def __iter__(self):
        for interval in sorted(self._tree):
            yield Run(start=PhysicalAddress(interval.begin),
                      end=PhysicalAddress(interval.end),
                      file_offset=interval.begin)

    def __len__(self):
        return len(self._tree)

    def __eq__(self, other):
        if not isinstance(other, MemoryMap):
            return NotImplemented
        return list(self) == list(other)

    __hash__ = None

    @utils.safe_property
    def end(self):
        if not self._tree:
            return PhysicalAddress(0)
        return PhysicalAddress(self._tree.end())

    def __repr__(self):
        return "<MemoryMap %s>" % ", ".join(str(x) for x in self)


class PagedReader(object, metaclass=registry.MetaclassRegistry):
    """Reads virtual memory in page sized chunks.

    This automatically takes care of splitting a large read into smaller reads.
    Subclasses implement vtop() and register under their architecture name.
    """
    __abstract = True

    name = ""

    PAGE_SIZE = constants.PAGE_SIZE

    def __init__(self, backend=None, session=None):
        if session is None:
            raise RuntimeError("Session must be provided.")

        self.backend = backend
        self.session = session

    def vtop(self, mmu_addr, vaddr):
        raise NotImplementedError()

    def _check_length(self, length):
        if length < 0:
            raise errors.InvalidArgument("negative read length %d" % length)

        limit = self.session.GetParameter("buffer_size")
        if limit is not None and length > limit:
            raise errors.OutOfMemory(length, limit)

    def _read_chunk(self, mmu_addr, vaddr, length):
        """Read bytes from a virtual address.

        Returns:
          As many bytes as can be read within this page.
        """
        to_read = min(length, self.PAGE_SIZE - vaddr.page_offset)
        paddr = self.vtop(mmu_addr, vaddr)

        return self.backend.read_physical(paddr, to_read)

    def read(self, mmu_addr, vaddr, length):
        """Reads exactly length bytes or raises."""
        self._check_length(length)

        vaddr = VirtualAddress(vaddr)
        result = []
        while length > 0:
            buf = self._read_chunk(mmu_addr, vaddr, length)
            result.append(buf)
            vaddr += len(buf)
            length -= len(buf)

        return b"".join(result)

    def read_partial(self, mmu_addr, vaddr, length):
        """Reads the longest readable prefix of the range.

        Stops at the first page which fails to translate, or at the first byte
        of a page which the backend can not supply.
        """
        self._check_length(length)

        vaddr = VirtualAddress(vaddr)
        result = []
        while length > 0:
            to_read = min(length, self.PAGE_SIZE - vaddr.page_offset)
            try:
                paddr = self.vtop(mmu_addr, vaddr)
            except (errors.TranslationFailure, errors.ReadFailure):
                break

            try:
                buf = self.backend.read_physical(paddr, to_read)
            except errors.ReadFailure:
                result.append(self._read_backed_prefix(paddr, to_read))
                break

            result.append(buf)
            vaddr += len(buf)
            length -= len(buf)

        return b"".join(result)

    def _read_backed_prefix(self, paddr, length):
        """Reads the part of a physical range the memory map still covers."""
        available = self.backend.memory_map().available(paddr, length)
        if not available:
            return b""

        try:
            return self.backend.read_physical(paddr, available)
        except errors.ReadFailure:
            return b""

    def is_valid_address(self, mmu_addr, vaddr):
        try:
            paddr = self.vtop(mmu_addr, vaddr)
        except (errors.TranslationFailure, errors.ReadFailure):
            return False

        return self.backend.memory_map().contains(paddr)
