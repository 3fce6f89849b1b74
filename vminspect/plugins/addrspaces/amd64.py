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

"""AMD64 4-level paging.

Comments in this module mostly come from the Intel(R) 64 and IA-32
Architectures Software Developer's Manual Volume 3A: System Programming Guide,
Part 1, section 4.5 "IA-32e paging". Similar information is also available
from Advanced Micro Devices (AMD) at
http://support.amd.com/us/Processor_TechDocs/24593.pdf.
"""
import struct

from vminspect import addrspace
from vminspect import config
from vminspect import errors
from vminspect import utils


config.DeclareOption(
    "--tlb_size", default=1000, type="IntParser",
    help="The number of page translations cached per address translator.")


class AddressTranslationDescriptor(object):
    """A descriptor of a step in the translation process."""
    object_name = None

    def __init__(self, object_name=None, object_value=None,
                 object_address=None):
        if object_name:
            self.object_name = object_name

        self.object_value = object_value
        self.object_address = object_address

    def __str__(self):
        if self.object_address is not None:
            return "%s@ %#x = %#x" % (
                self.object_name, int(self.object_address),
                self.object_value or 0)

        return str(self.object_name)


class CommentDescriptor(object):
    def __init__(self, comment, *args):
        self.comment = comment
        self.args = args

    def __str__(self):
        return self.comment % self.args


class InvalidAddress(CommentDescriptor):
    """Mark an invalid address.

    This should be the last descriptor in the collection sequence.
    """

    def __init__(self, level):
        super(InvalidAddress, self).__init__("Invalid %s", level)
        self.level = level


class PhysicalAddressDescriptor(AddressTranslationDescriptor):
    """A descriptor to mark the final physical address resolution."""

    def __init__(self, address=0):
        super(PhysicalAddressDescriptor, self).__init__()
        self.address = addrspace.PhysicalAddress(address)

    def __str__(self):
        return "Physical Address %s" % self.address


class VirtualAddressDescriptor(AddressTranslationDescriptor):
    """Mark a virtual address."""

    def __init__(self, address=0, dtb=0):
        super(VirtualAddressDescriptor, self).__init__()
        self.dtb = addrspace.PhysicalAddress(dtb)
        self.address = addrspace.VirtualAddress(address)

    def __str__(self):
        return "Virtual Address %s (DTB %s)" % (self.address, self.dtb)


class DescriptorCollection(object):
    """The ordered steps of one translation."""

    def __init__(self):
        self.descriptors = []

    def add(self, descriptor_cls, *args, **kwargs):
        self.descriptors.append(descriptor_cls(*args, **kwargs))

    def __iter__(self):
        return iter(self.descriptors)

    def __len__(self):
        return len(self.descriptors)

    def __getitem__(self, item):
        """Get a particular descriptor.

        Descriptors can be requested by class name (e.g.
        "PhysicalAddressDescriptor") or index (e.g. -1).
        """
        if isinstance(item, str):
            for descriptor in self.descriptors:
                if descriptor.__class__.__name__ == item:
                    return descriptor

            raise KeyError(item)

        return self.descriptors[item]

    @utils.safe_property
    def physical_address(self):
        for descriptor in self.descriptors:
            if isinstance(descriptor, PhysicalAddressDescriptor):
                return descriptor.address

    @utils.safe_property
    def invalid_level(self):
        for descriptor in self.descriptors:
            if isinstance(descriptor, InvalidAddress):
                return descriptor.level

    def __str__(self):
        """Render ourselves into a string."""
        return "\n".join(str(x) for x in self.descriptors)


class PhysicalAddressDescriptorCollector(DescriptorCollection):
    """A descriptor collector which only cares about the outcome.

    This allows us to reuse all the code in describing the address space
    resolution and cheaply implement the standard vtop() method.
    """
    physical_address = None
    invalid_level = None

    def add(self, descriptor_cls, *args, **kwargs):
        if descriptor_cls is PhysicalAddressDescriptor:
            self.physical_address = addrspace.PhysicalAddress(
                kwargs["address"])

        elif descriptor_cls is InvalidAddress:
            self.invalid_level = args[0]


class AMD64PagedMemory(addrspace.PagedReader):
    """Standard AMD 64-bit paging, aka the x86_64 architecture.

    Translates a virtual address through the 4-level paging structures rooted
    at a page table root (the CR3 value, also called dtb or pgd). The root is
    passed with every call so one translator serves every address space of
    the guest.
    """

    name = "amd64"

    valid_mask = 1

    # Is the pagesize flags on?
    page_size_mask = (1 << 7)

    def __init__(self, **kwargs):
        super(AMD64PagedMemory, self).__init__(**kwargs)

        # Translations are only cached for backends whose memory does not
        # change under us.
        self._tlb = None
        self._cache = None
        if not self.backend.volatile:
            self._tlb = addrspace.TranslationLookasideBuffer(
                self.session.GetParameter("tlb_size"))
            self._cache = utils.FastStore(100)

        self.logging = self.session.GetLogger("PageTranslation")

    def vtop(self, mmu_addr, vaddr):
        """Translates a virtual address into a physical address.

        This function is simply a wrapper around describe_vtop() which does all
        the hard work.

        Raises:
          TranslationFailure: naming the first entry which was not present.
          ReadFailure: if a paging structure could not be read.
        """
        mmu_addr = addrspace.PhysicalAddress(mmu_addr)
        vaddr = addrspace.VirtualAddress(vaddr)

        if self._tlb is not None:
            try:
                return self._tlb.Get(mmu_addr, vaddr)
            except KeyError:
                pass

        # The TLB accepts only page aligned virtual addresses.
        aligned_vaddr = vaddr.page_align()
        collection = self.describe_vtop(
            mmu_addr, aligned_vaddr, PhysicalAddressDescriptorCollector())

        if collection.physical_address is None:
            self.logging.debug("Unable to translate %s (dtb %s): invalid %s",
                               vaddr, mmu_addr, collection.invalid_level)
            raise errors.TranslationFailure(
                collection.invalid_level, vaddr, mmu_addr=mmu_addr)

        if self._tlb is not None:
            self._tlb.Put(mmu_addr, aligned_vaddr, collection.physical_address)

        return collection.physical_address + vaddr.page_offset

    def describe_vtop(self, mmu_addr, vaddr, collection=None):
        """Describe the resolution process of a Virtual Address.

        While the regular vtop is called very frequently and therefore must be
        fast, this variation is used to examine the translation process in
        detail.

        Returns:
          A DescriptorCollection of the steps taken.
        """
        if collection is None:
            collection = DescriptorCollection()

        mmu_addr = int(mmu_addr)
        vaddr = int(vaddr)

        collection.add(VirtualAddressDescriptor, address=vaddr, dtb=mmu_addr)

        # Bits 51:12 are from CR3
        # Bits 11:3 are bits 47:39 of the linear address
        pml4e_addr = ((mmu_addr & 0xffffffffff000) |
                      ((vaddr & 0xff8000000000) >> 36))
        pml4e_value = self.read_pte(pml4e_addr)

        collection.add(AddressTranslationDescriptor,
                       object_name="pml4e", object_value=pml4e_value,
                       object_address=pml4e_addr)

        if not pml4e_value & self.valid_mask:
            collection.add(InvalidAddress, "PML4E")
            return collection

        # Bits 51:12 are from the PML4E
        # Bits 11:3 are bits 38:30 of the linear address
        pdpte_addr = ((pml4e_value & 0xffffffffff000) |
                      ((vaddr & 0x7FC0000000) >> 27))
        pdpte_value = self.read_pte(pdpte_addr)

        collection.add(AddressTranslationDescriptor,
                       object_name="pdpte", object_value=pdpte_value,
                       object_address=pdpte_addr)

        if not pdpte_value & self.valid_mask:
            collection.add(InvalidAddress, "PDPTE")
            return collection

        # Large page mapping.
        if pdpte_value & self.page_size_mask:
            # Bits 51:30 are from the PDPTE
            # Bits 29:0 are from the original linear address
            physical_address = ((pdpte_value & 0xfffffc0000000) |
                                (vaddr & 0x3fffffff))
            collection.add(CommentDescriptor, "One Gig page")
            collection.add(PhysicalAddressDescriptor, address=physical_address)

            return collection

        # Bits 51:12 are from the PDPTE
        # Bits 11:3 are bits 29:21 of the linear address
        pde_addr = ((pdpte_value & 0xffffffffff000) |
                    ((vaddr & 0x3fe00000) >> 18))
        self._describe_pde(collection, pde_addr, vaddr)

        return collection

    def _describe_pde(self, collection, pde_addr, vaddr):
        pde_value = self.read_pte(pde_addr)
        collection.add(AddressTranslationDescriptor,
                       object_name="pde", object_value=pde_value,
                       object_address=pde_addr)

        if not pde_value & self.valid_mask:
            collection.add(InvalidAddress, "PDE")

        # Large page PDE accesses 2mb region.
        elif pde_value & self.page_size_mask:
            # Bits 51:21 are from the PDE
            # Bits 20:0 are from the original linear address
            physical_address = ((pde_value & 0xfffffffe00000) |
                                (vaddr & 0x1fffff))
            collection.add(CommentDescriptor, "Large page mapped")
            collection.add(PhysicalAddressDescriptor, address=physical_address)

        else:
            # Bits 51:12 are from the PDE
            # Bits 11:3 are bits 20:12 of the original linear address
            pte_addr = (pde_value & 0xffffffffff000) | ((vaddr & 0x1ff000) >> 9)
            pte_value = self.read_pte(pte_addr)

            self.describe_pte(collection, pte_addr, pte_value, vaddr)

    def describe_pte(self, collection, pte_addr, pte_value, vaddr):
        collection.add(AddressTranslationDescriptor,
                       object_name="pte", object_value=pte_value,
                       object_address=pte_addr)

        if pte_value & self.valid_mask:
            # Bits 51:12 are from the PTE
            # Bits 11:0 are from the original linear address
            physical_address = (pte_value & 0xffffffffff000) | (vaddr & 0xfff)
            collection.add(PhysicalAddressDescriptor, address=physical_address)
        else:
            collection.add(InvalidAddress, "PTE")

        return collection

    def read_pte(self, addr):
        """Returns the little endian 64-bit entry at physical address addr.

        Raises:
          ReadFailure: if the entry can not be read.
        """
        if self._cache is not None:
            try:
                return self._cache.Get(addr)
            except KeyError:
                pass

        data = self.backend.read_physical(addrspace.PhysicalAddress(addr), 8)
        result = struct.unpack("<Q", data)[0]
        if self._cache is not None:
            self._cache.Put(addr, result)

        return result

    def _read_table(self, table_addr):
        """Reads an entire 512 entry paging structure at once.

        Returns None if the table is outside readable memory.
        """
        try:
            data = self.backend.read_physical(
                addrspace.PhysicalAddress(table_addr), 8 * 0x200)
        except errors.ReadFailure as e:
            self.logging.debug("Skipping unreadable table: %s", e)
            return None

        return struct.unpack("<" + "Q" * 0x200, data)

    # For each paging structure, starting at the root (PML4, PDPT, PD, PT):
    # the shift of its index in the linear address and the mask of the page
    # frame its entries map (None where an entry can not map a page).
    LEVELS = (
        (39, None),
        (30, 0xfffffc0000000),
        (21, 0xfffffffe00000),
        (12, 0xffffffffff000),
    )

    @staticmethod
    def _canonical(vaddr):
        # Sign extend bit 47.
        if vaddr & (1 << 47):
            vaddr |= 0xffff000000000000

        return vaddr

    def get_mappings(self, mmu_addr, start=0, end=2**64):
        """Enumerate all available ranges.

        Yields Run objects for all mapped ranges in the virtual address space
        rooted at mmu_addr, in ascending order of the index into the paging
        structures. Each run has the physical address as its file_offset.
        Tables outside readable memory are skipped.
        """
        return self._walk_table(int(mmu_addr) & 0xffffffffff000, 0, 0,
                                int(start), int(end))

    def _walk_table(self, table_addr, level, base, start, end):
        # Pages that hold paging structures are 0x1000 bytes each.
        # Each entry is eight bytes. Thus there are 0x1000 / 8 = 0x200
        # entries we must test.
        table = self._read_table(table_addr)
        if table is None:
            return

        shift, frame_mask = self.LEVELS[level]
        size = 1 << shift
        last_level = level == len(self.LEVELS) - 1

        for index, entry in enumerate(table):
            vaddr = base | (index << shift)
            if level == 0:
                vaddr = self._canonical(vaddr)

            if vaddr > end:
                return

            if start >= vaddr + size or not entry & self.valid_mask:
                continue

            if last_level or (frame_mask is not None and
                              entry & self.page_size_mask):
                yield self._make_run(vaddr, size, entry & frame_mask)
                continue

            for run in self._walk_table(entry & 0xffffffffff000, level + 1,
                                        vaddr, start, end):
                yield run

    def _make_run(self, vaddr, length, paddr):
        return addrspace.Run(
            start=addrspace.VirtualAddress(vaddr),
            end=addrspace.VirtualAddress(vaddr + length),
            file_offset=addrspace.PhysicalAddress(paddr),
            address_space=self.backend)
