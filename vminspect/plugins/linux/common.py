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

"""Common routines for reading Linux kernel structures."""
import struct

from vminspect import addrspace
from vminspect import config
from vminspect import constants
from vminspect import errors
from vminspect import utils


config.DeclareOption(
    "--kernel_symbols", default="kernel",
    help="The name of the symbols module describing the guest kernel.")

config.DeclareOption(
    "--max_list_entries", default=0x100000, type="IntParser",
    help="The largest number of entries we follow in a kernel list before "
    "deciding it is corrupted.")


class LinuxProfile(object):
    """Struct offsets and symbol addresses of the running kernel.

    Lookups are cached until the symbols table is loaded into again.
    """

    def __init__(self, os, session):
        self.os = os
        self.session = session
        self._cache = {}
        self._generation = None

    def _symbols(self):
        symbols = self.os.symbols
        name = self.session.GetParameter("kernel_symbols")
        if symbols is None:
            raise errors.MissingSymbol(name)

        if symbols.generation != self._generation:
            self._cache.clear()
            self._generation = symbols.generation

        return symbols.require_module(name)

    def get_obj_offset(self, struct_name, field):
        """Returns the offset of field in struct_name.

        Raises:
          MissingSymbol: naming struct.field if either is unknown.
        """
        module = self._symbols()
        key = (struct_name, field)
        try:
            return self._cache[key]
        except KeyError:
            pass

        definition = module.get_struct(struct_name)
        if definition is None:
            raise errors.MissingSymbol("%s.%s" % (struct_name, field))

        result = self._cache[key] = definition.require_offset(field)
        return result

    def get_constant(self, name):
        """Returns the address of the kernel symbol as a VirtualAddress.

        The address is moved by the KASLR slide of the session.
        """
        module = self._symbols()
        key = ("$CONSTANTS", name)
        try:
            return self._cache[key]
        except KeyError:
            pass

        result = self._cache[key] = addrspace.VirtualAddress(
            module.require_address(name) + self.os.kaslr)
        return result


class KernelReader(object):
    """Reads kernel memory through the kernel page tables."""

    def __init__(self, os, session, profile):
        self.os = os
        self.session = session
        self.profile = profile

    def read(self, address, length):
        return self.os.read_virtual_memory(self.os.kernel_pgd, address, length)

    def read_u64(self, address):
        return struct.unpack("<Q", self.read(address, 8))[0]

    def read_s32(self, address):
        return struct.unpack("<i", self.read(address, 4))[0]

    def read_pointer(self, address):
        return addrspace.VirtualAddress(self.read_u64(address))

    def member(self, address, struct_name, field):
        """The address of struct_name.field for the struct at address."""
        return address + self.profile.get_obj_offset(struct_name, field)

    def m(self, address, struct_name, field):
        """Reads the pointer sized struct_name.field."""
        return self.read_pointer(self.member(address, struct_name, field))

    def container_of(self, address, struct_name, field):
        return address - self.profile.get_obj_offset(struct_name, field)

    def read_string(self, address, max_length):
        """Reads a NUL terminated string of at most max_length bytes."""
        data = self.os.try_read_virtual_memory(
            self.os.kernel_pgd, address, max_length)

        # Raise the real error if not even the first byte is readable.
        if not data:
            self.read(address, 1)

        return utils.CString(data)

    def walk_list(self, head, struct_name, field):
        """Yields the structs linked into the list_head at head.

        The walk ends when it returns to head. The head itself is not yielded.

        Raises:
          CorruptedData: if the list never returns to head.
        """
        max_entries = self.session.GetParameter("max_list_entries")
        next_offset = self.profile.get_obj_offset("list_head", "next")
        seen = set()

        node = self.read_pointer(head + next_offset)
        while node != head:
            if node.is_null:
                raise errors.CorruptedData(
                    "null link in list at %s" % head)

            if node in seen:
                raise errors.CorruptedData(
                    "list at %s loops without returning to its head" % head)

            if len(seen) >= max_entries:
                raise errors.CorruptedData(
                    "list at %s is longer than %d entries" % (
                        head, max_entries))

            seen.add(node)
            yield self.container_of(node, struct_name, field)

            node = self.read_pointer(node + next_offset)

    def walk_chain(self, first, struct_name, field):
        """Yields a NULL terminated singly linked chain of structs."""
        max_entries = self.session.GetParameter("max_list_entries")
        seen = set()

        item = first
        while not item.is_null:
            if item in seen:
                raise errors.CorruptedData(
                    "%s chain loops at %s" % (struct_name, item))

            if len(seen) >= max_entries:
                raise errors.CorruptedData(
                    "%s chain is longer than %d entries" % (
                        struct_name, max_entries))

            seen.add(item)
            yield item

            item = self.m(item, struct_name, field)

    def dentry_path(self, dentry):
        """Reconstructs the path of a dentry by following d_parent."""
        name_offset = (self.profile.get_obj_offset("dentry", "d_name") +
                       self.profile.get_obj_offset("qstr", "name"))

        path_components = []
        while True:
            if len(path_components) >= constants.MAX_PATH_DEPTH:
                raise errors.CorruptedData(
                    "dentry chain at %s is too deep" % dentry)

            parent = self.m(dentry, "dentry", "d_parent")

            # The root is its own parent.
            if parent == dentry or parent.is_null:
                break

            name = self.read_pointer(dentry + name_offset)
            path_components.insert(
                0, self.read_string(name, constants.MAX_NAME_LENGTH))
            dentry = parent

        return "/" + "/".join(path_components)

    def file_path(self, file_pointer):
        """The path of a struct file."""
        f_path = self.member(file_pointer, "file", "f_path")
        dentry = self.m(f_path, "path", "dentry")
        if dentry.is_null:
            return None

        return self.dentry_path(dentry)
