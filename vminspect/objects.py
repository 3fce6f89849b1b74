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

"""Handles to guest kernel objects.

A handle is only the virtual address of a kernel object, tagged with its kind
and the session which produced it. Handles cache nothing: every property goes
back to the session and reads guest memory again.
"""
import collections
import enum

from vminspect import addrspace
from vminspect import utils


class VmaFlags(enum.IntFlag):
    NONE = 0
    READ = 1
    WRITE = 2
    EXEC = 4


StackFrame = collections.namedtuple(
    "StackFrame", "instruction_pointer stack_pointer frame_pointer")


class Handle(object):
    """A kernel object in a session."""
    __slots__ = ("os", "address")

    def __init__(self, os, address):
        self.os = os
        self.address = addrspace.VirtualAddress(address)

    @utils.safe_property
    def key(self):
        return (self.os.session_id, int(self.address))

    def __eq__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self.key == other.key

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __lt__(self, other):
        if other.__class__ is not self.__class__:
            return NotImplemented
        return self.key < other.key

    def __hash__(self):
        return hash((self.__class__.__name__,) + self.key)

    def __repr__(self):
        return "<%s %s>" % (self.__class__.__name__, self.address)


class Process(Handle):
    """A task_struct which leads a thread group."""
    __slots__ = ()

    @utils.safe_property
    def pid(self):
        return self.os.process_id(self)

    @utils.safe_property
    def name(self):
        return self.os.process_name(self)

    @utils.safe_property
    def pgd(self):
        return self.os.process_pgd(self)

    @utils.safe_property
    def path(self):
        return self.os.process_path(self)

    @utils.safe_property
    def parent(self):
        return self.os.process_parent(self)

    @utils.safe_property
    def is_kernel(self):
        return self.os.process_is_kernel(self)

    def vmas(self):
        return self.os.process_vmas(self)

    def threads(self):
        return self.os.process_threads(self)

    def children(self):
        return self.os.process_children(self)

    def modules(self):
        return self.os.process_modules(self)

    def callstack(self):
        return self.os.process_callstack(self)

    def read_memory(self, address, length):
        return self.os.read_process_memory(self, address, length)

    def try_read_memory(self, address, length):
        return self.os.try_read_process_memory(self, address, length)


class Thread(Handle):
    """A task_struct."""
    __slots__ = ()

    @utils.safe_property
    def tid(self):
        return self.os.thread_id(self)

    @utils.safe_property
    def name(self):
        return self.os.thread_name(self)

    @utils.safe_property
    def process(self):
        return self.os.thread_process(self)

    def callstack(self):
        return self.os.thread_callstack(self)


class Vma(Handle):
    """A vm_area_struct."""
    __slots__ = ()

    @utils.safe_property
    def start(self):
        return self.os.vma_start(self)

    @utils.safe_property
    def end(self):
        return self.os.vma_end(self)

    @utils.safe_property
    def path(self):
        return self.os.vma_path(self)

    @utils.safe_property
    def flags(self):
        return self.os.vma_flags(self)


class Module(Handle):
    """The file backed mappings of one file in a process.

    The address is the first vma mapping the file.
    """
    __slots__ = ("process",)

    def __init__(self, os, address, process):
        super(Module, self).__init__(os, address)
        self.process = process

    @utils.safe_property
    def start(self):
        return self.os.module_start(self, self.process)

    @utils.safe_property
    def end(self):
        return self.os.module_end(self, self.process)

    @utils.safe_property
    def name(self):
        return self.os.module_name(self, self.process)

    @utils.safe_property
    def path(self):
        return self.os.module_path(self, self.process)
