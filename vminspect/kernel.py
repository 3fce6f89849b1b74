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

"""The contract every operating system family implements.

An OperatingSystem knows the private layout of one kernel family. It is
selected by name when the introspection session is created, and does all its
memory access through that session. Implementations register automatically
when their module is imported.
"""
from vminspect import registry


class OperatingSystem(object, metaclass=registry.MetaclassRegistry):
    """Base class for OS family strategies."""

    __abstract = True

    # The name used to select this strategy (e.g. "linux").
    name = None

    # The name of the address translator for the architecture.
    arch = "amd64"

    @classmethod
    def quick_check(cls, backend):
        """Does the backend look like a guest running this OS family?

        Used to pick a strategy when the caller does not name one.
        """
        return False

    def __init__(self, os=None, session=None):
        self.os = os
        self.session = session

    # Processes and threads.
    def current_thread(self, vcpu):
        raise NotImplementedError()

    def current_process(self, vcpu):
        raise NotImplementedError()

    def processes(self):
        raise NotImplementedError()

    def init_process(self):
        raise NotImplementedError()

    def find_process_by_pid(self, pid):
        for proc in self.processes():
            if self.process_id(proc) == pid:
                return proc

    def find_process_by_name(self, name):
        for proc in self.processes():
            if self.process_name(proc) == name:
                return proc

    def process_id(self, proc):
        raise NotImplementedError()

    def process_name(self, proc):
        raise NotImplementedError()

    def process_pgd(self, proc):
        raise NotImplementedError()

    def process_path(self, proc):
        raise NotImplementedError()

    def process_parent(self, proc):
        raise NotImplementedError()

    def process_is_kernel(self, proc):
        raise NotImplementedError()

    def process_vmas(self, proc):
        raise NotImplementedError()

    def process_threads(self, proc):
        raise NotImplementedError()

    def process_children(self, proc):
        raise NotImplementedError()

    def process_modules(self, proc):
        raise NotImplementedError()

    def process_callstack(self, proc):
        raise NotImplementedError()

    def thread_id(self, thread):
        raise NotImplementedError()

    def thread_name(self, thread):
        raise NotImplementedError()

    def thread_process(self, thread):
        raise NotImplementedError()

    def thread_callstack(self, thread):
        raise NotImplementedError()

    # Memory regions.
    def vma_start(self, vma):
        raise NotImplementedError()

    def vma_end(self, vma):
        raise NotImplementedError()

    def vma_path(self, vma):
        raise NotImplementedError()

    def vma_flags(self, vma):
        raise NotImplementedError()

    # Modules (the file backed mappings of a process).
    def module_start(self, module, proc):
        raise NotImplementedError()

    def module_end(self, module, proc):
        raise NotImplementedError()

    def module_name(self, module, proc):
        raise NotImplementedError()

    def module_path(self, module, proc):
        raise NotImplementedError()

    def resolve_symbol(self, proc, address):
        raise NotImplementedError()

    def format_symbol(self, proc, address):
        module, symbol, offset = self.resolve_symbol(proc, address)
        return "%s!%s+%#x" % (module, symbol, offset)
