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

"""The introspection engine.

An Os ties a backend, an address translator, a symbols table and an operating
system strategy together:

    with introspection.Os(backend, symbols=symbols) as guest:
        for proc in guest.processes():
            print(proc.pid, proc.name, proc.path)

Generic memory access works without symbols. Everything which needs to know
the layout of the guest kernel raises MissingSymbol until symbols are given.
"""
import itertools

from vminspect import addrspace
from vminspect import config
from vminspect import errors
from vminspect import kernel
from vminspect import session as session_module
from vminspect import utils

# Register the address translators and OS strategies.
# pylint: disable=unused-import
from vminspect import plugins
# pylint: enable=unused-import


config.DeclareOption(
    "--dtb", type="IntParser",
    help="The physical address of the kernel page tables. If not set the CR3 "
    "of the first vCPU is used.")

config.DeclareOption(
    "--kaslr", default=0, type="IntParser",
    help="The KASLR slide of the guest kernel: the difference between where "
    "kernel symbols are loaded and the addresses in the symbols file.")


class Os(object):
    """An introspection session over one backend.

    Args:
      backend: The Backend. The Os owns it and closes it on close().
      symbols: An optional Symbols table (may be shared between sessions).
      session: An optional Session for configuration and logging. Defaults to
        the session of the symbols table, or a new one.
      os_family: The name of the OperatingSystem strategy. If None the
        strategy is guessed from the backend, and when no symbols are given
        they are loaded from the symbols_path directories.
      kpgd: The kernel page table root. Overrides the dtb parameter.
      kaslr: The kernel load slide. Overrides the kaslr parameter.
    """

    _ids = itertools.count(1)

    def __init__(self, backend, symbols=None, session=None, os_family="linux",
                 kpgd=None, kaslr=None):
        if backend is None:
            raise errors.InvalidArgument("A backend must be provided.")

        if session is None:
            session = (symbols.session if symbols is not None
                       else session_module.Session())

        self.session = session
        self.session_id = next(self._ids)
        self.backend = backend
        self.symbols = symbols
        self._kpgd = kpgd
        self._closed = False

        if kaslr is None:
            kaslr = session.GetParameter("kaslr")
        self.kaslr = int(kaslr or 0)

        if os_family is None:
            strategy_cls = self._guess_os(backend)
            os_family = strategy_cls.name
            if symbols is None and session.GetParameter("symbols_path"):
                self.symbols = session.LoadSymbols()
        else:
            strategy_cls = kernel.OperatingSystem.ImplementationByName(
                os_family)
            if strategy_cls is None:
                raise errors.InvalidArgument(
                    "Unsupported operating system family: %s" % os_family)

        translator_cls = addrspace.PagedReader.ImplementationByName(
            strategy_cls.arch)
        if translator_cls is None:
            raise errors.InvalidArgument(
                "Unsupported architecture: %s" % strategy_cls.arch)

        self.translator = translator_cls(backend=backend, session=session)
        self.kernel = strategy_cls(os=self, session=session)

        self.session.logging.debug(
            "Created %s session %d over %r", os_family, self.session_id,
            backend)

    def _guess_os(self, backend):
        """Returns the first OS strategy which recognizes the backend."""
        for strategy_cls in kernel.OperatingSystem.classes.values():
            try:
                if strategy_cls.quick_check(backend):
                    return strategy_cls
            except errors.Error as e:
                self.session.logging.warning(
                    "Error while guessing OS with %s: %s",
                    strategy_cls.name, e)

        raise errors.InvalidArgument(
            "Unable to guess the guest operating system.")

    def close(self):
        if not self._closed:
            self._closed = True
            self.backend.close()

    def __enter__(self):
        return self

    def __exit__(self, unused_type, unused_value, unused_traceback):
        self.close()

    def __repr__(self):
        return "<Os %d (%s)>" % (self.session_id, self.kernel.name)

    @utils.safe_property
    def kernel_pgd(self):
        """The physical address of the kernel page tables."""
        if self._kpgd is None:
            dtb = self.session.GetParameter("dtb")
            if dtb is not None:
                self._kpgd = addrspace.PhysicalAddress(dtb)
            else:
                vcpus = self.backend.vcpus()
                if not vcpus:
                    raise errors.InvalidArgument(
                        "No kernel page table root: no dtb and no vCPU.")

                self._kpgd = vcpus[0].cr3

        return addrspace.PhysicalAddress(self._kpgd)

    def vcpus(self):
        return self.backend.vcpus()

    def vcpu(self, vcpu):
        """Returns a Vcpu from a Vcpu or an index."""
        if not isinstance(vcpu, int):
            return vcpu

        vcpus = self.backend.vcpus()
        if not 0 <= vcpu < len(vcpus):
            raise errors.InvalidArgument(
                "Invalid vCPU %d (%d vCPUs)" % (vcpu, len(vcpus)))

        return vcpus[vcpu]

    # Generic memory access.
    def read_virtual_memory(self, mmu_addr, address, length):
        """Reads exactly length bytes or raises."""
        return self.translator.read(mmu_addr, address, length)

    def try_read_virtual_memory(self, mmu_addr, address, length):
        """Reads the longest readable prefix of the range."""
        return self.translator.read_partial(mmu_addr, address, length)

    def read_process_memory(self, proc, address, length, mmu_addr=None):
        if mmu_addr is None:
            mmu_addr = self.process_pgd(proc)

        return self.read_virtual_memory(mmu_addr, address, length)

    def try_read_process_memory(self, proc, address, length, mmu_addr=None):
        if mmu_addr is None:
            mmu_addr = self.process_pgd(proc)

        return self.try_read_virtual_memory(mmu_addr, address, length)

    def virtual_to_physical(self, mmu_addr, address):
        return self.translator.vtop(mmu_addr, address)

    def describe_virtual_address(self, mmu_addr, address):
        """Returns the steps of translating address, for diagnostics."""
        return self.translator.describe_vtop(mmu_addr, address)

    def get_mappings(self, mmu_addr, start=0, end=2**64):
        return self.translator.get_mappings(mmu_addr, start=start, end=end)

    # Processes and threads.
    def current_thread(self, vcpu):
        return self.kernel.current_thread(self.vcpu(vcpu))

    def current_process(self, vcpu):
        return self.kernel.current_process(self.vcpu(vcpu))

    def processes(self):
        return self.kernel.processes()

    def init_process(self):
        return self.kernel.init_process()

    def find_process_by_pid(self, pid):
        return self.kernel.find_process_by_pid(pid)

    def find_process_by_name(self, name):
        return self.kernel.find_process_by_name(name)

    def process_id(self, proc):
        return self.kernel.process_id(proc)

    def process_name(self, proc):
        return self.kernel.process_name(proc)

    def process_pgd(self, proc):
        return self.kernel.process_pgd(proc)

    def process_path(self, proc):
        return self.kernel.process_path(proc)

    def process_parent(self, proc):
        return self.kernel.process_parent(proc)

    def process_is_kernel(self, proc):
        return self.kernel.process_is_kernel(proc)

    def process_vmas(self, proc):
        return self.kernel.process_vmas(proc)

    def process_threads(self, proc):
        return self.kernel.process_threads(proc)

    def process_children(self, proc):
        return self.kernel.process_children(proc)

    def process_modules(self, proc):
        return self.kernel.process_modules(proc)

    def process_callstack(self, proc):
        return self.kernel.process_callstack(proc)

    def thread_id(self, thread):
        return self.kernel.thread_id(thread)

    def thread_name(self, thread):
        return self.kernel.thread_name(thread)

    def thread_process(self, thread):
        return self.kernel.thread_process(thread)

    def thread_callstack(self, thread):
        return self.kernel.thread_callstack(thread)

    # Memory regions.
    def vma_start(self, vma):
        return self.kernel.vma_start(vma)

    def vma_end(self, vma):
        return self.kernel.vma_end(vma)

    def vma_path(self, vma):
        return self.kernel.vma_path(vma)

    def vma_flags(self, vma):
        return self.kernel.vma_flags(vma)

    # Modules.
    def module_start(self, module, proc):
        return self.kernel.module_start(module, proc)

    def module_end(self, module, proc):
        return self.kernel.module_end(module, proc)

    def module_name(self, module, proc):
        return self.kernel.module_name(module, proc)

    def module_path(self, module, proc):
        return self.kernel.module_path(module, proc)

    # Symbols.
    def resolve_symbol(self, proc, address):
        """Resolves address in proc to (module name, symbol, offset)."""
        return self.kernel.resolve_symbol(proc, address)

    def format_symbol(self, proc, address):
        return self.kernel.format_symbol(proc, address)
