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

"""The Linux kernel.

Everything is driven by the kernel symbols: the addresses of init_task,
current_task and __per_cpu_start, and the offsets of the task_struct,
mm_struct, vm_area_struct, file, path, dentry, qstr, list_head, thread_struct
and inactive_task_frame fields we use.
"""
import os as os_module

from vminspect import addrspace
from vminspect import config
from vminspect import constants
from vminspect import errors
from vminspect import kernel
from vminspect import objects
from vminspect.plugins.linux import common


config.DeclareOption(
    "--max_stack_frames", default=128, type="IntParser",
    help="The largest number of frames returned by a call stack walk.")


class Linux(kernel.OperatingSystem):
    """Walks the Linux task list and its related structures."""

    name = "linux"

    # The kernel banner, as in /proc/version.
    BANNER = b"Linux version "

    # How much physical memory quick_check searches for the banner.
    BANNER_SCAN_LIMIT = 0x10000000
    BANNER_SCAN_CHUNK = 0x100000

    def __init__(self, **kwargs):
        super(Linux, self).__init__(**kwargs)
        self.profile = common.LinuxProfile(self.os, self.session)
        self.reader = common.KernelReader(self.os, self.session, self.profile)
        self.logging = self.session.GetLogger("Linux")

    @classmethod
    def quick_check(cls, backend):
        """Searches low physical memory for the kernel banner."""
        remaining = cls.BANNER_SCAN_LIMIT
        for run in backend.memory_map():
            offset, end = int(run.start), int(run.end)
            tail = b""
            while offset < end and remaining > 0:
                length = min(cls.BANNER_SCAN_CHUNK, end - offset, remaining)
                data = tail + backend.read_physical(offset, length)
                if cls.BANNER in data:
                    return True

                # The banner may straddle two chunks.
                tail = data[-(len(cls.BANNER) - 1):]
                offset += length
                remaining -= length

        return False

    def _process(self, address):
        return objects.Process(self.os, address)

    def _thread(self, address):
        return objects.Thread(self.os, address)

    def current_thread(self, vcpu):
        """The task running on vcpu.

        The per-cpu base is in GS (kernel mode) or in the KernelGSBase MSR
        (user mode, swapped on kernel entry), whichever holds a kernel address.
        """
        with errors.context("resolving current thread"):
            per_cpu = addrspace.VirtualAddress(
                vcpu.other_registers.gs_kernel_base)
            if not per_cpu.is_kernel:
                per_cpu = addrspace.VirtualAddress(
                    vcpu.special_registers.gs.base)

            if not per_cpu.is_kernel:
                raise errors.InvalidArgument(
                    "No kernel per-cpu base in GS or KernelGSBase.")

            current_task = self.profile.get_constant("current_task")
            per_cpu_start = self.profile.get_constant("__per_cpu_start")

            task = self.reader.read_pointer(
                per_cpu + (current_task - per_cpu_start))
            if task.is_null:
                raise errors.CorruptedData("current_task is NULL")

            return self._thread(task)

    def current_process(self, vcpu):
        with errors.context("resolving current process"):
            return self.thread_process(self.current_thread(vcpu))

    def init_process(self):
        return self._process(self.profile.get_constant("init_task"))

    def processes(self):
        """All processes, init_task first, in task list order."""
        with errors.context("walking the process list"):
            init_task = self.profile.get_constant("init_task")
            result = [self._process(init_task)]

            head = self.reader.member(init_task, "task_struct", "tasks")
            for task in self.reader.walk_list(head, "task_struct", "tasks"):
                result.append(self._process(task))

            return result

    def _comm(self, task):
        with errors.context("reading comm of task %s", task.address):
            data = self.reader.read(
                self.reader.member(task.address, "task_struct", "comm"),
                constants.TASK_COMM_LEN)

        return data.split(b"\x00", 1)[0].decode("utf8", "replace")

    def process_id(self, proc):
        with errors.context("reading tgid of task %s", proc.address):
            return self.reader.read_s32(
                self.reader.member(proc.address, "task_struct", "tgid"))

    def process_name(self, proc):
        return self._comm(proc)

    def _mm(self, task):
        return self.reader.m(task.address, "task_struct", "mm")

    def process_is_kernel(self, proc):
        with errors.context("reading mm of task %s", proc.address):
            return self._mm(proc).is_null

    def process_pgd(self, proc):
        """The physical address of the process page tables.

        Kernel threads have no mm and run on whatever mm was active before
        them; failing that they use the kernel page tables.
        """
        with errors.context("reading pgd of task %s", proc.address):
            mm = self._mm(proc)
            if mm.is_null:
                mm = self.reader.m(proc.address, "task_struct", "active_mm")

            if mm.is_null:
                return self.os.kernel_pgd

            pgd = self.reader.m(mm, "mm_struct", "pgd")
            return self.os.virtual_to_physical(self.os.kernel_pgd, pgd)

    def process_path(self, proc):
        with errors.context("reading executable path of task %s",
                            proc.address):
            mm = self._mm(proc)
            if mm.is_null:
                return None

            exe_file = self.reader.m(mm, "mm_struct", "exe_file")
            if exe_file.is_null:
                return None

            return self.reader.file_path(exe_file)

    def process_parent(self, proc):
        with errors.context("reading parent of task %s", proc.address):
            return self._process(
                self.reader.m(proc.address, "task_struct", "real_parent"))

    def process_vmas(self, proc):
        with errors.context("walking the vmas of task %s", proc.address):
            mm = self._mm(proc)
            if mm.is_null:
                return []

            first = self.reader.m(mm, "mm_struct", "mmap")
            return [objects.Vma(self.os, vma) for vma in
                    self.reader.walk_chain(first, "vm_area_struct", "vm_next")]

    def process_threads(self, proc):
        """The group leader, then the rest of the thread group."""
        with errors.context("walking the threads of task %s", proc.address):
            result = [self._thread(proc.address)]
            head = self.reader.member(
                proc.address, "task_struct", "thread_group")
            for task in self.reader.walk_list(
                    head, "task_struct", "thread_group"):
                result.append(self._thread(task))

            return result

    def process_children(self, proc):
        with errors.context("walking the children of task %s", proc.address):
            head = self.reader.member(proc.address, "task_struct", "children")
            return [self._process(task) for task in
                    self.reader.walk_list(head, "task_struct", "sibling")]

    def _vmas_by_path(self, proc):
        """Groups the file backed vmas of proc by path, in mapping order."""
        result = {}
        for vma in self.process_vmas(proc):
            path = self.vma_path(vma)
            if path is not None:
                result.setdefault(path, []).append(vma)

        return result

    def process_modules(self, proc):
        """One module per mapped file, in order of its first mapping."""
        return [objects.Module(self.os, vmas[0].address, proc)
                for vmas in self._vmas_by_path(proc).values()]

    def process_callstack(self, proc):
        return self.thread_callstack(self._thread(proc.address))

    def thread_id(self, thread):
        with errors.context("reading pid of task %s", thread.address):
            return self.reader.read_s32(
                self.reader.member(thread.address, "task_struct", "pid"))

    def thread_name(self, thread):
        return self._comm(thread)

    def thread_process(self, thread):
        with errors.context("reading group leader of task %s",
                            thread.address):
            return self._process(
                self.reader.m(thread.address, "task_struct", "group_leader"))

    def _running_on(self, thread):
        """Returns the vCPU thread is currently running on, or None."""
        for vcpu in self.os.vcpus():
            try:
                if self.current_thread(vcpu) == thread:
                    return vcpu
            except errors.Error as e:
                self.logging.debug("No current thread on vCPU: %s", e)

    def _saved_registers(self, thread):
        """The (rip, rsp, rbp) the thread will resume with."""
        vcpu = self._running_on(thread)
        if vcpu is not None:
            return (vcpu.instruction_pointer, vcpu.stack_pointer,
                    vcpu.frame_pointer)

        # A sleeping task saved its registers in an inactive_task_frame at the
        # top of its kernel stack.
        thread_struct = self.reader.member(
            thread.address, "task_struct", "thread")
        sp = self.reader.m(thread_struct, "thread_struct", "sp")
        bp = self.reader.m(sp, "inactive_task_frame", "bp")
        ret_addr = self.reader.m(sp, "inactive_task_frame", "ret_addr")

        return ret_addr, sp, bp

    def thread_callstack(self, thread):
        """Walks the frame pointer chain of a thread.

        Each frame holds the caller's frame pointer at [rbp] and the return
        address at [rbp + 8]. The walk stops at max_stack_frames, or when the
        frame pointer is NULL, misaligned, unmapped or does not move up the
        stack.
        """
        with errors.context("walking the call stack of task %s",
                            thread.address):
            mmu_addr = self.process_pgd(self.thread_process(thread))
            rip, rsp, rbp = self._saved_registers(thread)

        max_frames = self.session.GetParameter("max_stack_frames")
        frames = [objects.StackFrame(rip, rsp, rbp)]

        while len(frames) < max_frames:
            if rbp.is_null or int(rbp) % 8:
                break

            data = self.os.try_read_virtual_memory(mmu_addr, rbp, 16)
            if len(data) < 16:
                break

            saved_rbp = addrspace.VirtualAddress(
                int.from_bytes(data[:8], "little"))
            ret_addr = addrspace.VirtualAddress(
                int.from_bytes(data[8:], "little"))
            if ret_addr.is_null:
                break

            frames.append(objects.StackFrame(ret_addr, rbp + 16, saved_rbp))
            if saved_rbp <= rbp:
                break

            rbp = saved_rbp

        return frames

    def vma_start(self, vma):
        with errors.context("reading start of vma %s", vma.address):
            return self.reader.m(vma.address, "vm_area_struct", "vm_start")

    def vma_end(self, vma):
        with errors.context("reading end of vma %s", vma.address):
            return self.reader.m(vma.address, "vm_area_struct", "vm_end")

    def vma_path(self, vma):
        with errors.context("reading file of vma %s", vma.address):
            vm_file = self.reader.m(vma.address, "vm_area_struct", "vm_file")
            if vm_file.is_null:
                return None

            return self.reader.file_path(vm_file)

    def vma_flags(self, vma):
        with errors.context("reading flags of vma %s", vma.address):
            flags = self.reader.read_u64(self.reader.member(
                vma.address, "vm_area_struct", "vm_flags"))

        # VM_READ, VM_WRITE and VM_EXEC share their values with VmaFlags.
        return objects.VmaFlags(flags & 0x7)

    def _module_vmas(self, module, proc):
        path = self.vma_path(module)
        if path is None:
            raise errors.InvalidArgument(
                "%s is not a file backed mapping" % module.address)

        vmas = self._vmas_by_path(proc).get(path)
        if not vmas:
            raise errors.InvalidArgument(
                "%s is not mapped by task %s" % (path, proc.address))

        return vmas, path

    def module_start(self, module, proc):
        vmas, _ = self._module_vmas(module, proc)
        return min(self.vma_start(vma) for vma in vmas)

    def module_end(self, module, proc):
        vmas, _ = self._module_vmas(module, proc)
        return max(self.vma_end(vma) for vma in vmas)

    def module_path(self, module, proc):
        return self.vma_path(module)

    def module_name(self, module, proc):
        path = self.module_path(module, proc)
        if path is None:
            return None

        return os_module.path.basename(path)

    def resolve_symbol(self, proc, address):
        """Resolves address to (module name, symbol name, offset).

        Kernel addresses resolve against the kernel symbols. User addresses
        resolve against the symbols of the module mapping them, by offset
        from the start of the module.
        """
        address = addrspace.VirtualAddress(address)
        symbols = self.os.symbols
        if symbols is None:
            raise errors.MissingSymbol(
                self.session.GetParameter("kernel_symbols"))

        if address.is_kernel:
            module_symbols = symbols.require_module(
                self.session.GetParameter("kernel_symbols"))
            symbol, offset = module_symbols.get_symbol_inexact(
                int(address) - self.os.kaslr)
            return module_symbols.name, symbol, offset

        for path, vmas in self._vmas_by_path(proc).items():
            ranges = [(self.vma_start(vma), self.vma_end(vma)) for vma in vmas]
            if not any(start <= address < end for start, end in ranges):
                continue

            name = os_module.path.basename(path)
            start = min(start for start, _ in ranges)
            module_symbols = symbols.require_module(name)
            symbol, offset = module_symbols.get_symbol_inexact(address - start)
            return name, symbol, offset

        raise errors.NoSymbolFound("no module maps %s" % address)
