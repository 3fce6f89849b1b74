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

"""Base classes and fixtures for vminspect unit tests.

The GuestBuilder lays out a small synthetic Linux guest in a bytearray: AMD64
page tables, a direct map of physical memory in the kernel half, task_structs
linked the way the kernel links them, address spaces, vmas, files and saved
stack frames. It also produces the matching kernel symbols profile.
"""
import copy
import json
import struct
import unittest

from vminspect import backend
from vminspect import errors
from vminspect import introspection
from vminspect import session
from vminspect import symbols


# Entry flags: present, writable, user.
PAGE_FLAGS = 0x7

# Present, writable, page size.
LARGE_PAGE_FLAGS = 0x83

VM_READ = 1
VM_WRITE = 2
VM_EXEC = 4


class GuestBuilder(object):
    """Builds guest physical memory holding a Linux kernel."""

    # All of physical memory is mapped here with 2MB pages, as on a real
    # x86_64 kernel.
    PAGE_OFFSET = 0xffff888000000000

    # The per-cpu offset of current_task (__per_cpu_start is 0).
    CURRENT_TASK = 0x100

    STRUCTS = {
        "list_head": [0x10, {"next": [0, ["Pointer"]],
                             "prev": [8, ["Pointer"]]}],
        "task_struct": [0x200, {
            "tasks": [0x10, ["list_head"]],
            "children": [0x20, ["list_head"]],
            "sibling": [0x30, ["list_head"]],
            "thread_group": [0x40, ["list_head"]],
            "pid": [0x50, ["int"]],
            "tgid": [0x54, ["int"]],
            "comm": [0x58, ["String", dict(length=16)]],
            "mm": [0x70, ["Pointer"]],
            "active_mm": [0x78, ["Pointer"]],
            "real_parent": [0x80, ["Pointer"]],
            "group_leader": [0x88, ["Pointer"]],
            "thread": [0x100, ["thread_struct"]]}],
        "thread_struct": [0x40, {"sp": [8, ["unsigned long"]]}],
        "inactive_task_frame": [0x38, {"bp": [0x28, ["unsigned long"]],
                                       "ret_addr": [0x30, ["unsigned long"]]}],
        "mm_struct": [0x40, {"mmap": [0, ["Pointer"]],
                             "pgd": [8, ["Pointer"]],
                             "exe_file": [0x10, ["Pointer"]]}],
        "vm_area_struct": [0x40, {"vm_start": [0, ["unsigned long"]],
                                  "vm_end": [8, ["unsigned long"]],
                                  "vm_next": [0x10, ["Pointer"]],
                                  "vm_file": [0x18, ["Pointer"]],
                                  "vm_flags": [0x20, ["unsigned long"]]}],
        "file": [0x40, {"f_path": [0x10, ["path"]]}],
        "path": [0x10, {"mnt": [0, ["Pointer"]],
                        "dentry": [8, ["Pointer"]]}],
        "dentry": [0x40, {"d_parent": [0x18, ["Pointer"]],
                          "d_name": [0x20, ["qstr"]]}],
        "qstr": [0x10, {"hash_len": [0, ["unsigned long long"]],
                        "name": [8, ["Pointer"]]}],
    }

    def __init__(self, memory_size=0x400000):
        self.memory = bytearray(memory_size)
        self.next_page = 0
        self.heap = self.heap_end = 0
        self.vcpus = []
        self.dentries = {}
        self.vmas = {}
        self.address_spaces = []

        # Page 0 is never used.
        self.alloc_page()

        self.dtb = self.alloc_page()
        pdpt = self.alloc_page()
        pd = self.alloc_page()

        offset = self.PAGE_OFFSET
        self.write_physical_u64(
            self.dtb + ((offset >> 39) & 0x1ff) * 8, pdpt | PAGE_FLAGS)
        self.write_physical_u64(
            pdpt + ((offset >> 30) & 0x1ff) * 8, pd | PAGE_FLAGS)
        for i in range(0, (memory_size + 0x1fffff) // 0x200000):
            self.write_physical_u64(
                pd + i * 8, (i * 0x200000) | LARGE_PAGE_FLAGS)

        self.init_task = self.add_task(0, "swapper/0")

        # Kernel code lives in its own range so return addresses resolve
        # against the kernel symbols.
        self.kernel_text = 0xffffffff81000000

    # Physical memory.
    def alloc_page(self):
        if self.next_page + 0x1000 > len(self.memory):
            raise MemoryError("Guest memory exhausted.")

        result = self.next_page
        self.next_page += 0x1000
        return result

    def write_physical(self, paddr, data):
        self.memory[paddr:paddr + len(data)] = data

    def write_physical_u64(self, paddr, value):
        self.write_physical(paddr, struct.pack("<Q", value))

    def read_physical_u64(self, paddr):
        return struct.unpack("<Q", bytes(self.memory[paddr:paddr + 8]))[0]

    # Kernel memory, through the direct map.
    def kva(self, paddr):
        return self.PAGE_OFFSET + paddr

    def kalloc(self, size, align=16):
        """Allocates zeroed kernel memory."""
        self.heap = (self.heap + align - 1) & ~(align - 1)
        if self.heap + size > self.heap_end:
            pages = (size + 0xfff) // 0x1000
            self.heap = self.alloc_page()
            for _ in range(pages - 1):
                self.alloc_page()

            self.heap_end = self.heap + pages * 0x1000

        result = self.heap
        self.heap += size
        return self.kva(result)

    def kstring(self, text):
        data = text.encode("utf8") + b"\x00"
        result = self.kalloc(len(data))
        self.write(result, data)
        return result

    def _kernel_paddr(self, vaddr):
        paddr = vaddr - self.PAGE_OFFSET
        if not 0 <= paddr < len(self.memory):
            raise ValueError("%#x is not in the direct map" % vaddr)

        return paddr

    def write(self, vaddr, data, dtb=None):
        """Writes to kernel memory, or to user memory of the dtb."""
        if dtb is None:
            self.write_physical(self._kernel_paddr(vaddr), data)
            return

        while data:
            to_write = min(len(data), 0x1000 - (vaddr & 0xfff))
            paddr = self.translate(dtb, vaddr)
            self.write_physical(paddr, data[:to_write])
            data = data[to_write:]
            vaddr += to_write

    def write_u64(self, vaddr, value, dtb=None):
        self.write(vaddr, struct.pack("<Q", value), dtb=dtb)

    def read_u64(self, vaddr):
        return self.read_physical_u64(self._kernel_paddr(vaddr))

    def offset(self, struct_name, field):
        return self.STRUCTS[struct_name][1][field][0]

    def set(self, address, struct_name, field, value, fmt="<Q"):
        self.write(address + self.offset(struct_name, field),
                   struct.pack(fmt, value))

    def get(self, address, struct_name, field):
        return self.read_u64(address + self.offset(struct_name, field))

    # Paging.
    def new_address_space(self):
        """A new page table root sharing the kernel half."""
        dtb = self.alloc_page()
        for i in range(0x100, 0x200):
            self.write_physical_u64(
                dtb + i * 8, self.read_physical_u64(self.dtb + i * 8))

        self.address_spaces.append(dtb)
        return dtb

    def _next_table(self, table, index):
        entry_addr = table + index * 8
        entry = self.read_physical_u64(entry_addr)
        if not entry & 1:
            entry = self.alloc_page() | PAGE_FLAGS
            self.write_physical_u64(entry_addr, entry)

        return entry & 0xffffffffff000

    def map_page(self, dtb, vaddr, paddr=None):
        """Maps the 4kb page at vaddr. Allocates a physical page if needed."""
        if paddr is None:
            paddr = self.alloc_page()

        pdpt = self._next_table(dtb, (vaddr >> 39) & 0x1ff)
        pd = self._next_table(pdpt, (vaddr >> 30) & 0x1ff)
        pt = self._next_table(pd, (vaddr >> 21) & 0x1ff)
        self.write_physical_u64(
            pt + ((vaddr >> 12) & 0x1ff) * 8, paddr | PAGE_FLAGS)

        return paddr

    def unmap_page(self, dtb, vaddr):
        pdpt = self.read_physical_u64(
            dtb + ((vaddr >> 39) & 0x1ff) * 8) & 0xffffffffff000
        pd = self.read_physical_u64(
            pdpt + ((vaddr >> 30) & 0x1ff) * 8) & 0xffffffffff000
        pt = self.read_physical_u64(
            pd + ((vaddr >> 21) & 0x1ff) * 8) & 0xffffffffff000
        self.write_physical_u64(pt + ((vaddr >> 12) & 0x1ff) * 8, 0)

    def translate(self, dtb, vaddr):
        """A straightforward reference page walk (4kb pages only)."""
        table = dtb
        for shift in (39, 30, 21, 12):
            entry = self.read_physical_u64(table + ((vaddr >> shift) & 0x1ff) * 8)
            if not entry & 1:
                raise KeyError("%#x is not mapped" % vaddr)

            if shift == 21 and entry & 0x80:
                return (entry & 0xfffffffe00000) | (vaddr & 0x1fffff)

            table = entry & 0xffffffffff000

        return table | (vaddr & 0xfff)

    # Linux structures.
    def _list_init(self, head):
        self.write_u64(head, head)
        self.write_u64(head + 8, head)

    def _list_add_tail(self, head, node):
        prev = self.read_u64(head + 8)
        self.write_u64(node, head)
        self.write_u64(node + 8, prev)
        self.write_u64(prev, node)
        self.write_u64(head + 8, node)

    def add_file(self, path):
        """Creates a struct file whose dentry chain spells path."""
        dentry = self.dentries.get("/")
        if dentry is None:
            dentry = self._add_dentry("/", None)

        prefix = ""
        for component in path.strip("/").split("/"):
            prefix += "/" + component
            child = self.dentries.get(prefix)
            if child is None:
                child = self._add_dentry(prefix, dentry)

            dentry = child

        result = self.kalloc(self.STRUCTS["file"][0])
        self.write_u64(result + self.offset("file", "f_path") +
                       self.offset("path", "dentry"), dentry)
        return result

    def _add_dentry(self, path, parent):
        dentry = self.kalloc(self.STRUCTS["dentry"][0])
        self.set(dentry, "dentry", "d_parent",
                 dentry if parent is None else parent)
        name = path.rsplit("/", 1)[-1] or "/"
        self.write_u64(dentry + self.offset("dentry", "d_name") +
                       self.offset("qstr", "name"), self.kstring(name))

        self.dentries[path] = dentry
        return dentry

    def add_mm(self, exe=None):
        """Creates an mm_struct with its own address space."""
        mm = self.kalloc(self.STRUCTS["mm_struct"][0])
        dtb = self.new_address_space()
        self.set(mm, "mm_struct", "pgd", self.kva(dtb))
        if exe:
            self.set(mm, "mm_struct", "exe_file", self.add_file(exe))

        self.vmas[mm] = []
        return mm

    def mm_dtb(self, mm):
        return self.get(mm, "mm_struct", "pgd") - self.PAGE_OFFSET

    def add_vma(self, mm, start, end, path=None, flags=VM_READ | VM_EXEC,
                populate=True):
        """Appends a vma to the mm and maps its pages."""
        vma = self.kalloc(self.STRUCTS["vm_area_struct"][0])
        self.set(vma, "vm_area_struct", "vm_start", start)
        self.set(vma, "vm_area_struct", "vm_end", end)
        self.set(vma, "vm_area_struct", "vm_flags", flags)
        if path:
            self.set(vma, "vm_area_struct", "vm_file", self.add_file(path))

        vmas = self.vmas[mm]
        if vmas:
            self.set(vmas[-1], "vm_area_struct", "vm_next", vma)
        else:
            self.set(mm, "mm_struct", "mmap", vma)

        vmas.append(vma)

        if populate:
            dtb = self.mm_dtb(mm)
            for page in range(start, end, 0x1000):
                self.map_page(dtb, page)

        return vma

    def add_task(self, pid, comm, mm=0, parent=None, leader=None):
        """Creates a task_struct.

        Without a leader the task leads its own thread group and joins the
        task list. Otherwise it joins the leader's thread group.
        """
        task = self.kalloc(self.STRUCTS["task_struct"][0])
        for field in ("tasks", "children", "sibling", "thread_group"):
            self._list_init(task + self.offset("task_struct", field))

        self.set(task, "task_struct", "pid", pid, fmt="<i")
        self.write(task + self.offset("task_struct", "comm"),
                   comm.encode("utf8")[:15].ljust(16, b"\x00"))
        self.set(task, "task_struct", "mm", mm)
        self.set(task, "task_struct", "active_mm", mm)

        if leader is None:
            self.set(task, "task_struct", "tgid", pid, fmt="<i")
            self.set(task, "task_struct", "group_leader", task)
            if pid:
                self._list_add_tail(
                    self.init_task + self.offset("task_struct", "tasks"),
                    task + self.offset("task_struct", "tasks"))
        else:
            tgid = self.get(leader, "task_struct", "tgid") & 0xffffffff
            self.set(task, "task_struct", "tgid", tgid, fmt="<i")
            self.set(task, "task_struct", "group_leader", leader)
            self._list_add_tail(
                leader + self.offset("task_struct", "thread_group"),
                task + self.offset("task_struct", "thread_group"))
            parent = self.get(leader, "task_struct", "real_parent")

        if parent is None:
            parent = task if not pid else self.init_task

        self.set(task, "task_struct", "real_parent", parent)
        if parent != task and leader is None:
            self._list_add_tail(
                parent + self.offset("task_struct", "children"),
                task + self.offset("task_struct", "sibling"))

        return task

    def set_saved_frame(self, task, ret_addr, bp):
        """Saves an inactive_task_frame on a fresh kernel stack.

        Returns:
          The saved stack pointer.
        """
        stack = self.kalloc(0x1000, align=0x1000)
        sp = stack + 0x800
        self.set(sp, "inactive_task_frame", "bp", bp)
        self.set(sp, "inactive_task_frame", "ret_addr", ret_addr)
        self.write_u64(task + self.offset("task_struct", "thread") +
                       self.offset("thread_struct", "sp"), sp)

        return sp

    def add_stack_frames(self, return_addresses):
        """Lays out a frame pointer chain on a fresh kernel stack.

        Returns:
          The frame pointer of the innermost frame.
        """
        stack = self.kalloc(0x1000, align=0x1000)
        frames = [stack + 0x100 + i * 0x100
                  for i in range(len(return_addresses))]
        for i, (frame, ret_addr) in enumerate(zip(frames, return_addresses)):
            saved_rbp = frames[i + 1] if i + 1 < len(frames) else 0
            self.write_u64(frame, saved_rbp)
            self.write_u64(frame + 8, ret_addr)

        return frames[0]

    def add_vcpu(self, current=None, rip=0, rsp=0, rbp=0, user_mode=False,
                 cr3=None):
        """Adds a vCPU running current.

        In user mode the per-cpu base is in KernelGSBase and GS holds a user
        value.
        """
        per_cpu = self.kalloc(0x1000, align=0x1000)
        if current is not None:
            self.write_u64(per_cpu + self.CURRENT_TASK, current)

        if user_mode:
            gs = backend.Segment(base=0x7f0000001000)
            gs_kernel_base = per_cpu
        else:
            gs = backend.Segment(base=per_cpu)
            gs_kernel_base = 0

        vcpu = backend.Vcpu(
            registers=backend.Registers(rip=rip, rsp=rsp, rbp=rbp),
            special_registers=backend.SpecialRegisters(
                gs=gs, cr3=self.dtb if cr3 is None else cr3),
            other_registers=backend.OtherRegisters(
                gs_kernel_base=gs_kernel_base))

        self.vcpus.append(vcpu)
        return vcpu

    # Outputs.
    def profile(self):
        return {
            "$METADATA": {"Name": "kernel", "ProfileClass": "Linux"},
            "$CONSTANTS": {
                "init_task": self.init_task,
                "current_task": self.CURRENT_TASK,
                "__per_cpu_start": 0,
            },
            "$FUNCTIONS": {
                "do_syscall_64": self.kernel_text + 0x100,
                "schedule": self.kernel_text + 0x200,
                "__schedule": self.kernel_text + 0x300,
            },
            "$SIZES": {
                "do_syscall_64": 0x100,
            },
            "$STRUCTS": copy.deepcopy(self.STRUCTS),
        }

    def profile_json(self):
        return json.dumps(self.profile()).encode("utf8")

    def symbols(self, session_obj=None):
        result = symbols.Symbols(session=session_obj)
        result.load_from_bytes(self.profile_json())
        return result

    def backend(self, **kwargs):
        return backend.BufferBackend(
            data=bytes(self.memory), vcpus=self.vcpus, **kwargs)

    def os(self, session_obj=None, with_symbols=True, **kwargs):
        if session_obj is None:
            session_obj = session.Session()

        table = self.symbols(session_obj) if with_symbols else None
        return introspection.Os(self.backend(), symbols=table,
                                session=session_obj, **kwargs)


class StandardGuest(object):
    """A small guest used by most tests.

    init_task (0, swapper/0)
      systemd (1)  /usr/lib/systemd/systemd, 2 vmas
        bash (100)  /usr/bin/bash, 4 vmas mapping 2 files, 3 threads
      kthreadd (2)  kernel thread, sleeping with a frame chain
    """

    BASH_TEXT = 0x400000
    LIBC_TEXT = 0x7f0000000000

    def __init__(self):
        self.builder = builder = GuestBuilder()

        self.systemd_mm = builder.add_mm(exe="/usr/lib/systemd/systemd")
        builder.add_vma(self.systemd_mm, 0x400000, 0x402000,
                        path="/usr/lib/systemd/systemd")
        builder.add_vma(self.systemd_mm, 0x7ffd00000000, 0x7ffd00002000,
                        flags=VM_READ | VM_WRITE)
        self.systemd = builder.add_task(1, "systemd", mm=self.systemd_mm)

        self.bash_mm = builder.add_mm(exe="/usr/bin/bash")
        self.bash_vmas = [
            builder.add_vma(self.bash_mm, self.BASH_TEXT,
                            self.BASH_TEXT + 0x2000, path="/usr/bin/bash"),
            builder.add_vma(self.bash_mm, self.BASH_TEXT + 0x2000,
                            self.BASH_TEXT + 0x3000, path="/usr/bin/bash",
                            flags=VM_READ | VM_WRITE),
            builder.add_vma(self.bash_mm, self.LIBC_TEXT,
                            self.LIBC_TEXT + 0x2000,
                            path="/usr/lib/libc.so.6"),
            builder.add_vma(self.bash_mm, 0x7ffe00000000, 0x7ffe00001000,
                            flags=VM_READ | VM_WRITE),
        ]
        self.bash = builder.add_task(
            100, "bash", mm=self.bash_mm, parent=self.systemd)
        self.bash_threads = [
            builder.add_task(101, "bash-worker", mm=self.bash_mm,
                             leader=self.bash),
            builder.add_task(102, "bash-io", mm=self.bash_mm,
                             leader=self.bash),
        ]

        self.kthreadd = builder.add_task(2, "kthreadd")
        self.kthreadd_rbp = builder.add_stack_frames(
            [builder.kernel_text + 0x210, builder.kernel_text + 0x120])
        self.kthreadd_sp = builder.set_saved_frame(
            self.kthreadd, builder.kernel_text + 0x308, self.kthreadd_rbp)

        # vCPU 0 runs bash in user mode, vCPU 1 runs systemd in the kernel.
        builder.add_vcpu(current=self.bash, rip=self.BASH_TEXT + 0x10,
                         user_mode=True, cr3=builder.mm_dtb(self.bash_mm))
        builder.add_vcpu(current=self.systemd,
                         rip=builder.kernel_text + 0x180)

        # Recognizable contents.
        dtb = builder.mm_dtb(self.bash_mm)
        builder.write(self.BASH_TEXT, b"\x7fELF" + b"A" * 0x1ffc, dtb=dtb)
        builder.write(self.LIBC_TEXT, b"LIBC" * 0x800, dtb=dtb)


class VmiBaseUnitTestCase(unittest.TestCase):
    """Base class for all vminspect unit tests."""

    def setUp(self):
        super(VmiBaseUnitTestCase, self).setUp()
        self.session = session.Session()

    def assertErrorKind(self, kind, func, *args, **kwargs):
        """Asserts func raises a vminspect error of the given kind.

        Returns:
          The error raised.
        """
        with self.assertRaises(errors.Error) as context:
            func(*args, **kwargs)

        self.assertEqual(context.exception.kind, kind)
        return context.exception
