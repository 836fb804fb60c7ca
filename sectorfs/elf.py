"""ELF64 executable validation, loading into a paged address space and
construction of the initial user stack."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Tuple, Union

ELF_MAGIC = 0x464C457F
ELF_CLASS_64 = 2
ELF_DATA_2LSB = 1
ELF_VERSION_CURRENT = 1
ELF_OSABI_SYSV = 0

ET_EXEC = 2
ET_DYN = 3

EM_X86_64 = 62

PT_NULL = 0
PT_LOAD = 1
PT_DYNAMIC = 2
PT_INTERP = 3
PT_NOTE = 4

PF_X = 1
PF_W = 2
PF_R = 4

PAGE_SIZE = 4096
DYN_LOAD_BASE = 0x400000
USER_STACK_BASE = 0x7FFFFFFFE000
ARG_AREA_SIZE = 1024

_PAGE_MASK = ~(PAGE_SIZE - 1)
_EHDR = struct.Struct("<16sHHIQQQIHHHHHH")
_PHDR = struct.Struct("<IIQQQQQQ")
_U64 = struct.Struct("<Q")


class ElfError(Exception):
    """Raised when an image is invalid or cannot be loaded."""


@dataclass(frozen=True)
class ElfHeader:
    """The ELF64 file header."""

    ident: bytes
    type: int
    machine: int
    version: int
    entry: int
    phoff: int
    shoff: int
    flags: int
    ehsize: int
    phentsize: int
    phnum: int
    shentsize: int
    shnum: int
    shstrndx: int


@dataclass(frozen=True)
class ProgramHeader:
    """One ELF64 program header (segment descriptor)."""

    type: int
    flags: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int


@dataclass
class _Page:
    data: bytearray
    writable: bool


class AddressSpace:
    """A user address space made of 4 KiB pages."""

    def __init__(self):
        self._pages: Dict[int, _Page] = {}

    def map_page(self, vaddr: int, writable: bool = False) -> None:
        """Map a fresh zeroed page at the page containing *vaddr*."""
        if vaddr < 0:
            raise ElfError(f"negative address {vaddr:#x}")
        self._pages[vaddr & _PAGE_MASK] = _Page(bytearray(PAGE_SIZE), writable)

    def is_mapped(self, vaddr: int) -> bool:
        """Return True if the page containing *vaddr* is mapped."""
        return (vaddr & _PAGE_MASK) in self._pages

    def is_writable(self, vaddr: int) -> bool:
        """Return True if *vaddr* lies in a mapped, user-writable page."""
        page = self._pages.get(vaddr & _PAGE_MASK)
        return page is not None and page.writable

    def _spans(self, vaddr: int, size: int) -> Iterator[Tuple[_Page, int, int]]:
        end = vaddr + size
        while vaddr < end:
            base = vaddr & _PAGE_MASK
            page = self._pages.get(base)
            if page is None:
                raise ElfError(f"address {vaddr:#x} is not mapped")
            offset = vaddr - base
            length = min(PAGE_SIZE - offset, end - vaddr)
            yield page, offset, length
            vaddr += length

    def read(self, vaddr: int, size: int) -> bytes:
        """Read *size* bytes starting at *vaddr*."""
        return b"".join(
            bytes(page.data[offset : offset + length])
            for page, offset, length in self._spans(vaddr, size)
        )

    def write(self, vaddr: int, data: bytes) -> None:
        """Store *data* at *vaddr*, ignoring page protection."""
        view = memoryview(bytes(data))
        done = 0
        for page, offset, length in self._spans(vaddr, len(view)):
            page.data[offset : offset + length] = view[done : done + length]
            done += length


def validate(data: bytes) -> bool:
    """Return True if *data* starts with a loadable x86-64 ELF64 header."""
    if not data or len(data) < _EHDR.size:
        return False
    ident = data[:16]
    if int.from_bytes(ident[:4], "little") != ELF_MAGIC:
        return False
    if ident[4] != ELF_CLASS_64 or ident[5] != ELF_DATA_2LSB:
        return False
    if ident[6] != ELF_VERSION_CURRENT:
        return False
    header = _EHDR.unpack_from(data)
    e_type, e_machine = header[1], header[2]
    if e_machine != EM_X86_64:
        return False
    return e_type in (ET_EXEC, ET_DYN)


def parse_header(data: bytes) -> ElfHeader:
    """Decode the file header, raising ElfError if it is not loadable."""
    if not validate(data):
        raise ElfError("invalid ELF header")
    return ElfHeader(*_EHDR.unpack_from(data))


def parse_program_headers(data: bytes, header: ElfHeader) -> List[ProgramHeader]:
    """Decode the program header table described by *header*."""
    end = header.phoff + header.phnum * _PHDR.size
    if end > len(data):
        raise ElfError("program header table extends beyond file")
    return [
        ProgramHeader(*_PHDR.unpack_from(data, header.phoff + i * _PHDR.size))
        for i in range(header.phnum)
    ]


def load(space: AddressSpace, data: bytes) -> int:
    """Map and fill every PT_LOAD segment; return the entry point.

    Position-independent images are placed at a fixed base address.
    """
    header = parse_header(data)
    bias = DYN_LOAD_BASE if header.type == ET_DYN else 0

    for ph in parse_program_headers(data, header):
        if ph.type != PT_LOAD:
            continue
        vaddr = ph.vaddr + bias
        pages = -(-ph.memsz // PAGE_SIZE)
        writable = bool(ph.flags & PF_W)
        for j in range(pages):
            space.map_page(vaddr + j * PAGE_SIZE, writable)

        if ph.filesz:
            if ph.offset + ph.filesz > len(data):
                raise ElfError("segment extends beyond file")
            space.write(vaddr, data[ph.offset : ph.offset + ph.filesz])

        if ph.memsz > ph.filesz:
            space.write(vaddr + ph.filesz, bytes(ph.memsz - ph.filesz))

    return header.entry + bias


def build_user_stack(
    argv: Iterable[Union[str, bytes]] = (),
    stack_base: int = USER_STACK_BASE,
) -> Tuple[bytes, int]:
    """Lay out the initial stack page; return its contents and the user rsp.

    Argument strings fill the top 1 KiB of the page; below them sit the
    null-terminated argv pointer array, then a pointer to that array and argc.
    """
    args = [a.encode() if isinstance(a, str) else bytes(a) for a in argv]
    if any(b"\0" in a for a in args):
        raise ValueError("arguments may not contain NUL bytes")

    page = bytearray(PAGE_SIZE)
    sp = PAGE_SIZE

    if args:
        strings_at = PAGE_SIZE - ARG_AREA_SIZE
        blob = b"".join(a + b"\0" for a in args)
        if len(blob) > ARG_AREA_SIZE:
            raise ElfError("arguments do not fit on the initial stack")
        page[strings_at : strings_at + len(blob)] = blob

        array_at = strings_at - (len(args) + 1) * _U64.size
        if array_at < 2 * _U64.size:
            raise ElfError("too many arguments for the initial stack")

        pointers = []
        cursor = strings_at
        for arg in args:
            pointers.append(stack_base + cursor)
            cursor += len(arg) + 1
        pointers.append(0)
        struct.pack_into(f"<{len(pointers)}Q", page, array_at, *pointers)

        sp = array_at - _U64.size
        _U64.pack_into(page, sp, stack_base + array_at)
        sp -= _U64.size
        _U64.pack_into(page, sp, len(args))
    else:
        sp -= 2 * _U64.size

    sp &= ~0xF
    return bytes(page), stack_base + sp