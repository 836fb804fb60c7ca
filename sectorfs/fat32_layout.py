"""On-disk structures of the FAT32 format: boot parameter block, directory
entries, 8.3 short names and attribute-to-mode mapping."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntFlag
from typing import Union

from .modes import (
    S_IFDIR,
    S_IFREG,
    S_IRGRP,
    S_IROTH,
    S_IRUSR,
    S_IWGRP,
    S_IWOTH,
    S_IWUSR,
    S_IXGRP,
    S_IXOTH,
    S_IXUSR,
)

SECTOR_SIZE = 512
MAX_FILENAME = 255
EOC = 0x0FFFFFF8
BAD_CLUSTER = 0x0FFFFFF7
FREE_CLUSTER = 0x00000000
CLUSTER_MASK = 0x0FFFFFFF

BOOT_SIGNATURE = 0x29
DELETED_MARKER = 0xE5
SHORT_NAME_LEN = 11
_BASE_LEN = 8

_BPB = struct.Struct("<3s8sHBHBHHBHHHII" "IHHIHH12sBBBI11s8s")
_DIR_ENTRY = struct.Struct("<11sBBBHHHHHHHI")

BPB_SIZE = _BPB.size
DIR_ENTRY_SIZE = _DIR_ENTRY.size


class Attr(IntFlag):
    """Directory entry attribute bits."""

    READ_ONLY = 0x01
    HIDDEN = 0x02
    SYSTEM = 0x04
    VOLUME_ID = 0x08
    DIRECTORY = 0x10
    ARCHIVE = 0x20
    LFN = 0x0F


@dataclass
class BootParameterBlock:
    """The FAT32 BIOS parameter block at the start of the volume."""

    jmp: bytes = b"\0\0\0"
    oem: bytes = b"\0" * 8
    bytes_per_sector: int = SECTOR_SIZE
    sectors_per_cluster: int = 0
    reserved_sectors: int = 0
    number_of_fats: int = 0
    root_dir_entries: int = 0
    total_sectors_16: int = 0
    media_type: int = 0
    fat_size_16: int = 0
    sectors_per_track: int = 0
    number_of_heads: int = 0
    hidden_sectors: int = 0
    total_sectors_32: int = 0
    fat_size_32: int = 0
    ext_flags: int = 0
    fs_version: int = 0
    root_cluster: int = 0
    fs_info: int = 0
    backup_boot_sector: int = 0
    reserved: bytes = b"\0" * 12
    drive_number: int = 0
    reserved1: int = 0
    boot_signature: int = 0
    volume_id: int = 0
    volume_label: bytes = b"\0" * 11
    fs_type: bytes = b"\0" * 8

    @classmethod
    def from_bytes(cls, data: bytes) -> "BootParameterBlock":
        """Decode the block from the start of a boot sector."""
        if len(data) < BPB_SIZE:
            raise ValueError(
                f"boot parameter block needs {BPB_SIZE} bytes, got {len(data)}"
            )
        return cls(*_BPB.unpack_from(data))

    def to_bytes(self) -> bytes:
        """Encode the block in its on-disk form."""
        try:
            return _BPB.pack(
                self.jmp,
                self.oem,
                self.bytes_per_sector,
                self.sectors_per_cluster,
                self.reserved_sectors,
                self.number_of_fats,
                self.root_dir_entries,
                self.total_sectors_16,
                self.media_type,
                self.fat_size_16,
                self.sectors_per_track,
                self.number_of_heads,
                self.hidden_sectors,
                self.total_sectors_32,
                self.fat_size_32,
                self.ext_flags,
                self.fs_version,
                self.root_cluster,
                self.fs_info,
                self.backup_boot_sector,
                self.reserved,
                self.drive_number,
                self.reserved1,
                self.boot_signature,
                self.volume_id,
                self.volume_label,
                self.fs_type,
            )
        except struct.error as exc:
            raise ValueError(f"boot parameter block field out of range: {exc}") from exc

    @property
    def total_sectors(self) -> int:
        """The 32-bit sector count, or the 16-bit one when that is zero."""
        return self.total_sectors_32 or self.total_sectors_16

    @property
    def is_valid(self) -> bool:
        """True if the extended boot signature is present."""
        return self.boot_signature == BOOT_SIGNATURE


@dataclass
class DirEntry:
    """A 32-byte short-name directory entry."""

    name: bytes = b" " * SHORT_NAME_LEN
    attr: int = 0
    ntres: int = 0
    crttime_tenth: int = 0
    crttime: int = 0
    crtdate: int = 0
    lstaccdate: int = 0
    first_cluster_hi: int = 0
    wrttime: int = 0
    wrtdate: int = 0
    first_cluster_lo: int = 0
    size: int = 0

    def __post_init__(self) -> None:
        self.name = bytes(self.name)
        if len(self.name) != SHORT_NAME_LEN:
            raise ValueError(
                f"short name must be {SHORT_NAME_LEN} bytes, got {len(self.name)}"
            )

    @classmethod
    def from_bytes(cls, data: bytes) -> "DirEntry":
        """Decode an entry from the first 32 bytes of *data*."""
        if len(data) < DIR_ENTRY_SIZE:
            raise ValueError(
                f"directory entry needs {DIR_ENTRY_SIZE} bytes, got {len(data)}"
            )
        return cls(*_DIR_ENTRY.unpack_from(data))

    def to_bytes(self) -> bytes:
        """Encode the entry in its on-disk form."""
        try:
            return _DIR_ENTRY.pack(
                self.name,
                self.attr,
                self.ntres,
                self.crttime_tenth,
                self.crttime,
                self.crtdate,
                self.lstaccdate,
                self.first_cluster_hi,
                self.wrttime,
                self.wrtdate,
                self.first_cluster_lo,
                self.size,
            )
        except struct.error as exc:
            raise ValueError(f"directory entry field out of range: {exc}") from exc

    def first_cluster(self) -> int:
        """The starting cluster joined from its high and low halves."""
        return (self.first_cluster_hi << 16) | self.first_cluster_lo

    @property
    def is_end(self) -> bool:
        """True for the entry that terminates a directory listing."""
        return self.name[0] == 0x00

    @property
    def is_deleted(self) -> bool:
        """True if the slot has been freed."""
        return self.name[0] == DELETED_MARKER

    @property
    def is_long_name(self) -> bool:
        """True if any long-file-name attribute bit is set."""
        return bool(self.attr & Attr.LFN)

    @property
    def is_volume_label(self) -> bool:
        """True if the volume-id bit is set."""
        return bool(self.attr & Attr.VOLUME_ID)

    @property
    def is_directory(self) -> bool:
        """True if the entry describes a directory."""
        return bool(self.attr & Attr.DIRECTORY)

    @property
    def is_read_only(self) -> bool:
        """True if the read-only bit is set."""
        return bool(self.attr & Attr.READ_ONLY)

    @property
    def is_dot_entry(self) -> bool:
        """True for the "." and ".." entries of a subdirectory."""
        return self.name[:2] == b". " or self.name[:3] == b".. "

    @property
    def display_name(self) -> str:
        """The lower-case "name.ext" form of the short name."""
        return parse_short_name(self.name)


def _ascii_lower(raw: bytes) -> bytes:
    return bytes(b + 32 if 0x41 <= b <= 0x5A else b for b in raw)


def parse_short_name(raw: bytes) -> str:
    """Turn an 11-byte 8.3 name into lower-case "name.ext" form."""
    raw = bytes(raw).ljust(SHORT_NAME_LEN, b" ")
    base = raw[:_BASE_LEN]
    space = base.find(b" ")
    if space >= 0:
        base = base[:space]
    out = base
    if raw[_BASE_LEN] != 0x20:
        ext = raw[_BASE_LEN:SHORT_NAME_LEN]
        space = ext.find(b" ")
        if space >= 0:
            ext = ext[:space]
        out += b"." + ext
    nul = out.find(b"\0")
    if nul >= 0:
        out = out[:nul]
    return _ascii_lower(out).decode("latin-1")


def make_short_name(name: Union[str, bytes]) -> bytes:
    """Build the space-padded, upper-case 11-byte 8.3 name for *name*.

    Spaces are dropped. The extension is kept only if the dot is reached
    within the first eight name characters.
    """
    source = name.encode("utf-8") if isinstance(name, str) else bytes(name)
    short = bytearray(b" " * SHORT_NAME_LEN)

    j = 0
    i = 0
    has_ext = False
    while i < len(source) and source[i] != 0 and j < _BASE_LEN:
        ch = source[i]
        if ch == 0x2E:
            has_ext = True
            break
        if ch != 0x20:
            short[j] = ch - 32 if 0x61 <= ch <= 0x7A else ch
            j += 1
        i += 1

    if has_ext:
        i += 1
        j = _BASE_LEN
        while i < len(source) and source[i] != 0 and j < SHORT_NAME_LEN:
            ch = source[i]
            if ch != 0x20:
                short[j] = ch - 32 if 0x61 <= ch <= 0x7A else ch
                j += 1
            i += 1

    return bytes(short)


def mode_from_attr(attr: int, is_dir: bool) -> int:
    """Derive POSIX permission and type bits from FAT attributes."""
    if is_dir:
        mode = (
            S_IFDIR
            | S_IRUSR
            | S_IWUSR
            | S_IXUSR
            | S_IRGRP
            | S_IXGRP
            | S_IROTH
            | S_IXOTH
        )
    else:
        mode = S_IFREG | S_IRUSR | S_IWUSR | S_IRGRP | S_IROTH

    if attr & Attr.READ_ONLY:
        mode &= ~(S_IWUSR | S_IWGRP | S_IWOTH)
    elif not is_dir:
        mode |= S_IWGRP | S_IWOTH
    return mode