"""FAT32 volumes held in memory, loaded from an image or backed by a block device."""

from __future__ import annotations

import dataclasses
import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, List, Optional, Tuple

from .block import BlockDevice, BlockError, BlockRegistry
from .fat32_layout import (
    BPB_SIZE,
    CLUSTER_MASK,
    DELETED_MARKER,
    DIR_ENTRY_SIZE,
    EOC,
    FREE_CLUSTER,
    SECTOR_SIZE,
    SHORT_NAME_LEN,
    Attr,
    BootParameterBlock,
    DirEntry,
    make_short_name,
    mode_from_attr,
)
from .modes import S_IWGRP, S_IWOTH, S_IWUSR

log = logging.getLogger(__name__)

RAM_SECTORS_PER_CLUSTER = 8
RAM_TOTAL_CLUSTERS = 1024
ROOT_NAME = "/"

_WRITE_BITS = S_IWUSR | S_IWGRP | S_IWOTH
_FAT_MEDIA = 0x0FFFFFF8
_FAT_RESERVED = 0x0FFFFFFF
_FAT_KEEP_BITS = 0xF0000000
_U32 = struct.Struct("<I")


class Fat32Error(Exception):
    """Raised when a FAT32 volume or operation fails."""


class NodeType(IntEnum):
    FILE = 1
    DIRECTORY = 2


def _named_entry(label: bytes, attr: int, cluster: int) -> DirEntry:
    return DirEntry(
        name=label.ljust(SHORT_NAME_LEN, b" "),
        attr=int(attr),
        first_cluster_hi=(cluster >> 16) & 0xFFFF,
        first_cluster_lo=cluster & 0xFFFF,
    )


def _entries(buf: bytes) -> Iterator[Tuple[int, DirEntry]]:
    starts = range(0, len(buf) - DIR_ENTRY_SIZE + 1, DIR_ENTRY_SIZE)
    for index, start in enumerate(starts):
        yield index, DirEntry.from_bytes(buf[start : start + DIR_ENTRY_SIZE])


def _put_entry(buf: bytearray, index: int, entry: DirEntry) -> None:
    start = index * DIR_ENTRY_SIZE
    buf[start : start + DIR_ENTRY_SIZE] = entry.to_bytes()


@dataclass(eq=False)
class Fat32Node:
    """A file or directory of a mounted volume."""

    fs: "Fat32FileSystem"
    name: str
    type: NodeType
    size: int = 0
    writable: bool = True
    mode: int = 0
    uid: int = 0
    gid: int = 0
    inode: int = 0
    first_cluster: int = 0
    current_cluster: int = 0
    parent_cluster: int = 0
    dir_entry_index: int = 0
    dir_entry: DirEntry = field(default_factory=DirEntry)
    modified: bool = False
    open_flags: int = 0

    @property
    def is_directory(self) -> bool:
        return self.type is NodeType.DIRECTORY

    def _require_directory(self) -> None:
        if not self.is_directory:
            raise Fat32Error(f"{self.name}: not a directory")

    def read(self, offset: int, size: int) -> bytes:
        """Read up to *size* bytes starting at *offset*."""
        if offset < 0 or size < 0:
            raise Fat32Error("offset and size must not be negative")
        if offset >= self.size:
            return b""
        size = min(size, self.size - offset)
        fs = self.fs
        skip, byte_offset = divmod(offset, fs.bytes_per_cluster)

        cluster = self.first_cluster
        for _ in range(skip):
            if cluster >= EOC:
                break
            cluster = fs._get_fat_entry(cluster)

        chunks: List[bytes] = []
        remaining = size
        while remaining > 0 and cluster < EOC:
            try:
                buf = fs._read_cluster(cluster)
            except Fat32Error:
                break
            piece = buf[byte_offset : byte_offset + remaining]
            chunks.append(piece)
            remaining -= len(piece)
            byte_offset = 0
            cluster = fs._get_fat_entry(cluster)
        return b"".join(chunks)

    def write(self, offset: int, data: bytes) -> int:
        """Write *data* at *offset*, growing the cluster chain; return bytes written."""
        if offset < 0:
            raise Fat32Error("offset must not be negative")
        data = bytes(data)
        fs = self.fs
        bpc = fs.bytes_per_cluster
        skip, byte_offset = divmod(offset, bpc)
        written = 0

        cluster = self.first_cluster
        if cluster == 0:
            cluster = fs._find_free_cluster()
            if cluster == 0:
                return 0
            self.first_cluster = cluster
            self.current_cluster = cluster
            fs._set_fat_entry(cluster, EOC)

        for _ in range(skip):
            if cluster >= EOC:
                break
            nxt = fs._get_fat_entry(cluster)
            if nxt >= EOC:
                nxt = fs._find_free_cluster()
                if nxt == 0:
                    return written
                fs._set_fat_entry(cluster, nxt)
                fs._set_fat_entry(nxt, EOC)
            cluster = nxt

        previous: Optional[int] = None
        remaining = len(data)
        while remaining > 0:
            if cluster >= EOC:
                fresh = fs._find_free_cluster()
                if fresh == 0:
                    break
                if previous is not None:
                    fs._set_fat_entry(previous, fresh)
                fs._set_fat_entry(fresh, EOC)
                cluster = fresh

            to_write = min(bpc - byte_offset, remaining)
            if byte_offset != 0 or to_write != bpc:
                try:
                    buf = bytearray(fs._read_cluster(cluster))
                except Fat32Error:
                    buf = bytearray(bpc)
            else:
                buf = bytearray(bpc)
            buf[byte_offset : byte_offset + to_write] = data[written : written + to_write]
            fs._write_cluster(cluster, bytes(buf))

            written += to_write
            remaining -= to_write
            byte_offset = 0
            if remaining > 0:
                previous = cluster
                cluster = fs._get_fat_entry(cluster)

        if offset + written > self.size:
            self.size = offset + written
            self.dir_entry.size = self.size
            self.modified = True
        return written

    def open(self, flags: int = 0) -> None:
        """Record the flags the node was opened with."""
        self.open_flags = flags

    def close(self) -> None:
        """Write a changed size and start cluster back to the parent directory."""
        if not self.modified or self.parent_cluster == 0:
            return
        fs = self.fs
        try:
            buf = bytearray(fs._read_cluster(self.parent_cluster))
        except Fat32Error:
            return
        start = self.dir_entry_index * DIR_ENTRY_SIZE
        entry = DirEntry.from_bytes(buf[start : start + DIR_ENTRY_SIZE])
        entry.size = self.dir_entry.size
        entry.first_cluster_hi = (self.first_cluster >> 16) & 0xFFFF
        entry.first_cluster_lo = self.first_cluster & 0xFFFF
        _put_entry(buf, self.dir_entry_index, entry)
        fs._write_cluster(self.parent_cluster, bytes(buf))
        self.modified = False

    def readdir(self, index: int) -> Optional["Fat32Node"]:
        """Return the *index*-th visible entry of this directory, or None."""
        if not self.is_directory:
            return None
        current = 0
        try:
            for _cluster, buf in self.fs._directory_clusters(self.first_cluster):
                for _slot, entry in _entries(buf):
                    if entry.is_end:
                        return None
                    if (
                        entry.is_deleted
                        or entry.is_long_name
                        or entry.is_volume_label
                        or entry.is_dot_entry
                    ):
                        continue
                    if current == index:
                        return self.fs._make_node(entry)
                    current += 1
        except Fat32Error:
            return None
        return None

    def finddir(self, name: str) -> Optional["Fat32Node"]:
        """Look up *name* in this directory, or return None."""
        if not self.is_directory:
            return None
        try:
            for cluster, buf in self.fs._directory_clusters(self.first_cluster):
                for slot, entry in _entries(buf):
                    if entry.is_end:
                        return None
                    if entry.is_deleted or entry.is_long_name or entry.is_volume_label:
                        continue
                    if entry.display_name == name:
                        return self.fs._make_node(entry, name, cluster, slot)
        except Fat32Error:
            return None
        return None

    def create(self, name: str, type: NodeType = NodeType.FILE, mode: int = 0o644) -> None:
        """Add a file or directory entry named *name*."""
        self._require_directory()
        if not name:
            raise Fat32Error("a name is required")
        fs = self.fs
        read_only = not (mode & _WRITE_BITS)

        new_cluster = fs._find_free_cluster()
        if new_cluster == 0:
            raise Fat32Error("no free clusters")
        fs._set_fat_entry(new_cluster, EOC)

        is_dir = type == NodeType.DIRECTORY
        attr = Attr.DIRECTORY if is_dir else Attr.ARCHIVE
        if read_only:
            attr |= Attr.READ_ONLY
        entry = _named_entry(b"", attr, new_cluster)
        entry.name = make_short_name(name)

        cluster = self.first_cluster
        while cluster < EOC:
            buf = bytearray(fs._read_cluster(cluster))
            for slot, existing in _entries(buf):
                if existing.is_end or existing.is_deleted:
                    _put_entry(buf, slot, entry)
                    fs._write_cluster(cluster, bytes(buf))
                    if is_dir:
                        fs._init_directory(new_cluster, self.first_cluster)
                    return
            nxt = fs._get_fat_entry(cluster)
            if nxt >= EOC:
                extra = fs._find_free_cluster()
                if extra == 0:
                    raise Fat32Error("no free clusters to extend directory")
                fs._set_fat_entry(cluster, extra)
                fs._set_fat_entry(extra, EOC)
                fs._write_cluster(extra, bytes(fs.bytes_per_cluster))
                cluster = extra
            else:
                cluster = nxt
        raise Fat32Error(f"{self.name}: no room for {name!r}")

    def unlink(self, name: str) -> None:
        """Remove the entry *name* and free its clusters."""
        self._require_directory()
        fs = self.fs
        cluster = self.first_cluster
        while cluster < EOC:
            buf = bytearray(fs._read_cluster(cluster))
            for slot, entry in _entries(buf):
                if entry.is_end:
                    raise Fat32Error(f"{name!r} not found")
                if entry.is_deleted:
                    continue
                if entry.display_name == name:
                    fs._free_chain(entry.first_cluster())
                    buf[slot * DIR_ENTRY_SIZE] = DELETED_MARKER
                    fs._write_cluster(cluster, bytes(buf))
                    return
            cluster = fs._get_fat_entry(cluster)
        raise Fat32Error(f"{name!r} not found")


class Fat32FileSystem:
    """A mounted FAT32 volume: an in-memory FAT plus RAM or block storage."""

    def __init__(
        self,
        *,
        bpb: BootParameterBlock,
        sectors_per_cluster: int,
        bytes_per_cluster: int,
        total_clusters: int,
        fat: List[int],
        fat_count: int,
        fat_sectors: int,
        root_cluster: int,
        fat_start_lba: int = 0,
        data_start_lba: int = 0,
        partition_lba: int = 0,
        data_region: Optional[bytearray] = None,
        registry: Optional[BlockRegistry] = None,
        device: Optional[BlockDevice] = None,
    ):
        if sectors_per_cluster <= 0 or bytes_per_cluster <= 0:
            raise Fat32Error("cluster size must be positive")
        if total_clusters <= 2:
            raise Fat32Error("volume has no data clusters")
        self.bpb = bpb
        self.sectors_per_cluster = sectors_per_cluster
        self.bytes_per_cluster = bytes_per_cluster
        self.total_clusters = total_clusters
        self.fat = fat
        self.fat_count = fat_count
        self.fat_sectors = fat_sectors
        self.fat_start_lba = fat_start_lba
        self.data_start_lba = data_start_lba
        self.partition_lba = partition_lba
        self.data_region = data_region
        self.registry = registry
        self.device = device
        root_entry = _named_entry(ROOT_NAME.encode(), Attr.DIRECTORY, root_cluster)
        self._root = self._make_node(root_entry, ROOT_NAME)

    @staticmethod
    def _cluster_count(bpb: BootParameterBlock) -> int:
        if bpb.sectors_per_cluster == 0:
            raise Fat32Error("sectors per cluster is zero")
        fat_sectors = bpb.fat_size_32 * bpb.number_of_fats
        data_sectors = bpb.total_sectors - (bpb.reserved_sectors + fat_sectors)
        if data_sectors <= 0:
            raise Fat32Error("volume has no data sectors")
        return data_sectors // bpb.sectors_per_cluster

    @classmethod
    def create_ram(cls) -> "Fat32FileSystem":
        """Create an empty volume that lives entirely in memory."""
        spc = RAM_SECTORS_PER_CLUSTER
        bpc = spc * SECTOR_SIZE
        total = RAM_TOTAL_CLUSTERS
        fat_sectors = -(-(total * _U32.size) // SECTOR_SIZE)
        bpb = BootParameterBlock(
            bytes_per_sector=SECTOR_SIZE,
            sectors_per_cluster=spc,
            number_of_fats=1,
            fat_size_32=fat_sectors,
            root_cluster=2,
        )
        fat = [FREE_CLUSTER] * total
        fat[0] = _FAT_MEDIA
        fat[1] = _FAT_RESERVED
        fat[2] = EOC
        fs = cls(
            bpb=bpb,
            sectors_per_cluster=spc,
            bytes_per_cluster=bpc,
            total_clusters=total,
            fat=fat,
            fat_count=1,
            fat_sectors=fat_sectors,
            root_cluster=2,
            data_region=bytearray((total - 2) * bpc),
        )
        log.info("FAT32 filesystem mounted (RAM-based)")
        return fs

    @classmethod
    def from_ramdisk(cls, data: bytes) -> "Fat32FileSystem":
        """Load a whole volume image into memory."""
        data = bytes(data)
        if len(data) < BPB_SIZE:
            raise Fat32Error("invalid ramdisk data")
        bpb = BootParameterBlock.from_bytes(data)
        if not bpb.is_valid:
            raise Fat32Error("invalid FAT32 boot signature")
        bps = bpb.bytes_per_sector or SECTOR_SIZE
        total = cls._cluster_count(bpb)
        bpc = bpb.sectors_per_cluster * bps

        fat_offset = bpb.reserved_sectors * bps
        data_offset = fat_offset + bpb.fat_size_32 * bpb.number_of_fats * bps
        data_size = (total - 2) * bpc
        if fat_offset + total * _U32.size > len(data) or data_offset + data_size > len(data):
            raise Fat32Error("ramdisk image is truncated")

        fat = [v & CLUSTER_MASK for v in struct.unpack_from(f"<{total}I", data, fat_offset)]
        fs = cls(
            bpb=bpb,
            sectors_per_cluster=bpb.sectors_per_cluster,
            bytes_per_cluster=bpc,
            total_clusters=total,
            fat=fat,
            fat_count=bpb.number_of_fats,
            fat_sectors=bpb.fat_size_32,
            root_cluster=bpb.root_cluster,
            data_region=bytearray(data[data_offset : data_offset + data_size]),
        )
        log.info("FAT32 filesystem mounted from ramdisk")
        return fs

    @classmethod
    def from_block_device(
        cls,
        registry: BlockRegistry,
        device: BlockDevice,
        lba_offset: int = 0,
    ) -> "Fat32FileSystem":
        """Mount the volume starting at *lba_offset* of *device*."""
        if registry is None or device is None:
            raise Fat32Error("a registry and a device are required")
        if device.block_size < BPB_SIZE:
            raise Fat32Error("sector too small")
        try:
            sector = registry.read(device, lba_offset, 1)
        except BlockError as exc:
            raise Fat32Error(f"cannot read boot sector: {exc}") from exc
        bpb = BootParameterBlock.from_bytes(sector)
        if not bpb.is_valid:
            raise Fat32Error("invalid boot signature")

        bps = bpb.bytes_per_sector or SECTOR_SIZE
        total = cls._cluster_count(bpb)
        fat_start = lba_offset + bpb.reserved_sectors
        try:
            fat_raw = b"".join(
                registry.read(device, fat_start + i, 1) for i in range(bpb.fat_size_32)
            )
        except BlockError as exc:
            raise Fat32Error(f"cannot read FAT: {exc}") from exc

        limit = min(total, len(fat_raw) // _U32.size)
        fat = [v & CLUSTER_MASK for v in struct.unpack_from(f"<{limit}I", fat_raw)]
        fat.extend([FREE_CLUSTER] * (total - limit))

        fs = cls(
            bpb=bpb,
            sectors_per_cluster=bpb.sectors_per_cluster,
            bytes_per_cluster=bpb.sectors_per_cluster * bps,
            total_clusters=total,
            fat=fat,
            fat_count=bpb.number_of_fats,
            fat_sectors=bpb.fat_size_32,
            root_cluster=bpb.root_cluster,
            fat_start_lba=fat_start,
            data_start_lba=fat_start + bpb.number_of_fats * bpb.fat_size_32,
            partition_lba=lba_offset,
            registry=registry,
            device=device,
        )
        log.info("FAT32 filesystem mounted from block device")
        return fs

    def root(self) -> Fat32Node:
        """The root directory node."""
        return self._root

    def _make_node(
        self,
        entry: DirEntry,
        name: Optional[str] = None,
        parent_cluster: int = 0,
        index: int = 0,
    ) -> Fat32Node:
        is_dir = entry.is_directory
        first = entry.first_cluster()
        return Fat32Node(
            fs=self,
            name=name if name is not None else entry.display_name,
            type=NodeType.DIRECTORY if is_dir else NodeType.FILE,
            size=entry.size,
            writable=not entry.is_read_only,
            mode=mode_from_attr(entry.attr, is_dir),
            inode=first,
            first_cluster=first,
            current_cluster=first,
            parent_cluster=parent_cluster,
            dir_entry_index=index,
            dir_entry=dataclasses.replace(entry),
        )

    def _cluster_lba(self, cluster: int) -> int:
        return self.data_start_lba + (cluster - 2) * self.sectors_per_cluster

    def _get_fat_entry(self, cluster: int) -> int:
        if 0 <= cluster < len(self.fat):
            return self.fat[cluster] & CLUSTER_MASK
        return EOC

    def _set_fat_entry(self, cluster: int, value: int) -> None:
        if not 0 <= cluster < len(self.fat):
            raise Fat32Error(f"cluster {cluster} outside the FAT")
        self.fat[cluster] = value & CLUSTER_MASK
        if self.device is not None:
            try:
                self._flush_fat_entry(cluster)
            except BlockError as exc:
                log.warning("FAT32: failed to flush FAT entry: %s", exc)

    def _flush_fat_entry(self, cluster: int) -> None:
        bps = self.bpb.bytes_per_sector or SECTOR_SIZE
        sector_index, sector_offset = divmod(cluster * _U32.size, bps)
        value = self.fat[cluster] & CLUSTER_MASK
        for copy in range(self.fat_count):
            lba = self.fat_start_lba + copy * self.fat_sectors + sector_index
            sector = bytearray(self.registry.read(self.device, lba, 1))
            (old,) = _U32.unpack_from(sector, sector_offset)
            _U32.pack_into(sector, sector_offset, (old & _FAT_KEEP_BITS) | value)
            self.registry.write(self.device, lba, bytes(sector))

    def _find_free_cluster(self) -> int:
        return next(
            (i for i in range(2, self.total_clusters) if self._get_fat_entry(i) == FREE_CLUSTER),
            0,
        )

    def _free_chain(self, cluster: int) -> None:
        while cluster != 0 and cluster < EOC:
            nxt = self._get_fat_entry(cluster)
            self._set_fat_entry(cluster, FREE_CLUSTER)
            cluster = nxt

    def _check_cluster(self, cluster: int) -> None:
        if cluster < 2 or cluster >= EOC or cluster >= self.total_clusters:
            raise Fat32Error(f"invalid cluster {cluster}")

    def _read_cluster(self, cluster: int) -> bytes:
        self._check_cluster(cluster)
        if self.device is not None:
            try:
                return self.registry.read(
                    self.device, self._cluster_lba(cluster), self.sectors_per_cluster
                )
            except BlockError as exc:
                raise Fat32Error(f"cannot read cluster {cluster}: {exc}") from exc
        if self.data_region is None:
            return bytes(self.bytes_per_cluster)
        start = (cluster - 2) * self.bytes_per_cluster
        return bytes(self.data_region[start : start + self.bytes_per_cluster])

    def _write_cluster(self, cluster: int, data: bytes) -> None:
        self._check_cluster(cluster)
        if len(data) != self.bytes_per_cluster:
            raise Fat32Error("cluster write must cover a whole cluster")
        if self.device is not None:
            try:
                self.registry.write(self.device, self._cluster_lba(cluster), data)
            except BlockError as exc:
                raise Fat32Error(f"cannot write cluster {cluster}: {exc}") from exc
            return
        if self.data_region is not None:
            start = (cluster - 2) * self.bytes_per_cluster
            self.data_region[start : start + self.bytes_per_cluster] = data

    def _directory_clusters(self, first: int) -> Iterator[Tuple[int, bytes]]:
        cluster = first
        while cluster < EOC:
            yield cluster, self._read_cluster(cluster)
            cluster = self._get_fat_entry(cluster)

    def _init_directory(self, cluster: int, parent_cluster: int) -> None:
        buf = bytearray(self.bytes_per_cluster)
        _put_entry(buf, 0, _named_entry(b".", Attr.DIRECTORY, cluster))
        _put_entry(buf, 1, _named_entry(b"..", Attr.DIRECTORY, parent_cluster))
        self._write_cluster(cluster, bytes(buf))


def mount(registry: Optional[BlockRegistry], device_name: Optional[str] = None) -> Fat32Node:
    """Mount the named block device, falling back to a fresh RAM volume."""
    if registry is not None and device_name:
        device = registry.find(device_name)
        if device is not None:
            try:
                return Fat32FileSystem.from_block_device(registry, device, 0).root()
            except Fat32Error as exc:
                log.warning(
                    "FAT32: failed to mount block device, falling back to RAM: %s", exc
                )
    return Fat32FileSystem.create_ram().root()