"""Block devices, a shared LRU sector cache and MBR/GPT partition discovery."""

from __future__ import annotations

import logging
import struct
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterator, List, Optional

log = logging.getLogger(__name__)

NAME_MAX = 31
CACHE_ENTRIES = 128
CACHE_BLOCK_SIZE = 512

_MBR_TABLE_OFFSET = 446
_MBR_ENTRY = struct.Struct("<B3sB3sII")
_MBR_PROTECTIVE_GPT = 0xEE
_GPT_SIGNATURE = 0x5452415020494645  # "EFI PART"
_GPT_ENTRY_MIN = 128


class BlockError(Exception):
    """Raised when a block device operation fails."""


class BlockDeviceType(IntEnum):
    DISK = 0
    PARTITION = 1
    RAMDISK = 2


ReadFn = Callable[["BlockDevice", int, int], bytes]
WriteFn = Callable[["BlockDevice", int, bytes], None]
FlushFn = Callable[["BlockDevice"], None]


@dataclass(eq=False)
class BlockDevice:
    """A registered device; I/O goes through the driver callbacks."""

    name: str
    type: BlockDeviceType
    block_size: int
    block_count: int
    reader: Optional[ReadFn] = None
    writer: Optional[WriteFn] = None
    flusher: Optional[FlushFn] = None
    driver_data: Any = None
    parent: Optional["BlockDevice"] = None
    lba_offset: int = 0

    def driver_read(self, lba: int, count: int) -> bytes:
        """Read *count* blocks straight from the driver, bypassing the cache."""
        if self.reader is None:
            raise BlockError(f"{self.name}: device is not readable")
        if count <= 0:
            raise BlockError(f"{self.name}: block count must be positive")
        data = bytes(self.reader(self, lba, count))
        if len(data) != count * self.block_size:
            raise BlockError(
                f"{self.name}: driver returned {len(data)} bytes for {count} blocks"
            )
        return data

    def driver_write(self, lba: int, data: bytes) -> None:
        """Write whole blocks straight to the driver, bypassing the cache."""
        if self.writer is None:
            raise BlockError(f"{self.name}: device is not writable")
        data = bytes(data)
        if not data or len(data) % self.block_size:
            raise BlockError(
                f"{self.name}: write of {len(data)} bytes is not whole blocks"
            )
        self.writer(self, lba, data)

    def driver_flush(self) -> None:
        """Ask the driver to flush; devices without a flush hook do nothing."""
        if self.flusher is not None:
            self.flusher(self)


def _partition_read(device: BlockDevice, lba: int, count: int) -> bytes:
    if device.parent is None:
        raise BlockError(f"{device.name}: partition has no parent")
    return device.parent.driver_read(lba + device.lba_offset, count)


def _partition_write(device: BlockDevice, lba: int, data: bytes) -> None:
    if device.parent is None:
        raise BlockError(f"{device.name}: partition has no parent")
    device.parent.driver_write(lba + device.lba_offset, data)


def _partition_flush(device: BlockDevice) -> None:
    if device.parent is not None:
        device.parent.driver_flush()


@dataclass(eq=False)
class _CacheEntry:
    device: Optional[BlockDevice] = None
    lba: int = 0
    data: bytes = b""
    stamp: int = 0
    valid: bool = False
    loading: bool = False

    def holds(self, device: BlockDevice, lba: int) -> bool:
        return self.device is device and self.lba == lba


class BlockCache:
    """Fixed-size least-recently-used cache of single blocks."""

    def __init__(self, entries: int = CACHE_ENTRIES, block_size: int = CACHE_BLOCK_SIZE):
        if entries < 1:
            raise ValueError("cache needs at least one entry")
        if block_size < 1:
            raise ValueError("cache block size must be positive")
        self.block_size = block_size
        self._entries = [_CacheEntry() for _ in range(entries)]
        self._tick = 0
        self._cond = threading.Condition()

    def _next_stamp(self) -> int:
        self._tick += 1
        return self._tick

    def _select_victim(self) -> Optional[_CacheEntry]:
        victim: Optional[_CacheEntry] = None
        for entry in self._entries:
            if entry.loading:
                continue
            if not entry.valid:
                return entry
            if victim is None or entry.stamp < victim.stamp:
                victim = entry
        return victim

    def _cacheable(self, device: BlockDevice) -> bool:
        return device.block_size <= self.block_size

    def fetch(self, device: BlockDevice, lba: int) -> bytes:
        """Return one block, reading it from the driver on a miss."""
        if not self._cacheable(device):
            return device.driver_read(lba, 1)

        with self._cond:
            while True:
                busy = False
                for entry in self._entries:
                    if not entry.holds(device, lba):
                        continue
                    if entry.loading:
                        busy = True
                        break
                    if entry.valid:
                        entry.stamp = self._next_stamp()
                        return entry.data
                if not busy:
                    victim = self._select_victim()
                    if victim is not None:
                        break
                self._cond.wait()

            victim.loading = True
            victim.valid = False
            victim.device = device
            victim.lba = lba

        try:
            data = device.driver_read(lba, 1)
        except BaseException:
            with self._cond:
                victim.loading = False
                self._cond.notify_all()
            raise

        with self._cond:
            victim.loading = False
            victim.valid = True
            victim.data = data
            victim.stamp = self._next_stamp()
            self._cond.notify_all()
        return data

    def store(self, device: BlockDevice, lba: int, data: bytes) -> None:
        """Record freshly written contents of one block."""
        if not self._cacheable(device):
            return
        block = bytes(data[: device.block_size])
        with self._cond:
            for entry in self._entries:
                if entry.valid and not entry.loading and entry.holds(device, lba):
                    entry.data = block
                    entry.stamp = self._next_stamp()
                    return
            victim = self._select_victim()
            if victim is None:
                return
            victim.device = device
            victim.lba = lba
            victim.valid = True
            victim.loading = False
            victim.data = block
            victim.stamp = self._next_stamp()

    def clear(self) -> None:
        """Drop every cached block."""
        with self._cond:
            self._entries = [_CacheEntry() for _ in self._entries]
            self._tick = 0
            self._cond.notify_all()


def partition_name(disk_name: str, index: int) -> str:
    """Name a partition after its disk, e.g. disk ``sata0`` partition 1."""
    name = disk_name[:NAME_MAX]
    if len(name) < NAME_MAX - 1:
        name += "p"
    if len(name) < NAME_MAX:
        name += str(index)
    return name[:NAME_MAX]


class BlockRegistry:
    """The set of known block devices, newest first, sharing one cache."""

    def __init__(self, cache: Optional[BlockCache] = None):
        self.cache = cache if cache is not None else BlockCache()
        self._devices: List[BlockDevice] = []
        self._lock = threading.Lock()

    def register(
        self,
        name: str,
        type: BlockDeviceType,
        block_size: int,
        block_count: int,
        read: Optional[ReadFn] = None,
        write: Optional[WriteFn] = None,
        flush: Optional[FlushFn] = None,
        driver_data: Any = None,
    ) -> BlockDevice:
        """Create and register a device."""
        if not name:
            raise BlockError("device name is required")
        if block_size <= 0 or block_count <= 0:
            raise BlockError(f"{name}: block size and count must be positive")
        device = BlockDevice(
            name=name[:NAME_MAX],
            type=BlockDeviceType(type),
            block_size=block_size,
            block_count=block_count,
            reader=read,
            writer=write,
            flusher=flush,
            driver_data=driver_data,
        )
        with self._lock:
            self._devices.insert(0, device)
        log.info(
            'Block: registered device "%s" size=0x%016X bytes',
            device.name,
            block_size * block_count,
        )
        return device

    def register_partition(
        self,
        parent: BlockDevice,
        name: Optional[str],
        first_lba: int,
        sector_count: int,
    ) -> BlockDevice:
        """Register a window of *parent* starting at *first_lba*."""
        if parent is None or sector_count <= 0:
            raise BlockError("partition needs a parent and a positive size")
        device = self.register(
            name or "partition",
            BlockDeviceType.PARTITION,
            parent.block_size,
            sector_count,
            _partition_read if parent.reader else None,
            _partition_write if parent.writer else None,
            _partition_flush if parent.flusher else None,
            parent,
        )
        device.parent = parent
        device.lba_offset = first_lba
        return device

    def find(self, name: str) -> Optional[BlockDevice]:
        """Return the newest device with this name, or None."""
        if not name:
            return None
        with self._lock:
            return next((d for d in self._devices if d.name == name), None)

    def get(self, index: int) -> Optional[BlockDevice]:
        """Return the device at *index*, counting from the newest, or None."""
        with self._lock:
            if 0 <= index < len(self._devices):
                return self._devices[index]
        return None

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[BlockDevice]:
        with self._lock:
            devices = list(self._devices)
        return iter(devices)

    def read(self, device: BlockDevice, lba: int, count: int) -> bytes:
        """Read *count* blocks through the cache."""
        if device is None or count <= 0:
            raise BlockError("read needs a device and a positive block count")
        if device.reader is None:
            raise BlockError(f"{device.name}: device is not readable")
        if device.block_size > self.cache.block_size:
            return device.driver_read(lba, count)
        return b"".join(self.cache.fetch(device, lba + i) for i in range(count))

    def write(self, device: BlockDevice, lba: int, data: bytes) -> None:
        """Write whole blocks to the driver and refresh the cache."""
        if device is None or not data:
            raise BlockError("write needs a device and data")
        if device.writer is None:
            raise BlockError(f"{device.name}: device is not writable")
        device.driver_write(lba, data)
        if device.block_size > self.cache.block_size:
            return
        size = device.block_size
        for i, start in enumerate(range(0, len(data), size)):
            self.cache.store(device, lba + i, data[start : start + size])

    def flush(self, device: BlockDevice) -> None:
        """Flush the device's driver."""
        if device is None:
            raise BlockError("flush needs a device")
        device.driver_flush()

    def scan_partitions(self, device: BlockDevice) -> List[BlockDevice]:
        """Register partitions found in the MBR or GPT of *device*."""
        if device is None or device.block_size < 512:
            return []
        try:
            sector = device.driver_read(0, 1)
        except BlockError:
            return []
        if sector[510] != 0x55 or sector[511] != 0xAA:
            return []

        entries = [
            _MBR_ENTRY.unpack_from(sector, _MBR_TABLE_OFFSET + i * _MBR_ENTRY.size)
            for i in range(4)
        ]
        if any(entry[2] == _MBR_PROTECTIVE_GPT for entry in entries):
            try:
                header = device.driver_read(1, 1)
            except BlockError:
                return []
            return self._scan_gpt(device, header)

        found = []
        index = 1
        for _status, _chs_first, ptype, _chs_last, first_lba, sectors in entries:
            if ptype == 0 or sectors == 0:
                continue
            name = partition_name(device.name, index)
            index += 1
            found.append(self.register_partition(device, name, first_lba, sectors))
        return found

    def _scan_gpt(self, device: BlockDevice, header: bytes) -> List[BlockDevice]:
        (signature,) = struct.unpack_from("<Q", header, 0)
        if signature != _GPT_SIGNATURE:
            return []
        entry_lba, entry_count, entry_size = struct.unpack_from("<QII", header, 72)
        if entry_size == 0 or entry_size > device.block_size:
            return []
        per_sector = device.block_size // entry_size

        found = []
        index = 1
        sector = b""
        for i in range(entry_count):
            offset = (i % per_sector) * entry_size
            if offset == 0:
                try:
                    sector = device.driver_read(entry_lba + i // per_sector, 1)
                except BlockError:
                    break
            entry = sector[offset : offset + _GPT_ENTRY_MIN].ljust(_GPT_ENTRY_MIN, b"\0")
            type_guid = entry[:16]
            first_lba, last_lba = struct.unpack_from("<QQ", entry, 32)
            if not any(type_guid) or first_lba == 0 or last_lba < first_lba:
                continue
            name = partition_name(device.name, index)
            index += 1
            found.append(
                self.register_partition(
                    device, name, first_lba, last_lba - first_lba + 1
                )
            )
        return found

    def reset(self) -> None:
        """Forget every device and empty the cache."""
        with self._lock:
            self._devices.clear()
        self.cache.clear()


class MemoryDisk:
    """A block driver backed by a bytearray."""

    def __init__(self, data: bytes, block_size: int = 512):
        if block_size <= 0:
            raise ValueError("block size must be positive")
        if not data or len(data) % block_size:
            raise ValueError("disk image must be a non-empty whole number of blocks")
        self.data = bytearray(data)
        self.block_size = block_size
        self.block_count = len(self.data) // block_size
        self.flush_count = 0

    def _span(self, lba: int, count: int) -> slice:
        if lba < 0 or count <= 0 or lba + count > self.block_count:
            raise BlockError(
                f"blocks {lba}..{lba + count - 1} outside disk of {self.block_count}"
            )
        return slice(lba * self.block_size, (lba + count) * self.block_size)

    def read(self, device: BlockDevice, lba: int, count: int) -> bytes:
        """Return *count* blocks starting at *lba*."""
        return bytes(self.data[self._span(lba, count)])

    def write(self, device: BlockDevice, lba: int, data: bytes) -> None:
        """Store whole blocks starting at *lba*."""
        if not data or len(data) % self.block_size:
            raise BlockError("write must cover whole blocks")
        self.data[self._span(lba, len(data) // self.block_size)] = data

    def flush(self, device: BlockDevice) -> None:
        """Count the flush; memory needs no write-back."""
        self.flush_count += 1