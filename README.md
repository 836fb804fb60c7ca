# sectorfs

Sector-level storage tools in pure Python, with no third-party dependencies.

## What is in the package

- **`sectorfs.block`**: block devices and partition discovery.
  - `BlockRegistry` keeps the registered devices, newest first. It has
    `register`, `register_partition`, `find`, `get`, `len()`, iteration,
    cached `read` and `write`, `flush`, `scan_partitions` and `reset`.
  - `scan_partitions` reads sector 0. If it finds an MBR with a protective
    `0xEE` entry, it reads the GPT instead. Each partition it finds is
    registered and named `<disk>p<n>`, as `partition_name` builds the name.
  - `BlockCache` is a fixed-size cache of single blocks that evicts the
    least recently used one. By default it holds 128 entries of 512 bytes.
    Devices with larger blocks bypass it.
  - `MemoryDisk` is a block driver backed by a `bytearray`.
  - `BlockDevice.driver_read`, `driver_write` and `driver_flush` go straight
    to the driver and skip the cache.
- **`sectorfs.fat32`**: FAT32 volumes.
  - `Fat32FileSystem.create_ram()` makes an empty volume in memory.
  - `Fat32FileSystem.from_ramdisk(data)` copies a volume image into memory.
  - `Fat32FileSystem.from_block_device(registry, device, lba_offset)` works
    on a registered device. Changes to the FAT are written to every FAT copy.
  - `mount(registry, device_name)` mounts the named device and returns its
    root. If the device is missing or cannot be mounted, it falls back to a
    fresh RAM volume.
  - A `Fat32Node` offers `read`, `write`, `open`, `close`, `readdir`,
    `finddir`, `create` and `unlink`. Call `close()` after growing a file:
    it writes the new size and first cluster back to the parent directory
    entry.
- **`sectorfs.fat32_layout`**: on-disk structures.
  - `BootParameterBlock` and `DirEntry` each have `from_bytes` and
    `to_bytes`.
  - The `Attr` flags describe entry attributes.
  - `make_short_name` and `parse_short_name` convert 8.3 names.
  - `mode_from_attr` maps FAT attributes to POSIX mode bits.
- **`sectorfs.elf`**: x86-64 ELF64 executables.
  - `validate`, `parse_header` and `parse_program_headers` check and parse
    an image.
  - `load(space, data)` maps every `PT_LOAD` segment into an `AddressSpace`
    of 4 KiB pages, zero-fills the BSS and returns the entry point.
    `ET_DYN` images are placed at `0x400000`.
  - `build_user_stack(argv)` returns the initial stack page and the user
    stack pointer. The page holds the argument strings, the argv array, a
    pointer to that array and `argc`.
- **`sectorfs.console`**:
  - `Console` buffers text per thread and writes it to a stream in whole
    lines. It also has `putchar`, `getchar` and the `print_hex*` /
    `print_dec` printers.
  - `format_hex`, `format_hex8`, `format_hex16` and `format_dec` produce
    fixed-width upper-case hex and unsigned decimal strings.
- **`sectorfs.modes`**:
  - Mode-bit constants and the tests `is_reg`, `is_dir`, `is_chr` and
    `is_fifo`.
  - `WinSize`, a terminal window size with `to_bytes` and `from_bytes`.

## Errors

Failures raise exceptions:

- `BlockError` for device I/O.
- `Fat32Error` for filesystem problems.
- `ElfError` for invalid or unloadable executables.

Lookups that find nothing return `None`. This applies to
`BlockRegistry.find` and `get`, and to `Fat32Node.readdir` and `finddir`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from sectorfs.fat32 import Fat32FileSystem, NodeType
from sectorfs.modes import is_reg

fs = Fat32FileSystem.create_ram()
root = fs.root()
root.create("hello.txt", NodeType.FILE, 0o644)

node = root.finddir("hello.txt")
node.write(0, b"hello, world")
node.close()

print(root.finddir("hello.txt").read(0, 64))  # b'hello, world'
print(is_reg(root.readdir(0).mode))           # True
```

The next example uses a disk image kept in memory as a block device:

```python
from sectorfs.block import BlockCache, BlockDeviceType, BlockRegistry, MemoryDisk
from sectorfs.fat32 import mount

with open("disk.img", "rb") as f:
    disk = MemoryDisk(f.read(), 512)

registry = BlockRegistry(BlockCache(128, 512))
device = registry.register(
    "sata0", BlockDeviceType.DISK, 512, disk.block_count,
    disk.read, disk.write, disk.flush, disk,
)
partitions = registry.scan_partitions(device)  # e.g. sata0p1, sata0p2
root = mount(registry, "sata0p1")
```

## What it does not do

- There is no command-line tool. Everything is a library call.
- FAT32 support covers 8.3 short names only. Long-file-name entries are
  skipped, and timestamps are neither read nor set.
- `from_ramdisk` and `create_ram` keep the volume in memory. Changes are
  never written back to the source bytes or to a file.
- There are no drivers for real disks. A block device is whatever read and
  write callables you register, for example a `MemoryDisk`.
- The ELF loader fills a simulated `AddressSpace`. It does not run the
  program, and it ignores the environment and dynamic linking.