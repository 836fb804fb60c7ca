import struct

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from sectorfs.block import BlockDeviceType, BlockRegistry, MemoryDisk
from sectorfs.fat32 import Fat32Error, Fat32FileSystem, NodeType, mount
from sectorfs.fat32_layout import BPB_SIZE, Attr, BootParameterBlock, DirEntry
from sectorfs.modes import S_IWUSR, is_dir, is_reg

BPS = 512
RESERVED = 32
NFATS = 2
FATSZ = 1
DATA_SECTORS = 100
TOTAL = RESERVED + NFATS * FATSZ + DATA_SECTORS
DATA_AT = (RESERVED + NFATS * FATSZ) * BPS


def build_image(prefix_sectors=0):
    img = bytearray(TOTAL * BPS)
    bpb = BootParameterBlock(
        bytes_per_sector=BPS,
        sectors_per_cluster=1,
        reserved_sectors=RESERVED,
        number_of_fats=NFATS,
        total_sectors_32=TOTAL,
        fat_size_32=FATSZ,
        root_cluster=2,
        boot_signature=0x29,
    )
    img[:BPB_SIZE] = bpb.to_bytes()
    fat = [0x0FFFFFF8, 0x0FFFFFFF, 0x0FFFFFFF, 0x0FFFFFFF]
    for copy in range(NFATS):
        struct.pack_into("<4I", img, (RESERVED + copy * FATSZ) * BPS, *fat)
    entry = DirEntry(name=b"HELLO   TXT", attr=int(Attr.ARCHIVE), first_cluster_lo=3, size=5)
    img[DATA_AT : DATA_AT + 32] = entry.to_bytes()
    img[DATA_AT + BPS : DATA_AT + BPS + 5] = b"hello"
    return bytes(prefix_sectors * BPS) + bytes(img)


def block_setup(image):
    disk = MemoryDisk(image, BPS)
    registry = BlockRegistry()
    device = registry.register(
        "disk0", BlockDeviceType.DISK, BPS, disk.block_count,
        disk.read, disk.write, disk.flush, disk,
    )
    return disk, registry, device


def test_ram_root_is_empty_directory():
    root = Fat32FileSystem.create_ram().root()
    assert root.name == "/"
    assert root.type is NodeType.DIRECTORY
    assert root.first_cluster == 2
    assert root.readdir(0) is None


def test_create_and_find_file():
    root = Fat32FileSystem.create_ram().root()
    root.create("notes.txt", NodeType.FILE, 0o644)
    node = root.finddir("notes.txt")
    assert node.name == "notes.txt"
    assert node.type is NodeType.FILE
    assert node.size == 0
    assert node.parent_cluster == root.first_cluster
    assert is_reg(node.mode)
    assert node.mode & S_IWUSR
    assert root.finddir("missing.txt") is None


def test_write_read_close_persists_size():
    root = Fat32FileSystem.create_ram().root()
    root.create("a.bin")
    node = root.finddir("a.bin")
    payload = bytes(range(256)) * 40
    assert node.write(0, payload) == len(payload)
    node.close()
    again = root.finddir("a.bin")
    assert again.size == len(payload)
    assert again.read(0, len(payload) + 100) == payload
    assert again.read(len(payload), 10) == b""
    assert again.read(10, 5) == payload[10:15]


def test_sparse_write_leaves_zero_gap():
    root = Fat32FileSystem.create_ram().root()
    root.create("gap.bin")
    node = root.finddir("gap.bin")
    node.write(5000, b"tail")
    assert node.size == 5004
    assert node.read(0, 5000) == bytes(5000)
    assert node.read(5000, 4) == b"tail"


@settings(max_examples=20, deadline=None)
@given(offset=st.integers(0, 9000), payload=st.binary(min_size=1, max_size=9000))
def test_write_read_roundtrip(offset, payload):
    root = Fat32FileSystem.create_ram().root()
    root.create("f.dat")
    node = root.finddir("f.dat")
    assert node.write(offset, payload) == len(payload)
    assert node.size == offset + len(payload)
    assert node.read(offset, len(payload)) == payload


def test_readdir_lists_in_order_and_skips_deleted():
    root = Fat32FileSystem.create_ram().root()
    for name in ("one", "two", "three"):
        root.create(name)
    assert [root.readdir(i).name for i in range(3)] == ["one", "two", "three"]
    root.unlink("two")
    assert root.readdir(1).name == "three"
    assert root.readdir(2) is None
    assert root.finddir("two") is None


def test_unlink_missing_raises():
    root = Fat32FileSystem.create_ram().root()
    with pytest.raises(Fat32Error):
        root.unlink("ghost")


def test_unlink_frees_clusters_for_reuse():
    root = Fat32FileSystem.create_ram().root()
    root.create("old")
    freed = root.finddir("old").first_cluster
    root.unlink("old")
    root.create("new")
    assert root.finddir("new").first_cluster == freed


def test_subdirectory_has_dot_entries():
    root = Fat32FileSystem.create_ram().root()
    root.create("sub", NodeType.DIRECTORY, 0o755)
    sub = root.finddir("sub")
    assert sub.type is NodeType.DIRECTORY
    assert is_dir(sub.mode)
    assert sub.readdir(0) is None
    assert sub.finddir(".").first_cluster == sub.first_cluster
    assert sub.finddir("..").first_cluster == root.first_cluster
    sub.create("inner.txt")
    assert sub.readdir(0).name == "inner.txt"
    assert root.finddir("inner.txt") is None


def test_file_node_rejects_directory_operations():
    root = Fat32FileSystem.create_ram().root()
    root.create("plain")
    node = root.finddir("plain")
    assert node.readdir(0) is None
    assert node.finddir("x") is None
    with pytest.raises(Fat32Error):
        node.create("x")
    with pytest.raises(Fat32Error):
        node.unlink("x")


def test_directory_grows_past_one_cluster():
    fs = Fat32FileSystem.create_ram()
    root = fs.root()
    count = fs.bytes_per_cluster // 32 + 2
    for i in range(count):
        root.create(f"f{i}")
    last = f"f{count - 1}"
    assert root.readdir(count - 1).name == last
    found = root.finddir(last)
    assert found.name == last
    assert found.parent_cluster != root.first_cluster
    found.write(0, b"data")
    found.close()
    assert root.finddir(last).read(0, 10) == b"data"


def test_volume_full():
    fs = Fat32FileSystem.create_ram()
    root = fs.root()
    root.create("big")
    node = root.finddir("big")
    payload = bytes(fs.bytes_per_cluster * fs.total_clusters)
    written = node.write(0, payload)
    assert 0 < written < len(payload)
    assert written % fs.bytes_per_cluster == 0
    assert node.size == written
    with pytest.raises(Fat32Error):
        root.create("more")


def test_from_ramdisk_reads_file():
    root = Fat32FileSystem.from_ramdisk(build_image()).root()
    node = root.finddir("hello.txt")
    assert node.size == 5
    assert node.read(0, 100) == b"hello"
    assert root.readdir(0).name == "hello.txt"


def test_from_ramdisk_rejects_bad_images():
    with pytest.raises(Fat32Error):
        Fat32FileSystem.from_ramdisk(b"\0" * 10)
    with pytest.raises(Fat32Error):
        Fat32FileSystem.from_ramdisk(bytes(TOTAL * BPS))
    with pytest.raises(Fat32Error):
        Fat32FileSystem.from_ramdisk(build_image()[: 40 * BPS])


def test_block_device_write_persists():
    disk, registry, device = block_setup(build_image())
    root = Fat32FileSystem.from_block_device(registry, device, 0).root()
    node = root.finddir("hello.txt")
    assert node.read(0, 5) == b"hello"
    payload = bytes(range(200)) * 5
    assert node.write(0, payload) == len(payload)
    node.close()

    fat1 = disk.data[RESERVED * BPS : (RESERVED + 1) * BPS]
    fat2 = disk.data[(RESERVED + 1) * BPS : (RESERVED + 2) * BPS]
    assert fat1 == fat2

    registry2 = BlockRegistry()
    device2 = registry2.register(
        "disk0", BlockDeviceType.DISK, BPS, disk.block_count, disk.read, disk.write
    )
    fresh = Fat32FileSystem.from_block_device(registry2, device2, 0).root()
    assert fresh.finddir("hello.txt").read(0, 2000) == payload


def test_block_device_with_offset():
    _disk, registry, device = block_setup(build_image(prefix_sectors=4))
    fs = Fat32FileSystem.from_block_device(registry, device, 4)
    assert fs.partition_lba == 4
    assert fs.root().finddir("hello.txt").read(0, 5) == b"hello"


def test_block_device_sector_too_small():
    disk = MemoryDisk(bytes(640), 64)
    registry = BlockRegistry()
    device = registry.register("tiny", BlockDeviceType.DISK, 64, disk.block_count, disk.read)
    with pytest.raises(Fat32Error):
        Fat32FileSystem.from_block_device(registry, device, 0)


def test_mount_uses_block_device():
    _disk, registry, _device = block_setup(build_image())
    root = mount(registry, "disk0")
    assert root.fs.device is not None
    assert root.finddir("hello.txt").read(0, 5) == b"hello"


def test_mount_falls_back_to_ram():
    disk = MemoryDisk(bytes(8 * BPS), BPS)
    registry = BlockRegistry()
    registry.register("blank", BlockDeviceType.DISK, BPS, disk.block_count, disk.read)
    for name in ("blank", "absent"):
        root = mount(registry, name)
        assert root.fs.device is None
        assert root.readdir(0) is None
    assert mount(None).fs.data_region is not None