import pytest
from hypothesis import given
from hypothesis import strategies as st

from sectorfs.fat32_layout import (
    BOOT_SIGNATURE,
    BPB_SIZE,
    DELETED_MARKER,
    DIR_ENTRY_SIZE,
    Attr,
    BootParameterBlock,
    DirEntry,
    make_short_name,
    mode_from_attr,
    parse_short_name,
)
from sectorfs.modes import (
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
    is_dir,
    is_reg,
)


def test_attr_lfn_combines_low_bits():
    combined = DirEntry(attr=Attr.READ_ONLY | Attr.HIDDEN | Attr.SYSTEM | Attr.VOLUME_ID)
    assert combined.is_long_name
    assert DirEntry.from_bytes(combined.to_bytes()).attr == Attr.LFN
    assert not DirEntry(attr=Attr.DIRECTORY).is_long_name


def test_parse_short_name_with_extension():
    assert parse_short_name(b"README  TXT") == "readme.txt"


def test_parse_short_name_without_extension():
    assert parse_short_name(b"KERNEL     ") == "kernel"


def test_parse_short_name_dot_entries():
    assert parse_short_name(b".          ") == "."
    assert parse_short_name(b"..         ") == ".."


def test_parse_short_name_all_zero_is_empty():
    assert parse_short_name(bytes(11)) == ""


def test_make_short_name_basic():
    assert make_short_name("readme.txt") == b"README  TXT"


def test_make_short_name_without_extension():
    assert make_short_name("kernel") == b"KERNEL     "


def test_make_short_name_skips_spaces():
    assert make_short_name("a b.c") == b"AB      C  "


def test_make_short_name_truncates_extension():
    assert make_short_name("a.html") == b"A       HTM"


def test_make_short_name_long_base_drops_extension():
    assert make_short_name("verylongname.txt") == b"VERYLONG   "


def test_make_short_name_accepts_bytes():
    assert make_short_name(b"boot.cfg") == make_short_name("boot.cfg")


_part = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789_", min_size=1)


def test_mode_for_writable_file():
    mode = mode_from_attr(Attr.ARCHIVE, False)
    assert mode == S_IFREG | S_IRUSR | S_IWUSR | S_IRGRP | S_IROTH | S_IWGRP | S_IWOTH
    assert is_reg(mode)


def test_mode_for_read_only_file():
    mode = mode_from_attr(Attr.READ_ONLY, False)
    assert mode == S_IFREG | S_IRUSR | S_IRGRP | S_IROTH
    assert mode & (S_IWUSR | S_IWGRP | S_IWOTH) == 0


def test_mode_for_directory():
    mode = mode_from_attr(Attr.DIRECTORY, True)
    expected = (
        S_IFDIR | S_IRUSR | S_IWUSR | S_IXUSR | S_IRGRP | S_IXGRP | S_IROTH | S_IXOTH
    )
    assert mode == expected
    assert is_dir(mode)


def test_mode_for_read_only_directory():
    mode = mode_from_attr(Attr.DIRECTORY | Attr.READ_ONLY, True)
    assert mode & S_IWUSR == 0
    assert is_dir(mode)


def test_dir_entry_size():
    assert len(DirEntry().to_bytes()) == DIR_ENTRY_SIZE


def test_dir_entry_first_cluster_joins_halves():
    entry = DirEntry(first_cluster_hi=0x1234, first_cluster_lo=0x5678)
    assert entry.first_cluster() == 0x12345678


def test_dir_entry_round_trip_fields():
    entry = DirEntry(
        name=make_short_name("hello.txt"),
        attr=Attr.ARCHIVE,
        first_cluster_hi=1,
        first_cluster_lo=7,
        size=4000,
    )
    decoded = DirEntry.from_bytes(entry.to_bytes())
    assert decoded == entry
    assert decoded.display_name == "hello.txt"


@given(st.binary(min_size=32, max_size=32))
def test_dir_entry_bytes_round_trip(raw):
    assert DirEntry.from_bytes(raw).to_bytes() == raw


def test_dir_entry_too_short():
    with pytest.raises(ValueError):
        DirEntry.from_bytes(bytes(DIR_ENTRY_SIZE - 1))


def test_dir_entry_bad_name_length():
    with pytest.raises(ValueError):
        DirEntry(name=b"SHORT")


def test_dir_entry_field_out_of_range():
    with pytest.raises(ValueError):
        DirEntry(size=1 << 32).to_bytes()


def test_dir_entry_flags():
    deleted = DirEntry(name=bytes([DELETED_MARKER]) + b"OO     TXT")
    assert deleted.is_deleted
    assert DirEntry(name=bytes(11)).is_end
    assert DirEntry(attr=Attr.LFN).is_long_name
    assert DirEntry(attr=Attr.VOLUME_ID).is_volume_label
    assert DirEntry(name=b"..         ").is_dot_entry
    assert not DirEntry(name=b"A          ").is_dot_entry
    assert DirEntry(attr=Attr.DIRECTORY).is_directory
    assert DirEntry(attr=Attr.READ_ONLY).is_read_only


def test_bpb_size():
    assert len(BootParameterBlock().to_bytes()) == BPB_SIZE


def test_bpb_round_trip_fields():
    bpb = BootParameterBlock(
        bytes_per_sector=512,
        sectors_per_cluster=8,
        reserved_sectors=32,
        number_of_fats=2,
        total_sectors_32=65536,
        fat_size_32=64,
        root_cluster=2,
        boot_signature=BOOT_SIGNATURE,
        fs_type=b"FAT32   ",
    )
    decoded = BootParameterBlock.from_bytes(bpb.to_bytes())
    assert decoded == bpb
    assert decoded.is_valid


def test_bpb_from_full_sector_ignores_tail():
    bpb = BootParameterBlock(sectors_per_cluster=4, root_cluster=2)
    sector = bpb.to_bytes().ljust(512, b"\xaa")
    assert BootParameterBlock.from_bytes(sector) == bpb


@given(st.binary(min_size=BPB_SIZE, max_size=BPB_SIZE))
def test_bpb_bytes_round_trip(raw):
    assert BootParameterBlock.from_bytes(raw).to_bytes() == raw


def test_bpb_too_short():
    with pytest.raises(ValueError):
        BootParameterBlock.from_bytes(bytes(BPB_SIZE - 1))


def test_bpb_total_sectors_prefers_32_bit():
    assert BootParameterBlock(total_sectors_16=100, total_sectors_32=5000).total_sectors == 5000
    assert BootParameterBlock(total_sectors_16=100).total_sectors == 100


def test_bpb_without_signature_is_invalid():
    assert not BootParameterBlock().is_valid