import errno
import stat

import pytest

from erofstools.layout import (
    DataLayout,
    DirEntry,
    Extent,
    Feature,
    FileType,
    Inode,
    MapFlag,
    SuperBlock,
    bitrange,
    crc32c,
    ftype_to_mode,
    is_dot_dotdot,
    mode_to_ftype,
    occupied_size,
)


def test_crc32c_check_value():
    assert crc32c(0xFFFFFFFF, b"123456789") ^ 0xFFFFFFFF == 0xE3069283


def test_crc32c_incremental_matches_whole():
    data = b"erofs superblock payload"
    whole = crc32c(0xFFFFFFFF, data)
    part = crc32c(crc32c(0xFFFFFFFF, data[:7]), data[7:])
    assert part == whole


def test_crc32c_empty_is_identity():
    assert crc32c(0x1234, b"") == 0x1234


@pytest.mark.parametrize("name,expected", [
    (".", True), ("..", True), ("...", False), ("a", False), (".a", False), (b"..", True),
])
def test_is_dot_dotdot(name, expected):
    assert is_dot_dotdot(name) is expected


def test_bitrange_extracts_field():
    value = 0b1011_0110
    assert bitrange(value, 1, 3) == 0b011
    assert bitrange(value, 0, 8) == value


@pytest.mark.parametrize("ftype", list(FileType)[1:])
def test_ftype_mode_round_trip(ftype):
    mode = ftype_to_mode(ftype, 0o644)
    assert mode_to_ftype(mode) is ftype
    assert stat.S_IMODE(mode) == 0o644


def test_mode_to_ftype_regular_and_dir():
    assert mode_to_ftype(stat.S_IFREG | 0o755) is FileType.REG_FILE
    assert mode_to_ftype(stat.S_IFDIR | 0o755) is FileType.DIR


def test_ftype_to_mode_unknown_keeps_perm_only():
    assert ftype_to_mode(42, 0o600) == 0o600
    assert mode_to_ftype(0o600) is FileType.UNKNOWN


def test_occupied_size_flat_is_file_size():
    inode = Inode(size=5000, datalayout=DataLayout.FLAT_INLINE, blocks=9)
    assert occupied_size(inode, 4096) == inode.size


def test_occupied_size_compressed_scales_with_blocks():
    one = occupied_size(Inode(blocks=1, datalayout=DataLayout.COMPRESSED_FULL), 4096)
    three = occupied_size(Inode(blocks=3, datalayout=DataLayout.COMPRESSED_COMPACT), 4096)
    assert one == 4096
    assert three == 3 * one


def test_occupied_size_unknown_layout():
    with pytest.raises(OSError) as info:
        occupied_size(Inode(datalayout=7), 4096)
    assert info.value.errno == errno.EOPNOTSUPP


def test_inode_is_compressed():
    assert Inode(datalayout=DataLayout.COMPRESSED_FULL).is_compressed()
    assert not Inode(datalayout=DataLayout.CHUNK_BASED).is_compressed()


def test_inode_is_whiteout():
    assert Inode(mode=stat.S_IFCHR, rdev=0).is_whiteout()
    assert not Inode(mode=stat.S_IFCHR, rdev=5).is_whiteout()
    assert not Inode(mode=stat.S_IFREG).is_whiteout()


def test_block_geometry():
    sb = SuperBlock(blkszbits=12)
    size = sb.block_size()
    assert size == 4096
    addr = 3 * size + 17
    assert sb.block_number(addr) == 3
    assert sb.block_offset(addr) == 17
    assert sb.block_pos(sb.block_number(addr)) + sb.block_offset(addr) == addr


def test_round_up_blocks():
    sb = SuperBlock(blkszbits=12)
    size = sb.block_size()
    assert sb.round_up_blocks(0) == 0
    assert sb.round_up_blocks(1) == 1
    assert sb.round_up_blocks(size) == 1
    assert sb.round_up_blocks(size + 1) == 2


def test_inode_location_slots():
    sb = SuperBlock(meta_blkaddr=2)
    assert sb.inode_location(0) == sb.block_pos(2)
    assert sb.inode_location(8) - sb.inode_location(7) == 1 << sb.islotbits


def test_feature_checks():
    sb = SuperBlock(feature_incompat=Feature.FRAGMENTS.mask,
                    feature_compat=Feature.SB_CHKSUM.mask)
    assert sb.has_fragments()
    assert not sb.has_compr_cfgs()
    assert sb.has_sb_chksum()
    assert not sb.has_compat(Feature.MTIME.mask)


def test_feature_aliases_keep_labels():
    sb = SuperBlock(feature_incompat=Feature.BIG_PCLUSTER.mask)
    assert sb.has_compr_cfgs()
    assert sb.has_incompat(Feature.COMPR_CFGS.mask)
    assert not sb.has_incompat(Feature.DEDUPE.mask)
    assert Feature.BIG_PCLUSTER.label == "big_pcluster"
    assert Feature.DEDUPE.label == "dedupe"
    assert not Feature.DEDUPE.compat


def test_is_packed():
    sb = SuperBlock(feature_incompat=Feature.FRAGMENTS.mask, packed_nid=40)
    assert sb.is_packed(Inode(nid=40))
    assert not sb.is_packed(Inode(nid=41))
    assert not SuperBlock(packed_nid=40).is_packed(Inode(nid=40))


def test_dir_entry_dot_dotdot():
    assert DirEntry(nid=1, name="..").dot_dotdot
    assert not DirEntry(nid=1, name="etc", ftype=FileType.DIR).dot_dotdot


def test_extent_mapped_flag():
    assert Extent(logical=0, llen=10, flags=MapFlag.MAPPED | MapFlag.ENCODED).mapped
    assert not Extent(logical=0, llen=10, flags=MapFlag.FRAGMENT).mapped