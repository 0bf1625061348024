import errno
import stat
from types import SimpleNamespace

import pytest

from erofstools.dump import (
    CATEGORY_NAMES,
    FILE_MAX_SIZE_BITS,
    FILE_TYPES,
    DumpConfig,
    Statistics,
    access_string,
    collect_statistics,
    file_type_index,
    format_fileinfo,
    format_size_distribution,
    format_statistics,
    format_superblock,
    format_type_distribution,
    parse_args,
    size_bucket,
)
from erofstools.fsck_options import UsageError
from erofstools.layout import DataLayout


def make_inode(nid, mode, size, layout=DataLayout.FLAT_PLAIN, nlink=1):
    return SimpleNamespace(
        nid=nid, mode=mode, size=size, datalayout=layout, nlink=nlink,
        inode_isize=32, xattr_isize=0, uid=0, gid=0, mtime=0, mtime_nsec=5,
    )


class FakeSuperBlock:
    def __init__(self, root_nid=1, packed_nid=0, fragments=False):
        self.root_nid = root_nid
        self.packed_nid = packed_nid
        self.fragments = fragments
        self.feature_compat = 0
        self.feature_incompat = 0
        self.total_blocks = 10
        self.meta_blkaddr = 0
        self.xattr_blkaddr = 0
        self.available_compr_algs = 0
        self.lz4_max_distance = 0
        self.extslots = 0
        self.inos = 6
        self.build_time = 0
        self.uuid = bytes(range(16))
        self.compr_cfgs = False

    def block_size(self):
        return 4096

    def has_fragments(self):
        return self.fragments

    def has_compr_cfgs(self):
        return self.compr_cfgs

    def has_compat(self, flag):
        return bool(self.feature_compat & flag)

    def has_incompat(self, flag):
        return bool(self.feature_incompat & flag)

    def is_packed(self, inode):
        return self.fragments and inode.nid == self.packed_nid


class FakeReader:
    def __init__(self, inodes, dirs, extents=None):
        self.inodes = inodes
        self.dirs = dirs
        self.extents = extents or {}

    def read_inode(self, nid):
        return self.inodes[nid]

    def iterate_dir(self, inode):
        yield SimpleNamespace(name=".", nid=inode.nid, ftype=2, dot_dotdot=True)
        yield SimpleNamespace(name="..", nid=inode.nid, ftype=2, dot_dotdot=True)
        for name, nid, ftype in self.dirs.get(inode.nid, []):
            yield SimpleNamespace(name=name, nid=nid, ftype=ftype, dot_dotdot=False)

    def map_blocks(self, inode, offset):
        return self.extents[(inode.nid, offset)]


SIZES = {2: 100, 3: 3000, 5: 5000}


def build_tree():
    inodes = {
        1: make_inode(1, stat.S_IFDIR | 0o755, 4096, DataLayout.FLAT_INLINE, nlink=3),
        2: make_inode(2, stat.S_IFREG | 0o644, SIZES[2]),
        3: make_inode(3, stat.S_IFREG | 0o644, SIZES[3]),
        4: make_inode(4, stat.S_IFDIR | 0o755, 4096, DataLayout.FLAT_INLINE, nlink=2),
        5: make_inode(5, stat.S_IFREG | 0o600, SIZES[5]),
        6: make_inode(6, stat.S_IFLNK | 0o777, 5, DataLayout.FLAT_INLINE),
    }
    dirs = {
        1: [("a.txt", 2, 1), ("lib.so", 3, 1), ("sub", 4, 2)],
        4: [("x.apk", 5, 1), ("link", 6, 7)],
    }
    return inodes, dirs


def test_parse_args_defaults_to_superblock():
    config = parse_args(["image.img"])
    assert config.image_path == "image.img"
    assert config.show_superblock is True
    assert config.totalshow == 1


def test_parse_args_nid_selects_inode():
    config = parse_args(["--nid=5", "image.img"])
    assert config.show_inode is True
    assert config.nid == 5
    assert config.show_superblock is False


def test_parse_args_combined_short_flags():
    config = parse_args(["-eS", "image.img"])
    assert config.show_extent and config.show_statistics
    assert config.totalshow == 2


def test_parse_args_offset_hex_and_path():
    config = parse_args(["--offset=0x10", "--path=/a", "--ls", "image.img"])
    assert config.offset == 16
    assert config.inode_path == "/a"
    assert config.show_subdirectories is True


def test_parse_args_errors():
    with pytest.raises(UsageError):
        parse_args(["--offset=12z", "image.img"])
    with pytest.raises(UsageError):
        parse_args([])
    with pytest.raises(UsageError):
        parse_args(["a.img", "b.img"])


def test_parse_args_help_stops():
    assert parse_args(["-h"]).show_help is True
    assert parse_args(["--version"]).show_version is True
    assert DumpConfig().totalshow == 0


def test_file_type_index():
    assert FILE_TYPES[file_type_index("a.txt")] == ".txt"
    assert FILE_TYPES[file_type_index("lib.so")] == ".so"
    assert FILE_TYPES[file_type_index("app.apk")] == ".apk"
    assert FILE_TYPES[file_type_index("noext")] == "others"
    assert FILE_TYPES[file_type_index("x.unknown")] == "others"
    assert FILE_TYPES[file_type_index("x.sox")] == "others"


def test_size_bucket_bounds_and_order():
    assert size_bucket(0) == 0
    assert size_bucket(1023) == 0
    assert size_bucket(1 << 60) == FILE_MAX_SIZE_BITS
    values = [size_bucket(n) for n in range(0, 1 << 22, 4093)]
    assert values == sorted(values)


def test_access_string():
    assert access_string(0o777) == "rwxrwxrwx"
    assert access_string(0o755) == "rwxr-xr-x"
    assert access_string(0) == "-" * 9


def test_collect_statistics_counts():
    inodes, dirs = build_tree()
    stats = collect_statistics(FakeReader(inodes, dirs), FakeSuperBlock())
    assert stats.files == len(inodes)
    assert stats.regular_files == len(SIZES)
    assert stats.categories[CATEGORY_NAMES.index("directory")] == 2
    assert stats.categories[CATEGORY_NAMES.index("symlink file")] == 1
    assert stats.uncompressed_files == len(inodes)
    assert stats.compressed_files == 0
    assert stats.files_total_origin_size == sum(SIZES.values())
    assert stats.files_total_size == sum(SIZES.values())
    assert sum(stats.original_sizes) == len(SIZES)
    assert stats.file_types[FILE_TYPES.index(".txt")] == 1
    assert stats.file_types[FILE_TYPES.index(".apk")] == 1
    assert sum(stats.file_types) == len(SIZES)


def test_collect_statistics_packed_inode():
    inodes, dirs = build_tree()
    inodes[9] = make_inode(9, stat.S_IFREG | 0o600, 10000)
    sb = FakeSuperBlock(packed_nid=9, fragments=True)
    stats = collect_statistics(FakeReader(inodes, dirs), sb)
    assert stats.files == len(inodes) - 1
    assert stats.files_total_size == sum(SIZES.values()) + 10000
    assert sum(stats.comp_sizes) == len(SIZES) + 1


def test_record_inode_unknown_layout():
    stats = Statistics()
    with pytest.raises(OSError) as info:
        stats.record_inode(make_inode(3, stat.S_IFREG | 0o644, 10, layout=7), "f", 4096)
    assert info.value.errno == errno.ENOTSUP


def test_format_type_distribution_and_statistics():
    inodes, dirs = build_tree()
    stats = collect_statistics(FakeReader(inodes, dirs), FakeSuperBlock())
    types = format_type_distribution(stats)
    txt_line = next(line for line in types.splitlines() if line.startswith(".txt"))
    assert "33.33%" in txt_line
    report = format_statistics(stats)
    assert f"Filesystem total file count:\t\t{len(inodes)}\n" in report
    assert "Original file size distribution:" in report
    assert "On-disk file size distribution:" in report
    assert "Filesystem compress rate:               100.00%" in report


def test_format_superblock_features_and_uuid():
    sb = FakeSuperBlock()
    sb.feature_compat = 0x1
    sb.feature_incompat = 0x20
    text = format_superblock(sb)
    assert "0xE0F5E1E2" in text
    assert "sb_csum" in text and "fragments" in text
    assert "mtime" not in text
    assert "00010203-0405-0607-0809-0a0b0c0d0e0f" in text
    assert "lz4_max_distance" in text


def test_format_superblock_compressors():
    sb = FakeSuperBlock()
    sb.compr_cfgs = True
    sb.available_compr_algs = 0b101
    text = format_superblock(sb, ["lz4", "lzma", "deflate"])
    assert "Filesystem compr_algs:                        lz4, deflate\n" in text


def test_format_fileinfo_with_listing_and_extents():
    inodes, dirs = build_tree()
    extent = SimpleNamespace(logical=0, llen=SIZES[2], plen=SIZES[2],
                             physical=8192, device_id=0, flags=0)
    reader = FakeReader(inodes, dirs, {(2, 0): extent})
    sb = FakeSuperBlock()
    text = format_fileinfo(reader, sb, inodes[2], "/a.txt", False, True)
    assert "Path : /a.txt\n" in text
    assert "Access: 0644/rw-r--r--\n" in text
    assert "regular file" in text
    assert text.rstrip("\n").endswith("/a.txt: 1 extents found")
    assert ".000000005\n" in text

    listing = format_fileinfo(reader, sb, inodes[1], None, True, False)
    assert "Path : (not found)\n" in listing
    assert "       NID TYPE  FILENAME\n" in listing
    assert f"{2:10d}    1  a.txt\n" in listing
    assert "extents found" not in listing