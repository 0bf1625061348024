import errno
import io
import os
import stat
from dataclasses import dataclass
from types import SimpleNamespace

import pytest

from erofstools.console import Console
from erofstools.fsck import EFSCORRUPTED, FsckChecker, xattr_entry_size
from erofstools.fsck_options import FsckConfig
from erofstools.layout import DataLayout, crc32c

BLOCK = 4096


@dataclass
class FakeExtent:
    logical: int
    llen: int
    plen: int
    mapped: bool = True


class FakeSuperBlock:
    def __init__(self, sb_chksum=False, checksum=0):
        self.root_nid = 1
        self.packed_nid = 0
        self.checksum = checksum
        self._sb_chksum = sb_chksum

    def block_size(self):
        return BLOCK

    def block_offset(self, addr):
        return addr & (BLOCK - 1)

    def round_up_blocks(self, addr):
        return (addr + BLOCK - 1) // BLOCK

    def inode_location(self, nid):
        return nid * 32

    def has_sb_chksum(self):
        return self._sb_chksum

    def has_fragments(self):
        return False

    def is_packed(self, inode):
        return self.packed_nid > 0 and inode.nid == self.packed_nid


def make_inode(nid, mode, size=0, nlink=1, layout=DataLayout.FLAT_PLAIN, xattr_isize=0):
    return SimpleNamespace(nid=nid, mode=mode, size=size, nlink=nlink, datalayout=layout,
                           uid=0, gid=0, mtime=1_600_000_000, mtime_nsec=0, rdev=0,
                           xattr_isize=xattr_isize, inode_isize=32)


def entry(name, nid):
    return SimpleNamespace(name=name, nid=nid, dot_dotdot=name in (".", ".."))


class FakeReader:
    def __init__(self, inodes, data, dirs, sb=None, failing=()):
        self.superblock = sb or FakeSuperBlock()
        self.inodes = inodes
        self.data = data
        self.dirs = dirs
        self.failing = set(failing)

    def read_inode(self, nid):
        if nid in self.failing:
            raise OSError(errno.EIO, "bad read")
        return SimpleNamespace(**vars(self.inodes[nid]))

    def iterate_dir(self, inode):
        return list(self.dirs.get(inode.nid, []))

    def map_blocks(self, inode, pos):
        remaining = inode.size - pos
        return FakeExtent(pos, remaining, remaining)

    def read(self, inode, offset, count):
        return self.data[inode.nid][offset:offset + count]


FILE_A = b"A" * 5000
FILE_B = b"hello"


def build_reader(bad_layout=False, failing=()):
    inodes = {
        1: make_inode(1, stat.S_IFDIR | 0o755),
        2: make_inode(2, stat.S_IFREG | 0o644, len(FILE_A), nlink=2,
                      layout=99 if bad_layout else DataLayout.FLAT_PLAIN),
        3: make_inode(3, stat.S_IFDIR | 0o755),
        4: make_inode(4, stat.S_IFREG | 0o600, len(FILE_B)),
        5: make_inode(5, stat.S_IFLNK | 0o777, len(b"a.txt"), layout=DataLayout.FLAT_INLINE),
    }
    data = {2: FILE_A, 4: FILE_B, 5: b"a.txt"}
    dirs = {
        1: [entry(".", 1), entry("..", 1), entry("a.txt", 2), entry("sub", 3),
            entry("c", 2), entry("link", 5)],
        3: [entry(".", 3), entry("..", 1), entry("b", 4)],
    }
    return FakeReader(inodes, data, dirs, failing=failing)


def make_config(**kwargs):
    base = dict(umask=0o022, superuser=False, preserve_owner=False, preserve_perms=False)
    base.update(kwargs)
    return FsckConfig(**base)


def make_checker(reader, config, device=None):
    stream = io.StringIO()
    return FsckChecker(reader, config, device, Console(stream=stream, color=False)), stream


def test_xattr_entry_size_alignment():
    for name_len in range(6):
        for value_size in range(6):
            size = xattr_entry_size(name_len, value_size)
            assert size % 4 == 0
            assert 4 + name_len + value_size <= size < 8 + name_len + value_size


def test_xattr_entry_size_of_empty_entry():
    assert xattr_entry_size(0, 0) == 4


def test_check_only_reports_no_errors():
    checker, stream = make_checker(build_reader(), make_config())
    checker.run()
    assert checker.corrupted is False
    assert "No errors found" in stream.getvalue()


def test_extract_whole_tree(tmp_path):
    out = str(tmp_path / "out")
    config = make_config(extract_path=out, extract_pos=len(out), check_decomp=True)
    checker, stream = make_checker(build_reader(), config)
    checker.run()
    assert (tmp_path / "out" / "a.txt").read_bytes() == FILE_A
    assert (tmp_path / "out" / "sub" / "b").read_bytes() == FILE_B
    assert os.stat(tmp_path / "out" / "c").st_ino == os.stat(tmp_path / "out" / "a.txt").st_ino
    assert os.readlink(tmp_path / "out" / "link") == "a.txt"
    assert stat.S_IMODE(os.stat(tmp_path / "out" / "sub" / "b").st_mode) == 0o600
    assert os.stat(tmp_path / "out" / "a.txt").st_mtime == 1_600_000_000
    assert "Extracted filesystem successfully" in stream.getvalue()


def test_existing_file_without_overwrite_is_corruption(tmp_path):
    out = tmp_path / "out"
    out.mkdir()
    (out / "a.txt").write_bytes(b"old")
    config = make_config(extract_path=str(out), extract_pos=len(str(out)), check_decomp=True)
    checker, stream = make_checker(build_reader(), config)
    with pytest.raises(OSError) as info:
        checker.run()
    assert info.value.errno == EFSCORRUPTED
    assert checker.corrupted is True
    assert "Failed to extract filesystem" in stream.getvalue()


def test_overwrite_replaces_existing_file(tmp_path):
    out = tmp_path / "out"
    out.mkdir()
    (out / "a.txt").write_bytes(b"old")
    config = make_config(extract_path=str(out), extract_pos=len(str(out)),
                         check_decomp=True, overwrite=True)
    checker, _ = make_checker(build_reader(), config)
    checker.run()
    assert (out / "a.txt").read_bytes() == FILE_A


def test_unknown_layout_marks_corruption():
    checker, stream = make_checker(build_reader(bad_layout=True), make_config())
    with pytest.raises(OSError) as info:
        checker.run()
    assert info.value.errno == EFSCORRUPTED
    assert "Found some filesystem corruption" in stream.getvalue()


def test_io_error_is_not_corruption():
    checker, _ = make_checker(build_reader(failing={4}), make_config())
    with pytest.raises(OSError) as info:
        checker.check_inode(1, 4)
    assert info.value.errno == errno.EIO
    assert checker.corrupted is False


def test_compression_ratio_of_plain_image():
    checker, stream = make_checker(build_reader(), make_config(print_comp_ratio=True))
    checker.run()
    assert checker.logical_blocks > 0
    assert checker.physical_blocks == checker.logical_blocks
    assert checker.compression_ratio() == 100.0
    assert "Compression ratio: 100.00(%)" in stream.getvalue()


def test_verify_inode_data_writes_content():
    reader = build_reader()
    checker, _ = make_checker(reader, make_config(check_decomp=True))
    out = io.BytesIO()
    checker.verify_inode_data(reader.read_inode(2), out)
    assert out.getvalue() == FILE_A


def test_verify_inode_data_without_decomp_writes_nothing():
    reader = build_reader()
    checker, _ = make_checker(reader, make_config())
    out = io.BytesIO()
    checker.verify_inode_data(reader.read_inode(2), out)
    assert out.getvalue() == b""


def test_verify_inode_data_skips_holes():
    reader = build_reader()

    def map_blocks(inode, pos):
        if pos < 100:
            return FakeExtent(0, 100, 100, mapped=False)
        return FakeExtent(pos, inode.size - pos, inode.size - pos)

    reader.map_blocks = map_blocks
    checker, _ = make_checker(reader, make_config(check_decomp=True))
    out = io.BytesIO()
    checker.verify_inode_data(reader.read_inode(2), out)
    assert out.getvalue() == bytes(100) + FILE_A[100:]


def test_verify_inode_data_broken_chunk_length():
    reader = build_reader()
    reader.map_blocks = lambda inode, pos: FakeExtent(pos, inode.size - pos, 1)
    checker, _ = make_checker(reader, make_config())
    with pytest.raises(OSError) as info:
        checker.verify_inode_data(reader.read_inode(2), None)
    assert info.value.errno == EFSCORRUPTED


def test_verify_inode_data_unknown_layout():
    reader = build_reader(bad_layout=True)
    checker, _ = make_checker(reader, make_config())
    with pytest.raises(OSError) as info:
        checker.verify_inode_data(reader.read_inode(2), None)
    assert info.value.errno == errno.EINVAL


def _xattr_device(shared_count, entries):
    body = bytearray(32)
    header = bytearray(12)
    header[4] = shared_count
    body += header + bytes(4 * shared_count)
    for name, value in entries:
        raw = bytes([len(name), 1]) + len(value).to_bytes(2, "little") + name + value
        raw += bytes(-len(raw) % 4)
        body += raw
    return io.BytesIO(bytes(body) + bytes(64))


@pytest.mark.parametrize("isize", [12, 5])
def test_verify_xattr_rejects_bad_sizes(isize):
    checker, _ = make_checker(build_reader(), make_config())
    with pytest.raises(OSError) as info:
        checker.verify_xattr(make_inode(0, stat.S_IFREG | 0o644, xattr_isize=isize))
    assert info.value.errno == EFSCORRUPTED


def test_verify_xattr_accepts_well_formed_area():
    device = _xattr_device(1, [(b"abc", b"xy")])
    checker, _ = make_checker(build_reader(), make_config(), device)
    inode = make_inode(0, stat.S_IFREG | 0o644, xattr_isize=12 + 4 + xattr_entry_size(3, 2))
    checker.verify_xattr(inode)
    assert checker.corrupted is False


def test_verify_xattr_entry_beyond_area():
    device = _xattr_device(1, [(b"abc", b"xy")])
    checker, _ = make_checker(build_reader(), make_config(), device)
    inode = make_inode(0, stat.S_IFREG | 0o644, xattr_isize=12 + 4 + 8)
    with pytest.raises(OSError) as info:
        checker.verify_xattr(inode)
    assert info.value.errno == EFSCORRUPTED


def _superblock_block():
    block = bytearray(BLOCK)
    block[1024:1028] = (0xE0F5E1E2).to_bytes(4, "little")
    block[1100:1104] = b"data"
    region = bytearray(block[1024:BLOCK])
    region[4:8] = bytes(4)
    return block, crc32c(0xFFFFFFFF, bytes(region))


def test_superblock_checksum_round_trip():
    block, crc = _superblock_block()
    block[1028:1032] = crc.to_bytes(4, "little")
    reader = build_reader()
    reader.superblock = FakeSuperBlock(sb_chksum=True, checksum=crc)
    checker, _ = make_checker(reader, make_config(), io.BytesIO(bytes(block)))
    assert checker.check_superblock_checksum(bytes(block)) is True
    checker.run()
    assert checker.corrupted is False


def test_superblock_checksum_mismatch():
    block, crc = _superblock_block()
    reader = build_reader()
    reader.superblock = FakeSuperBlock(sb_chksum=True, checksum=crc)
    block[2000] = 0x5A
    checker, _ = make_checker(reader, make_config(), io.BytesIO(bytes(block)))
    with pytest.raises(OSError) as info:
        checker.run()
    assert info.value.errno == EFSCORRUPTED
    assert checker.corrupted is True


def test_compression_ratio_without_blocks_is_nan():
    checker, _ = make_checker(build_reader(), make_config())
    ratio = checker.compression_ratio()
    assert ratio != ratio
    checker.physical_blocks = 3
    assert checker.compression_ratio() == float("inf")