"""In-memory view of the EROFS on-disk layout and helpers shared by the tools."""

from __future__ import annotations

import errno
import stat
from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag
from typing import Iterator, Protocol, runtime_checkable

PATH_MAX = 4096
MAX_BLOCK_SIZE = 4096
NAME_LEN = 255
ISLOTBITS = 5
SLOTSIZE = 1 << ISLOTBITS
SUPER_OFFSET = 1024
SUPER_MAGIC_V1 = 0xE0F5E1E2
PCLUSTER_MAX_SIZE = 1024 * 1024
WHITEOUT_DEV = 0
CRC32C_POLY_LE = 0x82F63B78


class FileType(IntEnum):
    """Directory entry file types."""

    UNKNOWN = 0
    REG_FILE = 1
    DIR = 2
    CHRDEV = 3
    BLKDEV = 4
    FIFO = 5
    SOCK = 6
    SYMLINK = 7


class DataLayout(IntEnum):
    """Inode data layouts."""

    FLAT_PLAIN = 0
    COMPRESSED_FULL = 1
    FLAT_INLINE = 2
    COMPRESSED_COMPACT = 3
    CHUNK_BASED = 4


class MapFlag(IntFlag):
    """Flags describing a mapped extent."""

    META = 1 << 0
    MAPPED = 1 << 1
    ENCODED = 1 << 2
    FULL_MAPPED = 1 << 3
    FRAGMENT = 1 << 4
    PARTIAL_REF = 1 << 5


class Feature(Enum):
    """Superblock features: (compat, mask, label)."""

    SB_CHKSUM = (True, 0x1, "sb_csum")
    MTIME = (True, 0x2, "mtime")
    XATTR_FILTER = (True, 0x4, "xattr_filter")
    ZERO_PADDING = (False, 0x1, "0padding")
    COMPR_CFGS = (False, 0x2, "compr_cfgs")
    BIG_PCLUSTER = (False, 0x2, "big_pcluster")
    CHUNKED_FILE = (False, 0x4, "chunked_file")
    DEVICE_TABLE = (False, 0x8, "device_table")
    ZTAILPACKING = (False, 0x10, "ztailpacking")
    FRAGMENTS = (False, 0x20, "fragments")
    DEDUPE = (False, 0x20, "dedupe")
    XATTR_PREFIXES = (False, 0x40, "xattr_prefixes")

    @property
    def compat(self) -> bool:
        return self.value[0]

    @property
    def mask(self) -> int:
        return self.value[1]

    @property
    def label(self) -> str:
        return self.value[2]


_COMPRESSED_LAYOUTS = (DataLayout.COMPRESSED_FULL, DataLayout.COMPRESSED_COMPACT)
_FLAT_LAYOUTS = (DataLayout.FLAT_INLINE, DataLayout.FLAT_PLAIN, DataLayout.CHUNK_BASED)

_FTYPE_BY_FMT = {
    stat.S_IFREG: FileType.REG_FILE,
    stat.S_IFDIR: FileType.DIR,
    stat.S_IFCHR: FileType.CHRDEV,
    stat.S_IFBLK: FileType.BLKDEV,
    stat.S_IFIFO: FileType.FIFO,
    stat.S_IFSOCK: FileType.SOCK,
    stat.S_IFLNK: FileType.SYMLINK,
}
_FMT_BY_FTYPE = {ftype: fmt for fmt, ftype in _FTYPE_BY_FMT.items()}


def _crc32c_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ (CRC32C_POLY_LE if crc & 1 else 0)
        table.append(crc)
    return tuple(table)


_CRC32C_TABLE = _crc32c_table()


def crc32c(crc: int, data: bytes) -> int:
    """Update a CRC32C (Castagnoli) value without pre/post inversion."""
    crc &= 0xFFFFFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC32C_TABLE[(crc ^ byte) & 0xFF]
    return crc


def is_dot_dotdot(name: str | bytes) -> bool:
    """Whether a directory entry name is "." or ".."."""
    if isinstance(name, bytes):
        return name in (b".", b"..")
    return name in (".", "..")


def bitrange(value: int, bit: int, bits: int) -> int:
    """Extract ``bits`` bits of ``value`` starting at ``bit``."""
    return (value >> bit) & ((1 << bits) - 1)


def mode_to_ftype(mode: int) -> FileType:
    """Map a POSIX mode to a directory entry file type."""
    return _FTYPE_BY_FMT.get(stat.S_IFMT(mode), FileType.UNKNOWN)


def ftype_to_mode(ftype: int, perm: int) -> int:
    """Build a POSIX mode from a directory entry file type and permissions."""
    try:
        fmt = _FMT_BY_FTYPE[FileType(ftype)]
    except (ValueError, KeyError):
        fmt = 0
    return fmt | perm


def occupied_size(inode: "Inode", block_size: int) -> int:
    """On-disk size taken by an inode's data."""
    if inode.datalayout in _FLAT_LAYOUTS:
        return inode.size
    if inode.datalayout in _COMPRESSED_LAYOUTS:
        return inode.blocks * block_size
    raise OSError(errno.EOPNOTSUPP, f"unknown datalayout {inode.datalayout}")


@dataclass
class Inode:
    """Inode metadata as read from an image."""

    nid: int = 0
    mode: int = 0
    size: int = 0
    uid: int = 0
    gid: int = 0
    mtime: int = 0
    mtime_nsec: int = 0
    nlink: int = 1
    datalayout: int = DataLayout.FLAT_PLAIN
    inode_isize: int = 32
    xattr_isize: int = 0
    blocks: int = 0
    rdev: int = 0

    def is_compressed(self) -> bool:
        return self.datalayout in _COMPRESSED_LAYOUTS

    def is_whiteout(self) -> bool:
        return stat.S_ISCHR(self.mode) and self.rdev == WHITEOUT_DEV


@dataclass
class SuperBlock:
    """Superblock fields the tools rely on."""

    blkszbits: int = 12
    islotbits: int = ISLOTBITS
    meta_blkaddr: int = 0
    xattr_blkaddr: int = 0
    feature_compat: int = 0
    feature_incompat: int = 0
    build_time: int = 0
    build_time_nsec: int = 0
    extslots: int = 0
    root_nid: int = 0
    inos: int = 0
    uuid: bytes = field(default=bytes(16))
    volume_name: str = ""
    available_compr_algs: int = 0
    lz4_max_distance: int = 0
    checksum: int = 0
    total_blocks: int = 0
    packed_nid: int = 0
    extra_devices: int = 0
    diskoffset: int = 0

    def block_size(self) -> int:
        return 1 << self.blkszbits

    def block_number(self, addr: int) -> int:
        return addr >> self.blkszbits

    def block_offset(self, addr: int) -> int:
        return addr & (self.block_size() - 1)

    def block_pos(self, nr: int) -> int:
        return nr << self.blkszbits

    def round_up_blocks(self, addr: int) -> int:
        size = self.block_size()
        return -(-addr // size) * size >> self.blkszbits

    def has_compat(self, flag: int) -> bool:
        return bool(self.feature_compat & flag)

    def has_incompat(self, flag: int) -> bool:
        return bool(self.feature_incompat & flag)

    def has_fragments(self) -> bool:
        return self.has_incompat(Feature.FRAGMENTS.mask)

    def has_compr_cfgs(self) -> bool:
        return self.has_incompat(Feature.COMPR_CFGS.mask)

    def has_sb_chksum(self) -> bool:
        return self.has_compat(Feature.SB_CHKSUM.mask)

    def inode_location(self, nid: int) -> int:
        return self.block_pos(self.meta_blkaddr) + (nid << self.islotbits)

    def is_packed(self, inode: Inode) -> bool:
        return self.has_fragments() and self.packed_nid > 0 and inode.nid == self.packed_nid


@dataclass(frozen=True)
class DirEntry:
    """One directory entry."""

    nid: int
    name: str
    ftype: int = FileType.UNKNOWN

    @property
    def dot_dotdot(self) -> bool:
        return is_dot_dotdot(self.name)


@dataclass
class Extent:
    """A mapped range of an inode's data."""

    logical: int
    llen: int
    physical: int = 0
    plen: int = 0
    flags: MapFlag = MapFlag(0)
    device_id: int = 0

    @property
    def mapped(self) -> bool:
        return bool(self.flags & MapFlag.MAPPED)


@runtime_checkable
class ImageReader(Protocol):
    """What the tools need from an opened image; failures raise OSError."""

    superblock: SuperBlock

    def read_inode(self, nid: int) -> Inode:
        """Read the inode with the given nid."""
        ...

    def lookup(self, path: str) -> Inode:
        """Resolve an absolute path inside the image."""
        ...

    def iterate_dir(self, inode: Inode) -> Iterator[DirEntry]:
        """Yield the entries of a directory, "." and ".." included."""
        ...

    def pathname(self, nid: int) -> str:
        """Absolute path of the inode with the given nid."""
        ...

    def read(self, inode: Inode, offset: int, length: int) -> bytes:
        """Read decoded file data."""
        ...

    def map_blocks(self, inode: Inode, offset: int) -> Extent:
        """Map the extent covering a logical offset."""
        ...

    def map_device(self, extent: Extent) -> int:
        """Physical address of an extent on its device."""
        ...

    def read_extent(self, inode: Inode, extent: Extent) -> bytes:
        """Decoded data of a mapped extent, ``extent.llen`` bytes long."""
        ...

    def read_raw(self, offset: int, length: int) -> bytes:
        """Read raw bytes from the primary device."""
        ...

    def getxattr(self, inode: Inode, name: str) -> bytes | None:
        """Value of an extended attribute, or None when absent."""
        ...

    def listxattr(self, inode: Inode) -> list[str]:
        """Names of an inode's extended attributes."""
        ...