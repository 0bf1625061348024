"""Reporting the layout of an image: superblock, inode details and statistics."""

from __future__ import annotations

import errno
import math
import stat
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Sequence

from .fsck_options import UsageError, _atoi, _getopt_long, _strtoull
from .layout import DataLayout, ImageReader, Inode, SuperBlock, mode_to_ftype, occupied_size

FILE_TYPES = (".txt", ".so", ".xml", ".apk", ".odex", ".vdex", ".oat", ".rc", ".otf", "others")
OTHER_FILE_TYPE = len(FILE_TYPES)
FILE_MAX_SIZE_BITS = 16
FT_MAX = 8
FT_REG_FILE = 1
CATEGORY_NAMES = (
    "unknown type",
    "regular file",
    "directory",
    "char dev",
    "block dev",
    "FIFO file",
    "SOCK file",
    "symlink file",
)
EROFS_SUPER_MAGIC_V1 = 0xE0F5E1E2
DEFAULT_COMPRESSORS = ("lz4", "lzma", "deflate", "zstd")
_U64_MASK = (1 << 64) - 1
_MAP_FRAGMENT = 1 << 4

# (compat, flag, name)
FEATURES = (
    (True, 0x00000001, "sb_csum"),
    (True, 0x00000002, "mtime"),
    (True, 0x00000004, "xattr_filter"),
    (False, 0x00000001, "0padding"),
    (False, 0x00000002, "compr_cfgs"),
    (False, 0x00000002, "big_pcluster"),
    (False, 0x00000004, "chunked_file"),
    (False, 0x00000008, "device_table"),
    (False, 0x00000010, "ztailpacking"),
    (False, 0x00000020, "fragments"),
    (False, 0x00000020, "dedupe"),
    (False, 0x00000040, "xattr_prefixes"),
)

_COMPRESSED = (DataLayout.COMPRESSED_FULL, DataLayout.COMPRESSED_COMPACT)
_UNCOMPRESSED = (DataLayout.FLAT_PLAIN, DataLayout.FLAT_INLINE, DataLayout.CHUNK_BASED)

_SHORT_OPTIONS = "SVesh"
_LONG_OPTIONS = {
    "version": "none",
    "help": "none",
    "nid": "required",
    "device": "required",
    "path": "required",
    "ls": "none",
    "offset": "required",
}

_CHART_HEADER_TITLES = ("count", "ratio", "distribution")


def _number(value) -> int:
    return int(getattr(value, "value", value))


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return math.nan if numerator == 0 else math.inf
    return numerator * 100 / denominator


@dataclass
class DumpConfig:
    """What the dump tool was asked to show."""

    image_path: str = ""
    totalshow: int = 0
    show_inode: bool = False
    show_extent: bool = False
    show_superblock: bool = False
    show_statistics: bool = False
    show_subdirectories: bool = False
    nid: int = 0
    inode_path: str | None = None
    devices: list[str] = field(default_factory=list)
    offset: int = 0
    show_help: bool = False
    show_version: bool = False


def parse_args(argv: list[str] | None = None) -> DumpConfig:
    """Parse the dump tool's command line; problems raise UsageError.

    Processing stops at -V or -h. With nothing chosen to show, the superblock is shown.
    """
    if argv is None:
        argv = sys.argv[1:]
    config = DumpConfig()
    positionals: list[str] = []
    for option, value in _getopt_long(list(argv), _SHORT_OPTIONS, _LONG_OPTIONS):
        if option is None:
            positionals.append(value)
        elif option == "-e":
            config.show_extent = True
            config.totalshow += 1
        elif option == "-s":
            config.show_superblock = True
            config.totalshow += 1
        elif option == "-S":
            config.show_statistics = True
            config.totalshow += 1
        elif option in ("-V", "--version"):
            config.show_version = True
            return config
        elif option in ("-h", "--help"):
            config.show_help = True
            return config
        elif option == "--nid":
            config.show_inode = True
            config.nid = _atoi(value) & _U64_MASK
            config.totalshow += 1
        elif option == "--device":
            config.devices.append(value)
        elif option == "--path":
            config.inode_path = value
            config.show_inode = True
            config.totalshow += 1
        elif option == "--ls":
            config.show_subdirectories = True
        elif option == "--offset":
            number = _strtoull(value)
            if number is None:
                raise UsageError(f"invalid disk offset {value}")
            config.offset = number

    if not positionals:
        raise UsageError("missing argument: IMAGE")
    if len(positionals) > 1:
        raise UsageError(f"unexpected argument: {positionals[1]}")
    config.image_path = positionals[0]
    if not config.totalshow:
        config.show_superblock = True
        config.totalshow = 1
    return config


def file_type_index(name: str) -> int:
    """Index into FILE_TYPES for a file name, judged by its last extension."""
    dot = name.rfind(".")
    if dot < 0:
        return OTHER_FILE_TYPE - 1
    postfix = name[dot:]
    for index, suffix in enumerate(FILE_TYPES[:-1]):
        if suffix.startswith(postfix):
            return index
    return OTHER_FILE_TYPE - 1


def size_bucket(size: int) -> int:
    """Histogram bucket of a size: bit length of its KiB count, capped."""
    return min((size >> 10).bit_length(), FILE_MAX_SIZE_BITS)


def access_string(mode: int) -> str:
    """The rwxrwxrwx form of the permission bits."""
    template = "rwxrwxrwx"
    return "".join(
        char if (mode >> (8 - pos)) & 1 else "-" for pos, char in enumerate(template)
    )


@dataclass
class Statistics:
    """Counters gathered while walking an image."""

    files: int = 0
    compressed_files: int = 0
    uncompressed_files: int = 0
    files_total_size: int = 0
    files_total_origin_size: int = 0
    categories: list[int] = field(default_factory=lambda: [0] * FT_MAX)
    file_types: list[int] = field(default_factory=lambda: [0] * OTHER_FILE_TYPE)
    original_sizes: list[int] = field(default_factory=lambda: [0] * (FILE_MAX_SIZE_BITS + 1))
    comp_sizes: list[int] = field(default_factory=lambda: [0] * (FILE_MAX_SIZE_BITS + 1))

    @property
    def regular_files(self) -> int:
        return self.categories[FT_REG_FILE]

    @property
    def compress_rate(self) -> float:
        return _ratio(self.files_total_size, self.files_total_origin_size)

    def _occupied(self, inode: Inode, block_size: int) -> int:
        if inode.datalayout in _COMPRESSED:
            self.compressed_files += 1
        elif inode.datalayout in _UNCOMPRESSED:
            self.uncompressed_files += 1
        else:
            raise OSError(errno.ENOTSUP, f"unknown datalayout {inode.datalayout}")
        return occupied_size(inode, block_size)

    def record_inode(self, inode: Inode, name: str, block_size: int) -> int:
        """Count one inode met in the tree; returns its on-disk size."""
        self.files += 1
        self.categories[_number(mode_to_ftype(inode.mode))] += 1
        occupied = self._occupied(inode, block_size)
        if stat.S_ISREG(inode.mode):
            self.files_total_origin_size += inode.size
            self.file_types[file_type_index(name)] += 1
            self.files_total_size += occupied
            self.original_sizes[size_bucket(inode.size)] += 1
            self.comp_sizes[size_bucket(occupied)] += 1
        return occupied

    def record_packed(self, inode: Inode, block_size: int) -> int:
        """Count the packed inode holding fragments; returns its on-disk size."""
        occupied = self._occupied(inode, block_size)
        self.files_total_size += occupied
        self.comp_sizes[size_bucket(occupied)] += 1
        return occupied


def collect_statistics(reader: ImageReader, sb: SuperBlock) -> Statistics:
    """Walk the whole tree from the root and gather statistics."""
    stats = Statistics()
    block_size = sb.block_size()
    pending: list[tuple[int, str]] = [(sb.root_nid, "")]
    while pending:
        nid, name = pending.pop()
        inode = reader.read_inode(nid)
        stats.record_inode(inode, name, block_size)
        if stat.S_ISDIR(inode.mode):
            children = [(entry.nid, entry.name)
                        for entry in reader.iterate_dir(inode) if not entry.dot_dotdot]
            pending.extend(reversed(children))
    if sb.has_fragments() and sb.packed_nid > 0:
        stats.record_packed(reader.read_inode(sb.packed_nid), block_size)
    return stats


def _chart_header(first: str) -> str:
    count, ratio, distribution = _CHART_HEADER_TITLES
    return f"{first:<16} {count:>11} {ratio:>16} |{distribution:<50}|\n"


def _chart_row(label: str, count: int, regular_files: int) -> str:
    ratio = count * 100 / regular_files if regular_files else 0.0
    bar = "#" * int(ratio / 2)
    return f"{label:<16}\t{count:<11} {ratio:8.2f}% |{bar:<50}|\n"


def format_size_distribution(title: str, counts: Sequence[int], regular_files: int) -> str:
    """Histogram of file sizes in KiB buckets."""
    lines = [f"\n{title} file size distribution:\n", _chart_header(">=(KB) .. <(KB) ")]
    lower, upper = 0, 1
    last = len(counts) - 1
    for index, count in enumerate(counts):
        if index == last:
            label = f"{lower:6d} .."
        else:
            label = f"{lower:6d} .. {upper:<6d}"
        lines.append(_chart_row(label, count, regular_files))
        lower, upper = upper, (upper << 1) & 0xFFFFFFFF
    return "".join(lines)


def format_type_distribution(stats: Statistics) -> str:
    """Histogram of regular files by extension."""
    lines = ["\nFile type distribution:\n", _chart_header("type")]
    for name, count in zip(FILE_TYPES, stats.file_types):
        lines.append(_chart_row(f"{name:<17}", count, stats.regular_files))
    return "".join(lines)


def _file_summary(stats: Statistics) -> str:
    lines = [f"Filesystem total file count:\t\t{stats.files}\n"]
    lines.extend(f"Filesystem {name} count:\t\t{count}\n"
                 for name, count in zip(CATEGORY_NAMES, stats.categories))
    lines.append(f"Filesystem compressed files:            {stats.compressed_files}\n")
    lines.append(f"Filesystem uncompressed files:          {stats.uncompressed_files}\n")
    lines.append(
        f"Filesystem total original file size:    {stats.files_total_origin_size} Bytes\n")
    lines.append(f"Filesystem total file size:             {stats.files_total_size} Bytes\n")
    lines.append(f"Filesystem compress rate:               {stats.compress_rate:.2f}%\n")
    return "".join(lines)


def format_statistics(stats: Statistics) -> str:
    """The full statistics report: counts, size histograms and extension histogram."""
    return (
        _file_summary(stats)
        + format_size_distribution("Original", stats.original_sizes, stats.regular_files)
        + format_size_distribution("On-disk", stats.comp_sizes, stats.regular_files)
        + format_type_distribution(stats)
    )


def format_superblock(sb: SuperBlock, compressors: Sequence[str] = DEFAULT_COMPRESSORS) -> str:
    """Superblock report; ``compressors`` names algorithms by their on-disk id."""
    lines = [
        f"Filesystem magic number:                      0x{EROFS_SUPER_MAGIC_V1:04X}\n",
        f"Filesystem blocksize:                         {sb.block_size()}\n",
        f"Filesystem blocks:                            {sb.total_blocks}\n",
        f"Filesystem inode metadata start block:        {sb.meta_blkaddr}\n",
        f"Filesystem shared xattr metadata start block: {sb.xattr_blkaddr}\n",
        f"Filesystem root nid:                          {sb.root_nid}\n",
    ]
    if sb.has_fragments() and sb.packed_nid > 0:
        lines.append(f"Filesystem packed nid:                        {sb.packed_nid}\n")
    if sb.has_compr_cfgs():
        names = [name for algorithm, name in enumerate(compressors)
                 if name and (sb.available_compr_algs >> algorithm) & 1]
        lines.append(f"Filesystem compr_algs:                        {', '.join(names)}\n")
    else:
        lines.append(f"Filesystem lz4_max_distance:                  {sb.lz4_max_distance}\n")
    lines.append(f"Filesystem sb_extslots:                       {sb.extslots}\n")
    lines.append(f"Filesystem inode count:                       {sb.inos}\n")
    lines.append(f"Filesystem created:                           {time.ctime(sb.build_time)}\n")
    features = "".join(
        f"{name} " for compat, flag, name in FEATURES
        if (sb.has_compat(flag) if compat else sb.has_incompat(flag))
    )
    lines.append(f"Filesystem features:                          {features}")
    uuid_text = str(uuid.UUID(bytes=bytes(sb.uuid)))
    lines.append(f"\nFilesystem UUID:                              {uuid_text}\n")
    return "".join(lines)


def _format_extents(reader: ImageReader, inode: Inode, shown: str) -> str:
    lines = ["\n Ext:   logical offset   |  length :     physical offset    |  length\n"]
    count = 0
    logical = 0
    while logical < inode.size:
        extent = reader.map_blocks(inode, logical)
        if extent.llen <= 0:
            raise OSError(errno.EIO, f"failed to get file blocks range at {logical}")
        start, llen = extent.logical, extent.llen
        device = extent.device_id
        if _number(extent.flags) & _MAP_FRAGMENT:
            pa, plen = 0, 0
        else:
            pa, plen = extent.physical, extent.plen
        line = (f"{count:4d}: {start:8d}..{start + llen:8d} | {llen:7d} : "
                f"{pa:10d}..{pa + plen:10d} | {plen:7d}")
        if device:
            line += f"  # device {device}"
        lines.append(line + "\n")
        count += 1
        logical = start + llen
    lines.append(f"{shown}: {count} extents found\n")
    return "".join(lines)


def format_fileinfo(reader: ImageReader, sb: SuperBlock, inode: Inode, path: str | None,
                    show_ls: bool = False, show_extent: bool = False) -> str:
    """Details of one inode, optionally its directory listing and extents."""
    size = occupied_size(inode, sb.block_size())
    if sb.is_packed(inode):
        shown = "(packed file)"
    else:
        shown = path if path is not None else "(not found)"
    mode = inode.mode & 0o777
    category = CATEGORY_NAMES[_number(mode_to_ftype(inode.mode))]
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(inode.mtime))
    ratio = _ratio(size, inode.size)
    parts = [
        f"Path : {shown}\n",
        f"Size: {inode.size}  On-disk size: {size}  {category}\n",
        f"NID: {inode.nid}   ",
        f"Links: {inode.nlink}   ",
        f"Layout: {_number(inode.datalayout)}   Compression ratio: {ratio:.2f}%\n",
        f"Inode size: {inode.inode_isize}   ",
        f"Xattr size: {inode.xattr_isize}\n",
        f"Uid: {inode.uid}   Gid: {inode.gid}  ",
        f"Access: {mode:04o}/{access_string(mode)}\n",
        f"Timestamp: {timestamp}.{inode.mtime_nsec:09d}\n",
    ]
    if show_ls:
        parts.append("\n       NID TYPE  FILENAME\n")
        parts.extend(f"{entry.nid:10d}    {_number(entry.ftype)}  {entry.name}\n"
                     for entry in reader.iterate_dir(inode))
    if show_extent:
        parts.append(_format_extents(reader, inode, shown))
    return "".join(parts)