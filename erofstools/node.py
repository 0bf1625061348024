"""Extracted-entry records: fs_config, SELinux label and error bookkeeping."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum

from .layout import DataLayout, FileType, Inode


class ExtractResult(IntEnum):
    """Result codes of the extraction tool."""

    DONE = 0
    CONFIG_DONE = 1
    CONFIG_FAIL = 2
    INIT_FAIL = 3
    INIT_NODE_FAIL = 4
    OUTDIR_ROOT = 5
    CREATE_DIR_FAIL = 6
    CREATE_FILE_FAIL = 7
    THREAD_NUM_ERROR = 8
    FAIL_SKIP = 9
    FAIL_EXIT = 10


class ExtractError(Exception):
    """An extraction step failed with a result code."""

    def __init__(self, result: ExtractResult, message: str = "") -> None:
        super().__init__(message or result.name)
        self.result = result


OTHER_PATHS_IN_ROOT_DIR: tuple[str, ...] = ("/lost+found",)

_SPECIAL_SYMBOLS = (".", "+", "[", "]")

VFS_CAP_REVISION_MASK = 0xFF000000
VFS_CAP_REVISION_1 = 0x01000000
VFS_CAP_REVISION_2 = 0x02000000
XATTR_CAPS_SZ_1 = 4 + 4 * 2
XATTR_CAPS_SZ_2 = 4 + 4 * 2 * 2

_TYPE_NAMES = {
    FileType.DIR: "DIR",
    FileType.REG_FILE: "FILE",
    FileType.SYMLINK: "LINK",
    FileType.CHRDEV: "CHR",
    FileType.BLKDEV: "BLK",
    FileType.FIFO: "FIFO",
    FileType.SOCK: "SOCK",
}

_LAYOUT_NAMES = {
    DataLayout.FLAT_PLAIN: "PLAIN",
    DataLayout.FLAT_INLINE: "INLINE",
    DataLayout.CHUNK_BASED: "CHUNK",
    DataLayout.COMPRESSED_FULL: "COMPRESSED_FULL",
    DataLayout.COMPRESSED_COMPACT: "COMPRESSED_COMPACT",
}


def escape_special_symbols(path: str) -> str:
    """Backslash-escape the characters that are special in file_contexts regexes."""
    for symbol in _SPECIAL_SYMBOLS:
        path = path.replace(symbol, "\\" + symbol)
    return path


def parse_capability_xattr(data: bytes) -> int:
    """Permitted capability mask from a ``security.capability`` value; 0 if unusable."""
    if len(data) < 4:
        return 0
    (magic_etc,) = struct.unpack_from("<I", data)
    revision = magic_etc & VFS_CAP_REVISION_MASK
    if revision == VFS_CAP_REVISION_1:
        if len(data) != XATTR_CAPS_SZ_1:
            return 0
        (permitted,) = struct.unpack_from("<I", data, 4)
        return permitted
    if revision == VFS_CAP_REVISION_2:
        if len(data) != XATTR_CAPS_SZ_2:
            return 0
        low, _, high, _ = struct.unpack_from("<4I", data, 4)
        return low | (high << 32)
    return 0


@dataclass
class ErofsNode:
    """One entry of the image selected for printing or extraction."""

    path: str
    type_id: int
    inode: Inode
    fs_config: str = field(init=False)
    selinux_label: str = field(default="", init=False)
    capabilities: int = field(default=0, init=False)
    exception_info: str = field(default="", init=False)

    def __post_init__(self) -> None:
        inode = self.inode
        self.fs_config = f"{self.path} {inode.uid} {inode.gid} {inode.mode & 0o777:04o}"

    @property
    def nid(self) -> int:
        return self.inode.nid

    @property
    def nlink(self) -> int:
        return self.inode.nlink

    def type_name(self) -> str:
        try:
            return _TYPE_NAMES.get(FileType(self.type_id), "UNKNOWN")
        except ValueError:
            return "UNKNOWN"

    def layout_name(self) -> str:
        try:
            return _LAYOUT_NAMES[DataLayout(self.inode.datalayout)]
        except (ValueError, KeyError):
            return "UNKNOWN"

    def add_capabilities(self, capabilities: int) -> None:
        """Record a capability mask and append it to the fs_config line when non-zero."""
        if capabilities:
            self.capabilities = capabilities
            self.fs_config += f" capabilities=0x{capabilities:X}"

    def record_error(self, err: int | BaseException | None) -> bool:
        """Store a description of a failed extraction; skips are not failures."""
        if err is None or err == 0:
            return False
        if isinstance(err, ExtractError):
            if err.result == ExtractResult.FAIL_SKIP:
                return False
            code = int(err.result)
            reason = os.strerror(abs(code))
        elif isinstance(err, OSError):
            code = -(err.errno or 0)
            reason = err.strerror or os.strerror(abs(code))
        elif isinstance(err, BaseException):
            code = 0
            reason = str(err)
        else:
            if err == ExtractResult.FAIL_SKIP:
                return False
            code = int(err)
            reason = os.strerror(abs(code))
        self.exception_info = (
            f"err={code}[{reason}] type={self.type_name()} "
            f"dataLayout={self.layout_name()} name={self.path}"
        )
        return True

    def fs_config_lines(self, mount_point: str) -> list[str]:
        """Lines this entry contributes to the fs_config file."""
        if self.path == "/":
            lines = [self.fs_config, f"{mount_point}{self.fs_config}"]
            lines.extend(f"{mount_point}{other} 0 0 0755" for other in OTHER_PATHS_IN_ROOT_DIR)
            return lines
        return [f"{mount_point}{self.fs_config}"]

    def selinux_label_lines(self, mount_point: str) -> list[str]:
        """Lines this entry contributes to the file_contexts file."""
        label = self.selinux_label
        if self.path == "/":
            lines = [
                f"/ {label}",
                f"/{mount_point} {label}",
                f"/{mount_point}/ {label}",
            ]
            lines.extend(
                f"/{mount_point}{escape_special_symbols(other)} {label}"
                for other in OTHER_PATHS_IN_ROOT_DIR
            )
            return lines
        return [f"/{mount_point}{escape_special_symbols(self.path)} {label}"]