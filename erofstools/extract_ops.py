"""Writing image entries out to the local filesystem."""

from __future__ import annotations

import dataclasses
import errno
import os
import stat
from dataclasses import dataclass, field
from typing import BinaryIO

from .console import Console
from .hardlinks import HardlinkTable
from .layout import PCLUSTER_MAX_SIZE, DataLayout, FileType, ImageReader, Inode
from .node import ErofsNode, ExtractError, ExtractResult
from .utils import file_exists, mkdirs

EFSCORRUPTED = getattr(errno, "EUCLEAN", errno.EIO)

_COMPRESSED = (DataLayout.COMPRESSED_FULL, DataLayout.COMPRESSED_COMPACT)
_UNCOMPRESSED = (DataLayout.FLAT_PLAIN, DataLayout.FLAT_INLINE, DataLayout.CHUNK_BASED)
_SPECIAL = (FileType.CHRDEV, FileType.BLKDEV, FileType.FIFO, FileType.SOCK)


def _current_umask() -> int:
    old = os.umask(0)
    os.umask(old)
    return old


def _is_superuser() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


@dataclass
class ExtractOptions:
    """How entries are written out."""

    overwrite: bool = False
    check_decomp: bool = False
    superuser: bool = field(default_factory=_is_superuser)
    preserve_owner: bool | None = None
    preserve_perms: bool | None = None
    umask: int = field(default_factory=_current_umask)
    console: Console = field(default_factory=Console)

    def __post_init__(self) -> None:
        if self.preserve_owner is None:
            self.preserve_owner = self.superuser
        if self.preserve_perms is None:
            self.preserve_perms = self.superuser


class FileSkipped(ExtractError):
    """The target already exists and overwriting is off."""

    def __init__(self, path: str) -> None:
        super().__init__(ExtractResult.FAIL_SKIP, f"already exists: {path}")
        self.path = path


def _corrupted(message: str) -> OSError:
    return OSError(EFSCORRUPTED, message)


def _write(out: BinaryIO | None, data: bytes) -> None:
    if out is None:
        return
    try:
        out.write(data)
    except OSError as exc:
        raise OSError(errno.EIO, "I/O error while writing data") from exc


def copy_inode_data(reader: ImageReader, inode: Inode, out: BinaryIO | None,
                    options: ExtractOptions) -> None:
    """Walk an inode's extents, decoding and writing them to ``out`` when asked."""
    if inode.datalayout in _COMPRESSED:
        compressed = True
    elif inode.datalayout in _UNCOMPRESSED:
        compressed = False
    else:
        raise OSError(errno.EINVAL, f"unknown datalayout {inode.datalayout}")

    pos = 0
    while pos < inode.size:
        extent = reader.map_blocks(inode, pos)
        if not compressed and extent.llen != extent.plen:
            raise _corrupted(
                f"broken chunk length m_la {extent.logical} "
                f"m_llen {extent.llen} m_plen {extent.plen}"
            )
        llen = extent.llen
        if extent.logical + llen > inode.size:
            llen = inode.size - extent.logical
        if llen <= 0:
            raise _corrupted(f"empty extent at offset {pos} of nid {inode.nid}")
        pos += llen

        if not extent.mapped or not options.check_decomp:
            continue

        if extent.plen > PCLUSTER_MAX_SIZE:
            if compressed:
                raise _corrupted(
                    f"invalid pcluster size {extent.plen} @ offset "
                    f"{extent.logical} of nid {inode.nid}"
                )
            chunk = PCLUSTER_MAX_SIZE
        else:
            chunk = extent.plen

        if compressed:
            data = reader.read_extent(inode, dataclasses.replace(extent, llen=llen))
            _write(out, data)
            continue

        done = 0
        while done < llen:
            count = min(chunk, llen - done)
            _write(out, reader.read(inode, extent.logical + done, count))
            done += count


def extract_dir(path: str, options: ExtractOptions) -> None:
    """Create a directory (and its parents) with owner-only permissions."""
    for first_try in (True, False):
        try:
            mkdirs(path, 0o700)
            return
        except OSError as exc:
            if options.overwrite and first_try:
                if exc.errno == errno.EEXIST:
                    try:
                        is_dir = stat.S_ISDIR(os.lstat(path).st_mode)
                    except OSError:
                        is_dir = False
                    if is_dir:
                        os.chmod(path, 0o700)
                    else:
                        os.unlink(path)
                continue
            if exc.errno == errno.EEXIST:
                try:
                    is_dir = stat.S_ISDIR(os.lstat(path).st_mode)
                except OSError:
                    is_dir = False
                if not is_dir:
                    raise NotADirectoryError(errno.ENOTDIR, "not a directory", path) from exc
            raise


def extract_file(reader: ImageReader, inode: Inode, path: str,
                 options: ExtractOptions) -> None:
    """Write a regular file's data to ``path``."""
    flags = (os.O_WRONLY | os.O_CREAT | getattr(os, "O_NOFOLLOW", 0)
             | getattr(os, "O_BINARY", 0)
             | (os.O_TRUNC if options.overwrite else os.O_EXCL))
    for first_try in (True, False):
        try:
            fd = os.open(path, flags, 0o700)
            break
        except OSError as exc:
            if options.overwrite and first_try:
                if exc.errno == errno.EISDIR:
                    try:
                        os.rmdir(path)
                    except OSError as rm_exc:
                        raise IsADirectoryError(errno.EISDIR, "is a directory", path) from rm_exc
                elif exc.errno == errno.EACCES:
                    os.chmod(path, 0o700)
                continue
            if exc.errno == errno.EEXIST and not options.overwrite:
                raise FileSkipped(path) from exc
            raise
    with os.fdopen(fd, "wb") as out:
        copy_inode_data(reader, inode, out, options)


def extract_symlink(reader: ImageReader, inode: Inode, path: str,
                    options: ExtractOptions) -> None:
    """Create a symbolic link whose target is the inode's data."""
    raw = reader.read(inode, 0, inode.size)
    target = os.fsdecode(raw.split(b"\0", 1)[0])
    for first_try in (True, False):
        try:
            os.symlink(target, path)
            return
        except FileExistsError as exc:
            if options.overwrite and first_try:
                os.unlink(path)
                continue
            if not options.overwrite:
                raise FileSkipped(path) from exc
            raise


def extract_hardlink(reader: ImageReader, inode: Inode, src: str, target: str,
                     options: ExtractOptions) -> None:
    """Link ``target`` to ``src``, extracting ``src`` first if it is missing."""
    pending: BaseException | None = None
    if not file_exists(src):
        try:
            extract_file(reader, inode, src, options)
        except (OSError, ExtractError) as exc:
            pending = exc

    if not src.startswith(target):
        for first_try in (True, False):
            try:
                os.link(src, target)
                break
            except FileExistsError as exc:
                if options.overwrite and first_try:
                    os.unlink(target)
                    continue
                if not options.overwrite:
                    raise FileSkipped(target) from exc
                raise
    if pending is not None:
        raise pending


def extract_special(inode: Inode, path: str, options: ExtractOptions) -> None:
    """Create a device node, FIFO or socket."""
    if not hasattr(os, "mknod"):
        raise OSError(errno.ENOSYS, "special files are not supported here", path)
    for first_try in (True, False):
        try:
            os.mknod(path, inode.mode, inode.rdev)
            return
        except OSError as exc:
            if exc.errno == errno.EEXIST and options.overwrite and first_try:
                os.unlink(path)
                continue
            if exc.errno == errno.EEXIST or options.superuser:
                raise
            raise OSError(errno.ECANCELED, "special file skipped", path) from exc


def set_attributes(inode: Inode, path: str, options: ExtractOptions) -> None:
    """Apply times, permissions and (optionally) ownership; failures only warn."""
    ns = inode.mtime * 1_000_000_000 + inode.mtime_nsec
    try:
        if os.utime in os.supports_follow_symlinks:
            os.utime(path, ns=(ns, ns), follow_symlinks=False)
        else:
            os.utime(path, ns=(ns, ns))
    except OSError:
        options.console.warning(f"failed to set times: {path}")

    if not stat.S_ISLNK(inode.mode):
        mode = inode.mode if options.preserve_perms else inode.mode & ~options.umask
        try:
            os.chmod(path, stat.S_IMODE(mode))
        except OSError:
            options.console.warning(f"failed to set permissions: {path}")

    if options.preserve_owner:
        try:
            os.lchown(path, inode.uid, inode.gid)
        except (OSError, AttributeError):
            options.console.warning(f"failed to change ownership: {path}")


def write_node(reader: ImageReader, node: ErofsNode, out_dir: str,
               hardlinks: HardlinkTable, options: ExtractOptions) -> None:
    """Materialise one node below ``out_dir``; raises on failure."""
    path = out_dir + node.path
    inode = node.inode

    source = hardlinks.find(inode.nid)
    if source is not None:
        with hardlinks.lock:
            extract_hardlink(reader, inode, out_dir + source, path, options)
        return

    if node.type_id == FileType.DIR:
        extract_dir(path, options)
    elif node.type_id == FileType.REG_FILE:
        extract_file(reader, inode, path, options)
    elif node.type_id == FileType.SYMLINK:
        extract_symlink(reader, inode, path, options)
    elif node.type_id in _SPECIAL:
        extract_special(inode, path, options)
    set_attributes(inode, path, options)