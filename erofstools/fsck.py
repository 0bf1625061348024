"""Checking an image's consistency, optionally extracting it while doing so."""

from __future__ import annotations

import dataclasses
import errno
import math
import os
import stat
from typing import BinaryIO

from .console import Console
from .extract_ops import ExtractOptions, set_attributes
from .fsck_options import FsckConfig
from .layout import PATH_MAX, PCLUSTER_MAX_SIZE, DataLayout, ImageReader, crc32c

EFSCORRUPTED = getattr(errno, "EUCLEAN", errno.EIO)

EROFS_SUPER_OFFSET = 1024
XATTR_IBODY_HEADER_SIZE = 12
XATTR_ENTRY_SIZE = 4
_SHARED_COUNT_OFFSET = 4
_CHECKSUM_OFFSET = 4

_COMPRESSED = (DataLayout.COMPRESSED_FULL, DataLayout.COMPRESSED_COMPACT)
_UNCOMPRESSED = (DataLayout.FLAT_PLAIN, DataLayout.FLAT_INLINE, DataLayout.CHUNK_BASED)
_SPECIAL_FORMATS = (stat.S_IFCHR, stat.S_IFBLK, stat.S_IFIFO, stat.S_IFSOCK)


def xattr_entry_size(name_len: int, value_size: int) -> int:
    """On-disk size of an inline xattr entry, aligned to 4 bytes."""
    return (XATTR_ENTRY_SIZE + name_len + value_size + 3) & ~3


def _corrupted(message: str) -> OSError:
    return OSError(EFSCORRUPTED, message)


class FsckChecker:
    """Walks an image from its root, verifying metadata and data of every inode."""

    def __init__(self, reader: ImageReader, config: FsckConfig,
                 device: BinaryIO | None = None, console: Console | None = None) -> None:
        self.reader = reader
        self.superblock = reader.superblock
        self.config = config
        self.device = device
        self.console = console if console is not None else Console(tag="fsck.erofs", color=False)
        self.options = ExtractOptions(
            overwrite=config.overwrite,
            check_decomp=config.check_decomp,
            superuser=config.superuser,
            preserve_owner=config.preserve_owner,
            preserve_perms=config.preserve_perms,
            umask=config.umask,
            console=self.console,
        )
        self.corrupted = False
        self.physical_blocks = 0
        self.logical_blocks = 0
        self.hardlinks: dict[int, str] = {}
        self._path: str | None = config.extract_path
        self._pos: int = config.extract_pos

    # raw device access -------------------------------------------------

    def _read_raw(self, addr: int, size: int) -> bytes:
        if self.device is None:
            raise OSError(errno.EIO, "no device to read from")
        self.device.seek(self.config.offset + addr)
        data = self.device.read(size)
        if len(data) < size:
            raise OSError(errno.EIO, f"short read of {size} bytes at {addr}")
        return data

    # superblock --------------------------------------------------------

    def check_superblock_checksum(self, block: bytes) -> bool:
        """Compare the stored superblock checksum with one computed over ``block``."""
        block_size = self.superblock.block_size()
        if len(block) < block_size:
            raise OSError(errno.EIO, "superblock block is truncated")
        data = bytearray(block[EROFS_SUPER_OFFSET:block_size])
        data[_CHECKSUM_OFFSET:_CHECKSUM_OFFSET + 4] = bytes(4)
        crc = crc32c(0xFFFFFFFF, bytes(data))
        saved = self.superblock.checksum
        if crc != saved:
            self.console.error(
                f"superblock chksum doesn't match: saved({saved:08x}h) "
                f"calculated({crc:08x}h)"
            )
            self.corrupted = True
            return False
        return True

    # xattrs ------------------------------------------------------------

    def verify_xattr(self, inode) -> None:
        """Check that the inline xattr area is well formed; raises on corruption."""
        sb = self.superblock
        isize = inode.xattr_isize
        if isize == XATTR_IBODY_HEADER_SIZE:
            self.console.error(f"xattr_isize {isize} of nid {inode.nid} is not supported yet")
            raise _corrupted(f"unsupported xattr_isize {isize} of nid {inode.nid}")
        if isize < XATTR_IBODY_HEADER_SIZE:
            if isize:
                self.console.error(f"bogus xattr ibody @ nid {inode.nid}")
                raise _corrupted(f"bogus xattr ibody @ nid {inode.nid}")
            return

        addr = sb.inode_location(inode.nid) + inode.inode_isize
        try:
            header = self._read_raw(addr, XATTR_IBODY_HEADER_SIZE)
        except OSError as exc:
            self.console.error(f"failed to read xattr header @ nid {inode.nid}: {exc}")
            raise
        shared_count = header[_SHARED_COUNT_OFFSET]

        block_size = sb.block_size()
        ofs = sb.block_offset(addr) + XATTR_IBODY_HEADER_SIZE
        addr += XATTR_IBODY_HEADER_SIZE
        remaining = isize - XATTR_IBODY_HEADER_SIZE
        for _ in range(shared_count):
            if ofs >= block_size:
                if ofs != block_size:
                    self.console.error(
                        f"unaligned xattr entry in xattr shared area @ nid {inode.nid}")
                    raise _corrupted(f"unaligned shared xattr @ nid {inode.nid}")
                ofs = 0
            ofs += XATTR_ENTRY_SIZE
            addr += XATTR_ENTRY_SIZE
            remaining -= XATTR_ENTRY_SIZE

        while remaining > 0:
            try:
                raw = self._read_raw(addr, XATTR_ENTRY_SIZE)
            except OSError as exc:
                self.console.error(f"failed to read xattr entry @ nid {inode.nid}: {exc}")
                raise
            size = xattr_entry_size(raw[0], int.from_bytes(raw[2:4], "little"))
            if remaining < size:
                self.console.error(
                    "xattr on-disk corruption: xattr entry beyond xattr_isize "
                    f"@ nid {inode.nid}")
                raise _corrupted(f"xattr entry beyond xattr_isize @ nid {inode.nid}")
            addr += size
            remaining -= size

    # data --------------------------------------------------------------

    def _write(self, inode, out: BinaryIO | None, data: bytes) -> None:
        if out is None:
            return
        try:
            out.write(data)
        except OSError as exc:
            self.console.error(
                f"I/O error occurred when verifying data chunk @ nid {inode.nid}")
            raise OSError(errno.EIO, "I/O error while writing data") from exc

    def verify_inode_data(self, inode, out: BinaryIO | None) -> None:
        """Walk the inode's extents; decode them and write to ``out`` when extracting."""
        self.console.debug(f"verify data chunk of nid({inode.nid}): type({inode.datalayout})")
        if inode.datalayout in _COMPRESSED:
            compressed = True
        elif inode.datalayout in _UNCOMPRESSED:
            compressed = False
        else:
            self.console.error("unknown datalayout")
            raise OSError(errno.EINVAL, f"unknown datalayout {inode.datalayout}")

        pos = 0
        pchunk_len = 0
        while pos < inode.size:
            extent = self.reader.map_blocks(inode, pos)
            if not compressed and extent.llen != extent.plen:
                self.console.error(
                    f"broken chunk length m_la {extent.logical} m_llen {extent.llen} "
                    f"m_plen {extent.plen}")
                raise _corrupted("broken chunk length")
            llen = extent.llen
            if extent.logical + llen > inode.size:
                llen = inode.size - extent.logical
            if llen <= 0:
                raise _corrupted(f"empty extent at offset {pos} of nid {inode.nid}")
            pchunk_len += extent.plen
            pos += llen

            if extent.logical >= inode.size or not self.config.check_decomp:
                continue

            if out is not None and not extent.mapped:
                out.seek(llen, os.SEEK_CUR)
                continue

            if extent.plen > PCLUSTER_MAX_SIZE:
                if compressed:
                    self.console.error(
                        f"invalid pcluster size {extent.plen} @ offset {extent.logical} "
                        f"of nid {inode.nid}")
                    raise _corrupted("invalid pcluster size")
                chunk = PCLUSTER_MAX_SIZE
            else:
                chunk = extent.plen

            if compressed:
                data = self.reader.read_extent(inode, dataclasses.replace(extent, llen=llen))
                self._write(inode, out, data)
                continue

            done = 0
            while done < llen:
                count = min(chunk, llen - done)
                self._write(inode, out, self.reader.read(inode, extent.logical + done, count))
                done += count

        if self.config.print_comp_ratio:
            if not self.superblock.is_packed(inode):
                self.logical_blocks += self.superblock.round_up_blocks(inode.size)
            self.physical_blocks += self.superblock.round_up_blocks(pchunk_len)

    # extraction --------------------------------------------------------

    def _extract_dir(self, inode, path: str) -> None:
        self.console.debug(f"create directory {path}")
        self.verify_inode_data(inode, None)
        try:
            os.mkdir(path, 0o700)
        except FileExistsError:
            try:
                is_dir = stat.S_ISDIR(os.lstat(path).st_mode)
            except OSError:
                is_dir = False
            if not is_dir:
                self.console.error(f"path is not a directory: {path}")
                raise NotADirectoryError(errno.ENOTDIR, "not a directory", path) from None
            try:
                os.chmod(path, 0o700)
            except OSError as exc:
                self.console.error(f"failed to set permissions: {path} ({exc.strerror})")
                raise
        except OSError as exc:
            self.console.error(f"failed to create directory: {path} ({exc.strerror})")
            raise

    def _extract_file(self, inode, path: str) -> None:
        self.console.debug(f"extract file to path: {path}")
        overwrite = self.config.overwrite
        flags = (os.O_WRONLY | os.O_CREAT | getattr(os, "O_NOFOLLOW", 0)
                 | getattr(os, "O_BINARY", 0) | (os.O_TRUNC if overwrite else os.O_EXCL))
        for first_try in (True, False):
            try:
                fd = os.open(path, flags, 0o700)
                break
            except OSError as exc:
                if overwrite and first_try:
                    if exc.errno == errno.EISDIR:
                        self.console.warning(f"try to forcely remove directory {path}")
                        try:
                            os.rmdir(path)
                        except OSError as rm_exc:
                            self.console.error(f"failed to remove: {path} ({rm_exc.strerror})")
                            raise IsADirectoryError(errno.EISDIR, "is a directory", path) from rm_exc
                    elif exc.errno == errno.EACCES:
                        try:
                            os.chmod(path, 0o700)
                        except OSError as ch_exc:
                            self.console.error(
                                f"failed to set permissions: {path} ({ch_exc.strerror})")
                            raise
                    continue
                self.console.error(f"failed to open: {path} ({exc.strerror})")
                raise
        with os.fdopen(fd, "wb") as out:
            self.verify_inode_data(inode, out)

    def _extract_symlink(self, inode, path: str) -> None:
        self.console.debug(f"extract symlink to path: {path}")
        self.verify_inode_data(inode, None)
        try:
            raw = self.reader.read(inode, 0, inode.size)
        except OSError as exc:
            self.console.error(
                f"I/O error occurred when reading symlink @ nid {inode.nid}: {exc}")
            raise
        target = os.fsdecode(raw.split(b"\0", 1)[0])
        for first_try in (True, False):
            try:
                os.symlink(target, path)
                return
            except OSError as exc:
                if exc.errno == errno.EEXIST and self.config.overwrite and first_try:
                    self.console.warning(f"try to forcely remove file {path}")
                    try:
                        os.unlink(path)
                    except OSError:
                        self.console.error(f"failed to remove: {path}")
                        raise
                    continue
                self.console.error(f"failed to create symlink: {path}")
                raise

    def _extract_special(self, inode, path: str) -> bool:
        """Create a special file; returns True when it was skipped."""
        self.console.debug(f"extract special to path: {path}")
        self.verify_inode_data(inode, None)
        for first_try in (True, False):
            try:
                if not hasattr(os, "mknod"):
                    raise OSError(errno.ENOSYS, "special files are not supported here", path)
                os.mknod(path, inode.mode, inode.rdev)
                return False
            except OSError as exc:
                if exc.errno == errno.EEXIST and self.config.overwrite and first_try:
                    self.console.warning(f"try to forcely remove file {path}")
                    try:
                        os.unlink(path)
                    except OSError:
                        self.console.error(f"failed to remove: {path}")
                        raise
                    continue
                if exc.errno == errno.EEXIST or self.config.superuser:
                    self.console.error(f"failed to create special file: {path}")
                    raise
                self.console.warning(f"failed to create special file: {path}, skipped")
                return True
        return False

    def _extract_inode(self, inode) -> bool:
        """Verify or extract one inode; returns True when a special file was skipped."""
        path = self._path
        if path is None:
            self.verify_inode_data(inode, None)
            return False

        old = self.hardlinks.get(inode.nid)
        if old is not None:
            try:
                os.link(old, path)
            except OSError as exc:
                self.console.error(f"failed to extract hard link: {path} ({exc.strerror})")
                raise
            return False

        fmt = stat.S_IFMT(inode.mode)
        cancelled = False
        if fmt == stat.S_IFDIR:
            self._extract_dir(inode, path)
        elif fmt == stat.S_IFREG:
            if self.superblock.is_packed(inode):
                self.verify_inode_data(inode, None)
                return False
            self._extract_file(inode, path)
        elif fmt == stat.S_IFLNK:
            self._extract_symlink(inode, path)
        elif fmt in _SPECIAL_FORMATS:
            cancelled = self._extract_special(inode, path)
        else:
            self.verify_inode_data(inode, None)
            return False

        if inode.nlink > 1 and fmt != stat.S_IFDIR:
            self.hardlinks[inode.nid] = path
        return cancelled

    # walking -----------------------------------------------------------

    def _check_entry(self, pnid: int, entry) -> None:
        prev_path, prev_pos = self._path, self._pos
        name = entry.name
        if prev_pos + len(name) >= PATH_MAX:
            self.console.error(
                f"unable to fsck since the path is too long ({prev_pos + len(name)})")
            raise OSError(errno.EOPNOTSUPP, "path too long")
        if prev_path is not None:
            self._path = prev_path[:prev_pos] + "/" + name
            self._pos = len(self._path)
        else:
            self._pos = prev_pos + len(name)
        try:
            self.check_inode(pnid, entry.nid)
        finally:
            self._path, self._pos = prev_path, prev_pos

    def check_inode(self, pnid: int, nid: int) -> None:
        """Check one inode and, for a directory, everything below it."""
        self.console.debug(f"check inode: nid({nid})")
        try:
            try:
                inode = self.reader.read_inode(nid)
            except OSError as exc:
                if exc.errno == errno.EIO:
                    self.console.error(f"I/O error occurred when reading nid({nid})")
                raise
            self.verify_xattr(inode)
            cancelled = self._extract_inode(inode)
            if stat.S_ISDIR(inode.mode):
                for entry in self.reader.iterate_dir(inode):
                    if entry.dot_dotdot:
                        continue
                    self._check_entry(nid, entry)
            if (not cancelled and self._path is not None
                    and not self.superblock.is_packed(inode)):
                set_attributes(inode, self._path, self.options)
        except OSError as exc:
            if exc.errno != errno.EIO:
                self.corrupted = True
            raise

    def run(self) -> None:
        """Check the whole image; raises OSError when it is corrupted or unreadable."""
        sb = self.superblock
        if sb.has_sb_chksum():
            try:
                block = self._read_raw(0, sb.block_size())
            except OSError as exc:
                self.console.error(f"failed to read superblock to check checksum: {exc}")
                raise
            if not self.check_superblock_checksum(block):
                self.console.error("failed to verify superblock checksum")
                raise _corrupted("superblock checksum mismatch")

        if sb.has_fragments() and sb.packed_nid > 0:
            try:
                self.check_inode(sb.packed_nid, sb.packed_nid)
            except OSError:
                self.console.error("failed to verify packed file")
                raise

        failure: OSError | None = None
        try:
            self.check_inode(sb.root_nid, sb.root_nid)
        except OSError as exc:
            failure = exc

        extracting = self.config.extract_path is not None
        if self.corrupted:
            if extracting:
                self.console.error("Failed to extract filesystem")
            else:
                self.console.error("Found some filesystem corruption")
            raise _corrupted("filesystem is corrupted") from failure
        if failure is not None:
            raise failure

        if extracting:
            self.console.info("Extracted filesystem successfully")
        else:
            self.console.info("No errors found")
        if self.config.print_comp_ratio:
            self.console.info(f"Compression ratio: {self.compression_ratio():.2f}(%)")

    def compression_ratio(self) -> float:
        """Physical blocks as a percentage of logical blocks."""
        if self.logical_blocks == 0:
            return math.inf if self.physical_blocks else math.nan
        return self.physical_blocks * 100 / self.logical_blocks