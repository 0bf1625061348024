"""Walking an image and collecting the entries selected for printing or extraction."""

from __future__ import annotations

import errno
import os
import stat

from .console import Console
from .layout import PATH_MAX, FileType, ImageReader, Inode, SuperBlock, mode_to_ftype
from .node import ErofsNode, ExtractError, ExtractResult, parse_capability_xattr
from .utils import parent_dir

SELINUX_XATTR = "security.selinux"
CAPABILITY_XATTR = "security.capability"
_XATTR_BUFFER_SIZE = 128


def read_target_config(path: str | os.PathLike) -> list[str]:
    """Whitespace-separated paths listed in a target config file."""
    with open(path, "rb") as handle:
        content = handle.read()
    return [os.fsdecode(token) for token in content.split()]


def _read_xattr(reader: ImageReader, inode: Inode, name: str) -> bytes | None:
    try:
        value = reader.getxattr(inode, name)
    except OSError:
        return None
    if not value or len(value) > _XATTR_BUFFER_SIZE:
        return None
    return value


def _init_security_context(reader: ImageReader, node: ErofsNode, inode: Inode) -> None:
    label = _read_xattr(reader, inode, SELINUX_XATTR)
    if label is not None:
        node.selinux_label = os.fsdecode(label.split(b"\0", 1)[0])

    capability = _read_xattr(reader, inode, CAPABILITY_XATTR)
    if capability is not None:
        node.add_capabilities(parse_capability_xattr(capability))


def make_node(reader: ImageReader, sb: SuperBlock, inode: Inode, path: str) -> ErofsNode | None:
    """Build the node for an inode, or None for the packed inode and unknown types."""
    if stat.S_ISREG(inode.mode) and sb.is_packed(inode):
        return None
    ftype = mode_to_ftype(inode.mode)
    if ftype == FileType.UNKNOWN:
        return None
    node = ErofsNode(path, ftype, inode)
    _init_security_context(reader, node, inode)
    return node


class NodeCollector:
    """Gathers ErofsNode records from an image in directory-walk order."""

    def __init__(self, reader: ImageReader, console: Console | None = None) -> None:
        self.reader = reader
        self.superblock = reader.superblock
        self.console = console if console is not None else Console()
        self.nodes: list[ErofsNode] = []

    def _add(self, inode: Inode, path: str) -> None:
        node = make_node(self.reader, self.superblock, inode, path)
        if node is None:
            return
        self.nodes.append(node)
        self.console.debug(
            f"type={node.type_name()} dataLayout={node.layout_name()} "
            f"{node.fs_config} {node.selinux_label}"
        )

    def _walk(self, nid: int, path: str, prefix: str) -> None:
        inode = self.reader.read_inode(nid)
        self._add(inode, path)
        if not stat.S_ISDIR(inode.mode):
            return
        for entry in self.reader.iterate_dir(inode):
            if entry.dot_dotdot:
                continue
            if len(prefix) + len(entry.name) >= PATH_MAX:
                raise OSError(errno.EOPNOTSUPP, f"path too long below {path}")
            child = f"{prefix}/{entry.name}"
            self._walk(entry.nid, child, child)

    def collect_all(self) -> None:
        """Collect every entry of the image, starting from the root."""
        try:
            self._walk(self.superblock.root_nid, "/", "")
        except OSError as exc:
            self.console.error("failed to initialize ErofsNode!")
            raise ExtractError(ExtractResult.INIT_NODE_FAIL, str(exc)) from exc

    def collect_path(self, path: str, recursive: bool) -> None:
        """Collect one path, and everything below it when ``recursive``."""
        try:
            inode = self.reader.lookup(path)
        except OSError as exc:
            self.console.error(f"path not found: '{path}'")
            raise ExtractError(ExtractResult.INIT_NODE_FAIL, f"path not found: {path}") from exc
        try:
            pathname = self.reader.pathname(inode.nid)
        except OSError as exc:
            raise ExtractError(ExtractResult.INIT_NODE_FAIL, str(exc)) from exc

        if not recursive:
            self._add(inode, pathname)
            return
        try:
            self._walk(inode.nid, pathname, "" if pathname == "/" else pathname)
        except OSError as exc:
            self.console.error(f"failed to initialize ErofsNode, path: '{path}'")
            raise ExtractError(ExtractResult.INIT_NODE_FAIL, str(exc)) from exc

    def collect_target(self, target: str) -> None:
        """Collect a target path and everything below it."""
        if not target:
            raise ExtractError(ExtractResult.INIT_NODE_FAIL, "empty target path")
        try:
            self.collect_path(target, True)
        except ExtractError:
            self.console.error(f"failed to initialize ErofsNode, path: '{target}'")
            raise

    def collect_from_config(self, config_path: str | os.PathLike, recursive: bool = False) -> int:
        """Collect the paths listed in a config file; returns how many were found."""
        try:
            lines = read_target_config(config_path)
        except OSError:
            lines = []
        if not lines:
            self.console.error(f"target config error: '{os.fspath(config_path)}'")
            raise ExtractError(ExtractResult.INIT_NODE_FAIL, "target config error")

        parents = dict.fromkeys(p for p in (parent_dir(line) for line in lines) if p)
        for directory in parents:
            try:
                self.collect_path(directory, False)
            except ExtractError:
                pass

        found = 0
        for line in lines:
            if line == "/":
                continue
            try:
                self.collect_path(line, recursive)
            except ExtractError:
                continue
            found += 1

        if not found:
            raise ExtractError(ExtractResult.INIT_NODE_FAIL, "no target from config was found")
        return found