"""Extraction session: output layout, config files and writing the nodes out."""

from __future__ import annotations

import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from .console import Console, Style, paint
from .extract_ops import ExtractOptions, write_node
from .hardlinks import HardlinkTable
from .layout import PATH_MAX, FileType, ImageReader, SuperBlock
from .node import OTHER_PATHS_IN_ROOT_DIR, ErofsNode, ExtractError, ExtractResult
from .utils import dir_exists, mkdirs, trim, windows_path

_ON_WINDOWS = os.name == "nt"
_CONFIG_FILES = "fs_config|file_contexts|fs_options"


def _default_concurrency() -> int:
    return os.cpu_count() or 1


@dataclass
class ExtractOperation:
    """Settings and state of one extraction run."""

    console: Console = field(default_factory=Console)
    options: ExtractOptions = field(default_factory=ExtractOptions)
    hardlinks: HardlinkTable = field(default_factory=HardlinkTable)
    img_path: str = ""
    img_base_name: str = ""
    out_dir: str = ""
    config_dir: str = ""
    nodes: list[ErofsNode] = field(default_factory=list)
    node_dirs: list[ErofsNode] = field(default_factory=list)
    node_other: list[ErofsNode] = field(default_factory=list)
    exception_count: int = 0
    is_print_all_node: bool = False
    is_print_target: bool = False
    is_extract_all_node: bool = False
    is_extract_target: bool = False
    is_extract_target_config: bool = False
    target_config_recurse: bool = False
    use_multi_thread: bool = False
    thread_num: int = 0
    hardware_concurrency: int = field(default_factory=_default_concurrency)
    limit_hardware_concurrency: int = 0
    target_path: str = ""
    target_config_path: str = ""
    extract_only_config: bool = False
    silent: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.limit_hardware_concurrency:
            self.limit_hardware_concurrency = self.hardware_concurrency * 2

    def set_image_path(self, path: str) -> None:
        """Remember the image path and derive its base name (up to the first dot)."""
        self.img_path = trim(path)
        if _ON_WINDOWS:
            self.img_path = windows_path(self.img_path)
        self.console.debug(f"config: imagePath={self.img_path}")
        base = path
        if self.img_path:
            slash = self.img_path.rfind("/")
            if slash >= 0:
                base = self.img_path[slash + 1:]
            dot = base.find(".")
            if dot >= 0:
                base = base[:dot]
            self.console.debug(f"config: imgBaseName={base}")
        self.img_base_name = base

    def init_out_dir(self) -> None:
        """Work out the output and config directories; refuses the filesystem root."""
        out = trim(self.out_dir)
        if not out:
            self.config_dir = "./config"
            out = "./" + self.img_base_name
        else:
            if len(out) > 1 and out[-1] in "/\\":
                out = out[:-1]
            if len(out) >= PATH_MAX:
                self.console.error("outDir directory name too long!")
                raise ExtractError(ExtractResult.OUTDIR_ROOT, "output directory name too long")
            if not _ON_WINDOWS and all(char == "/" for char in out):
                self.console.error(f"Not allow extracting to root: '{out}'")
                raise ExtractError(ExtractResult.OUTDIR_ROOT, f"refusing to extract to {out}")
            self.config_dir = out + "/config"
            out = out + "/" + self.img_base_name
        if _ON_WINDOWS:
            out = windows_path(out)
        self.out_dir = out

    def _create_dir(self, path: str, what: str) -> None:
        if dir_exists(path):
            return
        try:
            mkdirs(path, 0o700)
        except OSError as exc:
            self.console.error(f"create {what} dir fail: '{path}'")
            raise ExtractError(ExtractResult.CREATE_DIR_FAIL, str(exc)) from exc

    def create_out_dir(self) -> None:
        self._create_dir(self.out_dir, "out")

    def create_config_dir(self) -> None:
        self._create_dir(self.config_dir, "config")

    def classify_nodes(self) -> None:
        """Split nodes into directories and the rest, recording hard-link sources."""
        for node in self.nodes:
            if node.type_id == FileType.DIR:
                self.node_dirs.append(node)
                continue
            if node.nlink > 1 and self.hardlinks.find(node.nid) is None:
                self.hardlinks.insert(node.nid, node.path)
            self.node_other.append(node)
        self.console.debug("erofsNodeClassification done")

    def describe_nodes(self) -> list[str]:
        """One descriptive line per collected node."""
        return [
            f"type={node.type_name()} dataLayout={node.layout_name()} "
            f"fsConfig=[{node.fs_config}] seLabel=[{node.selinux_label}]"
            for node in self.nodes
        ]

    def _fs_options_text(self, sb: SuperBlock, fs_config_path: str, contexts_path: str) -> str:
        uuid_text = str(uuid.UUID(bytes=bytes(sb.uuid)))
        base = self.img_base_name
        return (
            f"Filesystem created:        {time.ctime(sb.build_time)}\n"
            f"Filesystem UUID:           {uuid_text}\n"
            f"mkfs.erofs options:        -zlz4hc,1 -T {sb.build_time} -U {uuid_text} "
            f"--mount-point=/{base} --fs-config-file={fs_config_path} "
            f"--file-contexts={contexts_path} {base}_repack.img {self.out_dir}"
        )

    def write_configs(self, sb: SuperBlock) -> bool:
        """Write fs_config, file_contexts and (for full runs) fs_options files."""
        base = self.img_base_name
        fs_config_path = f"{self.config_dir}/{base}_fs_config"
        contexts_path = f"{self.config_dir}/{base}_file_contexts"
        options_path = f"{self.config_dir}/{base}_fs_options"
        self.console.info(paint(_CONFIG_FILES, Style.BROWN) + "  " + paint("saving...", Style.GREEN2_BOLD))
        opts = {"encoding": "utf-8", "errors": "surrogateescape", "newline": "\n"}
        try:
            with open(fs_config_path, "w", **opts) as fs_config, \
                    open(contexts_path, "w", **opts) as contexts:
                for node in self.nodes:
                    if node.path in OTHER_PATHS_IN_ROOT_DIR:
                        continue
                    fs_config.writelines(line + "\n" for line in node.fs_config_lines(base))
                    if node.selinux_label:
                        contexts.writelines(line + "\n" for line in node.selinux_label_lines(base))
        except OSError:
            self.console.error(paint(_CONFIG_FILES, Style.BROWN) + "  " + paint("fail!", Style.RED2_BOLD))
            return False

        if not self.is_extract_target_config:
            try:
                with open(options_path, "w", **opts) as fs_options:
                    fs_options.write(self._fs_options_text(sb, fs_config_path, contexts_path))
            except OSError:
                pass
        self.console.info(paint(_CONFIG_FILES, Style.BROWN) + "  " + paint("done.", Style.GREEN2_BOLD))
        return True

    def write_exception_log(self) -> str | None:
        """Save the failures of this run to exception.log; returns its path if written."""
        if self.exception_count <= 0:
            return None
        path = f"{self.config_dir}/exception.log"
        with open(path, "w", encoding="utf-8", errors="surrogateescape") as log:
            log.writelines(f"{node.exception_info}\n" for node in self.nodes if node.exception_info)
        self.console.error(paint("An exception occurred while fetching, the info has been saved!", Style.RED2))
        return path

    def _extract_node(self, reader: ImageReader, node: ErofsNode) -> None:
        try:
            write_node(reader, node, self.out_dir, self.hardlinks, self.options)
        except (OSError, ExtractError) as exc:
            if node.record_error(exc):
                with self._lock:
                    self.exception_count += 1

    def _print_progress(self, total: int, index: int, every: int, newline: bool) -> None:
        if index % every != 0 and index != total:
            return
        percent = index / total * 100.0
        stream = self.console.stream
        stream.write(
            paint("Extract: ", Style.BROWN2_BOLD) + paint("[ ", Style.GREEN2_BOLD)
            + paint(f"{percent:.2f}%", Style.RED2) + paint(" ]", Style.GREEN2_BOLD) + "\r"
        )
        stream.flush()
        if newline and percent == 100.0:
            stream.write("\n")

    def _extract_dirs(self, reader: ImageReader) -> None:
        self.classify_nodes()
        for node in self.node_dirs:
            self._extract_node(reader, node)

    def extract(self, reader: ImageReader, silent: bool) -> None:
        """Write every node out, directories first, one at a time."""
        self._extract_dirs(reader)
        total = len(self.node_other)
        for index, node in enumerate(self.node_other, 1):
            self._extract_node(reader, node)
            if not silent:
                self._print_progress(total, index, 2, True)
        self.write_exception_log()

    def extract_parallel(self, reader: ImageReader, silent: bool) -> None:
        """Write directories first, then the other nodes on a thread pool."""
        self._extract_dirs(reader)
        workers = self.thread_num or self.hardware_concurrency
        self.console.info(
            paint("Use ", Style.GREEN2_BOLD) + paint(str(workers), Style.RED2)
            + paint(" threads", Style.GREEN2_BOLD)
        )
        total = len(self.node_other)
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = [pool.submit(self._extract_node, reader, node) for node in self.node_other]
            for done, _ in enumerate(as_completed(futures), 1):
                if not silent:
                    self._print_progress(total, done, 1, False)
        if not silent:
            self._print_progress(1, 1, 1, True)
        self.write_exception_log()