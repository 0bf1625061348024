# erofstools

Building blocks for working with EROFS filesystem images: the in-memory
view of the on-disk layout, a consistency checker that can also extract,
a layout dumper with file statistics, and an extractor that writes the
tree out together with `fs_config`, `file_contexts` and `fs_options`
files for repacking.

The package has no runtime dependencies beyond the standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## What is inside

| Module | Purpose |
| --- | --- |
| `erofstools.layout` | Layout types and helpers: `SuperBlock`, `Inode`, `DirEntry`, `Extent`, the enums `FileType`, `DataLayout`, `MapFlag`, `Feature`, the `ImageReader` protocol, and `crc32c`, `is_dot_dotdot`, `bitrange`, `mode_to_ftype`, `ftype_to_mode`, `occupied_size`. |
| `erofstools.fsck` | `FsckChecker`: superblock checksum, inline xattr and data verification, optional extraction, compression ratio. |
| `erofstools.fsck_options` | Option parsing and help text for the checker (`parse_args`, `usage_text`, `FsckConfig`, `UsageError`). |
| `erofstools.dump` | Dump options (`parse_args`, `DumpConfig`), `Statistics`, `collect_statistics` and the `format_*` reports for superblock, file info and size/type distributions. |
| `erofstools.tree` | `NodeCollector`: gathers nodes for the whole image, one path, or the paths listed in a target config file; `make_node`, `read_target_config`. |
| `erofstools.operation` | `ExtractOperation`: output and config directories, config files, exception log, serial and thread-pool extraction. |
| `erofstools.extract_ops` | Writing out directories, files, symlinks, hard links and special files (`ExtractOptions`, `write_node`, `set_attributes`, ...). |
| `erofstools.extract_cli` | Option parsing, validation and help/version text for the extractor (`parse_args`, `check_args`, `ExtractArgs`). |
| `erofstools.node` | `ErofsNode`, `ExtractResult`, `ExtractError`, capability xattr parsing and `escape_special_symbols`. |
| `erofstools.hardlinks` | `HardlinkTable` mapping inode numbers to their first extracted path. |
| `erofstools.console` | `Console` for tagged, optionally coloured messages; `paint` and `Style`. |
| `erofstools.utils` | Path and string helpers such as `mkdirs`, `trim` and `parent_dir`. |

## Reading an image

Everything that touches image contents goes through an object satisfying
the `erofstools.layout.ImageReader` protocol. It carries a `superblock`
attribute and provides `read_inode`, `lookup`, `iterate_dir`, `pathname`,
`read`, `map_blocks`, `map_device`, `read_extent`, `read_raw`, `getxattr`
and `listxattr`, raising `OSError` on failure. `FsckChecker`,
`NodeCollector`, `ExtractOperation.extract`, `collect_statistics` and
`format_fileinfo` all take such a reader.

## Examples

Checksums use CRC32C, as the superblock checksum does:

```python
from erofstools.layout import crc32c

value = crc32c(0xFFFFFFFF, b"some bytes")
```

Parsing checker options; bad combinations raise `UsageError`:

```python
from erofstools.fsck_options import UsageError, parse_args

try:
    config = parse_args(["--extract=out", "--overwrite", "image.erofs"],
                        superuser=False, umask=0o022)
except UsageError as exc:
    print(exc)
```

Parsing dump options; with nothing chosen, the superblock is shown:

```python
from erofstools.dump import parse_args

config = parse_args(["image.erofs"])
config.show_superblock   # True
```

Gathering statistics by hand and printing the report:

```python
import stat

from erofstools.dump import Statistics, format_statistics
from erofstools.layout import Inode

stats = Statistics()
stats.record_inode(Inode(nid=1, mode=stat.S_IFREG | 0o644, size=5000), "app.apk", 4096)
print(format_statistics(stats))
```

Keeping track of hard links during extraction:

```python
from erofstools.hardlinks import HardlinkTable

links = HardlinkTable()
links.insert(42, "/system/bin/app")
links.find(42)   # "/system/bin/app"
```

Escaping paths for a `file_contexts` file:

```python
from erofstools.node import escape_special_symbols

escape_special_symbols("/lost+found")   # "/lost\\+found"
```

## What this package does not do

- It contains no parser for image files. There is no class that opens an
  image on disk and implements `ImageReader`, and no decompressors; you
  supply the reader.
- It installs no commands. The option parsers and help texts for the
  checker, dumper and extractor are library functions; there is no
  `main` to run from a shell.
- It cannot create images or mount them.