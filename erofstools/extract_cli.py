"""Command-line handling of the extraction tool."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

from .console import Style
from .fsck_options import UsageError, _getopt_long, _strtoull
from .node import ExtractError, ExtractResult
from .operation import ExtractOperation
from .utils import file_exists

EXTRACT_VERSION = "1.0.5"

_SHORT_OPTIONS = "hi:psxfrc:P:T:o:X:V"
_LONG_OPTIONS = {
    "help": "none",
    "version": "none",
    "image": "required",
    "offset": "required",
    "outdir": "required",
    "print": "required",
    "overwrite": "none",
    "extract": "required",
    "config": "required",
    "only-cfg": "none",
}
_LONG_TO_SHORT = {
    "--help": "-h",
    "--version": "-V",
    "--image": "-i",
    "--outdir": "-o",
    "--print": "-P",
    "--overwrite": "-f",
    "--extract": "-X",
    "--config": "-c",
}

_N = Style.NONE.value
_G = Style.GREEN2_BOLD.value
_B = Style.BROWN.value
_R = Style.RED2.value
_RB = Style.RED2_BOLD.value
_FLAG_WIDTH = 24


def _default_concurrency() -> int:
    return os.cpu_count() or 1


@dataclass
class ExtractArgs:
    """Options given on the command line of the extraction tool."""

    hardware_concurrency: int = field(default_factory=_default_concurrency)
    image_path: str | None = None
    out_dir: str | None = None
    offset: int | None = None
    print_all: bool = False
    print_target: bool = False
    target_path: str = ""
    overwrite: bool = False
    extract_all: bool = False
    extract_target: bool = False
    check_decomp: bool = False
    extract_target_config: bool = False
    target_config_path: str = ""
    config_recurse: bool = False
    silent: bool = False
    use_multi_thread: bool = False
    thread_num: int = 0
    only_config: bool = False
    show_help: bool = False
    show_version: bool = False

    @property
    def limit(self) -> int:
        """Largest thread count accepted by -T."""
        return self.hardware_concurrency * 2


def _option_line(flag: str, description: str) -> str:
    pad = " " * (_FLAG_WIDTH - len(flag))
    return f"  {_G}{flag}{_N}{pad}{_B}{description}{_N}\n"


def usage_text(limit: int, hardware_concurrency: int) -> str:
    """Coloured help text of the extraction tool."""
    pad_f = " " * (_FLAG_WIDTH - len("-f, --overwrite"))
    pad_t = " " * (_FLAG_WIDTH - len("-T#"))
    return (
        f"{_B}usage: [options]{_N}\n"
        + _option_line("-h, --help", "Display this help and exit")
        + _option_line("-i, --image=[FILE]", "Image file")
        + _option_line("--offset=#", "skip # bytes at the beginning of IMAGE")
        + _option_line("-p", "Print all entrys")
        + _option_line("-P, --print=X", "Print the target of path X")
        + _option_line("-x", "Extract all items")
        + _option_line("-X, --extract=X", "Extract the target of path X")
        + _option_line("-c, --config=[FILE]", "Target of config")
        + _option_line("-r", "When using config, recurse directories")
        + _option_line("-s", "Silent mode, Don't show progress")
        + f"  {_G}-f, --overwrite{_N}{pad_f}{_B}[{_G}default: skip{_N}{_B}] "
          f"overwrite files that already exist{_N}\n"
        + f"  {_G}-T#{_N}{pad_t}{_B}[{_G}1-{limit}{_N}{_B}] Use # threads, -T0: "
          f"{_G}{hardware_concurrency}{_N}{_N}\n"
        + _option_line("--only-cfg", "Only extract fs_config|file_contexts|fs_options")
        + _option_line("-o, --outdir=X", "Output dir")
        + _option_line("-V, --version", "Print the version info")
    )


def version_text(version: str, compressors: list[str]) -> str:
    """Coloured version information."""
    return (
        f"  {_B}erofs-utils:{_N}            {_RB}{version}{_N}\n"
        f"  {_B}extract.erofs:{_N}          {_RB}{EXTRACT_VERSION}{_N}\n"
        f"  {_B}Available compressors:{_N}  {_RB}{', '.join(compressors)}{_N}\n"
    )


def parse_args(argv: list[str] | None = None,
               hardware_concurrency: int | None = None) -> ExtractArgs:
    """Parse the tool's options; an invalid option raises ExtractError(CONFIG_FAIL).

    Processing stops at -h or -V. When no option is given at all the help is requested.
    Positional arguments are ignored.
    """
    if argv is None:
        argv = sys.argv[1:]
    if hardware_concurrency is None:
        hardware_concurrency = _default_concurrency()
    args = ExtractArgs(hardware_concurrency=hardware_concurrency)
    parsed_any = False
    try:
        for option, value in _getopt_long(list(argv), _SHORT_OPTIONS, _LONG_OPTIONS):
            if option is None:
                continue
            parsed_any = True
            option = _LONG_TO_SHORT.get(option, option)
            if option == "-h":
                args.show_help = True
                return args
            if option == "-V":
                args.show_version = True
                return args
            if option == "-i":
                args.image_path = value
            elif option == "-o":
                args.out_dir = value
            elif option == "-p":
                args.print_all = True
            elif option == "-P":
                args.print_target = True
                args.target_path = value
            elif option == "-f":
                args.overwrite = True
            elif option == "-x":
                args.check_decomp = True
                args.extract_all = True
            elif option == "-X":
                args.check_decomp = True
                args.extract_target = True
                args.target_path = value
            elif option == "-c":
                args.extract_target_config = True
                args.target_config_path = value
            elif option == "-s":
                args.silent = True
            elif option == "-r":
                args.config_recurse = True
            elif option == "-T":
                number = _strtoull(value)
                if number is not None:
                    args.use_multi_thread = True
                    args.thread_num = number & 0xFFFFFFFF
            elif option == "--only-cfg":
                args.only_config = True
            elif option == "--offset":
                number = _strtoull(value)
                if number is not None:
                    args.offset = number
    except UsageError as exc:
        raise ExtractError(ExtractResult.CONFIG_FAIL, str(exc)) from exc
    if not parsed_any:
        args.show_help = True
    return args


def check_args(args: ExtractArgs, operation: ExtractOperation) -> None:
    """Apply parsed options to an operation and validate them; raises ExtractError."""
    console = operation.console
    if args.image_path is not None:
        operation.set_image_path(args.image_path)
    if args.out_dir is not None:
        operation.out_dir = args.out_dir
    operation.is_print_all_node = args.print_all
    operation.is_print_target = args.print_target
    operation.is_extract_all_node = args.extract_all
    operation.is_extract_target = args.extract_target
    operation.is_extract_target_config = args.extract_target_config
    operation.target_path = args.target_path
    operation.target_config_path = args.target_config_path
    operation.target_config_recurse = args.config_recurse
    operation.silent = args.silent
    operation.use_multi_thread = args.use_multi_thread
    operation.thread_num = args.thread_num
    operation.extract_only_config = args.only_config
    operation.options.overwrite = args.overwrite
    operation.options.check_decomp = args.check_decomp
    operation.hardware_concurrency = args.hardware_concurrency
    operation.limit_hardware_concurrency = args.limit

    if not operation.img_path or not file_exists(operation.img_path):
        console.error(f"img file '{operation.img_path}' does not exist")
        raise ExtractError(ExtractResult.CONFIG_FAIL,
                           f"image file does not exist: {operation.img_path}")

    operation.init_out_dir()
    console.debug(f"outDir={operation.out_dir} confDir={operation.config_dir}")

    if operation.use_multi_thread:
        if operation.thread_num > operation.limit_hardware_concurrency:
            console.error(f"Threads min: 1 , max: {operation.limit_hardware_concurrency}")
            raise ExtractError(ExtractResult.THREAD_NUM_ERROR,
                               f"thread count {operation.thread_num} out of range")
        if operation.thread_num == 0:
            operation.thread_num = operation.hardware_concurrency
        console.debug(f"Threads num={operation.thread_num}")


def format_elapsed(seconds: float) -> str:
    """Message reporting how long the operation took."""
    return f"{_G}The operation took: {_N}{_R}{seconds:.3f}{_N}{_G} second(s).{_N}"