"""Command-line options of the filesystem checker."""

from __future__ import annotations

import errno
import os
import re
import string
import sys
from dataclasses import dataclass, field
from typing import Iterator

from .layout import PATH_MAX

MSG_MIN = 0
MSG_MAX = 9
DEFAULT_DEBUG_LEVEL = 2
ULLONG_MAX = (1 << 64) - 1

_WHITESPACE = " \t\n\v\f\r"
_ATOI = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")

_SHORT_OPTIONS = "Vd:phaAy"
_LONG_OPTIONS = {
    "version": "none",
    "help": "none",
    "extract": "optional",
    "device": "required",
    "force": "none",
    "overwrite": "none",
    "preserve": "none",
    "preserve-owner": "none",
    "preserve-perms": "none",
    "no-preserve": "none",
    "no-preserve-owner": "none",
    "no-preserve-perms": "none",
    "offset": "required",
}


class UsageError(ValueError):
    """The command line is invalid; ``code`` is the matching errno value."""

    def __init__(self, message: str, code: int = errno.EINVAL) -> None:
        super().__init__(message)
        self.code = code


def _strtoull(text: str) -> int | None:
    """Parse an unsigned number with C base prefixes; None unless fully consumed."""
    if text == "":
        return 0
    body = text.lstrip(_WHITESPACE)
    negative = False
    if body[:1] in ("+", "-"):
        negative = body[0] == "-"
        body = body[1:]
    if body[:2] in ("0x", "0X") and body[2:3] and body[2] in string.hexdigits:
        digits, base, allowed = body[2:], 16, string.hexdigits
    elif body.startswith("0"):
        digits, base, allowed = body, 8, string.octdigits
    else:
        digits, base, allowed = body, 10, string.digits
    if not digits or any(char not in allowed for char in digits):
        return None
    value = int(digits, base)
    if value > ULLONG_MAX:
        return ULLONG_MAX
    return (-value) & ULLONG_MAX if negative else value


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def _getopt_long(argv: list[str], shortopts: str,
                 longopts: dict[str, str]) -> Iterator[tuple[str | None, str | None]]:
    """Yield (option, value) pairs in order; positional arguments come as (None, arg).

    ``longopts`` maps names to "none", "required" or "optional". Long options may be
    abbreviated to a unique prefix. Problems raise UsageError when reached.
    """
    short: dict[str, bool] = {}
    for pos, char in enumerate(shortopts):
        if char == ":":
            continue
        short[char] = shortopts[pos + 1:pos + 2] == ":"

    index = 0
    while index < len(argv):
        arg = argv[index]
        index += 1
        if arg == "--":
            for rest in argv[index:]:
                yield None, rest
            return
        if arg.startswith("--"):
            name, has_value, value = arg[2:].partition("=")
            if name in longopts:
                matches = [name]
            else:
                matches = [candidate for candidate in longopts if candidate.startswith(name)]
            if not matches:
                raise UsageError(f"unrecognized option '--{name}'")
            if len(matches) > 1:
                raise UsageError(f"option '--{name}' is ambiguous")
            name = matches[0]
            kind = longopts[name]
            if kind == "none":
                if has_value:
                    raise UsageError(f"option '--{name}' doesn't allow an argument")
                yield "--" + name, None
            elif kind == "required":
                if not has_value:
                    if index >= len(argv):
                        raise UsageError(f"option '--{name}' requires an argument")
                    value = argv[index]
                    index += 1
                yield "--" + name, value
            else:
                yield "--" + name, value if has_value else None
        elif arg.startswith("-") and arg != "-":
            pos = 1
            while pos < len(arg):
                char = arg[pos]
                pos += 1
                if char not in short:
                    raise UsageError(f"invalid option -- '{char}'")
                if not short[char]:
                    yield "-" + char, None
                    continue
                if pos < len(arg):
                    value = arg[pos:]
                elif index < len(argv):
                    value = argv[index]
                    index += 1
                else:
                    raise UsageError(f"option requires an argument -- '{char}'")
                yield "-" + char, value
                break
        else:
            yield None, arg


def _current_umask() -> int:
    old = os.umask(0)
    os.umask(old)
    return old


def _is_superuser() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


@dataclass
class FsckConfig:
    """Settings of one checker run."""

    image_path: str = ""
    extract_path: str | None = None
    extract_pos: int = 0
    umask: int = 0o022
    superuser: bool = False
    print_comp_ratio: bool = False
    check_decomp: bool = False
    force: bool = False
    overwrite: bool = False
    preserve_owner: bool = False
    preserve_perms: bool = False
    debug_level: int | None = None
    devices: list[str] = field(default_factory=list)
    offset: int = 0
    show_help: bool = False
    show_version: bool = False


def _set_extract_path(config: FsckConfig, value: str) -> None:
    if not value:
        raise UsageError("empty value given for --extract=X")
    length = len(value)
    while length > 1 and value[length - 1] == "/":
        length -= 1
    if length >= PATH_MAX:
        raise UsageError("target directory name too long!", errno.ENAMETOOLONG)
    config.extract_path = value[:length]
    config.extract_pos = 0 if config.extract_path == "/" else length


def parse_args(argv: list[str] | None = None, superuser: bool | None = None,
               umask: int | None = None) -> FsckConfig:
    """Parse the checker's command line; problems raise UsageError.

    Processing stops at -V or -h, which only set ``show_version``/``show_help``.
    """
    if argv is None:
        argv = sys.argv[1:]
    if superuser is None:
        superuser = _is_superuser()
    if umask is None:
        umask = _current_umask()
    config = FsckConfig(umask=umask, superuser=superuser,
                        preserve_owner=superuser, preserve_perms=superuser)
    has_preserve = False
    positionals: list[str] = []

    for option, value in _getopt_long(list(argv), _SHORT_OPTIONS, _LONG_OPTIONS):
        if option is None:
            positionals.append(value)
        elif option in ("-V", "--version"):
            config.show_version = True
            return config
        elif option in ("-h", "--help"):
            config.show_help = True
            return config
        elif option == "-d":
            level = _atoi(value)
            if level < MSG_MIN or level > MSG_MAX:
                raise UsageError(f"invalid debug level {level}")
            config.debug_level = level
        elif option == "-p":
            config.print_comp_ratio = True
        elif option in ("-a", "-A", "-y"):
            pass
        elif option == "--extract":
            config.check_decomp = True
            if value is not None:
                _set_extract_path(config, value)
        elif option == "--device":
            config.devices.append(value)
        elif option == "--force":
            config.force = True
        elif option == "--overwrite":
            config.overwrite = True
        elif option == "--offset":
            number = _strtoull(value)
            if number is None:
                raise UsageError(f"invalid disk offset {value}")
            config.offset = number
        else:
            has_preserve = True
            if option == "--preserve":
                config.preserve_owner = config.preserve_perms = True
            elif option == "--preserve-owner":
                config.preserve_owner = True
            elif option == "--preserve-perms":
                config.preserve_perms = True
            elif option == "--no-preserve":
                config.preserve_owner = config.preserve_perms = False
            elif option == "--no-preserve-owner":
                config.preserve_owner = False
            elif option == "--no-preserve-perms":
                config.preserve_perms = False

    if config.extract_path is not None:
        if not config.extract_pos and not config.force:
            raise UsageError("--extract=/ must be used together with --force")
    else:
        if config.force:
            raise UsageError("--force must be used together with --extract=X")
        if config.overwrite:
            raise UsageError("--overwrite must be used together with --extract=X")
        if has_preserve:
            raise UsageError(
                "--[no-]preserve[-owner/-perms] must be used together with --extract=X")

    if not positionals:
        raise UsageError("missing argument: IMAGE")
    if len(positionals) > 1:
        raise UsageError(f"unexpected argument: {positionals[1]}")
    config.image_path = positionals[0]
    return config


def usage_text(prog: str, decompressors: list[str]) -> str:
    """Help text of the checker."""
    algorithms = ", ".join(decompressors)
    return (
        f"Usage: {prog} [OPTIONS] IMAGE\n"
        "Check erofs filesystem compatibility and integrity of IMAGE.\n"
        "\n"
        "This version of fsck.erofs is capable of checking images that use any of the\n"
        f"following algorithms: {algorithms}\n"
        "\n"
        "General options:\n"
        " -V, --version          print the version number of fsck.erofs and exit\n"
        " -h, --help             display this help and exit\n"
        "\n"
        " -d<0-9>                set output verbosity; 0=quiet, 9=verbose "
        f"(default={DEFAULT_DEBUG_LEVEL})\n"
        " -p                     print total compression ratio of all files\n"
        " --device=X             specify an extra device to be used together\n"
        " --extract[=X]          check if all files are well encoded, optionally\n"
        "                        extract to X\n"
        " --offset=#             skip # bytes at the beginning of IMAGE\n"
        "\n"
        " -a, -A, -y             no-op, for compatibility with fsck of other filesystems\n"
        "\n"
        "Extraction options (--extract=X is required):\n"
        " --force                allow extracting to root\n"
        " --overwrite            overwrite files that already exist\n"
        " --[no-]preserve        same as --[no-]preserve-owner --[no-]preserve-perms\n"
        " --[no-]preserve-owner  whether to preserve the ownership from the\n"
        "                        filesystem (default for superuser), or to extract as\n"
        "                        yourself (default for ordinary users)\n"
        " --[no-]preserve-perms  whether to preserve the exact permissions from the\n"
        "                        filesystem without applying umask (default for\n"
        "                        superuser), or to modify the permissions by applying\n"
        "                        umask (default for ordinary users)\n"
    )