"""Small filesystem and string helpers."""

from __future__ import annotations

import os

_TRIM_CHARS = " \n\r\t\v\f"


def dir_exists(path: str | os.PathLike) -> bool:
    """Whether ``path`` is an existing directory (symlinks followed)."""
    return os.path.isdir(path)


def file_exists(path: str | os.PathLike) -> bool:
    """Whether ``path`` is an existing regular file (symlinks followed)."""
    return os.path.isfile(path)


def mkdirs(path: str | os.PathLike, mode: int = 0o700) -> None:
    """Create ``path`` and any missing parents; existing entries are left alone."""
    text = os.fspath(path)
    prefixes = [text[:pos] for pos, char in enumerate(text) if char == "/" and pos > 0]
    if text:
        prefixes.append(text)
    for prefix in prefixes:
        if not os.path.exists(prefix):
            os.mkdir(prefix, mode)


def trim(text: str) -> str:
    """Strip ASCII whitespace from both ends."""
    return text.strip(_TRIM_CHARS)


def replace_all(text: str, old: str, new: str) -> str:
    """Replace every occurrence of ``old`` with ``new``."""
    if not old:
        raise ValueError("the text to replace must not be empty")
    return text.replace(old, new)


def windows_path(path: str) -> str:
    """Normalise a Windows-style path to forward slashes."""
    return replace_all(replace_all(path, "\\", "/"), "./", ".\\/")


def parent_dir(path: str) -> str:
    """Everything before the last '/', or an empty string."""
    pos = path.rfind("/")
    return path[:pos] if pos >= 0 else ""