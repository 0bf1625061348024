"""Coloured console messages tagged with the tool name."""

from __future__ import annotations

import sys
from enum import Enum
from typing import TextIO

RESET = "\033[0m"


class Style(str, Enum):
    """ANSI colour sequences."""

    RED = "\033[0;31m"
    RED_BOLD = "\033[1;31m"
    RED2 = "\033[0;91m"
    RED2_BOLD = "\033[1;91m"
    GREEN2_BOLD = "\033[1;92m"
    BROWN = "\033[0;33m"
    BROWN2 = "\033[0;93m"
    BROWN2_BOLD = "\033[1;93m"
    BROWN_BOLD = "\033[1;33m"
    BLUE = "\033[0;34m"
    BLUE_BOLD = "\033[1;34m"
    BLUE2_BOLD = "\033[1;94m"
    NONE = RESET


def paint(text: str, style: Style) -> str:
    """Wrap ``text`` in a colour sequence followed by a reset."""
    return f"{style.value}{text}{RESET}"


class Console:
    """Writes tagged messages to a stream and flushes after each one."""

    def __init__(self, stream: TextIO | None = None, tag: str = "Extract",
                 color: bool = True, debug_enabled: bool = False) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.tag = tag
        self.color = color
        self.debug_enabled = debug_enabled

    def _emit(self, style: Style, message: str) -> None:
        prefix = f"{self.tag}: "
        if self.color:
            prefix = paint(prefix, style)
        self.stream.write(f"{prefix}{message}\n")
        self.stream.flush()

    def debug(self, message: str) -> None:
        if self.debug_enabled:
            self._emit(Style.BLUE2_BOLD, message)

    def info(self, message: str) -> None:
        self._emit(Style.BROWN2_BOLD, message)

    def warning(self, message: str) -> None:
        self._emit(Style.BROWN2_BOLD, message)

    def error(self, message: str) -> None:
        self._emit(Style.RED2_BOLD, message)