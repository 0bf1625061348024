"""Hard-link bookkeeping: the first extracted path of each multiply-linked inode."""

from __future__ import annotations

import threading
from dataclasses import dataclass

NR_HARDLINK_HASHTABLE = 16384


@dataclass(frozen=True)
class _Entry:
    nid: int
    path: str


class HardlinkTable:
    """Fixed-size table keyed by nid modulo its size; a colliding insert replaces the slot."""

    def __init__(self, size: int = NR_HARDLINK_HASHTABLE) -> None:
        self.size = size
        self.lock = threading.Lock()
        self._slots: dict[int, _Entry] = {}

    def insert(self, nid: int, path: str | None) -> None:
        if path is None:
            raise ValueError("a path is required for a hardlink entry")
        self._slots[nid % self.size] = _Entry(nid, path)

    def find(self, nid: int) -> str | None:
        entry = self._slots.get(nid % self.size)
        if entry is not None and entry.nid == nid:
            return entry.path
        return None

    def clear(self) -> None:
        self._slots.clear()

    def __len__(self) -> int:
        return len(self._slots)