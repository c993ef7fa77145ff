"""Index of module versions stored by the proxy."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import islice

from modproxy.errors import Kind, e

__all__ = ["ZERO_TIME", "Line", "Indexer", "MemIndexer", "NopIndexer"]

ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)
"""A ``since`` value that lets every indexed line through."""


@dataclass
class Line:
    """A module@version entry with the time it was indexed."""

    path: str
    version: str
    timestamp: datetime = field(default=ZERO_TIME, compare=False)


class Indexer(ABC):
    """Stores module@version entries and lists them in indexing order."""

    @abstractmethod
    def index(self, mod: str, ver: str) -> None:
        """Record ``mod@ver`` with the current time.

        Raises an error of kind ALREADY_EXISTS if it is already indexed.
        """

    @abstractmethod
    def lines(self, since: datetime, limit: int) -> list[Line]:
        """Return up to ``limit`` lines indexed at or after ``since``."""


class MemIndexer(Indexer):
    """An indexer that keeps its lines in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lines: list[Line] = []

    def index(self, mod: str, ver: str) -> None:
        op = "mem.Index"
        with self._lock:
            if any(line.path == mod and line.version == ver for line in self._lines):
                raise e(op, f"{mod}@{ver} already indexed", Kind.ALREADY_EXISTS)
            self._lines.append(
                Line(path=mod, version=ver, timestamp=datetime.now(timezone.utc))
            )

    def lines(self, since: datetime, limit: int) -> list[Line]:
        with self._lock:
            recent = (line for line in self._lines if line.timestamp >= since)
            return list(islice(recent, max(limit, 0)))

    def clear(self) -> None:
        """Remove every indexed line."""
        with self._lock:
            self._lines = []


class NopIndexer(Indexer):
    """An indexer that records nothing."""

    def index(self, mod: str, ver: str) -> None:
        return None

    def lines(self, since: datetime, limit: int) -> list[Line]:
        return []