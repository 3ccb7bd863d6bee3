"""Helpers shared by the test modules."""

import gzip
import json
import os
from pathlib import Path
from typing import Any


class FakeClock:
    """Replacement for the ``time`` module with a controllable ``time()``."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def touch_later(path: Path, seconds: float = 10.0) -> None:
    """Move a file's mtime into the future so it is newer than any cached state."""
    stat = path.stat()
    os.utime(path, (stat.st_atime + seconds, stat.st_mtime + seconds))


def read_store_document(path: Path) -> Any:
    data = path.read_bytes()
    if path.suffix == ".gz":
        data = gzip.decompress(data)
    return json.loads(data)


def write_store_document(path: Path, document: Any) -> None:
    data = json.dumps(document).encode("utf-8")
    if path.suffix == ".gz":
        data = gzip.compress(data)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
