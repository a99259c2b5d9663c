"""Byte storage used for the persisted vocabulary and index files.

The pipeline only needs three capabilities from the place it persists to:
``exists``, ``read`` and ``write``. ``FileStorage`` maps them onto the local
filesystem; ``MemoryStorage`` keeps everything in a dict so tests can drive the
build/load decisions without touching disk.
"""
from pathlib import Path
from typing import Dict, Union

PathLike = Union[str, Path]


class FileStorage:
    def exists(self, path: PathLike) -> bool:
        return Path(path).is_file()

    def read(self, path: PathLike) -> bytes:
        return Path(path).read_bytes()

    def write(self, path: PathLike, data: bytes) -> None:
        p = Path(path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)


class MemoryStorage:
    """Dict-backed storage. ``reads``/``writes`` count calls per key."""

    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.reads: Dict[str, int] = {}
        self.writes: Dict[str, int] = {}

    def exists(self, path: PathLike) -> bool:
        return str(path) in self.blobs

    def read(self, path: PathLike) -> bytes:
        key = str(path)
        if key not in self.blobs:
            raise FileNotFoundError(key)
        self.reads[key] = self.reads.get(key, 0) + 1
        return self.blobs[key]

    def write(self, path: PathLike, data: bytes) -> None:
        key = str(path)
        self.writes[key] = self.writes.get(key, 0) + 1
        self.blobs[key] = bytes(data)
