"""Byte sources accepted by the upload service."""
from __future__ import annotations

import os
from pathlib import Path

import aiofiles


def _check_range(start: int, end: int, size: int) -> None:
    if not 0 <= start <= end <= size:
        raise ValueError(f"Byte range [{start}, {end}) outside source of {size} bytes")


class BytesSource:
    """In-memory payload."""

    def __init__(self, data: bytes):
        self._data = bytes(data)

    @property
    def size(self) -> int:
        return len(self._data)

    async def read_range(self, start: int, end: int) -> bytes:
        _check_range(start, end, self.size)
        return self._data[start:end]

    async def read_all(self) -> bytes:
        return self._data


class FileSource:
    """File on disk; each range is read on demand so large files never sit in memory."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._size = self.path.stat().st_size

    @property
    def size(self) -> int:
        return self._size

    @property
    def name(self) -> str:
        return self.path.name

    async def read_range(self, start: int, end: int) -> bytes:
        _check_range(start, end, self.size)
        async with aiofiles.open(self.path, "rb") as f:
            await f.seek(start)
            return await f.read(end - start)

    async def read_all(self) -> bytes:
        async with aiofiles.open(self.path, "rb") as f:
            return await f.read()
