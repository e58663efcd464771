"""Gzip pre-compression of upload sources."""
from __future__ import annotations

import os
import tempfile
import zlib
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import aiofiles
import aiofiles.os
import anyio

from domain.upload import UploadSource
from .sources import FileSource

GZIP_CONTENT_TYPE = "application/gzip"
GZIP_SUFFIX = ".gz"
READ_CHUNK_SIZE = 1024 * 1024
# wbits 16 + 15 selects the gzip container.
_GZIP_WBITS = 31


@asynccontextmanager
async def gzip_source(
    source: UploadSource,
    *,
    level: int = 6,
    chunk_size: int = READ_CHUNK_SIZE,
    on_progress: Optional[Callable[[int], None]] = None,
) -> AsyncIterator[FileSource]:
    """Compress ``source`` into a temporary file and yield it as a source.

    ``on_progress`` receives the share of input consumed, 0-100. The
    temporary file is removed on exit.
    """
    fd, path = tempfile.mkstemp(suffix=GZIP_SUFFIX)
    os.close(fd)
    try:
        compressor = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)
        total = source.size
        async with aiofiles.open(path, "wb") as out:
            pos = 0
            while pos < total:
                end = min(pos + chunk_size, total)
                chunk = await source.read_range(pos, end)
                await out.write(await anyio.to_thread.run_sync(compressor.compress, chunk))
                pos = end
                if on_progress is not None:
                    on_progress(min(99, pos * 100 // total))
            await out.write(compressor.flush())
        if on_progress is not None:
            on_progress(100)
        yield FileSource(path)
    finally:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
