import gzip
import os

import pytest

from application.utils.compression import gzip_source
from application.utils.sources import BytesSource, FileSource


@pytest.mark.asyncio
async def test_file_source_reads_ranges(tmp_path):
    path = tmp_path / "match.dem"
    path.write_bytes(b"0123456789")
    source = FileSource(path)
    assert source.size == 10
    assert source.name == "match.dem"
    assert await source.read_range(2, 5) == b"234"
    assert await source.read_all() == b"0123456789"
    with pytest.raises(ValueError):
        await source.read_range(5, 11)


@pytest.mark.asyncio
async def test_bytes_source_bounds():
    source = BytesSource(b"abc")
    assert await source.read_range(0, 3) == b"abc"
    with pytest.raises(ValueError):
        await source.read_range(2, 1)


@pytest.mark.asyncio
async def test_gzip_source_round_trip_and_cleanup():
    payload = os.urandom(1000) + b"z" * 300_000
    phases = []
    async with gzip_source(BytesSource(payload), chunk_size=64 * 1024, on_progress=phases.append) as gz:
        path = gz.path
        data = await gz.read_all()
        assert gz.size == len(data)
    assert gzip.decompress(data) == payload
    assert phases == sorted(phases)
    assert phases[-1] == 100
    assert not path.exists()
