import io
import zipfile
from datetime import datetime

import pytest

from transfer.files import LocalFile, MemoryFile, bundle_files, bundle_name


@pytest.mark.asyncio
async def test_local_file_reads_ranges(tmp_path):
    path = tmp_path / "photo.png"
    path.write_bytes(b"0123456789")
    source = LocalFile(str(path))

    assert source.name == "photo.png"
    assert source.size == 10
    assert source.mime_type == "image/png"
    assert await source.read(2, 5) == b"234"
    assert await source.read(8, 10) == b"89"


def test_unknown_extension_falls_back_to_octet_stream(tmp_path):
    path = tmp_path / "blob.zzzunknown"
    path.write_bytes(b"")
    assert LocalFile(str(path)).mime_type == "application/octet-stream"


def test_bundle_name_is_timestamped():
    assert bundle_name(datetime(2024, 3, 9, 14, 5, 7)) == "SendOver_Bundle_2024-03-09-14-05-07.zip"


@pytest.mark.asyncio
async def test_bundle_keeps_every_file_under_a_unique_name(tmp_path):
    path = tmp_path / "a.txt"
    path.write_bytes(b"from disk")
    sources = [
        LocalFile(str(path)),
        MemoryFile("a.txt", b"from memory"),
        MemoryFile("b.txt", b"bee"),
    ]

    bundle = await bundle_files(sources, name="out.zip")

    assert bundle.name == "out.zip"
    assert bundle.mime_type == "application/zip"
    with zipfile.ZipFile(io.BytesIO(bundle.data)) as archive:
        assert archive.namelist() == ["a.txt", "a (1).txt", "b.txt"]
        assert archive.read("a.txt") == b"from disk"
        assert archive.read("a (1).txt") == b"from memory"


@pytest.mark.asyncio
async def test_bundle_gets_a_default_name():
    bundle = await bundle_files([MemoryFile("x", b"1"), MemoryFile("y", b"2")])
    assert bundle.name.startswith("SendOver_Bundle_")
    assert bundle.name.endswith(".zip")
