"""
File sources for the sender and the multi-file bundler.

The sender only ever streams one logical file. When several are offered at
once they are zipped into a single in-memory bundle first.
"""

import asyncio
import io
import logging
import mimetypes
import os
import zipfile
from abc import ABC, abstractmethod
from datetime import datetime

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileSource(ABC):
    """A named byte source that can be read in ranges."""

    name: str
    size: int
    mime_type: str

    @abstractmethod
    async def read(self, start: int, end: int) -> bytes:
        """Return bytes [start, end)."""


class LocalFile(FileSource):
    def __init__(self, path: str, mime_type: str | None = None) -> None:
        self.path = path
        self.name = os.path.basename(path)
        self.size = os.path.getsize(path)
        self.mime_type = mime_type or mimetypes.guess_type(path)[0] or DEFAULT_MIME_TYPE

    def _read_range(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    async def read(self, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read_range, start, end)


class MemoryFile(FileSource):
    def __init__(self, name: str, data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> None:
        self.name = name
        self.data = data
        self.size = len(data)
        self.mime_type = mime_type

    async def read(self, start: int, end: int) -> bytes:
        return self.data[start:end]


def bundle_name(now: datetime | None = None) -> str:
    """Human-friendly, timestamped archive name."""
    now = now or datetime.now()
    return f"SendOver_Bundle_{now:%Y-%m-%d-%H-%M-%S}.zip"


def _unique_names(names: list[str]) -> list[str]:
    seen: dict[str, int] = {}
    unique = []
    for name in names:
        count = seen.get(name, 0)
        seen[name] = count + 1
        if count:
            stem, ext = os.path.splitext(name)
            name = f"{stem} ({count}){ext}"
        unique.append(name)
    return unique


def _zip(entries: list[tuple[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return buffer.getvalue()


async def bundle_files(sources: list[FileSource], name: str | None = None) -> MemoryFile:
    """Combine several files into one zip archive."""
    contents = [await source.read(0, source.size) for source in sources]
    names = _unique_names([source.name for source in sources])
    data = await asyncio.to_thread(_zip, list(zip(names, contents)))
    logger.info(f"Bundled {len(sources)} files into {len(data)} bytes")
    return MemoryFile(name or bundle_name(), data, "application/zip")
