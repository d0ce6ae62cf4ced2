"""Archive builders, chunked streams and fakes shared by the test modules."""

import asyncio
import io
import zipfile
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable, Optional


class _StreamingBuffer:
    """Write-only sink; zipfile falls back to data descriptors for it."""

    def __init__(self) -> None:
        self.data = bytearray()

    def write(self, b: bytes) -> int:
        self.data += b
        return len(b)

    def flush(self) -> None:
        pass


def build_zip(entries: Iterable[tuple[str, bytes]], compression: int = zipfile.ZIP_STORED) -> bytes:
    """Build an archive; names ending in '/' become directory entries."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return buffer.getvalue()


def build_streamed_zip(entries: Iterable[tuple[str, bytes]]) -> bytes:
    """Deflated archive written to a non-seekable sink (sizes after each entry's data)."""
    sink = _StreamingBuffer()
    with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return bytes(sink.data)


async def iter_chunks(data: bytes, size: int = 7) -> AsyncIterator[bytes]:
    for offset in range(0, len(data), size):
        yield data[offset:offset + size]
        await asyncio.sleep(0)


async def failing_chunks(data: bytes, fail_after: int, size: int = 64) -> AsyncIterator[bytes]:
    """Yield the first `fail_after` bytes, then fail like a dropped connection."""
    async for chunk in iter_chunks(data[:fail_after], size):
        yield chunk
    raise ConnectionResetError("connection reset by peer")


class FakeClock:
    """Settable UTC clock for lease arithmetic."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingUploader:
    """Collects uploaded objects and tracks peak upload concurrency."""

    def __init__(self, delay: float = 0.0, fail_on: Optional[str] = None) -> None:
        self.delay = delay
        self.fail_on = fail_on
        self.objects: dict[str, bytes] = {}
        self.lengths: dict[str, int] = {}
        self.in_flight = 0
        self.peak = 0

    async def put(self, destination_key: str, stream, length: int) -> None:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_on is not None and destination_key.endswith(self.fail_on):
                raise IOError(f"disk full writing {destination_key}")
            self.objects[destination_key] = stream.read()
            self.lengths[destination_key] = length
        finally:
            self.in_flight -= 1


class FakeDownloader:
    """open_stream() serving a fixed archive, or raising a fixed error."""

    def __init__(self, archive: bytes = b"", error: Optional[Exception] = None) -> None:
        self.archive = archive
        self.error = error
        self.requested: list[str] = []

    def open_stream(self, export_id: str):
        self.requested.append(export_id)
        return _StreamContext(self, export_id)

    async def close(self) -> None:
        pass


class _StreamContext:
    def __init__(self, downloader: FakeDownloader, export_id: str) -> None:
        self.downloader = downloader
        self.export_id = export_id

    async def __aenter__(self) -> AsyncIterator[bytes]:
        if self.downloader.error is not None:
            raise self.downloader.error
        return iter_chunks(self.downloader.archive, 97)

    async def __aexit__(self, *exc) -> None:
        return None
