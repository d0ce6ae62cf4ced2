"""
Streaming ZIP Reader

Forward-only decoder for ZIP archives arriving as an async stream of byte
chunks. Entries are read from their local file headers in archive order; the
central directory at the end is never needed, so nothing is buffered beyond
the current chunk and the entry being decoded.

The standard zipfile module needs a seekable file; a download stream is not
one.

Supported:
- STORED and DEFLATED entries
- data descriptors (with or without signature), including Zip64 sizes
- Zip64 local extra fields
- UTF-8 (flag bit 11) and CP437 names

Entries that cannot be decoded (other compression methods, encryption, corrupt
data, CRC mismatch) surface as EntryReadError while the stream framing stays
intact; anything that loses the framing raises ArchiveStreamError.
"""

import struct
import zlib
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional

LOCAL_FILE_HEADER_SIG = 0x04034B50
CENTRAL_DIRECTORY_SIG = 0x02014B50
END_OF_CENTRAL_DIRECTORY_SIG = 0x06054B50
ZIP64_END_OF_CENTRAL_DIRECTORY_SIG = 0x06064B50
DATA_DESCRIPTOR_SIG = 0x08074B50

_TRAILER_SIGS = (CENTRAL_DIRECTORY_SIG, END_OF_CENTRAL_DIRECTORY_SIG, ZIP64_END_OF_CENTRAL_DIRECTORY_SIG)

METHOD_STORED = 0
METHOD_DEFLATED = 8

FLAG_ENCRYPTED = 0x0001
FLAG_DATA_DESCRIPTOR = 0x0008
FLAG_UTF8 = 0x0800

ZIP64_EXTRA_ID = 0x0001
ZIP64_MARKER = 0xFFFFFFFF

_LOCAL_HEADER = struct.Struct("<HHHHHIIIHH")
_READ_SIZE = 64 * 1024


class ArchiveStreamError(Exception):
    """The archive stream itself is unreadable; no further entries can be decoded."""


class EntryReadError(Exception):
    """A single entry's data cannot be decoded; the reader can continue."""


@dataclass
class ArchiveEntry:
    """Metadata from one local file header."""

    name: str
    method: int
    flags: int
    crc: int
    compressed_size: Optional[int]
    size: Optional[int]
    zip64: bool = False

    @property
    def is_directory(self) -> bool:
        return self.name.endswith("/") or self.name.endswith("\\")

    @property
    def is_encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)

    @property
    def has_data_descriptor(self) -> bool:
        return bool(self.flags & FLAG_DATA_DESCRIPTOR)

    @property
    def readable(self) -> bool:
        """Whether this reader can decode the entry's bytes."""
        if self.is_encrypted:
            return False
        if self.method == METHOD_DEFLATED:
            return True
        return self.method == METHOD_STORED and self.compressed_size is not None

    @property
    def skippable(self) -> bool:
        """Whether the entry's end can be found without decoding it."""
        return self.compressed_size is not None or (
            self.method == METHOD_DEFLATED and not self.is_encrypted
        )


class ZipStreamReader:
    """Lazy, forward-only iterator over the entries of a streamed ZIP archive.

    Only the current entry's bytes are available; advancing to the next entry
    discards whatever of the current one was not read.
    """

    def __init__(self, chunks: AsyncIterable[bytes], read_size: int = _READ_SIZE) -> None:
        self._chunks = chunks.__aiter__()
        self._buffer = bytearray()
        self._eof = False
        self._finished = False
        self._read_size = read_size
        self._current: Optional[ArchiveEntry] = None
        self._current_consumed = True
        self.entries_read = 0

    def __aiter__(self) -> AsyncIterator[ArchiveEntry]:
        return self._iter_entries()

    async def _iter_entries(self) -> AsyncIterator[ArchiveEntry]:
        while True:
            entry = await self.next_entry()
            if entry is None:
                return
            yield entry

    # Buffer management

    async def _pull(self) -> bool:
        if self._eof:
            return False
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._eof = True
            return False
        except Exception as e:
            raise ArchiveStreamError(f"Failed reading archive stream: {e}") from e
        self._buffer += chunk
        return True

    async def _read_exact(self, n: int) -> bytes:
        while len(self._buffer) < n:
            if not await self._pull():
                raise ArchiveStreamError(
                    f"Archive truncated: needed {n} bytes, {len(self._buffer)} available"
                )
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    async def _read_some(self, limit: int) -> bytes:
        """Up to `limit` buffered bytes, pulling a chunk if the buffer is empty. b"" at EOF."""
        while not self._buffer:
            if not await self._pull():
                return b""
        data = bytes(self._buffer[:limit])
        del self._buffer[:limit]
        return data

    async def _peek(self, n: int) -> bytes:
        while len(self._buffer) < n:
            if not await self._pull():
                break
        return bytes(self._buffer[:n])

    # Entries

    async def next_entry(self) -> Optional[ArchiveEntry]:
        """Advance to the next file entry, or None once the archive ends."""
        if self._finished:
            return None

        if self._current is not None and not self._current_consumed:
            await self._skip_current()
        self._current = None

        head = await self._peek(4)
        if not head:
            # Stream ended without a central directory; accept what was read
            self._finished = True
            return None
        if len(head) < 4:
            raise ArchiveStreamError("Archive truncated inside a record signature")

        (signature,) = struct.unpack("<I", head)
        if signature in _TRAILER_SIGS:
            self._finished = True
            return None
        if signature != LOCAL_FILE_HEADER_SIG:
            raise ArchiveStreamError(f"Unexpected record signature 0x{signature:08x}")

        await self._read_exact(4)
        header = await self._read_exact(_LOCAL_HEADER.size)
        (
            _version,
            flags,
            method,
            _mod_time,
            _mod_date,
            crc,
            compressed_size,
            size,
            name_length,
            extra_length,
        ) = _LOCAL_HEADER.unpack(header)

        raw_name = await self._read_exact(name_length)
        extra = await self._read_exact(extra_length)

        encoding = "utf-8" if flags & FLAG_UTF8 else "cp437"
        name = raw_name.decode(encoding, errors="replace")

        zip64 = _has_zip64_extra(extra)
        if compressed_size == ZIP64_MARKER or size == ZIP64_MARKER:
            zip64 = True
            size, compressed_size = _parse_zip64_extra(extra, size, compressed_size)

        entry = ArchiveEntry(
            name=name,
            method=method,
            flags=flags,
            crc=crc,
            compressed_size=compressed_size,
            size=size,
            zip64=zip64,
        )

        if entry.has_data_descriptor:
            # Header values are placeholders; real ones follow the data
            entry.crc = 0
            if method == METHOD_DEFLATED or compressed_size == 0:
                entry.compressed_size = None
                entry.size = None

        self._current = entry
        self._current_consumed = False
        self.entries_read += 1
        return entry

    async def read_entry(self) -> AsyncIterator[bytes]:
        """Yield the current entry's uncompressed bytes.

        Verifies CRC and size once the entry is exhausted.

        Raises:
            EntryReadError: If this entry cannot be decoded (reader stays usable)
            ArchiveStreamError: If the stream framing is lost
        """
        entry = self._current
        if entry is None or self._current_consumed:
            raise RuntimeError("No current entry to read")
        if not entry.readable:
            await self._skip_current()
            raise EntryReadError(f"Unsupported entry encoding: {entry.name}")

        self._current_consumed = True
        crc = 0
        produced = 0

        if entry.method == METHOD_STORED:
            async for data in self._iter_raw(entry.compressed_size):
                crc = zlib.crc32(data, crc)
                produced += len(data)
                yield data
        else:
            async for data in self._inflate(entry):
                crc = zlib.crc32(data, crc)
                produced += len(data)
                yield data

        if entry.has_data_descriptor:
            await self._read_data_descriptor(entry)

        if crc != entry.crc:
            raise EntryReadError(
                f"CRC mismatch for {entry.name}: expected 0x{entry.crc:08x}, got 0x{crc:08x}"
            )
        if entry.size is not None and produced != entry.size:
            raise EntryReadError(
                f"Size mismatch for {entry.name}: expected {entry.size}, got {produced}"
            )

    async def _iter_raw(self, length: int) -> AsyncIterator[bytes]:
        remaining = length
        while remaining > 0:
            data = await self._read_some(min(remaining, self._read_size))
            if not data:
                raise ArchiveStreamError("Archive truncated inside entry data")
            remaining -= len(data)
            yield data

    async def _inflate(self, entry: ArchiveEntry) -> AsyncIterator[bytes]:
        decompressor = zlib.decompressobj(-zlib.MAX_WBITS)

        if entry.compressed_size is not None:
            remaining = entry.compressed_size
            while remaining > 0:
                data = await self._read_some(min(remaining, self._read_size))
                if not data:
                    raise ArchiveStreamError("Archive truncated inside entry data")
                remaining -= len(data)
                try:
                    out = decompressor.decompress(data)
                except zlib.error as e:
                    # Known length, so the framing survives: drop the rest of the entry
                    await self._discard(remaining)
                    raise EntryReadError(f"Corrupt deflate data in {entry.name}: {e}") from e
                if out:
                    yield out

            tail = decompressor.flush()
            if tail:
                yield tail
            if not decompressor.eof:
                raise EntryReadError(f"Deflate stream incomplete in {entry.name}")
            return

        # Length unknown: the deflate stream's own end marker delimits the entry
        while not decompressor.eof:
            data = await self._read_some(self._read_size)
            if not data:
                raise ArchiveStreamError("Archive truncated inside entry data")
            try:
                out = decompressor.decompress(data)
            except zlib.error as e:
                raise ArchiveStreamError(
                    f"Corrupt deflate data in {entry.name} with no known length: {e}"
                ) from e
            if decompressor.eof and decompressor.unused_data:
                self._buffer[:0] = decompressor.unused_data
            if out:
                yield out

    async def _read_data_descriptor(self, entry: ArchiveEntry) -> None:
        head = await self._peek(4)
        if len(head) == 4 and struct.unpack("<I", head)[0] == DATA_DESCRIPTOR_SIG:
            await self._read_exact(4)

        (crc,) = struct.unpack("<I", await self._read_exact(4))
        if entry.zip64:
            compressed_size, size = struct.unpack("<QQ", await self._read_exact(16))
        else:
            compressed_size, size = struct.unpack("<II", await self._read_exact(8))

        entry.crc = crc
        entry.compressed_size = compressed_size
        entry.size = size

    async def _discard(self, length: int) -> None:
        async for _ in self._iter_raw(length):
            pass

    async def _skip_current(self) -> None:
        entry = self._current
        self._current_consumed = True

        if entry.compressed_size is not None:
            await self._discard(entry.compressed_size)
            if entry.has_data_descriptor:
                await self._read_data_descriptor(entry)
            return

        if entry.skippable:
            async for _ in self._inflate(entry):
                pass
            await self._read_data_descriptor(entry)
            return

        raise ArchiveStreamError(f"Cannot locate the end of entry {entry.name}")


def _parse_zip64_extra(extra: bytes, size: int, compressed_size: int) -> tuple[int, int]:
    offset = 0
    while offset + 4 <= len(extra):
        header_id, data_size = struct.unpack_from("<HH", extra, offset)
        offset += 4
        if header_id == ZIP64_EXTRA_ID:
            data = extra[offset:offset + data_size]
            pos = 0
            if size == ZIP64_MARKER:
                if pos + 8 > len(data):
                    raise ArchiveStreamError("Zip64 extra field too short")
                (size,) = struct.unpack_from("<Q", data, pos)
                pos += 8
            if compressed_size == ZIP64_MARKER:
                if pos + 8 > len(data):
                    raise ArchiveStreamError("Zip64 extra field too short")
                (compressed_size,) = struct.unpack_from("<Q", data, pos)
            return size, compressed_size
        offset += data_size

    raise ArchiveStreamError("Zip64 sizes announced without a Zip64 extra field")


def _has_zip64_extra(extra: bytes) -> bool:
    offset = 0
    while offset + 4 <= len(extra):
        header_id, data_size = struct.unpack_from("<HH", extra, offset)
        if header_id == ZIP64_EXTRA_ID:
            return True
        offset += 4 + data_size
    return False
