"""
Extraction Pipeline - Streamed Archive to Destination Storage

Decodes a streamed ZIP archive entry by entry and hands each entry's bytes to
an uploader, keeping at most MAX_CONCURRENT_UPLOADS uploads in flight.

Each entry is consumed from the forward-only reader into a spooled temporary
file (memory up to SPOOL_MAX_MEMORY, disk beyond) while holding an upload
slot, so decoding of the next entry overlaps with uploads already running.

Usage:
    pipeline = ExtractionPipeline()
    count = await pipeline.run(chunks, "exports/cust-1/job-1/", uploader, checkpoint)
"""

import asyncio
import logging
import re
import tempfile
import time
from typing import IO, AsyncIterable, Awaitable, Callable, Optional, Protocol

from apps.exporter.archive import ArchiveEntry, ArchiveStreamError, EntryReadError, ZipStreamReader
from utils.config import settings

logger = logging.getLogger(__name__)

CheckpointCallback = Callable[[str, int], Awaitable[None]]

_REPEATED_SEPARATORS = re.compile(r"/+")


class Uploader(Protocol):
    async def put(self, destination_key: str, stream: IO[bytes], length: int) -> None:
        ...


class ExtractionError(Exception):
    """The archive could not be fully extracted and uploaded."""

    def __init__(self, message: str, records_processed: int) -> None:
        super().__init__(message)
        self.records_processed = records_processed


def sanitize_entry_name(name: str) -> str:
    """
    Turn an archive entry name into a safe destination key suffix.

    Backslashes become forward slashes, repeated separators collapse, leading
    separators are stripped and '.' / '..' segments are dropped.

    Example:
        "/a\\\\b//c.txt" -> "a/b/c.txt"
    """
    normalized = _REPEATED_SEPARATORS.sub("/", name.replace("\\", "/")).lstrip("/")
    segments = [segment for segment in normalized.split("/") if segment not in ("", ".", "..")]
    return "/".join(segments)


class ExtractionPipeline:
    """Streams archive entries into destination storage under bounded concurrency."""

    def __init__(
        self,
        max_concurrent_uploads: Optional[int] = None,
        checkpoint_interval: Optional[float] = None,
        spool_max_memory: Optional[int] = None,
        read_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize extraction pipeline.

        Args:
            max_concurrent_uploads: Upload slots per job, defaults to settings.MAX_CONCURRENT_UPLOADS
            checkpoint_interval: Seconds between checkpoints, defaults to settings.CHECKPOINT_INTERVAL
            spool_max_memory: Bytes of an entry kept in memory before spilling to disk
            read_size: Bytes read from the archive per step
            clock: Monotonic time source for checkpoint spacing
        """
        self.max_concurrent_uploads = (
            settings.MAX_CONCURRENT_UPLOADS if max_concurrent_uploads is None else max_concurrent_uploads
        )
        self.checkpoint_interval = (
            settings.CHECKPOINT_INTERVAL if checkpoint_interval is None else checkpoint_interval
        )
        self.spool_max_memory = settings.SPOOL_MAX_MEMORY if spool_max_memory is None else spool_max_memory
        self.read_size = settings.DOWNLOAD_CHUNK_SIZE if read_size is None else read_size
        self.clock = clock

        if self.max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be at least 1")

    async def run(
        self,
        stream: AsyncIterable[bytes],
        destination_prefix: str,
        uploader: Uploader,
        checkpoint_callback: CheckpointCallback,
    ) -> int:
        """
        Extract every readable entry of the streamed archive and upload it.

        Args:
            stream: Archive bytes as an async iterable of chunks
            destination_prefix: Key prefix prepended to each sanitized entry name
            uploader: Destination writer
            checkpoint_callback: Awaited with (last entry name, uploaded count)

        Returns:
            Number of entries uploaded

        Raises:
            ExtractionError: On archive stream failure or any upload failure
        """
        run = _ExtractionRun(self, destination_prefix, uploader, checkpoint_callback)
        return await run.execute(stream)


class _ExtractionRun:
    """State of one pipeline invocation."""

    def __init__(
        self,
        pipeline: ExtractionPipeline,
        destination_prefix: str,
        uploader: Uploader,
        checkpoint_callback: CheckpointCallback,
    ) -> None:
        self.pipeline = pipeline
        self.destination_prefix = destination_prefix
        self.uploader = uploader
        self.checkpoint_callback = checkpoint_callback

        self.record_count = 0
        self.skipped = 0
        self._gate = asyncio.Semaphore(pipeline.max_concurrent_uploads)
        self._uploads: set[asyncio.Task] = set()
        self._upload_error: Optional[BaseException] = None
        self._checkpoint_lock = asyncio.Lock()
        self._last_checkpoint_at = pipeline.clock()
        self._last_checkpoint_count = 0

    async def execute(self, stream: AsyncIterable[bytes]) -> int:
        reader = ZipStreamReader(stream, read_size=self.pipeline.read_size)
        start_time = time.time()

        try:
            while self._upload_error is None:
                entry = await reader.next_entry()
                if entry is None:
                    break
                await self._process_entry(reader, entry)

        except ArchiveStreamError as e:
            await self._wait_for_uploads()
            logger.error(
                "Archive stream failed",
                extra={"records_processed": self.record_count, "error": str(e)},
            )
            raise ExtractionError(f"Archive stream failed: {e}", self.record_count) from e

        except asyncio.CancelledError:
            for task in self._uploads:
                task.cancel()
            await self._wait_for_uploads()
            raise

        await self._wait_for_uploads()

        if self._upload_error is not None:
            raise ExtractionError(
                f"Upload failed: {self._upload_error}", self.record_count
            ) from self._upload_error

        logger.info(
            "Archive extraction complete: entries=%d, uploaded=%d, skipped=%d, elapsed=%.3fs",
            reader.entries_read, self.record_count, self.skipped, time.time() - start_time,
        )
        return self.record_count

    async def _process_entry(self, reader: ZipStreamReader, entry: ArchiveEntry) -> None:
        if entry.is_directory:
            return

        if not entry.readable:
            self.skipped += 1
            logger.warning(
                "Skipping unreadable entry",
                extra={"entry": entry.name, "method": entry.method, "encrypted": entry.is_encrypted},
            )
            return

        suffix = sanitize_entry_name(entry.name)
        if not suffix:
            self.skipped += 1
            logger.warning("Skipping entry with empty sanitized name", extra={"entry": entry.name})
            return

        destination_key = f"{self.destination_prefix}{suffix}"

        await self._gate.acquire()
        if self._upload_error is not None:
            # An upload failed while waiting for a slot; the job is already lost
            self._gate.release()
            return

        spool = tempfile.SpooledTemporaryFile(max_size=self.pipeline.spool_max_memory)
        try:
            length = await self._spool_entry(reader, spool)
        except EntryReadError as e:
            spool.close()
            self._gate.release()
            self.skipped += 1
            logger.warning("Skipping corrupt entry", extra={"entry": entry.name, "error": str(e)})
            return
        except BaseException:
            spool.close()
            self._gate.release()
            raise

        logger.debug(
            "Processing entry",
            extra={"entry": entry.name, "size": length, "destination_key": destination_key},
        )

        task = asyncio.create_task(self._upload(entry.name, destination_key, spool, length))
        self._uploads.add(task)
        task.add_done_callback(self._uploads.discard)

    async def _spool_entry(self, reader: ZipStreamReader, spool: IO[bytes]) -> int:
        length = 0
        limit = self.pipeline.spool_max_memory
        async for data in reader.read_entry():
            if limit and length + len(data) > limit:
                # Past the memory limit the spool is a disk file
                await asyncio.to_thread(spool.write, data)
            else:
                spool.write(data)
            length += len(data)
        spool.seek(0)
        return length

    async def _upload(self, entry_name: str, destination_key: str, spool: IO[bytes], length: int) -> None:
        try:
            await self.uploader.put(destination_key, spool, length)
        except Exception as e:
            logger.error(
                "Entry upload failed",
                extra={"entry": entry_name, "destination_key": destination_key, "error": str(e)},
            )
            if self._upload_error is None:
                self._upload_error = e
            return
        finally:
            spool.close()
            self._gate.release()

        self.record_count += 1
        await self._maybe_checkpoint(entry_name)

    async def _maybe_checkpoint(self, entry_name: str) -> None:
        interval = self.pipeline.checkpoint_interval
        if self.pipeline.clock() - self._last_checkpoint_at <= interval:
            return

        async with self._checkpoint_lock:
            now = self.pipeline.clock()
            if now - self._last_checkpoint_at <= interval:
                return
            count = self.record_count
            if count <= self._last_checkpoint_count:
                return

            self._last_checkpoint_at = now
            self._last_checkpoint_count = count

            try:
                await self.checkpoint_callback(entry_name, count)
            except Exception as e:
                logger.warning(
                    "Checkpoint callback failed",
                    extra={"entry": entry_name, "records_processed": count, "error": str(e)},
                )

    async def _wait_for_uploads(self) -> None:
        while True:
            pending = [task for task in self._uploads if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
