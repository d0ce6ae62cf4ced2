"""
Export API Client - Resilient Streaming Download

Opens the export archive download as a stream of byte chunks.

Features:
- httpx async streaming (the archive is never held in memory)
- tenacity retries with exponential backoff for transient failures
  (transport errors, 408, 429, 5xx)
- consecutive-failure circuit breaker that fails fast while the API is down

Usage:
    client = ExportApiClient()

    async with client.open_stream("export-456") as chunks:
        async for chunk in chunks:
            ...
"""

import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from utils.config import settings

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class DownloadError(Exception):
    """The export archive could not be downloaded."""


class TransientDownloadError(DownloadError):
    """Failure that may succeed on retry."""


class PermanentDownloadError(DownloadError):
    """Failure that will not succeed on retry."""


class CircuitOpenError(DownloadError):
    """The circuit breaker is open; the call was not attempted."""


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED: calls pass; `failure_threshold` consecutive failures open the circuit.
    OPEN: calls are rejected until `reset_timeout` seconds have passed.
    HALF_OPEN: one trial call passes; success closes, failure re-opens.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = (
            settings.CIRCUIT_FAILURE_THRESHOLD if failure_threshold is None else failure_threshold
        )
        self.reset_timeout = settings.CIRCUIT_RESET_TIMEOUT if reset_timeout is None else reset_timeout
        self.clock = clock
        self._state = self.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == self.OPEN and self.clock() - self._opened_at >= self.reset_timeout:
                return self.HALF_OPEN
            return self._state

    def before_call(self) -> None:
        """Raise CircuitOpenError unless a call may proceed."""
        with self._lock:
            if self._state == self.CLOSED:
                return
            if self._state == self.OPEN:
                if self.clock() - self._opened_at < self.reset_timeout:
                    raise CircuitOpenError("Export API circuit is open")
                self._state = self.HALF_OPEN
                return
            # HALF_OPEN: a trial call is already running
            raise CircuitOpenError("Export API circuit is half-open, trial call in progress")

    def record_success(self) -> None:
        with self._lock:
            self._state = self.CLOSED
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == self.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != self.OPEN:
                    logger.warning(
                        "Export API circuit opened",
                        extra={"consecutive_failures": self._failures},
                    )
                self._state = self.OPEN
                self._opened_at = self.clock()

    def release_trial(self) -> None:
        """Return an unfinished half-open trial to OPEN without counting a failure."""
        with self._lock:
            if self._state == self.HALF_OPEN:
                self._state = self.OPEN


class ExportApiClient:
    """Streaming download client for the Export API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        chunk_size: Optional[int] = None,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
        wait: Optional[wait_base] = None,
    ) -> None:
        """
        Initialize Export API client.

        Args:
            base_url: API base URL, defaults to settings.EXPORT_API_BASE
            timeout: Per-request timeout in seconds, defaults to settings.API_TIMEOUT
            max_retries: Retries after the first attempt, defaults to settings.EXPORT_API_MAX_RETRIES
            chunk_size: Bytes per yielded chunk, defaults to settings.DOWNLOAD_CHUNK_SIZE
            breaker: Circuit breaker shared by all downloads of this client
            client: Pre-built httpx client (owned by the caller)
            wait: tenacity wait strategy between attempts
        """
        self.base_url = (base_url or settings.EXPORT_API_BASE).rstrip("/")
        self.timeout = settings.API_TIMEOUT if timeout is None else timeout
        self.max_retries = settings.EXPORT_API_MAX_RETRIES if max_retries is None else max_retries
        self.chunk_size = settings.DOWNLOAD_CHUNK_SIZE if chunk_size is None else chunk_size
        self.breaker = breaker or CircuitBreaker()
        self.wait = wait or wait_exponential(multiplier=1, min=1, max=10)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    @asynccontextmanager
    async def open_stream(self, export_id: str) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Open the export download and yield its body as byte chunks.

        Raises:
            CircuitOpenError: If the circuit is open
            TransientDownloadError: If retries are exhausted
            PermanentDownloadError: On a non-retryable response
        """
        self.breaker.before_call()

        try:
            response = await self._open_with_retry(export_id)
        except DownloadError:
            self.breaker.record_failure()
            raise
        except BaseException:
            # Cancelled or unexpected error: the trial never got an answer
            self.breaker.release_trial()
            raise

        self.breaker.record_success()

        try:
            yield response.aiter_bytes(self.chunk_size)
        finally:
            await response.aclose()

    async def _open_with_retry(self, export_id: str) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientDownloadError),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self.wait,
            reraise=True,
            before_sleep=self._log_retry,
        )

        async for attempt in retrying:
            with attempt:
                return await self._open(export_id)

        raise TransientDownloadError(f"Export download did not start: exportId={export_id}")

    async def _open(self, export_id: str) -> httpx.Response:
        url = f"{self.base_url}/exports/{export_id}/download"
        client = self._get_client()
        request = client.build_request("GET", url, headers={"Accept": "application/octet-stream"})

        logger.debug("Downloading export", extra={"url": url})

        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            raise TransientDownloadError(f"Export API unreachable: {e}") from e

        if response.status_code == 200:
            return response

        await response.aclose()
        message = f"Export API returned status {response.status_code} for exportId={export_id}"
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientDownloadError(message)
        raise PermanentDownloadError(message)

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            "Export download failed (attempt %d/%d), retrying: %s",
            retry_state.attempt_number,
            self.max_retries + 1,
            retry_state.outcome.exception(),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
