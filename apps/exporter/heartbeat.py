"""
Visibility Heartbeat - Keep In-Flight Messages Invisible

Periodically extends a queue message's visibility window while its job runs.
Renewals execute on an APScheduler BackgroundScheduler with its own thread
pool, so a slow download or upload on the asyncio loop never delays them.

Usage:
    heartbeat = VisibilityHeartbeat(extender)
    handle = heartbeat.start(message_handle)
    try:
        ...  # long-running work
    finally:
        handle.cancel()
"""

import logging
import threading
import time
import uuid
from typing import Optional, Protocol

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from utils.config import settings

logger = logging.getLogger(__name__)


class VisibilityExtender(Protocol):
    def extend(self, message_handle: str, seconds: int) -> None:
        ...


class HeartbeatHandle:
    """Cancelable handle for one message's recurring renewal."""

    def __init__(self, heartbeat: "VisibilityHeartbeat", job_id: str, message_handle: str) -> None:
        self._heartbeat = heartbeat
        self.job_id = job_id
        self.message_handle = message_handle
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Stop future renewals. Returns False if already cancelled.

        An in-flight renewal is allowed to finish.
        """
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True

        self._heartbeat._remove(self)
        return True


class VisibilityHeartbeat:
    """Recurring visibility extension on an independent scheduler thread."""

    def __init__(
        self,
        extender: VisibilityExtender,
        interval: Optional[float] = None,
        buffer: Optional[float] = None,
        max_workers: int = 4,
    ) -> None:
        """
        Initialize heartbeat.

        Args:
            extender: Collaborator whose extend(handle, seconds) renews visibility
            interval: Seconds between renewals, defaults to settings.HEARTBEAT_INTERVAL
            buffer: Seconds added to the requested visibility, defaults to settings.VISIBILITY_BUFFER
            max_workers: Renewal threads shared by all heartbeats
        """
        self.extender = extender
        self.interval = settings.HEARTBEAT_INTERVAL if interval is None else interval
        self.buffer = settings.VISIBILITY_BUFFER if buffer is None else buffer

        if self.interval <= 0:
            raise ValueError("Heartbeat interval must be positive")

        self._scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": max(1, int(self.interval)),
            },
            daemon=True,
        )
        self._handles: dict[str, HeartbeatHandle] = {}
        self._lock = threading.Lock()
        self._inflight = 0
        self._drained = threading.Condition()
        self._closed = False

    @property
    def visibility_timeout(self) -> int:
        """Visibility requested on each renewal."""
        return int(self.interval + self.buffer)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._handles)

    def start(self, message_handle: str) -> HeartbeatHandle:
        """Schedule renewals for a message until the returned handle is cancelled."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Heartbeat has been shut down")
            if not self._scheduler.running:
                self._scheduler.start()

            handle = HeartbeatHandle(self, uuid.uuid4().hex, message_handle)
            self._handles[handle.job_id] = handle
            self._scheduler.add_job(
                self._renew,
                trigger=IntervalTrigger(seconds=self.interval),
                args=[message_handle],
                id=handle.job_id,
                name=f"visibility-heartbeat:{message_handle}",
            )

        logger.debug(
            "Heartbeat started",
            extra={"message_handle": message_handle, "interval": self.interval},
        )
        return handle

    def _renew(self, message_handle: str) -> None:
        with self._drained:
            self._inflight += 1

        try:
            self.extender.extend(message_handle, self.visibility_timeout)
            logger.debug(
                "Extended message visibility",
                extra={"message_handle": message_handle, "seconds": self.visibility_timeout},
            )
        except Exception as e:
            # A missed renewal must not stop the schedule
            logger.warning(
                "Failed to extend message visibility",
                extra={"message_handle": message_handle, "error": str(e)},
            )
        finally:
            with self._drained:
                self._inflight -= 1
                self._drained.notify_all()

    def _remove(self, handle: HeartbeatHandle) -> None:
        with self._lock:
            self._handles.pop(handle.job_id, None)

        try:
            self._scheduler.remove_job(handle.job_id)
        except JobLookupError:
            pass

        logger.debug("Heartbeat cancelled", extra={"message_handle": handle.message_handle})

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Cancel all heartbeats and stop the scheduler.

        Waits up to `timeout` seconds for in-flight renewals before stopping
        without waiting.

        Returns:
            True if in-flight renewals drained within the timeout
        """
        timeout = settings.HEARTBEAT_SHUTDOWN_TIMEOUT if timeout is None else timeout

        with self._lock:
            self._closed = True
            handles = list(self._handles.values())

        for handle in handles:
            handle.cancel()

        deadline = time.monotonic() + timeout
        with self._drained:
            while self._inflight > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._drained.wait(remaining)
            drained = self._inflight == 0

        if not drained:
            logger.warning(
                "Heartbeat renewals still running at shutdown, forcing stop",
                extra={"inflight": self._inflight, "timeout": timeout},
            )

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        logger.info("Heartbeat scheduler stopped", extra={"cancelled": len(handles)})
        return drained
