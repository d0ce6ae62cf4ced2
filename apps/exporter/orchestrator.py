"""
Job Orchestrator - Export Job State Machine

Sequences one inbound export request through claim, heartbeat, download,
extraction and finalization:

    RECEIVED -> CLAIMING -> CLAIMED -> DOWNLOADING -> EXTRACTING -> FINALIZING
             -> ACKNOWLEDGED | FAILED_NO_ACK

A lost claim (duplicate delivery) goes straight to ACKNOWLEDGED. Download and
extraction failures mark the lease FAILED and leave the message
unacknowledged so the queue's redelivery and dead-letter policy applies.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from apps.exporter.heartbeat import VisibilityHeartbeat
from apps.exporter.lease_store import LeaseStore
from apps.exporter.pipeline import ExtractionError, ExtractionPipeline, Uploader
from utils.config import settings
from utils.schemas import ExportRequest

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    RECEIVED = "RECEIVED"
    CLAIMING = "CLAIMING"
    CLAIMED = "CLAIMED"
    DOWNLOADING = "DOWNLOADING"
    EXTRACTING = "EXTRACTING"
    FINALIZING = "FINALIZING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    FAILED_NO_ACK = "FAILED_NO_ACK"


TERMINAL_STATES = frozenset({JobState.ACKNOWLEDGED, JobState.FAILED_NO_ACK})


@dataclass
class JobResult:
    """Outcome of one orchestrated job."""

    lease_key: str
    state: JobState = JobState.RECEIVED
    history: list[JobState] = field(default_factory=lambda: [JobState.RECEIVED])
    record_count: int = 0
    error: Optional[str] = None
    duplicate: bool = False

    @property
    def acknowledge(self) -> bool:
        """True if the message should be removed from the queue."""
        return self.state == JobState.ACKNOWLEDGED

    def transition(self, state: JobState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Job already finished in state {self.state.value}")
        self.state = state
        self.history.append(state)


class JobOrchestrator:
    """Runs export requests through the job state machine."""

    def __init__(
        self,
        lease_store: LeaseStore,
        heartbeat: VisibilityHeartbeat,
        downloader,
        pipeline: ExtractionPipeline,
        uploader: Uploader,
        destination_root: Optional[str] = None,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            lease_store: Idempotency lock for deliveries
            heartbeat: Visibility extension scheduler
            downloader: Object with an async context manager open_stream(export_id)
            pipeline: Archive extraction pipeline
            uploader: Destination writer handed to the pipeline
            destination_root: First segment of every destination key
        """
        self.lease_store = lease_store
        self.heartbeat = heartbeat
        self.downloader = downloader
        self.pipeline = pipeline
        self.uploader = uploader
        self.destination_root = (destination_root or settings.DESTINATION_ROOT).strip("/")

    def destination_prefix(self, request: ExportRequest) -> str:
        return f"{self.destination_root}/{request.customer_id}/{request.jobId}/"

    async def process(self, request: ExportRequest, delivery_id: str, message_handle: str) -> JobResult:
        """
        Process one delivery of an export request.

        Args:
            request: Validated export request
            delivery_id: Unique id of this queue message (lease identity)
            message_handle: Handle passed to the visibility extender

        Returns:
            JobResult with the terminal state

        Raises:
            LeaseStoreError: If the claim could not be attempted; the message
                must stay unacknowledged
            asyncio.CancelledError: If the worker is shutting down mid-job
        """
        lease_key = self.lease_store.lease_key_for(delivery_id)
        result = JobResult(lease_key=lease_key)

        result.transition(JobState.CLAIMING)
        claimed = await self.lease_store.claim(lease_key, request.jobId)

        if not claimed:
            result.duplicate = True
            result.transition(JobState.ACKNOWLEDGED)
            logger.info(
                "Duplicate delivery, lease already held: job_id=%s, lease_key=%s",
                request.jobId, lease_key,
            )
            return result

        result.transition(JobState.CLAIMED)
        start_time = time.time()
        handle = None

        try:
            handle = self.heartbeat.start(message_handle)
            await self._run_job(request, lease_key, result)
        except asyncio.CancelledError:
            await self.lease_store.fail(lease_key, "interrupted by worker shutdown", result.record_count)
            raise
        except Exception as e:
            if isinstance(e, ExtractionError):
                result.record_count = e.records_processed
            result.error = str(e) or type(e).__name__
            result.transition(JobState.FINALIZING)

            logger.error(
                "Export job failed: job_id=%s, state=%s",
                request.jobId, result.history[-2].value,
                extra={"error": result.error, "records_processed": result.record_count},
            )

            await self.lease_store.fail(lease_key, result.error, result.record_count)
            result.transition(JobState.FAILED_NO_ACK)
            return result
        else:
            result.transition(JobState.FINALIZING)
            await self.lease_store.complete(lease_key, result.record_count)
            result.transition(JobState.ACKNOWLEDGED)
        finally:
            if handle is not None:
                handle.cancel()

        logger.info(
            "Export job completed: job_id=%s, records=%d, elapsed=%.3fs",
            request.jobId, result.record_count, time.time() - start_time,
        )
        return result

    async def _run_job(self, request: ExportRequest, lease_key: str, result: JobResult) -> None:
        async def checkpoint(progress_marker: str, records_processed: int) -> None:
            result.record_count = records_processed
            await self.lease_store.checkpoint(lease_key, progress_marker, records_processed)

        result.transition(JobState.DOWNLOADING)
        async with self.downloader.open_stream(request.exportId) as chunks:
            result.transition(JobState.EXTRACTING)
            result.record_count = await self.pipeline.run(
                chunks,
                self.destination_prefix(request),
                self.uploader,
                checkpoint,
            )
