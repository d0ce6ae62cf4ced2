"""
Export Consumer - Queue-Driven Export Worker

Consumes "export ready" notifications from a Redis stream and runs each one
through the job orchestrator: claim the delivery lease, keep the message
invisible, stream the export archive from the Export API, extract every entry
to SFTP and record the outcome.

Features:
- Redis Streams consumer group with manual acknowledgement
- Bounded concurrent jobs (WORKER_CONCURRENCY)
- Poison payloads are dead-lettered instead of redelivered forever
- Per-message log context (message_id, job_id)
- Graceful shutdown: stop reading, drain in-flight jobs, release the rest

Usage:
    # Consumer mode (default)
    python -m apps.exporter

    # For development/testing
    RUN_ONCE=true python -m apps.exporter
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from pydantic import ValidationError

from apps.exporter.heartbeat import VisibilityHeartbeat
from apps.exporter.lease_store import LeaseStore, LeaseStoreError
from apps.exporter.orchestrator import JobOrchestrator
from apps.exporter.pipeline import ExtractionPipeline
from utils.config import settings
from utils.export_api import ExportApiClient
from utils.leases import InMemoryLeaseBackend, LeaseBackend, RedisLeaseBackend
from utils.logging import log_context, setup_logging
from utils.mq import RedisStreamConsumer, RedisVisibilityExtender, StreamMessage
from utils.schemas import ExportRequest
from utils.sftp import SftpObjectStore

logger = logging.getLogger(__name__)


def build_lease_backend() -> LeaseBackend:
    if settings.LEASE_BACKEND == "memory":
        logger.warning("Using in-memory lease backend, leases are not shared between workers")
        return InMemoryLeaseBackend()
    return RedisLeaseBackend()


class ExportConsumer:
    """
    Worker processing export notifications from the Redis stream.

    Handles:
    - Queue reads, acknowledgement and dead-lettering
    - Job orchestration per message
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        run_once: bool = False,
        queue: Optional[RedisStreamConsumer] = None,
        extender: Optional[RedisVisibilityExtender] = None,
        orchestrator: Optional[JobOrchestrator] = None,
    ) -> None:
        """
        Initialize export consumer.

        Args:
            run_once: If True, process one message and exit (for testing)
            queue: Stream consumer, built from settings if omitted
            extender: Visibility extender, built from settings if omitted
            orchestrator: Job orchestrator, built from settings if omitted
        """
        self.run_once = run_once
        self.queue = queue or RedisStreamConsumer()
        self.extender = extender or RedisVisibilityExtender()
        self.shutdown_event = asyncio.Event()
        self._processed_count = 0

        if orchestrator is None:
            self.lease_backend = build_lease_backend()
            self.downloader = ExportApiClient()
            self.heartbeat = VisibilityHeartbeat(self.extender)
            orchestrator = JobOrchestrator(
                lease_store=LeaseStore(self.lease_backend),
                heartbeat=self.heartbeat,
                downloader=self.downloader,
                pipeline=ExtractionPipeline(),
                uploader=SftpObjectStore(),
            )
        else:
            self.lease_backend = orchestrator.lease_store.backend
            self.downloader = orchestrator.downloader
            self.heartbeat = orchestrator.heartbeat

        self.orchestrator = orchestrator

        logger.info(
            "ExportConsumer initialized (run_once=%s, stream=%s, group=%s, consumer=%s)",
            run_once, self.queue.stream, self.queue.group, self.queue.consumer_name,
        )

    async def handle_message(self, message: StreamMessage) -> None:
        """
        Process one delivery and acknowledge it according to the job outcome.

        Messages are acknowledged when the job completed or lost its claim to
        a live lease. Failed jobs and lease store outages leave the message
        pending for redelivery.
        """
        try:
            with log_context(message_id=message.message_id):
                await self._handle(message)
        finally:
            if self.run_once:
                logger.info("RUN_ONCE mode: signaling shutdown after processing message")
                self.shutdown_event.set()

    async def _handle(self, message: StreamMessage) -> None:
        if message.payload is None:
            await self.queue.dead_letter(message, message.decode_error or "undecodable payload")
            return

        try:
            request = ExportRequest(**message.payload)
        except ValidationError as e:
            logger.warning("Invalid export request: message_id=%s: %s", message.message_id, str(e))
            await self.queue.dead_letter(message, f"invalid payload: {e.error_count()} validation errors")
            return

        with log_context(job_id=request.jobId, export_id=request.exportId):
            logger.info(
                "Processing export request: job_id=%s, export_id=%s, delivery=%d",
                request.jobId, request.exportId, message.delivery_count,
            )

            try:
                result = await self.orchestrator.process(request, message.message_id, message.message_id)
            except LeaseStoreError as e:
                logger.error("Lease store unavailable, leaving message pending: %s", str(e))
                return

            if result.acknowledge:
                await self.queue.ack(message.message_id)
            else:
                logger.warning(
                    "Export job failed, message left for redelivery: job_id=%s, error=%s",
                    request.jobId, result.error,
                )

            self._processed_count += 1

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info("Received signal %d, initiating graceful shutdown", signum)
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """
        Start consumer and process messages until shutdown signal.

        On shutdown, stops reading, waits up to SHUTDOWN_GRACE_PERIOD for
        running jobs, makes unfinished messages immediately reclaimable and
        stops the heartbeat scheduler.
        """
        self.setup_signal_handlers()

        logger.info("Starting export consumer")

        try:
            await self.queue.connect()
            logger.info("Connected to Redis stream: %s", self.queue.stream)

            concurrency = 1 if self.run_once else settings.WORKER_CONCURRENCY
            consume_task = asyncio.create_task(self.queue.consume(self.handle_message, concurrency))
            shutdown_task = asyncio.create_task(self.shutdown_event.wait())

            logger.info("Consumer started, waiting for messages...")

            done, pending = await asyncio.wait(
                [shutdown_task, consume_task],
                return_when=asyncio.FIRST_COMPLETED,
            )

            self.queue.stop()
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            if consume_task in done and consume_task.exception() is not None:
                raise consume_task.exception()

            await self.shutdown()

            logger.info("Consumer shutdown complete (processed_messages=%d)", self._processed_count)

        except Exception as e:
            logger.error("Consumer failed: %s", str(e), exc_info=True)
            raise

        finally:
            await self.close()

    async def shutdown(self) -> None:
        unfinished = await self.queue.drain(settings.SHUTDOWN_GRACE_PERIOD)

        for message in unfinished:
            try:
                await asyncio.to_thread(self.extender.release, message.message_id)
            except Exception as e:
                logger.warning(
                    "Failed to release message: message_id=%s, error=%s",
                    message.message_id, str(e),
                )

        await asyncio.to_thread(self.heartbeat.shutdown, settings.HEARTBEAT_SHUTDOWN_TIMEOUT)

    async def close(self) -> None:
        """Close all client connections."""
        await self.queue.close()
        await self.lease_backend.close()
        await self.downloader.close()
        self.extender.close()
        logger.info("Connections closed")


async def main() -> None:
    """Main entry point for export consumer."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    consumer = ExportConsumer(run_once=run_once)

    try:
        await consumer.start()
    except Exception as e:
        logger.error("Consumer failed: %s", str(e), exc_info=True)
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
