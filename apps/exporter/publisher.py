"""
Export Request Publisher

Enqueues "export ready" notifications on the exports stream. Used by upstream
services and for local testing of the worker.

Usage:
    from apps.exporter.publisher import publish_export_request

    await publish_export_request(
        ExportRequest(jobId="job-123", exportId="export-456", metadata={"customerId": "cust-789"})
    )
"""

import logging
from typing import Optional

from utils.config import settings
from utils.mq import RedisStreamPublisher
from utils.schemas import ExportRequest

logger = logging.getLogger(__name__)


async def publish_export_request(
    request: ExportRequest,
    publisher: Optional[RedisStreamPublisher] = None,
) -> str:
    """
    Publish an export request to the exports stream.

    Args:
        request: Export request to enqueue
        publisher: Publisher to reuse; a temporary one is created and closed if omitted

    Returns:
        The stream entry id

    Raises:
        redis.RedisError: If publishing fails
    """
    owned = publisher is None
    publisher = publisher or RedisStreamPublisher()

    try:
        message_id = await publisher.publish(
            settings.EXPORT_STREAM,
            request.model_dump(mode="json", exclude_none=True),
        )

        logger.info(
            "Published export request",
            extra={
                "stream": settings.EXPORT_STREAM,
                "message_id": message_id,
                "job_id": request.jobId,
                "export_id": request.exportId,
            },
        )
        return message_id

    except Exception as e:
        logger.error(
            "Failed to publish export request",
            extra={"stream": settings.EXPORT_STREAM, "job_id": request.jobId, "error": str(e)},
        )
        raise

    finally:
        if owned:
            await publisher.close()
