"""
Redis Streams work queue with consumer groups, manual acknowledgement and
dead-lettering.

A message stays in the group's pending list until acknowledged. Entries idle
for longer than the visibility timeout are reclaimed by any consumer, so an
unacknowledged message is redelivered. Visibility is extended by resetting an
entry's idle time.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import orjson
import redis
import redis.asyncio as aioredis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.config import settings

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = b"payload"


@dataclass
class StreamMessage:
    """One delivery of a stream entry."""

    message_id: str
    raw: bytes
    payload: Optional[dict[str, Any]] = None
    decode_error: Optional[str] = None
    delivery_count: int = 1

    @classmethod
    def from_entry(cls, message_id: bytes | str, fields: dict, delivery_count: int = 1) -> "StreamMessage":
        if isinstance(message_id, bytes):
            message_id = message_id.decode("utf-8")

        raw = fields.get(PAYLOAD_FIELD, b"")
        if isinstance(raw, str):
            raw = raw.encode("utf-8")

        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            return cls(message_id, raw, decode_error=f"invalid JSON: {e}", delivery_count=delivery_count)

        if not isinstance(payload, dict):
            return cls(message_id, raw, decode_error="payload is not an object", delivery_count=delivery_count)

        return cls(message_id, raw, payload=payload, delivery_count=delivery_count)


class RedisStreamPublisher:
    """Redis stream producer with connection pooling and retries."""

    def __init__(self, redis_url: Optional[str] = None) -> None:
        """Initialize Redis stream publisher.

        Args:
            redis_url: Redis connection URL, defaults to settings.REDIS_URL
        """
        self.redis_url = redis_url or settings.REDIS_URL
        self.client: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection with connection pooling."""
        if self.client is None:
            self.client = aioredis.from_url(
                self.redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=False,  # Handle bytes for orjson
            )

    @retry(
        retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def publish(self, stream: str, payload: dict[str, Any]) -> str:
        """Append a message to a stream with retry logic.

        Args:
            stream: Redis stream key
            payload: Message payload dict (will be JSON-serialized)

        Returns:
            The stream entry id

        Raises:
            redis.RedisError: If publishing fails after retries
        """
        if self.client is None:
            await self.connect()

        message_id = await self.client.xadd(stream, {PAYLOAD_FIELD: orjson.dumps(payload)})
        return message_id.decode("utf-8") if isinstance(message_id, bytes) else message_id

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        if self.client:
            await self.client.aclose()
            self.client = None


class RedisStreamConsumer:
    """Consumer-group reader with bounded concurrent handlers."""

    def __init__(
        self,
        stream: Optional[str] = None,
        group: Optional[str] = None,
        consumer_name: Optional[str] = None,
        dlq_stream: Optional[str] = None,
        visibility_timeout: Optional[int] = None,
        max_deliveries: Optional[int] = None,
        block_ms: Optional[int] = None,
        batch_size: Optional[int] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        """Initialize stream consumer.

        Args:
            stream: Stream to consume, defaults to settings.EXPORT_STREAM
            group: Consumer group, defaults to settings.EXPORT_CONSUMER_GROUP
            consumer_name: This worker's name in the group
            dlq_stream: Dead-letter stream, defaults to settings.EXPORT_DLQ_STREAM
            visibility_timeout: Seconds a pending entry stays owned before reclaim
            max_deliveries: Deliveries after which an entry is dead-lettered
            block_ms: XREADGROUP block time in milliseconds
            batch_size: Maximum entries fetched per read
            redis_url: Redis connection URL, defaults to settings.REDIS_URL
        """
        self.stream = stream or settings.EXPORT_STREAM
        self.group = group or settings.EXPORT_CONSUMER_GROUP
        self.consumer_name = consumer_name or settings.EXPORT_CONSUMER_NAME
        self.dlq_stream = dlq_stream or settings.EXPORT_DLQ_STREAM
        self.visibility_timeout = visibility_timeout or settings.QUEUE_VISIBILITY_TIMEOUT
        self.max_deliveries = max_deliveries or settings.QUEUE_MAX_DELIVERIES
        self.block_ms = settings.QUEUE_BLOCK_MS if block_ms is None else block_ms
        self.batch_size = batch_size or settings.QUEUE_BATCH_SIZE
        self.redis_url = redis_url or settings.REDIS_URL

        self.client: Optional[aioredis.Redis] = None
        self._stop_event = asyncio.Event()
        self._inflight: dict[asyncio.Task, StreamMessage] = {}
        self._reclaim_cursor = "0-0"

    async def connect(self) -> None:
        """Connect and make sure the consumer group exists."""
        if self.client is None:
            self.client = aioredis.from_url(
                self.redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=False,
            )

        try:
            await self.client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group: stream=%s, group=%s", self.stream, self.group)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read(self, count: Optional[int] = None) -> list[StreamMessage]:
        """
        Fetch the next deliveries for this consumer.

        Entries abandoned by other consumers (idle longer than the visibility
        timeout) are reclaimed first; new entries are read only when there is
        nothing to reclaim.
        """
        if self.client is None:
            await self.connect()

        count = count or self.batch_size

        reclaimed = await self._reclaim(count)
        if reclaimed:
            return reclaimed

        response = await self.client.xreadgroup(
            self.group,
            self.consumer_name,
            {self.stream: ">"},
            count=count,
            block=self.block_ms or None,
        )

        messages = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                messages.append(StreamMessage.from_entry(message_id, fields or {}))
        return messages

    async def _reclaim(self, count: int) -> list[StreamMessage]:
        response = await self.client.xautoclaim(
            self.stream,
            self.group,
            self.consumer_name,
            min_idle_time=self.visibility_timeout * 1000,
            start_id=self._reclaim_cursor,
            count=count,
        )

        next_cursor, entries = response[0], response[1]
        self._reclaim_cursor = next_cursor.decode("utf-8") if isinstance(next_cursor, bytes) else next_cursor

        messages = []
        for message_id, fields in entries:
            if message_id is None:
                continue
            if fields is None:
                # Entry was trimmed from the stream while pending
                await self.client.xack(self.stream, self.group, message_id)
                continue

            delivery_count = await self._delivery_count(message_id)
            message = StreamMessage.from_entry(message_id, fields, delivery_count)

            if delivery_count > self.max_deliveries:
                await self.dead_letter(message, f"exceeded {self.max_deliveries} deliveries")
                continue

            logger.info(
                "Reclaimed abandoned message: message_id=%s, deliveries=%d",
                message.message_id, delivery_count,
            )
            messages.append(message)

        return messages

    async def _delivery_count(self, message_id: bytes | str) -> int:
        pending = await self.client.xpending_range(
            self.stream, self.group, min=message_id, max=message_id, count=1
        )
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    async def ack(self, message_id: str) -> None:
        """Acknowledge a message, removing it from the pending list."""
        if self.client is None:
            await self.connect()
        await self.client.xack(self.stream, self.group, message_id)

    async def dead_letter(self, message: StreamMessage, reason: str) -> None:
        """Copy a message to the dead-letter stream, then acknowledge it."""
        if self.client is None:
            await self.connect()

        await self.client.xadd(
            self.dlq_stream,
            {
                PAYLOAD_FIELD: message.raw,
                b"source_stream": self.stream,
                b"source_id": message.message_id,
                b"reason": reason,
                b"delivery_count": str(message.delivery_count),
            },
        )
        await self.ack(message.message_id)

        logger.warning(
            "Message dead-lettered: message_id=%s, reason=%s",
            message.message_id, reason,
            extra={"dlq_stream": self.dlq_stream},
        )

    async def consume(
        self,
        handler: Callable[[StreamMessage], Awaitable[None]],
        concurrency: Optional[int] = None,
    ) -> None:
        """Read messages and run `handler` on each, at most `concurrency` at a time.

        Returns once stop() is called. Handlers still running are left to
        drain().
        """
        concurrency = concurrency or settings.WORKER_CONCURRENCY

        if self.client is None:
            await self.connect()

        while not self._stop_event.is_set():
            if len(self._inflight) >= concurrency:
                stop_waiter = asyncio.ensure_future(self._stop_event.wait())
                try:
                    await asyncio.wait([*self._inflight, stop_waiter], return_when=asyncio.FIRST_COMPLETED)
                finally:
                    stop_waiter.cancel()
                continue

            try:
                messages = await self.read(min(self.batch_size, concurrency - len(self._inflight)))
            except redis.RedisError as e:
                logger.error("Redis error while reading stream", extra={"error": str(e)})
                await asyncio.sleep(1)  # Brief pause before retry
                continue

            for message in messages:
                task = asyncio.create_task(self._run_handler(handler, message))
                self._inflight[task] = message
                task.add_done_callback(self._forget)

            if not messages:
                await asyncio.sleep(0.01)

    async def _run_handler(self, handler: Callable[[StreamMessage], Awaitable[None]], message: StreamMessage) -> None:
        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Message stays pending and is redelivered after the visibility timeout
            logger.error(
                "Message handler failed: message_id=%s, error=%s",
                message.message_id, str(e),
                exc_info=True,
            )

    def _forget(self, task: asyncio.Task) -> None:
        self._inflight.pop(task, None)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def stop(self) -> None:
        """Signal the consume loop to stop reading."""
        self._stop_event.set()

    async def drain(self, timeout: float) -> list[StreamMessage]:
        """
        Wait up to `timeout` seconds for running handlers, then cancel the rest.

        Returns:
            Messages whose handlers had to be cancelled
        """
        if not self._inflight:
            return []

        tasks = dict(self._inflight)
        logger.info("Draining in-flight messages: count=%d, timeout=%.1fs", len(tasks), timeout)

        _done, pending = await asyncio.wait(list(tasks), timeout=timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        return [tasks[task] for task in pending]

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        if self.client:
            await self.client.aclose()
            self.client = None


class RedisVisibilityExtender:
    """
    Extends or releases a pending entry's visibility.

    Uses a synchronous client: it is called from heartbeat scheduler threads,
    outside the event loop.
    """

    def __init__(
        self,
        stream: Optional[str] = None,
        group: Optional[str] = None,
        consumer_name: Optional[str] = None,
        visibility_timeout: Optional[int] = None,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self.stream = stream or settings.EXPORT_STREAM
        self.group = group or settings.EXPORT_CONSUMER_GROUP
        self.consumer_name = consumer_name or settings.EXPORT_CONSUMER_NAME
        self.visibility_timeout = visibility_timeout or settings.QUEUE_VISIBILITY_TIMEOUT
        self.client = client or redis.Redis.from_url(
            redis_url or settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=False,
        )

    def extend(self, message_id: str, seconds: int) -> None:
        """
        Keep a pending entry invisible for `seconds` more.

        The entry's idle time is set so it crosses the reclaim threshold
        `seconds` from now. Values above the visibility timeout are clamped.

        Raises:
            redis.RedisError: If the claim cannot be issued
        """
        if seconds > self.visibility_timeout:
            logger.debug(
                "Requested visibility exceeds queue timeout, clamping: requested=%d, timeout=%d",
                seconds, self.visibility_timeout,
            )
            seconds = self.visibility_timeout

        self._set_idle(message_id, (self.visibility_timeout - max(0, seconds)) * 1000)

    def release(self, message_id: str) -> None:
        """Make a pending entry reclaimable immediately."""
        self._set_idle(message_id, self.visibility_timeout * 1000)
        logger.info("Released message for redelivery: message_id=%s", message_id)

    def _set_idle(self, message_id: str, idle_ms: int) -> None:
        claimed = self.client.xclaim(
            self.stream,
            self.group,
            self.consumer_name,
            min_idle_time=0,
            message_ids=[message_id],
            idle=idle_ms,
            justid=True,
        )
        if not claimed:
            logger.debug("Message no longer pending: message_id=%s", message_id)

    def close(self) -> None:
        self.client.close()
