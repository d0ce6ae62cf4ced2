"""
Lease Backends - Conditional Writes for Job Leases

Key-value backends exposing the two atomic primitives the lease store is built on:
- create-or-overwrite-if-expired (the claim)
- update-if-present (checkpoint / complete / fail)

RedisLeaseBackend runs each primitive as a single Lua script so there is no
read-then-write window. InMemoryLeaseBackend provides the same semantics inside
one process for local runs and tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as redis

from utils.config import settings
from utils.schemas import JobLease, encode_fields, to_epoch_ms

logger = logging.getLogger(__name__)

# KEYS[1] = lease key
# ARGV[1] = now (epoch ms), ARGV[2] = expire_after (epoch ms), ARGV[3..] = field/value pairs
CLAIM_SCRIPT = """
local expiry = redis.call('HGET', KEYS[1], 'lease_expiry')
if expiry and tonumber(expiry) >= tonumber(ARGV[1]) then
    return 0
end
redis.call('DEL', KEYS[1])
redis.call('HSET', KEYS[1], unpack(ARGV, 3))
redis.call('PEXPIREAT', KEYS[1], ARGV[2])
return 1
"""

# KEYS[1] = lease key, ARGV = field/value pairs
UPDATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""


class LeaseBackend(ABC):
    @abstractmethod
    async def create_if_absent_or_expired(self, lease: JobLease, now_ms: int) -> bool:
        """Atomically write `lease` unless a row with a non-expired lease exists.

        Returns True if the write happened.
        """
        pass

    @abstractmethod
    async def update_if_present(self, lease_key: str, changes: dict[str, Any]) -> bool:
        """Atomically apply `changes` to an existing row. Returns False if missing."""
        pass

    @abstractmethod
    async def get(self, lease_key: str) -> Optional[JobLease]:
        pass

    async def close(self) -> None:
        pass


def _flatten(fields: dict[str, str]) -> list[str]:
    flat: list[str] = []
    for key, value in fields.items():
        flat.extend((key, value))
    return flat


class RedisLeaseBackend(LeaseBackend):
    """Lease rows stored as Redis hashes with a PEXPIREAT retention deadline."""

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None) -> None:
        """Initialize Redis lease backend.

        Args:
            redis_url: Redis connection URL, defaults to settings.REDIS_URL
            key_prefix: Prefix for lease keys, defaults to settings.LEASE_KEY_PREFIX
        """
        self.redis_url = redis_url or settings.REDIS_URL
        self.key_prefix = settings.LEASE_KEY_PREFIX if key_prefix is None else key_prefix
        self.client: Optional[redis.Redis] = None
        self._claim_script = None
        self._update_script = None

    async def connect(self) -> None:
        """Establish Redis connection and register the lease scripts."""
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=False,
            )
            self._claim_script = self.client.register_script(CLAIM_SCRIPT)
            self._update_script = self.client.register_script(UPDATE_SCRIPT)

    def _key(self, lease_key: str) -> str:
        return f"{self.key_prefix}{lease_key}"

    async def create_if_absent_or_expired(self, lease: JobLease, now_ms: int) -> bool:
        if self.client is None:
            await self.connect()

        args = [str(now_ms), str(to_epoch_ms(lease.expire_after)), *_flatten(lease.to_fields())]
        result = await self._claim_script(keys=[self._key(lease.lease_key)], args=args)
        return int(result) == 1

    async def update_if_present(self, lease_key: str, changes: dict[str, Any]) -> bool:
        if self.client is None:
            await self.connect()

        fields = encode_fields(changes)
        if not fields:
            return bool(await self.client.exists(self._key(lease_key)))

        result = await self._update_script(keys=[self._key(lease_key)], args=_flatten(fields))
        return int(result) == 1

    async def get(self, lease_key: str) -> Optional[JobLease]:
        if self.client is None:
            await self.connect()

        fields = await self.client.hgetall(self._key(lease_key))
        if not fields:
            return None
        return JobLease.from_fields(fields)

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        if self.client:
            await self.client.aclose()
            self.client = None


class InMemoryLeaseBackend(LeaseBackend):
    """Process-local lease rows with the same conditional semantics."""

    def __init__(self) -> None:
        # lease key -> encoded fields
        self._rows: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    def _live_row(self, lease_key: str, now_ms: int) -> Optional[dict[str, str]]:
        row = self._rows.get(lease_key)
        if row is not None and int(row["expire_after"]) <= now_ms:
            # Lazy cleanup of rows past retention
            del self._rows[lease_key]
            return None
        return row

    async def create_if_absent_or_expired(self, lease: JobLease, now_ms: int) -> bool:
        async with self._lock:
            existing = self._live_row(lease.lease_key, now_ms)
            if existing is not None and int(existing["lease_expiry"]) >= now_ms:
                return False

            self._rows[lease.lease_key] = lease.to_fields()
            return True

    async def update_if_present(self, lease_key: str, changes: dict[str, Any]) -> bool:
        async with self._lock:
            row = self._rows.get(lease_key)
            if row is None:
                return False
            row.update(encode_fields(changes))
            return True

    async def get(self, lease_key: str) -> Optional[JobLease]:
        async with self._lock:
            row = self._rows.get(lease_key)
            if row is None:
                return None
            return JobLease.from_fields(dict(row))
