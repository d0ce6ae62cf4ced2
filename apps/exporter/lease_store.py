"""
Lease Store - Distributed Idempotency Lock for Export Jobs

Claims, checkpoints and finalizes job leases on top of a LeaseBackend.

Failure semantics:
- claim: backend errors propagate as LeaseStoreError (ownership unknown)
- checkpoint: backend errors are logged and swallowed (progress is best-effort)
- complete / fail: backend errors are logged and swallowed (outcome already decided)
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from utils.config import settings
from utils.leases import LeaseBackend
from utils.schemas import JobLease, LeaseStatus, to_epoch_ms

logger = logging.getLogger(__name__)


class LeaseStoreError(Exception):
    """The lease backend could not be reached or rejected the operation."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LeaseStore:
    """Claim / renew / complete / fail operations on job leases."""

    def __init__(
        self,
        backend: LeaseBackend,
        lease_duration: Optional[float] = None,
        retention: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize lease store.

        Args:
            backend: Key-value backend providing the conditional primitives
            lease_duration: Seconds a claim stays exclusive, defaults to settings.LEASE_DURATION
            retention: Seconds a row is kept before garbage collection, defaults to settings.LEASE_RETENTION
            clock: Source of the current UTC time
        """
        self.backend = backend
        self.lease_duration = timedelta(
            seconds=settings.LEASE_DURATION if lease_duration is None else lease_duration
        )
        self.retention = timedelta(seconds=settings.LEASE_RETENTION if retention is None else retention)
        self.clock = clock

    @staticmethod
    def lease_key_for(delivery_id: str) -> str:
        """Lease identity for one queue delivery; redeliveries share it."""
        return f"msg#{delivery_id}"

    async def claim(self, lease_key: str, business_job_id: str) -> bool:
        """
        Attempt to claim a lease with a single conditional write.

        Succeeds iff no row exists for the key or its lease has expired.

        Returns:
            True if this call won the claim, False if a live lease exists

        Raises:
            LeaseStoreError: If the backend call fails
        """
        now = self.clock()
        lease = JobLease(
            lease_key=lease_key,
            status=LeaseStatus.IN_PROGRESS,
            lease_expiry=now + self.lease_duration,
            owner_token=uuid.uuid4().hex,
            business_job_id=business_job_id,
            records_processed=0,
            created_at=now,
            updated_at=now,
            expire_after=now + self.retention,
        )

        try:
            claimed = await self.backend.create_if_absent_or_expired(lease, to_epoch_ms(now))
        except Exception as e:
            logger.error(
                "Lease claim failed",
                extra={"lease_key": lease_key, "job_id": business_job_id, "error": str(e)},
            )
            raise LeaseStoreError(f"Failed to claim lease {lease_key}: {e}") from e

        if claimed:
            logger.debug(
                "Lease claimed",
                extra={"lease_key": lease_key, "owner_token": lease.owner_token},
            )
        else:
            logger.debug("Lease already held", extra={"lease_key": lease_key})

        return claimed

    async def checkpoint(self, lease_key: str, progress_marker: str, records_processed: int) -> None:
        """Record progress and push the lease expiry forward. Never raises."""
        now = self.clock()
        changes = {
            "progress_marker": progress_marker,
            "records_processed": records_processed,
            "updated_at": now,
            "lease_expiry": now + self.lease_duration,
        }

        try:
            updated = await self.backend.update_if_present(lease_key, changes)
        except Exception as e:
            logger.warning(
                "Checkpoint write failed, continuing",
                extra={"lease_key": lease_key, "records_processed": records_processed, "error": str(e)},
            )
            return

        if not updated:
            logger.debug("Checkpoint skipped, lease missing", extra={"lease_key": lease_key})

    async def complete(self, lease_key: str, records_processed: Optional[int] = None) -> None:
        """Mark the lease COMPLETED. Errors are logged, never raised."""
        changes = {"status": LeaseStatus.COMPLETED, "updated_at": self.clock()}
        if records_processed is not None:
            changes["records_processed"] = records_processed

        await self._finalize(lease_key, changes)

    async def fail(
        self,
        lease_key: str,
        error_detail: str,
        records_processed: Optional[int] = None,
    ) -> None:
        """Mark the lease FAILED and expire it so a redelivery can reclaim the job.

        Errors are logged, never raised.
        """
        now = self.clock()
        changes = {
            "status": LeaseStatus.FAILED,
            "error_detail": error_detail or "unknown error",
            "updated_at": now,
            "lease_expiry": now,
        }
        if records_processed is not None:
            changes["records_processed"] = records_processed

        await self._finalize(lease_key, changes)

    async def _finalize(self, lease_key: str, changes: dict) -> None:
        status = changes["status"].value

        try:
            updated = await self.backend.update_if_present(lease_key, changes)
        except Exception as e:
            logger.error(
                "Failed to record lease outcome",
                extra={"lease_key": lease_key, "status": status, "error": str(e)},
            )
            return

        if updated:
            logger.info("Lease finalized", extra={"lease_key": lease_key, "status": status})
        else:
            logger.warning("Lease missing at finalization", extra={"lease_key": lease_key, "status": status})

    async def get(self, lease_key: str) -> Optional[JobLease]:
        return await self.backend.get(lease_key)
