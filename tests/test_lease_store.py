import asyncio
from unittest.mock import AsyncMock

import pytest

from apps.exporter.lease_store import LeaseStore, LeaseStoreError
from tests.helpers import FakeClock
from utils.leases import InMemoryLeaseBackend
from utils.schemas import LeaseStatus


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return LeaseStore(InMemoryLeaseBackend(), lease_duration=1800, retention=172800, clock=clock)


def test_lease_key_uses_delivery_id():
    assert LeaseStore.lease_key_for("1700000000000-0") == "msg#1700000000000-0"


@pytest.mark.anyio
async def test_claim_creates_in_progress_lease(store, clock):
    assert await store.claim("msg#1", "job-123") is True

    lease = await store.get("msg#1")
    assert lease.status == LeaseStatus.IN_PROGRESS
    assert lease.business_job_id == "job-123"
    assert lease.records_processed == 0
    assert lease.owner_token
    assert (lease.lease_expiry - clock.now).total_seconds() == 1800
    assert (lease.expire_after - clock.now).total_seconds() == 172800


@pytest.mark.anyio
async def test_concurrent_claims_yield_exactly_one_winner(store):
    results = await asyncio.gather(*[store.claim("msg#1", "job-123") for _ in range(20)])

    assert results.count(True) == 1
    assert results.count(False) == 19


@pytest.mark.anyio
async def test_claim_blocked_while_lease_live(store, clock):
    await store.claim("msg#1", "job-123")
    clock.advance(1799)

    assert await store.claim("msg#1", "job-123") is False


@pytest.mark.anyio
async def test_expired_lease_is_reclaimed(store, clock):
    await store.claim("msg#1", "job-123")
    first = await store.get("msg#1")

    clock.advance(1801)
    assert await store.claim("msg#1", "job-123") is True

    second = await store.get("msg#1")
    assert second.owner_token != first.owner_token
    assert second.lease_expiry > first.lease_expiry


@pytest.mark.anyio
async def test_checkpoint_records_progress_and_refreshes_expiry(store, clock):
    await store.claim("msg#1", "job-123")
    clock.advance(600)

    await store.checkpoint("msg#1", "dir/b.txt", 42)

    lease = await store.get("msg#1")
    assert lease.progress_marker == "dir/b.txt"
    assert lease.records_processed == 42
    assert lease.lease_expiry == clock.now + store.lease_duration
    assert lease.updated_at == clock.now


@pytest.mark.anyio
async def test_checkpoint_on_missing_lease_is_a_no_op(store):
    await store.checkpoint("msg#missing", "a.txt", 1)

    assert await store.get("msg#missing") is None


@pytest.mark.anyio
async def test_checkpoint_swallows_backend_errors(clock):
    backend = AsyncMock()
    backend.update_if_present.side_effect = ConnectionError("redis down")
    store = LeaseStore(backend, clock=clock)

    await store.checkpoint("msg#1", "a.txt", 1)

    backend.update_if_present.assert_awaited_once()


@pytest.mark.anyio
async def test_claim_backend_error_propagates(clock):
    backend = AsyncMock()
    backend.create_if_absent_or_expired.side_effect = ConnectionError("redis down")
    store = LeaseStore(backend, clock=clock)

    with pytest.raises(LeaseStoreError):
        await store.claim("msg#1", "job-123")


@pytest.mark.anyio
async def test_complete_marks_lease_completed(store):
    await store.claim("msg#1", "job-123")

    await store.complete("msg#1", records_processed=2)

    lease = await store.get("msg#1")
    assert lease.status == LeaseStatus.COMPLETED
    assert lease.records_processed == 2
    assert lease.error_detail is None


@pytest.mark.anyio
async def test_completed_lease_blocks_duplicate_until_expiry(store, clock):
    await store.claim("msg#1", "job-123")
    await store.complete("msg#1")
    clock.advance(60)

    assert await store.claim("msg#1", "job-123") is False


@pytest.mark.anyio
async def test_fail_records_error_and_allows_redelivery_to_reclaim(store, clock):
    await store.claim("msg#1", "job-123")

    await store.fail("msg#1", "download failed", records_processed=3)

    lease = await store.get("msg#1")
    assert lease.status == LeaseStatus.FAILED
    assert lease.error_detail == "download failed"
    assert lease.records_processed == 3

    clock.advance(1)
    assert await store.claim("msg#1", "job-123") is True
    assert (await store.get("msg#1")).status == LeaseStatus.IN_PROGRESS


@pytest.mark.anyio
async def test_finalize_on_missing_lease_is_a_no_op(store):
    await store.complete("msg#missing")
    await store.fail("msg#missing", "boom")

    assert await store.get("msg#missing") is None


@pytest.mark.anyio
async def test_finalize_swallows_backend_errors(clock):
    backend = AsyncMock()
    backend.update_if_present.side_effect = ConnectionError("redis down")
    store = LeaseStore(backend, clock=clock)

    await store.complete("msg#1")
    await store.fail("msg#1", "boom")

    assert backend.update_if_present.await_count == 2
