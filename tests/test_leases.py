from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import pytest

from utils.leases import InMemoryLeaseBackend, RedisLeaseBackend
from utils.schemas import JobLease, LeaseStatus, to_epoch_ms

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_lease(lease_key="msg#1", expiry_seconds=1800, retention_seconds=172800):
    return JobLease(
        lease_key=lease_key,
        status=LeaseStatus.IN_PROGRESS,
        lease_expiry=NOW + timedelta(seconds=expiry_seconds),
        owner_token="owner-a",
        business_job_id="job-123",
        created_at=NOW,
        updated_at=NOW,
        expire_after=NOW + timedelta(seconds=retention_seconds),
    )


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.register_script.side_effect = [AsyncMock(return_value=1), AsyncMock(return_value=1)]
    client.aclose = AsyncMock()
    with patch("utils.leases.redis.from_url", return_value=client):
        yield client


@pytest.mark.anyio
async def test_redis_claim_runs_script_with_prefixed_key(redis_client):
    backend = RedisLeaseBackend(redis_url="redis://test", key_prefix="export-lease:")
    lease = make_lease()

    assert await backend.create_if_absent_or_expired(lease, to_epoch_ms(NOW)) is True

    claim_script = backend._claim_script
    kwargs = claim_script.await_args.kwargs
    assert kwargs["keys"] == ["export-lease:msg#1"]
    assert kwargs["args"][0] == str(to_epoch_ms(NOW))
    assert kwargs["args"][1] == str(to_epoch_ms(lease.expire_after))
    pairs = dict(zip(kwargs["args"][2::2], kwargs["args"][3::2]))
    assert pairs["status"] == "IN_PROGRESS"
    assert pairs["lease_expiry"] == str(to_epoch_ms(lease.lease_expiry))


@pytest.mark.anyio
async def test_redis_claim_reports_lost_race(redis_client):
    backend = RedisLeaseBackend(redis_url="redis://test")
    await backend.connect()
    backend._claim_script.return_value = 0

    assert await backend.create_if_absent_or_expired(make_lease(), to_epoch_ms(NOW)) is False


@pytest.mark.anyio
async def test_redis_update_encodes_changes(redis_client):
    backend = RedisLeaseBackend(redis_url="redis://test", key_prefix="")

    updated = await backend.update_if_present(
        "msg#1", {"status": LeaseStatus.COMPLETED, "updated_at": NOW, "error_detail": None}
    )

    assert updated is True
    kwargs = backend._update_script.await_args.kwargs
    assert kwargs["keys"] == ["msg#1"]
    assert kwargs["args"] == ["status", "COMPLETED", "updated_at", str(to_epoch_ms(NOW))]


@pytest.mark.anyio
async def test_redis_get_decodes_hash(redis_client):
    redis_client.hgetall = AsyncMock(
        return_value={k.encode(): v.encode() for k, v in make_lease().to_fields().items()}
    )
    backend = RedisLeaseBackend(redis_url="redis://test")

    lease = await backend.get("msg#1")

    assert lease.owner_token == "owner-a"
    assert lease.lease_expiry == NOW + timedelta(seconds=1800)


@pytest.mark.anyio
async def test_in_memory_reclaim_only_after_expiry():
    backend = InMemoryLeaseBackend()
    await backend.create_if_absent_or_expired(make_lease(expiry_seconds=10), to_epoch_ms(NOW))

    replacement = make_lease()
    assert await backend.create_if_absent_or_expired(replacement, to_epoch_ms(NOW + timedelta(seconds=10))) is False
    assert await backend.create_if_absent_or_expired(replacement, to_epoch_ms(NOW + timedelta(seconds=11))) is True


@pytest.fixture
def fake_redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    with patch("utils.leases.redis.from_url", return_value=client):
        yield client


def live_lease(now, owner_token="owner-a", expiry_seconds=10, retention_seconds=172800):
    return JobLease(
        lease_key="msg#1-0",
        status=LeaseStatus.IN_PROGRESS,
        lease_expiry=now + timedelta(seconds=expiry_seconds),
        owner_token=owner_token,
        business_job_id="job-123",
        created_at=now,
        updated_at=now,
        expire_after=now + timedelta(seconds=retention_seconds),
    )


@pytest.mark.anyio
async def test_redis_claim_script_blocks_live_lease_until_after_expiry(fake_redis):
    backend = RedisLeaseBackend(redis_url="redis://test", key_prefix="export-lease:")
    now = datetime.now(timezone.utc).replace(microsecond=0)
    first = live_lease(now)

    assert await backend.create_if_absent_or_expired(first, to_epoch_ms(now)) is True

    rival = live_lease(now, owner_token="owner-b")
    assert await backend.create_if_absent_or_expired(rival, to_epoch_ms(now + timedelta(seconds=1))) is False
    # A lease whose expiry equals the current millisecond is still held
    assert await backend.create_if_absent_or_expired(rival, to_epoch_ms(first.lease_expiry)) is False
    assert (await backend.get("msg#1-0")).owner_token == "owner-a"

    assert await backend.create_if_absent_or_expired(rival, to_epoch_ms(first.lease_expiry) + 1) is True
    assert (await backend.get("msg#1-0")).owner_token == "owner-b"


@pytest.mark.anyio
async def test_redis_reclaim_replaces_the_whole_row(fake_redis):
    backend = RedisLeaseBackend(redis_url="redis://test", key_prefix="")
    now = datetime.now(timezone.utc).replace(microsecond=0)
    await backend.create_if_absent_or_expired(live_lease(now), to_epoch_ms(now))
    await backend.update_if_present("msg#1-0", {"progress_marker": "dir/a.txt", "records_processed": 4})

    later = now + timedelta(seconds=11)
    assert await backend.create_if_absent_or_expired(live_lease(later, owner_token="owner-c"), to_epoch_ms(later))

    lease = await backend.get("msg#1-0")
    assert lease.owner_token == "owner-c"
    assert lease.progress_marker is None
    assert lease.records_processed == 0


@pytest.mark.anyio
async def test_redis_claim_sets_retention_deadline(fake_redis):
    backend = RedisLeaseBackend(redis_url="redis://test", key_prefix="")
    now = datetime.now(timezone.utc)

    await backend.create_if_absent_or_expired(live_lease(now, retention_seconds=3600), to_epoch_ms(now))

    ttl_ms = await fake_redis.pttl("msg#1-0")
    assert 0 < ttl_ms <= 3600 * 1000


@pytest.mark.anyio
async def test_redis_update_script_only_touches_existing_rows(fake_redis):
    backend = RedisLeaseBackend(redis_url="redis://test", key_prefix="")
    now = datetime.now(timezone.utc).replace(microsecond=0)

    assert await backend.update_if_present("msg#1-0", {"status": LeaseStatus.COMPLETED}) is False
    assert await fake_redis.exists("msg#1-0") == 0

    await backend.create_if_absent_or_expired(live_lease(now), to_epoch_ms(now))
    assert await backend.update_if_present("msg#1-0", {"status": LeaseStatus.COMPLETED, "records_processed": 3})

    lease = await backend.get("msg#1-0")
    assert lease.status == LeaseStatus.COMPLETED
    assert lease.records_processed == 3
    assert lease.owner_token == "owner-a"
