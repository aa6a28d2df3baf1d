from datetime import timedelta

import pytest

from lock_reconciler.core.leases import LockLeaseManager
from lock_reconciler.db.models import LockLease, utcnow
from lock_reconciler.errors import LeaseUnavailableError


@pytest.fixture
def leases(db) -> LockLeaseManager:
    return LockLeaseManager(db, ttl_seconds=300, wait_seconds=0.0)


async def test_lease_excludes_other_holders(leases):
    assert await leases.try_acquire("1001", "run-1")
    assert not await leases.try_acquire("1001", "retry-7")
    assert await leases.try_acquire("1002", "retry-7")

    # Only the holder can release
    await leases.release("1001", "retry-7")
    assert await leases.current_holder("1001") == "run-1"

    await leases.release("1001", "run-1")
    assert await leases.try_acquire("1001", "retry-7")


async def test_expired_lease_can_be_taken_over(leases, db):
    async with db.session() as session:
        session.add(LockLease(
            lock_id="1001",
            holder="crashed-run",
            acquired_at=utcnow() - timedelta(minutes=10),
            expires_at=utcnow() - timedelta(minutes=5),
        ))

    assert await leases.try_acquire("1001", "run-2")
    assert await leases.current_holder("1001") == "run-2"


async def test_hold_releases_on_exit_and_on_error(leases):
    async with leases.hold("1001", "run-1"):
        assert await leases.current_holder("1001") == "run-1"
    assert await leases.current_holder("1001") is None

    with pytest.raises(RuntimeError):
        async with leases.hold("1001", "run-1"):
            raise RuntimeError("boom")
    assert await leases.current_holder("1001") is None


async def test_hold_gives_up_when_busy(leases):
    await leases.try_acquire("1001", "run-1")

    with pytest.raises(LeaseUnavailableError) as excinfo:
        async with leases.hold("1001", "retry-3"):
            pass

    assert excinfo.value.lock_id == "1001"
    assert excinfo.value.holder == "run-1"
