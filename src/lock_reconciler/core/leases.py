"""Per-lock leases serializing passcode changes across runs and retries."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from lock_reconciler.db.database import Database
from lock_reconciler.db.models import LockLease, utcnow
from lock_reconciler.errors import LeaseUnavailableError

logger = logging.getLogger(__name__)


class LockLeaseManager:
    """Short-lived advisory leases keyed by vendor lock id.

    A lease row is taken before the idempotency check and the device call and
    deleted once the local records are written. Expired leases (a crashed
    holder) can be taken over.
    """

    POLL_INTERVAL = 1.0

    def __init__(self, db: Database, ttl_seconds: int = 300, wait_seconds: float = 30.0):
        self._db = db
        self._ttl = timedelta(seconds=ttl_seconds)
        self._wait = wait_seconds

    async def try_acquire(self, lock_id: str, holder: str) -> bool:
        """Take the lease if it is free or expired."""
        now = utcnow()
        try:
            async with self._db.session() as session:
                session.add(LockLease(
                    lock_id=lock_id,
                    holder=holder,
                    acquired_at=now,
                    expires_at=now + self._ttl,
                ))
            return True
        except IntegrityError:
            pass

        async with self._db.session() as session:
            result = await session.execute(
                update(LockLease)
                .where(LockLease.lock_id == lock_id, LockLease.expires_at < now)
                .values(holder=holder, acquired_at=now, expires_at=now + self._ttl)
            )
            if result.rowcount == 1:
                logger.warning("Took over expired lease on lock %s", lock_id)
                return True
        return False

    async def release(self, lock_id: str, holder: str) -> None:
        async with self._db.session() as session:
            await session.execute(
                delete(LockLease).where(LockLease.lock_id == lock_id, LockLease.holder == holder)
            )

    async def current_holder(self, lock_id: str) -> Optional[str]:
        async with self._db.session() as session:
            result = await session.execute(
                select(LockLease.holder).where(LockLease.lock_id == lock_id)
            )
            return result.scalar_one_or_none()

    @asynccontextmanager
    async def hold(self, lock_id: str, holder: str) -> AsyncGenerator[None, None]:
        """Hold the lease for ``lock_id`` for the duration of the block.

        Raises:
            LeaseUnavailableError: If the lease is still held by someone else
                after waiting ``wait_seconds``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait
        while not await self.try_acquire(lock_id, holder):
            if loop.time() >= deadline:
                raise LeaseUnavailableError(lock_id, await self.current_holder(lock_id))
            await asyncio.sleep(self.POLL_INTERVAL)

        try:
            yield
        finally:
            await self.release(lock_id, holder)
