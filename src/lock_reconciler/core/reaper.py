"""Kills reconciliation runs that have been running for too long."""

import logging
from datetime import timedelta

from sqlalchemy import select, update

from lock_reconciler.db.database import RUN_LOCK_ID, Database
from lock_reconciler.db.models import ReconciliationRun, RunLock, RunStatus, utcnow

logger = logging.getLogger(__name__)


class StuckRunReaper:
    """Moves runs stuck in ``running`` past the timeout to ``killed``."""

    def __init__(self, db: Database, timeout_minutes: int = 60):
        self._db = db
        self.timeout = timedelta(minutes=timeout_minutes)

    async def reap(self) -> list[int]:
        """Kill every stale running run. Returns the ids that were killed."""
        now = utcnow()
        cutoff = now - self.timeout
        killed: list[int] = []

        async with self._db.session() as session:
            result = await session.execute(
                select(ReconciliationRun).where(
                    ReconciliationRun.status == RunStatus.RUNNING.value,
                    ReconciliationRun.start_time < cutoff,
                )
            )
            for run in result.scalars().all():
                run.status = RunStatus.KILLED.value
                run.end_time = now
                run.duration_ms = int((now - run.start_time).total_seconds() * 1000)
                run.error = (
                    f"Run exceeded the {int(self.timeout.total_seconds() // 60)} minute "
                    "timeout and was killed"
                )
                killed.append(run.id)

            if killed:
                await session.execute(
                    update(RunLock)
                    .where(RunLock.id == RUN_LOCK_ID, RunLock.run_id.in_(killed))
                    .values(run_id=None, claimed_at=None)
                )

        for run_id in killed:
            logger.warning("Killed stuck reconciliation run %d", run_id)
        return killed
