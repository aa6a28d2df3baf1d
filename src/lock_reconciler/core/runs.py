"""Reconciliation run lifecycle and the single-run claim."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import selectinload

from lock_reconciler.db.database import RUN_LOCK_ID, Database
from lock_reconciler.db.models import (
    FailedLockUpdate,
    ReconciliationRun,
    RunLock,
    RunStatus,
    SuccessfulLockUpdate,
    utcnow,
)
from lock_reconciler.errors import (
    RunAlreadyActiveError,
    RunNotFoundError,
    RunNotRunningError,
)

logger = logging.getLogger(__name__)

KILLED_MESSAGE = "Run was manually killed"


@dataclass
class RunCounters:
    """Progress counters of an in-flight run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


def _duration_ms(run: ReconciliationRun) -> int:
    return int((utcnow() - run.start_time).total_seconds() * 1000)


def run_to_dict(run: ReconciliationRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "trigger": run.trigger,
        "status": run.status,
        "start_time": run.start_time.isoformat() if run.start_time else None,
        "end_time": run.end_time.isoformat() if run.end_time else None,
        "duration_ms": run.duration_ms,
        "reservations_processed": run.reservations_processed,
        "success_count": run.success_count,
        "failure_count": run.failure_count,
        "skipped_count": run.skipped_count,
        "error": run.error,
    }


class RunStore:
    """Creates, updates and closes reconciliation runs.

    At most one run is ``running`` at a time. The claim is the ``run_lock``
    row: starting a run sets its ``run_id`` with a conditional update in the
    same transaction as the run insert, and every terminal transition clears
    it again.
    """

    def __init__(self, db: Database):
        self._db = db

    async def start_run(self, trigger: str = "scheduled") -> int:
        """Insert a new running run and claim the run lock.

        Raises:
            RunAlreadyActiveError: If another run holds the claim.
        """
        async with self._db.session() as session:
            run = ReconciliationRun(trigger=trigger, status=RunStatus.RUNNING.value)
            session.add(run)
            await session.flush()

            result = await session.execute(
                update(RunLock)
                .where(RunLock.id == RUN_LOCK_ID, RunLock.run_id.is_(None))
                .values(run_id=run.id, claimed_at=utcnow())
            )
            if result.rowcount != 1:
                await session.rollback()
                holder = await session.execute(
                    select(RunLock.run_id).where(RunLock.id == RUN_LOCK_ID)
                )
                active = holder.scalar_one_or_none()
                raise RunAlreadyActiveError(f"Reconciliation run {active} is already running")
            run_id = run.id

        logger.info("Started reconciliation run %d (%s)", run_id, trigger)
        return run_id

    async def save_progress(self, run_id: int, counters: RunCounters) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(ReconciliationRun)
                .where(ReconciliationRun.id == run_id)
                .values(
                    reservations_processed=counters.processed,
                    success_count=counters.succeeded,
                    failure_count=counters.failed,
                    skipped_count=counters.skipped,
                )
            )

    async def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        counters: Optional[RunCounters] = None,
        error: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> bool:
        """Move a running run to a terminal status and release the claim.

        Returns False when the run already left ``running`` (it was killed or
        reaped), in which case nothing is overwritten.
        """
        async with self._db.session() as session:
            run = await session.get(ReconciliationRun, run_id)
            if run is None or run.status != RunStatus.RUNNING.value:
                return False
            run.status = status.value
            run.end_time = utcnow()
            run.duration_ms = _duration_ms(run)
            if counters is not None:
                run.reservations_processed = counters.processed
                run.success_count = counters.succeeded
                run.failure_count = counters.failed
                run.skipped_count = counters.skipped
            run.error = error
            run.error_detail = error_detail
            await self._release_claim(session, run_id)

        logger.info(
            "Reconciliation run %d %s in %d ms", run_id, status.value, run.duration_ms or 0
        )
        return True

    async def kill_run(self, run_id: int, message: str = KILLED_MESSAGE) -> None:
        """Force a running run into ``killed``.

        Raises:
            RunNotFoundError: Unknown run id
            RunNotRunningError: The run already finished
        """
        async with self._db.session() as session:
            run = await session.get(ReconciliationRun, run_id)
            if run is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if run.status != RunStatus.RUNNING.value:
                raise RunNotRunningError(f"Run {run_id} is not running (status: {run.status})")
            run.status = RunStatus.KILLED.value
            run.end_time = utcnow()
            run.duration_ms = _duration_ms(run)
            run.error = message
            await self._release_claim(session, run_id)
        logger.warning("Reconciliation run %d killed: %s", run_id, message)

    @staticmethod
    async def _release_claim(session, run_id: int) -> None:
        await session.execute(
            update(RunLock)
            .where(RunLock.id == RUN_LOCK_ID, RunLock.run_id == run_id)
            .values(run_id=None, claimed_at=None)
        )

    async def is_running(self, run_id: int) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                select(ReconciliationRun.status).where(ReconciliationRun.id == run_id)
            )
            return result.scalar_one_or_none() == RunStatus.RUNNING.value

    async def active_run_id(self) -> Optional[int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(RunLock.run_id).where(RunLock.id == RUN_LOCK_ID)
            )
            return result.scalar_one_or_none()

    async def get_run(self, run_id: int) -> Optional[ReconciliationRun]:
        async with self._db.session() as session:
            return await session.get(ReconciliationRun, run_id)

    async def get_run_detail(self, run_id: int) -> Optional[dict[str, Any]]:
        """Run summary plus its success and failure records."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ReconciliationRun)
                .where(ReconciliationRun.id == run_id)
                .options(
                    selectinload(ReconciliationRun.failures),
                    selectinload(ReconciliationRun.successes),
                )
            )
            run = result.scalar_one_or_none()
            if run is None:
                return None
            detail = run_to_dict(run)
            detail["error_detail"] = run.error_detail
            detail["successes"] = [
                {
                    "id": s.id,
                    "reservation": s.external_reservation_id,
                    "lock_id": s.lock_id,
                    "property_name": s.property_name,
                    "guest_name": s.guest_name,
                    "lock_code": s.lock_code,
                    "code_start": s.code_start.isoformat(),
                    "code_end": s.code_end.isoformat(),
                    "processing_ms": s.processing_ms,
                    "upstream_patched": s.upstream_patched,
                    "source": s.source,
                }
                for s in run.successes
            ]
            detail["failures"] = [
                {
                    "id": f.id,
                    "reservation": f.external_reservation_id,
                    "lock_id": f.lock_id,
                    "property_name": f.property_name,
                    "error_kind": f.error_kind,
                    "error": f.error,
                    "retry_count": f.retry_count,
                    "resolved": f.resolved,
                }
                for f in run.failures
            ]
            return detail

    async def list_runs(self, limit: int = 20) -> list[ReconciliationRun]:
        async with self._db.session() as session:
            result = await session.execute(
                select(ReconciliationRun)
                .order_by(ReconciliationRun.start_time.desc(), ReconciliationRun.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def statistics(self) -> dict[str, Any]:
        """Aggregate counts over all runs and update records."""
        async with self._db.session() as session:
            by_status = await session.execute(
                select(ReconciliationRun.status, func.count(ReconciliationRun.id))
                .group_by(ReconciliationRun.status)
            )
            successes = await session.execute(select(func.count(SuccessfulLockUpdate.id)))
            unresolved = await session.execute(
                select(func.count(FailedLockUpdate.id)).where(FailedLockUpdate.resolved.is_(False))
            )
            return {
                "runs": {status: count for status, count in by_status.all()},
                "successful_updates": successes.scalar_one(),
                "unresolved_failures": unresolved.scalar_one(),
            }
