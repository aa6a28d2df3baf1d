"""Reconciliation manager that wires and orchestrates all components."""

import asyncio
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from lock_reconciler.config import Settings
from lock_reconciler.core.config_cache import ConfigCache
from lock_reconciler.core.directory_sync import DirectorySyncResult, LockDirectorySync
from lock_reconciler.core.failure_log import FailureLogMirror
from lock_reconciler.core.leases import LockLeaseManager
from lock_reconciler.core.ledger import (
    FailureLedger,
    SuccessLedger,
    UpdateContext,
    failure_to_dict,
)
from lock_reconciler.core.reaper import StuckRunReaper
from lock_reconciler.core.reconciler import ReconciliationRunner
from lock_reconciler.core.retry import RetrySummary, RetryWorker
from lock_reconciler.core.runs import RunStore, run_to_dict
from lock_reconciler.core.updater import LockCodeUpdater, UpdateResult
from lock_reconciler.db.database import Database
from lock_reconciler.db.models import LockProfile
from lock_reconciler.duve.client import DuveClient
from lock_reconciler.scheduler.scheduler import ReconciliationScheduler
from lock_reconciler.sifely.client import SifelyClient

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r"^\d{4}$")


def normalize_code(code: str) -> str:
    """Strip a leading ``#`` and check the code is exactly 4 digits."""
    value = (code or "").strip().lstrip("#")
    if not _CODE_RE.match(value):
        raise ValueError("Passcode must be exactly 4 digits")
    return value


class ReconciliationManager:
    """Owns the database, vendor clients and engine components."""

    def __init__(
        self,
        settings: Settings,
        duve_transport: Optional[httpx.AsyncBaseTransport] = None,
        sifely_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.db = Database(settings.database_url)
        self.config = ConfigCache(self.db, settings)

        self._duve = DuveClient(
            self.config, page_size=settings.reservation_page_size, transport=duve_transport
        )
        self._sifely = SifelyClient(self.config, transport=sifely_transport)

        self.leases = LockLeaseManager(
            self.db,
            ttl_seconds=settings.lease_ttl_seconds,
            wait_seconds=settings.lease_wait_seconds,
        )
        self.runs = RunStore(self.db)
        self.reaper = StuckRunReaper(self.db, timeout_minutes=settings.stuck_run_timeout_minutes)
        self.failures = FailureLedger(self.db, FailureLogMirror(settings.failure_log_path))
        self.successes = SuccessLedger(self.db)
        self.updater = LockCodeUpdater(self.db, self._sifely, self._duve)
        self.runner = ReconciliationRunner(
            db=self.db,
            runs=self.runs,
            reaper=self.reaper,
            duve=self._duve,
            updater=self.updater,
            leases=self.leases,
            failures=self.failures,
            successes=self.successes,
            max_pages=settings.max_reservation_pages,
        )
        self.retry_worker = RetryWorker(self.updater, self.leases, self.failures, self.successes)
        self.directory = LockDirectorySync(self.db, self._sifely)

        self._scheduler: Optional[ReconciliationScheduler] = None
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    async def initialize(self) -> None:
        """Create tables and seed the run lock."""
        logger.info("Initializing lock reconciler...")
        await self.db.init()
        logger.info("Lock reconciler initialized")

    async def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            return
        self._running = True
        self._scheduler = ReconciliationScheduler(
            on_daily_run=lambda: self.trigger_run(trigger="scheduled"),
            on_reap=self.reaper.reap,
            daily_run_hour=self.settings.daily_run_hour,
            reap_interval_minutes=self.settings.reap_interval_minutes,
        )
        self._scheduler.start()
        logger.info("Lock reconciler started")

    async def stop(self) -> None:
        """Stop the scheduler, wait for background runs and close clients."""
        self._running = False
        if self._scheduler:
            self._scheduler.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._duve.close()
        await self._sifely.close()
        await self.db.dispose()
        logger.info("Lock reconciler stopped")

    # Runs

    async def trigger_run(self, trigger: str = "manual") -> int:
        """Claim a new run and execute it in the background.

        Returns:
            The new run id, as soon as the run has been claimed.

        Raises:
            RunAlreadyActiveError: If another run is in progress.
        """
        await self.reaper.reap()
        run_id = await self.runs.start_run(trigger)
        task = asyncio.create_task(self.runner.execute(run_id), name=f"reconcile-{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run_id

    async def run_now(self, trigger: str = "manual") -> dict[str, Any]:
        """Run a full reconciliation in the foreground and return its summary."""
        run_id = await self.runner.run(trigger)
        return await self.get_run(run_id)

    async def kill_run(self, run_id: int) -> dict[str, Any]:
        await self.runs.kill_run(run_id)
        return await self.get_run(run_id)

    async def get_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        return [run_to_dict(run) for run in await self.runs.list_runs(limit)]

    async def get_run(self, run_id: int) -> Optional[dict[str, Any]]:
        return await self.runs.get_run_detail(run_id)

    async def get_statistics(self) -> dict[str, Any]:
        stats = await self.runs.statistics()
        stats["active_run_id"] = await self.runs.active_run_id()
        if self._scheduler:
            stats["next_scheduled_run"] = self._scheduler.next_run_time()
        return stats

    # Failures

    async def get_failures(self, include_resolved: bool = False) -> list[dict[str, Any]]:
        records = await self.failures.list_failures(unresolved_only=not include_resolved)
        return [failure_to_dict(record) for record in records]

    async def retry_failures(self, ids: Optional[Iterable[int]] = None) -> RetrySummary:
        return await self.retry_worker.retry_outstanding(ids)

    async def delete_failures(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            raise ValueError("No failure ids given")
        deleted = await self.failures.delete(ids)
        logger.info("Deleted %d failure records", deleted)
        return deleted

    # Locks

    async def get_locks(self) -> list[dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(LockProfile)
                .options(selectinload(LockProfile.passcode_slots))
                .order_by(LockProfile.street_number, LockProfile.lock_name)
            )
            profiles = result.scalars().all()
            return [
                {
                    "id": p.id,
                    "street_number": p.street_number,
                    "lock_name": p.lock_name,
                    "full_property_name": p.full_property_name,
                    "lock_id": p.lock_id,
                    "lock_code": p.lock_code,
                    "slots": [
                        {
                            "passcode_id": s.passcode_id,
                            "name": s.name,
                            "code": s.code,
                            "start_at": s.start_at.isoformat() if s.start_at else None,
                            "end_at": s.end_at.isoformat() if s.end_at else None,
                            "status": s.status,
                        }
                        for s in sorted(p.passcode_slots, key=lambda s: s.passcode_id)
                    ],
                }
                for p in profiles
            ]

    async def refresh_locks(self) -> DirectorySyncResult:
        return await self.directory.refresh()

    async def manual_update(
        self,
        lock_id: str,
        code: str,
        start_date: date,
        end_date: date,
        reservation_id: Optional[str] = None,
        skip_upstream: bool = False,
    ) -> UpdateResult:
        """Issue an operator-chosen code on a lock's guest slot.

        Raises:
            ValueError: On a malformed code or an inverted window.
            LeaseUnavailableError: If the lock is busy.
        """
        code = normalize_code(code)
        if end_date < start_date:
            raise ValueError("end_date must not be before start_date")

        async with self.leases.hold(lock_id, "manual"):
            loop = asyncio.get_running_loop()
            started = loop.time()
            result = await self.updater.update_code(
                lock_id,
                code,
                start_date,
                end_date,
                external_reservation_id=reservation_id,
                skip_upstream=skip_upstream,
            )
            if result.success:
                ctx = UpdateContext(
                    external_reservation_id=reservation_id or "manual",
                    lock_id=lock_id,
                    start_date=result.window_start,
                    end_date=result.window_end,
                )
                await self.successes.record(
                    ctx, result, int((loop.time() - started) * 1000), source="manual"
                )
        return result

    # Configuration

    async def get_config(self) -> dict[str, Any]:
        values = await self.config.get_all()
        return {key: bool(value) for key, value in values.items()}

    async def set_config(self, values: dict[str, str]) -> dict[str, Any]:
        # Reject the whole batch before writing anything
        for key in values:
            self.config.coerce_key(key)
        for key, value in values.items():
            await self.config.set(key, value)
        return await self.get_config()

    async def health_check(self) -> dict[str, Any]:
        """Check the health of all components."""
        return {
            "status": "ok",
            "duve_configured": await self._duve.health_check(),
            "sifely_configured": await self._sifely.health_check(),
            "scheduler_running": self._running,
            "active_run_id": await self.runs.active_run_id(),
            "unresolved_failures": await self.failures.count_unresolved(),
            "time": datetime.now(timezone.utc).isoformat(),
        }
