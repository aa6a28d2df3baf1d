"""Reconciliation runs: issue fresh guest passcodes for due reservations."""

import asyncio
import logging
import traceback
from datetime import datetime, time, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import select

from lock_reconciler.config import RESERVATION_CUTOFF_TIME_UTC, UNKNOWN_LOCK_ID
from lock_reconciler.core.ledger import FailureLedger, SuccessLedger, UpdateContext
from lock_reconciler.core.leases import LockLeaseManager
from lock_reconciler.core.matcher import MatchResult, parse_property_name
from lock_reconciler.core.reaper import StuckRunReaper
from lock_reconciler.core.runs import RunCounters, RunStore
from lock_reconciler.core.updater import LockCodeUpdater, UpdateFailure, generate_code
from lock_reconciler.db.database import Database
from lock_reconciler.db.models import LockProfile, Reservation, RunStatus, as_naive_utc
from lock_reconciler.duve.client import DuveClient, DuveReservation
from lock_reconciler.errors import ErrorKind, LeaseUnavailableError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationRunner:
    """Runs one reconciliation pass over the reservations due from today.

    Reservations are handled strictly one after another. A failure on one
    reservation is recorded and the pass moves on to the next one.
    """

    def __init__(
        self,
        db: Database,
        runs: RunStore,
        reaper: StuckRunReaper,
        duve: DuveClient,
        updater: LockCodeUpdater,
        leases: LockLeaseManager,
        failures: FailureLedger,
        successes: SuccessLedger,
        matcher: Callable[[Optional[str]], MatchResult] = parse_property_name,
        max_pages: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._db = db
        self._runs = runs
        self._reaper = reaper
        self._duve = duve
        self._updater = updater
        self._leases = leases
        self._failures = failures
        self._successes = successes
        self._matcher = matcher
        self._max_pages = max_pages
        self._clock = clock

    def cutoff(self) -> datetime:
        """Earliest check-in fetched: today at 16:00 UTC."""
        now = self._clock()
        return datetime.combine(now.date(), RESERVATION_CUTOFF_TIME_UTC, tzinfo=timezone.utc)

    def start_of_day(self) -> datetime:
        return datetime.combine(self._clock().date(), time(0, 0), tzinfo=timezone.utc)

    async def run(self, trigger: str = "scheduled") -> int:
        """Reap stuck runs, claim a new run and execute it to completion.

        Raises:
            RunAlreadyActiveError: If another run is in progress.
        """
        await self._reaper.reap()
        run_id = await self._runs.start_run(trigger)
        await self.execute(run_id)
        return run_id

    async def execute(self, run_id: int) -> RunStatus:
        """Process all due reservations for an already claimed run."""
        counters = RunCounters()
        try:
            reservations = await self._fetch_reservations()
            logger.info("Run %d: %d reservations to process", run_id, len(reservations))

            for raw in reservations:
                if not await self._runs.is_running(run_id):
                    logger.warning(
                        "Run %d is no longer running; stopping after %d reservations",
                        run_id, counters.processed,
                    )
                    return RunStatus.KILLED

                counters.processed += 1
                try:
                    reservation = DuveReservation.model_validate(raw)
                except ValidationError as e:
                    logger.warning(
                        "Run %d: skipping malformed reservation %s: %s", run_id, raw.get("_id"), e
                    )
                    counters.skipped += 1
                    await self._runs.save_progress(run_id, counters)
                    continue

                ctx = UpdateContext(
                    external_reservation_id=reservation.id,
                    lock_id=UNKNOWN_LOCK_ID,
                    start_date=reservation.start_date,
                    end_date=reservation.end_date,
                    run_id=run_id,
                    property_name=reservation.property.name,
                    guest_name=reservation.guest_name,
                )
                try:
                    await self._process(reservation, ctx, counters)
                except Exception as e:
                    logger.exception("Run %d: error processing reservation %s", run_id, reservation.id)
                    await self._failures.record(
                        ctx,
                        UpdateFailure(kind=ErrorKind.UNKNOWN, message=str(e) or type(e).__name__),
                    )
                    counters.failed += 1
                await self._runs.save_progress(run_id, counters)

        except Exception as e:
            logger.exception("Run %d failed", run_id)
            await self._runs.finish_run(
                run_id,
                RunStatus.FAILED,
                counters,
                error=str(e) or type(e).__name__,
                error_detail=traceback.format_exc(),
            )
            return RunStatus.FAILED

        if not await self._runs.finish_run(run_id, RunStatus.COMPLETED, counters):
            logger.warning("Run %d was terminated before it could complete", run_id)
            return RunStatus.KILLED

        logger.info(
            "Run %d completed: %d processed, %d succeeded, %d failed, %d skipped",
            run_id, counters.processed, counters.succeeded, counters.failed, counters.skipped,
        )
        return RunStatus.COMPLETED

    async def _fetch_reservations(self) -> list[dict[str, Any]]:
        cutoff = self.cutoff()
        reservations: list[dict[str, Any]] = []
        page = 1
        while True:
            result = await self._duve.fetch_page(page, cutoff)
            reservations.extend(result.reservations)
            logger.debug("Fetched reservation page %d (%d items)", page, len(result.reservations))
            if not result.pagination.has_more:
                break
            if page >= self._max_pages:
                logger.warning("Stopped reservation paging at the %d page limit", self._max_pages)
                break
            page += 1
        return reservations

    async def _process(
        self, reservation: DuveReservation, ctx: UpdateContext, counters: RunCounters
    ) -> None:
        ctx.reservation_id = await self._upsert_reservation(reservation)

        match = self._matcher(reservation.property.name)
        if not match.matched:
            logger.warning("Reservation %s: %s", reservation.id, match.reason)
            await self._link_reservation(ctx.reservation_id, None)
            counters.skipped += 1
            return

        profile = await self._find_profile(*match.key)
        if profile is None or not profile.lock_id:
            logger.warning(
                "Reservation %s: no lock found for %s %s",
                reservation.id, match.street_number, match.lock_name,
            )
            await self._link_reservation(ctx.reservation_id, None)
            counters.skipped += 1
            return

        lock_id = profile.lock_id
        ctx.lock_id = lock_id
        ctx.full_address = profile.full_property_name or ctx.property_name

        try:
            async with self._leases.hold(lock_id, f"run-{ctx.run_id}"):
                if await self._successes.has_success_since(lock_id, self.start_of_day()):
                    logger.info(
                        "Lock %s already received a code today; linking reservation %s",
                        lock_id, reservation.id,
                    )
                    await self._link_reservation(ctx.reservation_id, lock_id)
                    counters.skipped += 1
                    return

                code = generate_code()
                loop = asyncio.get_running_loop()
                started = loop.time()
                result = await self._updater.update_code(
                    lock_id,
                    code,
                    reservation.start_date,
                    reservation.end_date,
                    external_reservation_id=reservation.id,
                )
                elapsed_ms = int((loop.time() - started) * 1000)

                if result.success:
                    await self._successes.record(ctx, result, elapsed_ms)
                    await self._updater.assign_reservation(lock_id, ctx.reservation_id)
                    counters.succeeded += 1
                    logger.info(
                        "Lock %s (%s) updated for reservation %s",
                        lock_id, profile.full_property_name, reservation.id,
                    )
                else:
                    await self._failures.record(ctx, result)
                    counters.failed += 1
        except LeaseUnavailableError as e:
            logger.error("Reservation %s: %s", reservation.id, e)
            await self._failures.record(ctx, UpdateFailure(kind=ErrorKind.PERSISTENCE, message=str(e)))
            counters.failed += 1

    async def _upsert_reservation(self, data: DuveReservation) -> int:
        prop = data.property
        fields = dict(
            first_name=data.first_name,
            last_name=data.last_name,
            email=data.email,
            phone_number=data.phone_number,
            status=data.status,
            booking_status=data.booking_status or "unknown",
            booking_source=data.booking_source or "unknown",
            check_in=as_naive_utc(data.start_date),
            check_out=as_naive_utc(data.end_date),
            property_id=prop.id,
            property_name=prop.name,
            property_street=prop.street,
            property_street_number=prop.street_number,
            property_city=prop.city,
        )
        async with self._db.session() as session:
            result = await session.execute(
                select(Reservation).where(Reservation.external_id == data.id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = Reservation(external_id=data.id, **fields)
                session.add(record)
            else:
                for name, value in fields.items():
                    setattr(record, name, value)
            await session.flush()
            return record.id

    async def _find_profile(self, street_number: str, lock_name: str) -> Optional[LockProfile]:
        async with self._db.session() as session:
            result = await session.execute(
                select(LockProfile).where(
                    LockProfile.street_number == street_number,
                    LockProfile.lock_name == lock_name,
                )
            )
            return result.scalar_one_or_none()

    async def _link_reservation(self, reservation_id: int, lock_id: Optional[str]) -> None:
        async with self._db.session() as session:
            record = await session.get(Reservation, reservation_id)
            if record is not None:
                record.lock_id = lock_id

