"""Retrying failed lock code updates."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from lock_reconciler.config import UNKNOWN_LOCK_ID
from lock_reconciler.core.leases import LockLeaseManager
from lock_reconciler.core.ledger import FailureLedger, SuccessLedger, UpdateContext
from lock_reconciler.core.updater import LockCodeUpdater, UpdateFailure, UpdateResult, generate_code
from lock_reconciler.db.models import FailedLockUpdate
from lock_reconciler.errors import ErrorKind, LeaseUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class RetrySummary:
    """Aggregated outcome of one retry pass."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": self.results,
        }


class RetryWorker:
    """Re-issues codes for unresolved failure records, one at a time."""

    def __init__(
        self,
        updater: LockCodeUpdater,
        leases: LockLeaseManager,
        failures: FailureLedger,
        successes: SuccessLedger,
    ):
        self._updater = updater
        self._leases = leases
        self._failures = failures
        self._successes = successes

    async def retry_outstanding(self, failure_ids: Optional[Iterable[int]] = None) -> RetrySummary:
        """Retry all unresolved failures, or only ``failure_ids`` when given.

        A record whose lock was never resolved keeps the "unknown" lock id,
        which is what marks it un-retryable: it is skipped on every pass and
        its retry counter is left alone. An error on one record is logged
        and counted as a failure of that record only. Resolved records are
        dropped from the failure log mirror afterwards.
        """
        records = await self._failures.list_failures(ids=failure_ids, unresolved_only=True)
        summary = RetrySummary()
        resolved: list[int] = []

        logger.info("Retrying %d failed lock updates", len(records))
        try:
            for record in records:
                if record.lock_id == UNKNOWN_LOCK_ID:
                    logger.info("Skipping failure %d: lock was never resolved", record.id)
                    summary.skipped += 1
                    summary.results.append({
                        "id": record.id,
                        "status": "skipped",
                        "reason": "Lock ID is unknown, cannot retry",
                    })
                    continue

                summary.attempted += 1
                code = generate_code()
                try:
                    result = await self._retry_one(record, code)
                except Exception as e:
                    logger.exception("Error retrying failure %d on lock %s", record.id, record.lock_id)
                    result = UpdateFailure(kind=ErrorKind.UNKNOWN, message=str(e) or type(e).__name__)

                if result.success:
                    summary.succeeded += 1
                    resolved.append(record.id)
                    summary.results.append({"id": record.id, "status": "success", "code": code})
                    logger.info("Retry of failure %d succeeded on lock %s", record.id, record.lock_id)
                else:
                    summary.failed += 1
                    summary.results.append({
                        "id": record.id,
                        "status": "failed",
                        "error_kind": result.kind.value,
                        "error": result.message,
                    })
                    logger.warning(
                        "Retry of failure %d on lock %s failed: %s",
                        record.id, record.lock_id, result.message,
                    )
        finally:
            if resolved:
                self._failures.drop_from_mirror(resolved)

        logger.info(
            "Retry complete: %d succeeded, %d failed, %d skipped",
            summary.succeeded, summary.failed, summary.skipped,
        )
        return summary

    async def _retry_one(self, record: FailedLockUpdate, code: str) -> UpdateResult:
        ctx = UpdateContext.from_failure(record)
        try:
            async with self._leases.hold(record.lock_id, f"retry-{record.id}"):
                loop = asyncio.get_running_loop()
                started = loop.time()
                result = await self._updater.update_code(
                    record.lock_id,
                    code,
                    record.start_date,
                    record.end_date,
                    external_reservation_id=record.external_reservation_id,
                )
                elapsed_ms = int((loop.time() - started) * 1000)
                if result.success:
                    await self._successes.record(ctx, result, elapsed_ms, source="retry")
                    await self._updater.assign_reservation(record.lock_id, record.reservation_id)
                    await self._failures.mark_retried(record.id)
                else:
                    await self._failures.mark_retried(record.id, result)
        except LeaseUnavailableError as e:
            result = UpdateFailure(kind=ErrorKind.PERSISTENCE, message=str(e))
            await self._failures.mark_retried(record.id, result)
        return result
