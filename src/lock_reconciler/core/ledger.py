"""Durable records of lock code update attempts."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import delete, func, select

from lock_reconciler.core.failure_log import FailureLogMirror
from lock_reconciler.core.updater import UpdateFailure, UpdateSuccess
from lock_reconciler.db.database import Database
from lock_reconciler.db.models import (
    FailedLockUpdate,
    SuccessfulLockUpdate,
    as_naive_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class UpdateContext:
    """Reservation and lock an update attempt was made for."""

    external_reservation_id: str
    lock_id: str
    start_date: datetime
    end_date: datetime
    run_id: Optional[int] = None
    reservation_id: Optional[int] = None
    property_name: str = ""
    full_address: str = ""
    guest_name: str = ""

    @classmethod
    def from_failure(cls, record: FailedLockUpdate) -> "UpdateContext":
        return cls(
            external_reservation_id=record.external_reservation_id,
            lock_id=record.lock_id,
            start_date=record.start_date,
            end_date=record.end_date,
            run_id=record.run_id,
            reservation_id=record.reservation_id,
            property_name=record.property_name,
            full_address=record.full_address,
            guest_name=record.guest_name,
        )


def _dump_raw(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, default=str)


def failure_to_dict(record: FailedLockUpdate) -> dict[str, Any]:
    return {
        "id": record.id,
        "runId": record.run_id,
        "reservationId": record.reservation_id,
        "duveId": record.external_reservation_id,
        "lockId": record.lock_id,
        "propertyName": record.property_name,
        "fullAddress": record.full_address,
        "guestName": record.guest_name,
        "startDate": record.start_date.isoformat(),
        "endDate": record.end_date.isoformat(),
        "errorType": record.error_kind,
        "error": record.error,
        "apiResponse": json.loads(record.raw_response) if _is_json(record.raw_response) else record.raw_response,
        "httpStatus": record.http_status,
        "retryCount": record.retry_count,
        "lastRetryAt": record.last_retry_at.isoformat() if record.last_retry_at else None,
        "resolved": record.resolved,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


def _is_json(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        json.loads(value)
    except ValueError:
        return False
    return True


class FailureLedger:
    """Failed update records plus their JSON file mirror."""

    def __init__(self, db: Database, mirror: FailureLogMirror):
        self._db = db
        self._mirror = mirror

    async def record(self, ctx: UpdateContext, failure: UpdateFailure) -> FailedLockUpdate:
        """Store a failed attempt and append it to the mirror file."""
        async with self._db.session() as session:
            record = FailedLockUpdate(
                run_id=ctx.run_id,
                reservation_id=ctx.reservation_id,
                external_reservation_id=ctx.external_reservation_id,
                lock_id=ctx.lock_id,
                property_name=ctx.property_name,
                full_address=ctx.full_address,
                guest_name=ctx.guest_name,
                start_date=as_naive_utc(ctx.start_date),
                end_date=as_naive_utc(ctx.end_date),
                error_kind=failure.kind.value,
                error=failure.message,
                raw_response=_dump_raw(failure.raw_response),
                http_status=failure.http_status,
            )
            session.add(record)
            await session.flush()

        try:
            self._mirror.append(failure_to_dict(record))
        except OSError as e:
            logger.error("Could not append failure %d to %s: %s", record.id, self._mirror.path, e)
        return record

    async def list_failures(
        self, ids: Optional[Iterable[int]] = None, unresolved_only: bool = True
    ) -> list[FailedLockUpdate]:
        query = select(FailedLockUpdate).order_by(FailedLockUpdate.created_at.desc())
        if ids is not None:
            query = query.where(FailedLockUpdate.id.in_(list(ids)))
        if unresolved_only:
            query = query.where(FailedLockUpdate.resolved.is_(False))
        async with self._db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get(self, failure_id: int) -> Optional[FailedLockUpdate]:
        async with self._db.session() as session:
            return await session.get(FailedLockUpdate, failure_id)

    async def mark_retried(
        self, failure_id: int, failure: Optional[UpdateFailure] = None
    ) -> None:
        """Bump the retry counter; resolve on success, store the latest error otherwise."""
        async with self._db.session() as session:
            record = await session.get(FailedLockUpdate, failure_id)
            if record is None:
                return
            record.retry_count += 1
            record.last_retry_at = utcnow()
            if failure is None:
                record.resolved = True
            else:
                record.error_kind = failure.kind.value
                record.error = failure.message
                record.raw_response = _dump_raw(failure.raw_response)
                record.http_status = failure.http_status

    async def delete(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        async with self._db.session() as session:
            result = await session.execute(
                delete(FailedLockUpdate).where(FailedLockUpdate.id.in_(ids))
            )
            deleted = result.rowcount or 0
        self.drop_from_mirror(ids)
        return deleted

    def drop_from_mirror(self, ids: Iterable[int]) -> None:
        try:
            self._mirror.drop(ids)
        except OSError as e:
            logger.error("Could not rewrite %s: %s", self._mirror.path, e)

    async def count_unresolved(self) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                select(func.count(FailedLockUpdate.id)).where(FailedLockUpdate.resolved.is_(False))
            )
            return result.scalar_one()


class SuccessLedger:
    """Confirmed update records, also the source of the idempotency check."""

    def __init__(self, db: Database):
        self._db = db

    async def record(
        self,
        ctx: UpdateContext,
        success: UpdateSuccess,
        processing_ms: int,
        source: str = "run",
    ) -> SuccessfulLockUpdate:
        async with self._db.session() as session:
            record = SuccessfulLockUpdate(
                run_id=ctx.run_id,
                reservation_id=ctx.reservation_id,
                external_reservation_id=ctx.external_reservation_id,
                lock_id=ctx.lock_id,
                property_name=ctx.property_name,
                full_address=ctx.full_address,
                guest_name=ctx.guest_name,
                start_date=as_naive_utc(ctx.start_date),
                end_date=as_naive_utc(ctx.end_date),
                lock_code=success.code,
                code_start=as_naive_utc(success.window_start),
                code_end=as_naive_utc(success.window_end),
                processing_ms=processing_ms,
                upstream_patched=success.upstream_patched,
                source=source,
            )
            session.add(record)
            await session.flush()
        return record

    async def has_success_since(self, lock_id: str, since: datetime) -> bool:
        """Whether a successful update was recorded for ``lock_id`` at or after ``since``."""
        async with self._db.session() as session:
            result = await session.execute(
                select(SuccessfulLockUpdate.id)
                .where(
                    SuccessfulLockUpdate.lock_id == lock_id,
                    SuccessfulLockUpdate.created_at >= as_naive_utc(since),
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None
