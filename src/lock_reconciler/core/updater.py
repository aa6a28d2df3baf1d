"""Issuing a new guest passcode on a lock."""

import logging
import random
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

import httpx
from sqlalchemy import func, select

from lock_reconciler.config import (
    ACTIVE_SLOT_STATUS,
    CHECK_IN_TIME_UTC,
    CHECK_OUT_TIME_UTC,
    GUEST_CODE_NAMES,
)
from lock_reconciler.db.database import Database
from lock_reconciler.db.models import LockProfile, PasscodeSlot, Reservation, as_naive_utc
from lock_reconciler.duve.client import DuveClient
from lock_reconciler.errors import ErrorKind, LockDirectoryError, ReservationSourceError
from lock_reconciler.sifely.client import SifelyClient

logger = logging.getLogger(__name__)


@dataclass
class UpdateSuccess:
    """The device accepted the new passcode."""

    lock_id: str
    passcode_id: int
    code: str
    window_start: datetime
    window_end: datetime
    upstream_patched: bool = True
    upstream_error: Optional[str] = None
    success: bool = field(default=True, init=False)


@dataclass
class UpdateFailure:
    """The passcode was not changed."""

    kind: ErrorKind
    message: str
    raw_response: Optional[Any] = None
    http_status: Optional[int] = None
    success: bool = field(default=False, init=False)


UpdateResult = Union[UpdateSuccess, UpdateFailure]


def generate_code() -> str:
    """Generate a random 4-digit passcode (1000-9999)."""
    return str(random.randint(1000, 9999))


def _utc_date(value: "datetime | date") -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def pin_window(start: "datetime | date", end: "datetime | date") -> tuple[datetime, datetime]:
    """Pin a reservation window to the fixed check-in/check-out policy.

    Whatever the time of day of the inputs, the window opens at 19:00 UTC on
    the start date and closes at 15:00 UTC on the end date. Naive datetimes
    are taken as UTC.
    """
    check_in = datetime.combine(_utc_date(start), CHECK_IN_TIME_UTC, tzinfo=timezone.utc)
    check_out = datetime.combine(_utc_date(end), CHECK_OUT_TIME_UTC, tzinfo=timezone.utc)
    return check_in, check_out


class LockCodeUpdater:
    """Changes the guest passcode slot of a lock and records the change locally."""

    def __init__(self, db: Database, sifely: SifelyClient, duve: DuveClient):
        self._db = db
        self._sifely = sifely
        self._duve = duve

    async def _find_guest_slot(self, lock_id: str) -> "tuple[Optional[LockProfile], Optional[PasscodeSlot]]":
        """Find the lock profile and the guest slot with the earliest start date."""
        async with self._db.session() as session:
            result = await session.execute(
                select(LockProfile).where(LockProfile.lock_id == lock_id)
            )
            profile = result.scalars().first()
            if profile is None:
                return None, None

            result = await session.execute(
                select(PasscodeSlot)
                .where(
                    PasscodeSlot.lock_profile_id == profile.id,
                    func.lower(PasscodeSlot.name).in_([n.lower() for n in GUEST_CODE_NAMES]),
                    PasscodeSlot.status == ACTIVE_SLOT_STATUS,
                    PasscodeSlot.start_at.is_not(None),
                )
                .order_by(PasscodeSlot.start_at.asc(), PasscodeSlot.passcode_id.asc())
                .limit(1)
            )
            return profile, result.scalar_one_or_none()

    async def update_code(
        self,
        lock_id: str,
        new_code: str,
        window_start: "datetime | date",
        window_end: "datetime | date",
        external_reservation_id: Optional[str] = None,
        skip_upstream: bool = False,
    ) -> UpdateResult:
        """Issue ``new_code`` on the lock's guest slot for the pinned window.

        Args:
            lock_id: Vendor lock id
            new_code: 4-digit passcode
            window_start: Reservation check-in (only the date is used)
            window_end: Reservation check-out (only the date is used)
            external_reservation_id: Reservation to annotate with the new code
            skip_upstream: Do not annotate the reservation

        Returns:
            UpdateSuccess, or UpdateFailure carrying the error kind.
        """
        try:
            profile, slot = await self._find_guest_slot(lock_id)
            if profile is None:
                logger.error("No lock profile found for lockId %s", lock_id)
                return UpdateFailure(
                    kind=ErrorKind.PERSISTENCE,
                    message=f"No lock profile found for lockId {lock_id}",
                )
            if slot is None:
                logger.error("No active guest code slot found for lockId %s", lock_id)
                return UpdateFailure(
                    kind=ErrorKind.PERSISTENCE,
                    message=f"No active guest code slot found for lockId {lock_id}",
                )

            check_in, check_out = pin_window(window_start, window_end)
            logger.debug(
                "Changing passcode %s (%s) on lock %s: %s -> %s, %s to %s",
                slot.passcode_id, slot.name, lock_id, slot.code, new_code,
                check_in.isoformat(), check_out.isoformat(),
            )

            try:
                response = await self._sifely.change_passcode(
                    lock_id=lock_id,
                    passcode_id=slot.passcode_id,
                    passcode_name=slot.name,
                    new_code=new_code,
                    start=check_in,
                    end=check_out,
                )
            except httpx.TransportError as e:
                logger.error("Network error changing passcode on lock %s: %s", lock_id, e)
                return UpdateFailure(kind=ErrorKind.NETWORK, message=str(e) or type(e).__name__)
            except LockDirectoryError as e:
                logger.error("Lock API error on lock %s: %s", lock_id, e)
                return UpdateFailure(
                    kind=ErrorKind.DEVICE_API,
                    message=str(e),
                    raw_response=e.raw,
                    http_status=e.http_status,
                )

            if not response.ok:
                logger.error(
                    "Lock API rejected passcode change on lock %s: %s (response: %s)",
                    lock_id, response.error_message, response.raw,
                )
                return UpdateFailure(
                    kind=ErrorKind.DEVICE_API,
                    message=response.error_message,
                    raw_response=response.raw,
                    http_status=response.http_status,
                )

            async with self._db.session() as session:
                stored = await session.get(PasscodeSlot, slot.id)
                if stored is not None:
                    stored.code = new_code
                    stored.start_at = as_naive_utc(check_in)
                    stored.end_at = as_naive_utc(check_out)
                cached = await session.get(LockProfile, profile.id)
                if cached is not None:
                    cached.lock_code = f"#{new_code}"

            result = UpdateSuccess(
                lock_id=lock_id,
                passcode_id=slot.passcode_id,
                code=new_code,
                window_start=check_in,
                window_end=check_out,
                upstream_patched=False,
            )
            if external_reservation_id and not skip_upstream:
                await self._annotate_reservation(external_reservation_id, result)
            return result
        except Exception as e:
            logger.exception("Error updating lock code for lockId %s", lock_id)
            return UpdateFailure(kind=ErrorKind.UNKNOWN, message=str(e) or type(e).__name__)

    async def assign_reservation(self, lock_id: str, reservation_id: Optional[int]) -> None:
        """Link a stored reservation and the lock it was issued a code for."""
        if reservation_id is None:
            return
        async with self._db.session() as session:
            result = await session.execute(select(LockProfile).where(LockProfile.lock_id == lock_id))
            profile = result.scalars().first()
            if profile is not None:
                profile.reservation_id = reservation_id
            record = await session.get(Reservation, reservation_id)
            if record is not None:
                record.lock_id = lock_id

    async def _annotate_reservation(self, reservation_id: str, result: UpdateSuccess) -> None:
        """Best-effort write of the new code onto the upstream reservation.

        The device change already succeeded, so a failure here is only logged
        and noted on the result.
        """
        try:
            await self._duve.patch_reservation(reservation_id, result.code)
            result.upstream_patched = True
        except (ReservationSourceError, httpx.HTTPError) as e:
            result.upstream_error = f"{ErrorKind.UPSTREAM_API.value}: {e}"
            logger.warning(
                "Failed to update reservation %s with new code (lock %s): %s",
                reservation_id, result.lock_id, e,
            )
