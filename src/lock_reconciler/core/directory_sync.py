"""Refreshing lock profiles and passcode slots from the lock vendor."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import select

from lock_reconciler.core.matcher import MatchResult, parse_property_name
from lock_reconciler.db.database import Database
from lock_reconciler.db.models import LockProfile, PasscodeSlot, as_naive_utc
from lock_reconciler.errors import LockDirectoryError
from lock_reconciler.sifely.client import SifelyClient, VendorLock, VendorPasscode

logger = logging.getLogger(__name__)


@dataclass
class DirectorySyncResult:
    """Counts from one directory refresh."""

    locks_seen: int = 0
    profiles_upserted: int = 0
    slots_upserted: int = 0
    unparsed_aliases: list[str] = field(default_factory=list)
    failed_locks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "locks_seen": self.locks_seen,
            "profiles_upserted": self.profiles_upserted,
            "slots_upserted": self.slots_upserted,
            "unparsed_aliases": self.unparsed_aliases,
            "failed_locks": self.failed_locks,
        }


class LockDirectorySync:
    """Mirrors the vendor's locks and passcode slots into the local store."""

    MAX_PAGES = 100

    def __init__(
        self,
        db: Database,
        sifely: SifelyClient,
        matcher: Callable[[Optional[str]], MatchResult] = parse_property_name,
    ):
        self._db = db
        self._sifely = sifely
        self._matcher = matcher

    async def refresh(self) -> DirectorySyncResult:
        """Refresh all lock profiles, then the passcode slots of each.

        Raises:
            LockDirectoryError: If the lock listing itself fails.
        """
        result = DirectorySyncResult()

        locks = await self._fetch_locks()
        result.locks_seen = len(locks)
        profiles: dict[str, int] = {}
        for lock in locks:
            match = self._matcher(lock.lock_alias)
            if not match.matched:
                logger.warning("Skipping lock %s: %s", lock.lock_id, match.reason)
                result.unparsed_aliases.append(lock.lock_alias)
                continue
            profiles[str(lock.lock_id)] = await self._upsert_profile(lock, match)
            result.profiles_upserted += 1

        for lock_id, profile_id in profiles.items():
            try:
                passcodes = await self._fetch_passcodes(lock_id)
            except LockDirectoryError as e:
                logger.error("Could not list passcodes for lock %s: %s", lock_id, e)
                result.failed_locks.append(lock_id)
                continue
            result.slots_upserted += await self._upsert_slots(profile_id, passcodes)

        logger.info(
            "Lock directory refreshed: %d locks, %d profiles, %d slots",
            result.locks_seen, result.profiles_upserted, result.slots_upserted,
        )
        return result

    async def _fetch_locks(self) -> list[VendorLock]:
        locks: list[VendorLock] = []
        page = 1
        while page <= self.MAX_PAGES:
            batch = await self._sifely.list_locks(page)
            locks.extend(batch.items)
            if not batch.items or page >= batch.pages:
                break
            page += 1
        return locks

    async def _fetch_passcodes(self, lock_id: str) -> list[VendorPasscode]:
        passcodes: list[VendorPasscode] = []
        page = 1
        while page <= self.MAX_PAGES:
            batch = await self._sifely.list_passcodes(lock_id, page)
            passcodes.extend(batch.items)
            if not batch.items or page >= batch.pages:
                break
            page += 1
        return passcodes

    async def _upsert_profile(self, lock: VendorLock, match: MatchResult) -> int:
        street_number, lock_name = match.key
        async with self._db.session() as session:
            query = await session.execute(
                select(LockProfile).where(
                    LockProfile.street_number == street_number,
                    LockProfile.lock_name == lock_name,
                )
            )
            profile = query.scalar_one_or_none()
            if profile is None:
                profile = LockProfile(street_number=street_number, lock_name=lock_name)
                session.add(profile)
            profile.full_property_name = lock.lock_alias
            profile.lock_id = str(lock.lock_id)
            if lock.no_key_pwd:
                profile.lock_code = f"#{lock.no_key_pwd}"
            await session.flush()
            return profile.id

    async def _upsert_slots(self, profile_id: int, passcodes: list[VendorPasscode]) -> int:
        async with self._db.session() as session:
            for passcode in passcodes:
                query = await session.execute(
                    select(PasscodeSlot).where(PasscodeSlot.passcode_id == passcode.passcode_id)
                )
                slot = query.scalar_one_or_none()
                if slot is None:
                    slot = PasscodeSlot(passcode_id=passcode.passcode_id)
                    session.add(slot)
                slot.lock_profile_id = profile_id
                slot.name = passcode.name
                slot.code = passcode.code
                slot.passcode_type = passcode.passcode_type
                slot.start_at = as_naive_utc(passcode.start_date) if passcode.start_date else None
                slot.end_at = as_naive_utc(passcode.end_date) if passcode.end_date else None
                slot.status = passcode.status
                slot.is_custom = bool(passcode.is_custom)
        return len(passcodes)
