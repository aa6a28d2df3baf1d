from datetime import date

import pytest
from sqlalchemy import select

from conftest import millis
from lock_reconciler.db.models import LockProfile, PasscodeSlot
from lock_reconciler.errors import LockDirectoryError


def vendor_lock(lock_id: int, alias: str, no_key_pwd: str = "123456") -> dict:
    return {"lockId": lock_id, "lockAlias": alias, "lockName": f"S31_{lock_id}", "noKeyPwd": no_key_pwd}


def vendor_passcode(passcode_id: int, name: str, start: int = 0, end: int = 0, status: int = 1) -> dict:
    return {
        "keyboardPwdId": passcode_id,
        "keyboardPwdName": name,
        "keyboardPwd": "2580",
        "keyboardPwdType": 3,
        "startDate": start,
        "endDate": end,
        "status": status,
        "isCustom": 1,
    }


async def test_refresh_upserts_profiles_and_slots(manager, fake_sifely):
    fake_sifely.locks = [vendor_lock(1001, "1117 Front Door"), vendor_lock(1002, "Office")]
    fake_sifely.passcodes["1001"] = [
        vendor_passcode(5001, "Guest Code 1", millis(date(2024, 6, 1)), millis(date(2024, 6, 4))),
        vendor_passcode(5002, "Master"),
    ]

    result = await manager.refresh_locks()

    assert result.locks_seen == 2
    assert result.profiles_upserted == 1
    assert result.slots_upserted == 2
    assert result.unparsed_aliases == ["Office"]

    async with manager.db.session() as session:
        profile = (await session.execute(select(LockProfile))).scalar_one()
        slots = {s.passcode_id: s for s in (await session.execute(select(PasscodeSlot))).scalars()}
    assert (profile.street_number, profile.lock_name, profile.lock_id) == ("1117", "Front Door", "1001")
    assert profile.lock_code == "#123456"
    assert slots[5001].start_at is not None
    assert slots[5001].is_custom
    assert slots[5002].start_at is None
    assert slots[5002].end_at is None


async def test_refresh_is_idempotent(manager, fake_sifely):
    fake_sifely.locks = [vendor_lock(1001, "1117 Front Door")]
    fake_sifely.passcodes["1001"] = [vendor_passcode(5001, "Guest Code 1")]

    await manager.refresh_locks()
    fake_sifely.locks = [vendor_lock(1001, "1117 Front Door", no_key_pwd="999999")]
    fake_sifely.passcodes["1001"] = [vendor_passcode(5001, "Guest Code 1", status=0)]
    await manager.refresh_locks()

    locks = await manager.get_locks()
    assert len(locks) == 1
    assert locks[0]["lock_code"] == "#999999"
    assert [s["status"] for s in locks[0]["slots"]] == [0]


async def test_slot_listing_error_only_skips_that_lock(manager, fake_sifely):
    fake_sifely.locks = [vendor_lock(1001, "1117 Front Door"), vendor_lock(1002, "1117 Back Door")]
    fake_sifely.passcodes["1002"] = [vendor_passcode(6001, "Guest Code 1")]
    fake_sifely.passcode_errors.add("1001")

    result = await manager.refresh_locks()

    assert result.failed_locks == ["1001"]
    assert result.profiles_upserted == 2
    assert result.slots_upserted == 1


async def test_lock_listing_error_raises(manager, fake_sifely):
    fake_sifely.list_error = True

    with pytest.raises(LockDirectoryError, match="token expired"):
        await manager.refresh_locks()


async def test_bare_number_alias_is_not_split_into_a_profile(manager, fake_sifely):
    fake_sifely.locks = [vendor_lock(1001, "1117")]

    result = await manager.refresh_locks()

    assert result.profiles_upserted == 0
    assert result.unparsed_aliases == ["1117"]
    assert await manager.get_locks() == []
