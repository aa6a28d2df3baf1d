from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import seed_lock
from lock_reconciler.core.updater import generate_code, pin_window
from lock_reconciler.db.models import PasscodeSlot
from lock_reconciler.errors import ErrorKind
from lock_reconciler.sifely.client import to_millis


def test_pin_window_ignores_time_of_day():
    start, end = pin_window(
        datetime(2024, 6, 1, 3, 30, tzinfo=timezone.utc),
        datetime(2024, 6, 4, 22, 0, tzinfo=timezone.utc),
    )
    assert start == datetime(2024, 6, 1, 19, 0, tzinfo=timezone.utc)
    assert end == datetime(2024, 6, 4, 15, 0, tzinfo=timezone.utc)


def test_pin_window_uses_the_utc_date():
    eastern = timezone(timedelta(hours=-4))
    start, end = pin_window(datetime(2024, 6, 1, 23, 0, tzinfo=eastern), date(2024, 6, 4))
    assert start == datetime(2024, 6, 2, 19, 0, tzinfo=timezone.utc)
    assert end == datetime(2024, 6, 4, 15, 0, tzinfo=timezone.utc)


def test_generate_code_is_four_digits():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 4
        assert 1000 <= int(code) <= 9999


async def test_update_code_success(manager, fake_sifely, fake_duve):
    await seed_lock(manager.db)

    result = await manager.updater.update_code(
        "1001", "4321", date(2024, 6, 1), date(2024, 6, 4), external_reservation_id="res-1"
    )

    assert result.success
    assert result.upstream_patched
    assert result.upstream_error is None
    call = fake_sifely.change_calls[0]
    assert call["keyboardPwdId"] == "5001"
    assert call["newKeyboardPwd"] == "4321"
    assert call["keyboardPwdName"] == "Guest Code 1"
    assert call["startDate"] == str(to_millis(datetime(2024, 6, 1, 19, 0, tzinfo=timezone.utc)))
    assert call["endDate"] == str(to_millis(datetime(2024, 6, 4, 15, 0, tzinfo=timezone.utc)))
    assert fake_duve.patches == [("res-1", {"mode": True, "aptC": "4321#"})]

    async with manager.db.session() as session:
        slot = await session.get(PasscodeSlot, 1)
        assert slot.code == "4321"
        assert slot.start_at == datetime(2024, 6, 1, 19, 0)
        assert slot.end_at == datetime(2024, 6, 4, 15, 0)


async def test_picks_earliest_active_guest_slot(manager, fake_sifely):
    await seed_lock(manager.db, slots=[
        (5001, "Guest Code 1", 1, datetime(2024, 3, 1)),
        (5002, "guest code 2", 1, datetime(2024, 2, 1)),
        (5003, "Guest Code 1", 0, datetime(2024, 1, 1)),
        (5004, "Cleaner", 1, datetime(2023, 1, 1)),
    ])

    result = await manager.updater.update_code("1001", "1111", date(2024, 6, 1), date(2024, 6, 2))

    assert result.success
    assert result.passcode_id == 5002


async def test_nested_error_code_is_a_device_failure(manager, fake_sifely):
    await seed_lock(manager.db)
    fake_sifely.change_response = {
        "code": 200,
        "msg": "success",
        "data": {"errcode": -3008, "errmsg": "Gateway busy", "description": ""},
    }

    result = await manager.updater.update_code("1001", "4321", date(2024, 6, 1), date(2024, 6, 4))

    assert not result.success
    assert result.kind == ErrorKind.DEVICE_API
    assert result.message == "Gateway busy"
    assert result.raw_response["data"]["errcode"] == -3008
    async with manager.db.session() as session:
        slot = await session.get(PasscodeSlot, 1)
        assert slot.code == "0000"


async def test_top_level_error_code_is_a_device_failure(manager, fake_sifely):
    await seed_lock(manager.db)
    fake_sifely.change_response = {"code": 401, "msg": "token invalid"}

    result = await manager.updater.update_code("1001", "4321", date(2024, 6, 1), date(2024, 6, 4))

    assert result.kind == ErrorKind.DEVICE_API
    assert "401" in result.message


async def test_transport_error_is_a_network_failure(manager, fake_sifely):
    await seed_lock(manager.db)
    fake_sifely.network_down = True

    result = await manager.updater.update_code("1001", "4321", date(2024, 6, 1), date(2024, 6, 4))

    assert result.kind == ErrorKind.NETWORK


@pytest.mark.parametrize(
    "slots",
    [
        [],
        [(5001, "Guest Code 1", 0, datetime(2024, 1, 1))],
        [(5001, "Guest Code 1", 1, None)],
        [(5001, "Owner", 1, datetime(2024, 1, 1))],
    ],
)
async def test_no_usable_slot_is_a_persistence_failure(manager, fake_sifely, slots):
    await seed_lock(manager.db, slots=slots)

    result = await manager.updater.update_code("1001", "4321", date(2024, 6, 1), date(2024, 6, 4))

    assert result.kind == ErrorKind.PERSISTENCE
    assert fake_sifely.change_calls == []


async def test_unknown_lock_is_a_persistence_failure(manager):
    result = await manager.updater.update_code("9999", "4321", date(2024, 6, 1), date(2024, 6, 4))

    assert result.kind == ErrorKind.PERSISTENCE
    assert "9999" in result.message


async def test_upstream_patch_failure_does_not_fail_the_update(manager, fake_duve):
    await seed_lock(manager.db)
    fake_duve.patch_status = 500

    result = await manager.updater.update_code(
        "1001", "4321", date(2024, 6, 1), date(2024, 6, 4), external_reservation_id="res-1"
    )

    assert result.success
    assert not result.upstream_patched
    assert "upstream_api" in result.upstream_error


async def test_skip_upstream(manager, fake_duve):
    await seed_lock(manager.db)

    result = await manager.updater.update_code(
        "1001", "4321", date(2024, 6, 1), date(2024, 6, 4),
        external_reservation_id="res-1", skip_upstream=True,
    )

    assert result.success
    assert not result.upstream_patched
    assert fake_duve.patches == []


async def test_duve_cookie_built_from_session_id(db, settings, fake_duve):
    import httpx

    from lock_reconciler.core.config_cache import ConfigCache
    from lock_reconciler.duve.client import DuveClient

    seen = {}

    def handler(request):
        seen.update(request.headers)
        return fake_duve.handler(request)

    settings.duve_cookie = ""
    settings.duve_session_id = "s%3Aabc"
    client = DuveClient(ConfigCache(db, settings), transport=httpx.MockTransport(handler))
    try:
        await client.patch_reservation("res-1", "1234")
    finally:
        await client.close()

    assert seen["cookie"] == "sessionId=s%3Aabc; csrftoken=csrf-token"
    assert seen["x-csrftoken"] == "csrf-token"
