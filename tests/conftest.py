import json
from datetime import date, datetime, time, timezone
from typing import Optional
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio

from lock_reconciler.config import Settings
from lock_reconciler.core.config_cache import ConfigCache
from lock_reconciler.core.manager import ReconciliationManager
from lock_reconciler.db.database import Database
from lock_reconciler.db.models import LockProfile, PasscodeSlot

CHANGE_OK = {"code": 200, "msg": "success", "data": {"errcode": 0, "errmsg": "", "description": ""}}


def millis(day: date, at: time = time(15, 0)) -> int:
    return int(datetime.combine(day, at, tzinfo=timezone.utc).timestamp() * 1000)


def make_reservation(
    reservation_id: str,
    property_name: str,
    start: date = date(2024, 6, 1),
    end: date = date(2024, 6, 4),
    first_name: str = "Ada",
    last_name: str = "Lovelace",
) -> dict:
    """A reservation as the Duve listing returns it."""
    return {
        "_id": reservation_id,
        "firstName": first_name,
        "lastName": last_name,
        "email": "guest@example.com",
        "bookingStatus": "confirmed",
        "bookingSourceLabel": "Airbnb",
        "startDate": millis(start),
        "endDate": millis(end, time(11, 0)),
        "property": {"_id": f"prop-{property_name}", "name": property_name},
    }


class FakeDuve:
    """In-memory Duve API behind an httpx.MockTransport."""

    def __init__(self):
        self.pages: list[list[dict]] = [[]]
        self.list_status = 200
        self.patch_status = 200
        self.requested_pages: list[int] = []
        self.patches: list[tuple[str, dict]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/api/reservations":
            if self.list_status != 200:
                return httpx.Response(self.list_status, json={"error": "unavailable"})
            page = int(request.url.params["page"])
            self.requested_pages.append(page)
            items = self.pages[page - 1] if page <= len(self.pages) else []
            return httpx.Response(200, json={
                "reservations": items,
                "pagination": {"hasMore": page < len(self.pages), "page": page},
            })
        if request.method == "PUT" and request.url.path.startswith("/api/reservations/"):
            self.patches.append((request.url.path.rsplit("/", 1)[-1], json.loads(request.content)))
            if self.patch_status != 200:
                return httpx.Response(self.patch_status, text="nope")
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)


class FakeSifely:
    """In-memory Sifely API behind an httpx.MockTransport."""

    def __init__(self):
        self.locks: list[dict] = []
        self.passcodes: dict[str, list[dict]] = {}
        self.passcode_errors: set[str] = set()
        self.list_error = False
        self.change_response: dict = dict(CHANGE_OK)
        self.network_down = False
        self.change_calls: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.network_down:
            raise httpx.ConnectError("connection refused", request=request)
        form = dict(parse_qsl(request.content.decode()))
        path = request.url.path

        if path == "/v3/key/list":
            if self.list_error:
                return httpx.Response(200, json={"code": 401, "msg": "token expired"})
            return httpx.Response(200, json={
                "code": 200,
                "data": {"total": len(self.locks), "pages": 1, "pageNo": 1, "list": self.locks},
            })
        if path == "/v3/lock/listKeyboardPwd":
            lock_id = form["lockId"]
            if lock_id in self.passcode_errors:
                return httpx.Response(200, json={"code": 500, "msg": "gateway offline"})
            items = self.passcodes.get(lock_id, [])
            return httpx.Response(200, json={
                "code": 200,
                "data": {"total": len(items), "pages": 1, "pageNo": 1, "list": items},
            })
        if path == "/v3/keyboardPwd/change":
            self.change_calls.append(form)
            return httpx.Response(200, json=self.change_response)
        return httpx.Response(404, text="not found")


async def seed_lock(
    db: Database,
    lock_id: Optional[str] = "1001",
    street_number: str = "1117",
    lock_name: str = "Front Door",
    slots: Optional[list[tuple[int, str, int, Optional[datetime]]]] = None,
) -> int:
    """Insert a lock profile with (passcode_id, name, status, start_at) slots."""
    if slots is None:
        slots = [(5001, "Guest Code 1", 1, datetime(2024, 1, 1, 19, 0))]
    async with db.session() as session:
        profile = LockProfile(
            street_number=street_number,
            lock_name=lock_name,
            full_property_name=f"{street_number} {lock_name}",
            lock_id=lock_id,
        )
        session.add(profile)
        await session.flush()
        for passcode_id, name, status, start_at in slots:
            session.add(PasscodeSlot(
                passcode_id=passcode_id,
                lock_profile_id=profile.id,
                name=name,
                code="0000",
                status=status,
                start_at=start_at,
            ))
        return profile.id


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        failure_log_path=str(tmp_path / "logs" / "failed-lock-updates.json"),
        lease_wait_seconds=0.0,
        duve_csrf_token="csrf-token",
        duve_cookie="session=abc",
        sifely_auth_token="sifely-token",
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings.database_url)
    await database.init()
    yield database
    await database.dispose()


@pytest.fixture
def config(db, settings) -> ConfigCache:
    return ConfigCache(db, settings)


@pytest.fixture
def fake_duve() -> FakeDuve:
    return FakeDuve()


@pytest.fixture
def fake_sifely() -> FakeSifely:
    return FakeSifely()


@pytest_asyncio.fixture
async def manager(settings, fake_duve, fake_sifely):
    m = ReconciliationManager(
        settings,
        duve_transport=httpx.MockTransport(fake_duve.handler),
        sifely_transport=httpx.MockTransport(fake_sifely.handler),
    )
    await m.initialize()
    yield m
    await m.stop()
