import pytest
from sqlalchemy import update

from lock_reconciler.config import ConfigKey
from lock_reconciler.core.config_cache import ConfigCache
from lock_reconciler.db.models import Configuration


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def test_falls_back_to_settings(config):
    assert await config.get(ConfigKey.SIFELY_AUTH_TOKEN) == "sifely-token"
    assert await config.get("DUVE_SESSION_ID") is None


async def test_set_overrides_and_invalidates(config):
    await config.get(ConfigKey.SIFELY_AUTH_TOKEN)

    await config.set(ConfigKey.SIFELY_AUTH_TOKEN, "rotated")

    assert await config.get(ConfigKey.SIFELY_AUTH_TOKEN) == "rotated"
    values = await config.get_all()
    assert values["SIFELY_AUTH_TOKEN"] == "rotated"
    assert values["DUVE_CSRF_TOKEN"] == "csrf-token"


async def test_values_are_cached_until_ttl(db, settings):
    clock = FakeClock()
    cache = ConfigCache(db, settings, ttl_seconds=60, clock=clock)
    await cache.set(ConfigKey.DUVE_COOKIE, "first")
    assert await cache.get(ConfigKey.DUVE_COOKIE) == "first"

    # Changed behind the cache's back
    async with db.session() as session:
        await session.execute(
            update(Configuration)
            .where(Configuration.key == ConfigKey.DUVE_COOKIE.value)
            .values(value="second")
        )

    clock.now += 59
    assert await cache.get(ConfigKey.DUVE_COOKIE) == "first"
    clock.now += 2
    assert await cache.get(ConfigKey.DUVE_COOKIE) == "second"


async def test_unknown_key_is_rejected(config):
    with pytest.raises(ValueError, match="Unknown configuration key"):
        await config.get("NOT_A_KEY")
    with pytest.raises(ValueError):
        await config.set("NOT_A_KEY", "x")
