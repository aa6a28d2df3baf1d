"""Credential lookup with a TTL cache over the configuration table."""

import logging
import time
from typing import Callable, Optional

from sqlalchemy import select

from lock_reconciler.config import CONFIG_DESCRIPTIONS, ConfigKey, Settings
from lock_reconciler.db.database import Database
from lock_reconciler.db.models import Configuration, utcnow

logger = logging.getLogger(__name__)


class ConfigCache:
    """Reads credential strings from the database, falling back to settings.

    Built once at process start and handed to every component that needs
    credentials. Values are cached for ``ttl_seconds``; ``set`` invalidates.
    """

    def __init__(
        self,
        db: Database,
        settings: Settings,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._db = db
        self._settings = settings
        self._ttl = settings.config_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        # {key: (value, fetched_at)}
        self._entries: dict[ConfigKey, tuple[Optional[str], float]] = {}

    @staticmethod
    def coerce_key(key: "ConfigKey | str") -> ConfigKey:
        try:
            return ConfigKey(key)
        except ValueError:
            raise ValueError(f"Unknown configuration key: {key}") from None

    def _fallback(self, key: ConfigKey) -> Optional[str]:
        value = getattr(self._settings, key.value.lower(), "")
        return value or None

    async def get(self, key: "ConfigKey | str") -> Optional[str]:
        """Get a configuration value, stored value first, then settings."""
        key = self.coerce_key(key)
        cached = self._entries.get(key)
        if cached is not None and self._clock() - cached[1] < self._ttl:
            return cached[0]

        async with self._db.session() as session:
            result = await session.execute(
                select(Configuration).where(Configuration.key == key.value)
            )
            row = result.scalar_one_or_none()

        value = row.value if row and row.value else self._fallback(key)
        self._entries[key] = (value, self._clock())
        return value

    async def get_all(self) -> dict[str, Optional[str]]:
        return {key.value: await self.get(key) for key in ConfigKey}

    async def set(self, key: "ConfigKey | str", value: str) -> None:
        """Store a configuration value and drop it from the cache."""
        key = self.coerce_key(key)
        async with self._db.session() as session:
            result = await session.execute(
                select(Configuration).where(Configuration.key == key.value)
            )
            row = result.scalar_one_or_none()
            if row is None:
                session.add(Configuration(
                    key=key.value,
                    value=value,
                    description=CONFIG_DESCRIPTIONS[key],
                ))
            else:
                row.value = value
                row.updated_at = utcnow()
        self._entries.pop(key, None)
        logger.info("Updated configuration value %s", key.value)
