"""JSON file mirror of failed lock updates.

Older tooling reads ``logs/failed-lock-updates.json``; every failure is
appended there and the retry path rewrites it without resolved entries.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class FailureLogMirror:
    """Append-only JSON array file keyed by failure record id."""

    def __init__(self, path: "str | Path"):
        self.path = Path(path)

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            entries = json.loads(self.path.read_text() or "[]")
        except json.JSONDecodeError:
            logger.error("Failure log %s is not valid JSON; starting a new one", self.path)
            return []
        return entries if isinstance(entries, list) else []

    def _write(self, entries: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(entries, indent=2, default=str))

    def append(self, entry: dict[str, Any]) -> None:
        entries = self.read()
        entries.append(entry)
        self._write(entries)

    def drop(self, failure_ids: Iterable[int]) -> int:
        """Remove entries for the given failure ids. Returns how many were dropped."""
        ids = set(failure_ids)
        if not ids:
            return 0
        entries = self.read()
        kept = [e for e in entries if e.get("id") not in ids]
        dropped = len(entries) - len(kept)
        if dropped:
            self._write(kept)
            logger.info("Failure log updated - %d entries remain", len(kept))
        return dropped
