"""Matching property names and lock aliases to lock profile keys."""

import re
from dataclasses import dataclass
from typing import Optional

# "1117 Front Door", "101 A1", "204 - Unit B"
_PROPERTY_RE = re.compile(r"^\s*(\d+)(?!\d)\s*(?:-\s*)?(\S.*)$")


@dataclass(frozen=True)
class MatchResult:
    """Outcome of parsing a property name or lock alias."""

    street_number: Optional[str] = None
    lock_name: Optional[str] = None
    reason: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.street_number is not None and self.lock_name is not None

    @property
    def key(self) -> tuple[str, str]:
        if not self.matched:
            raise ValueError(f"Unmatched property has no key: {self.reason}")
        return self.street_number, self.lock_name


def parse_property_name(value: Optional[str]) -> MatchResult:
    """Split a property name or lock alias into (street number, lock name).

    The leading run of digits is the street number; everything after it,
    minus an optional "-" separator and surrounding whitespace, is the lock
    name. Anything else is reported as unmatched, never as a partial key.

    >>> parse_property_name("1117 Front Door").key
    ('1117', 'Front Door')
    """
    text = (value or "").strip()
    match = _PROPERTY_RE.match(text)
    if not match:
        return MatchResult(
            reason=(
                f"Property name format not recognized: {value!r}. "
                'Expected format is "1117 Front Door" or "101 A1"'
            )
        )

    lock_name = re.sub(r"\s+", " ", match.group(2)).strip(" -")
    if not lock_name:
        return MatchResult(reason=f"No lock name after street number in {value!r}")

    return MatchResult(street_number=match.group(1), lock_name=lock_name)
