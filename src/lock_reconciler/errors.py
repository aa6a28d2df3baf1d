"""Error kinds and exceptions for the lock reconciler."""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Classification of a failed lock code update."""

    DEVICE_API = "device_api"
    UPSTREAM_API = "upstream_api"
    NETWORK = "network"
    PERSISTENCE = "persistence"
    UNKNOWN = "unknown"


class ReconcilerError(Exception):
    """Base reconciler error."""

    def __init__(self, msg: str = ""):
        super().__init__(msg)
        self.msg = msg

    def __str__(self):
        return self.msg or self.__class__.__name__


class LockDirectoryError(ReconcilerError):
    """The lock vendor answered with something we could not use."""

    def __init__(
        self,
        msg: str,
        http_status: Optional[int] = None,
        raw: Optional[Any] = None,
    ):
        super().__init__(msg)
        self.http_status = http_status
        self.raw = raw


class ReservationSourceError(ReconcilerError):
    """The reservation source rejected a request or returned an invalid body."""

    def __init__(self, msg: str, http_status: Optional[int] = None):
        super().__init__(msg)
        self.http_status = http_status


class RunAlreadyActiveError(ReconcilerError):
    """Another reconciliation run holds the run claim."""


class RunNotFoundError(ReconcilerError):
    """No reconciliation run with the given id."""


class RunNotRunningError(ReconcilerError):
    """The reconciliation run is already in a terminal state."""


class LeaseUnavailableError(ReconcilerError):
    """A per-lock lease could not be acquired in time."""

    def __init__(self, lock_id: str, holder: Optional[str] = None):
        super().__init__(f"Lock {lock_id} is busy (lease held by {holder or 'another worker'})")
        self.lock_id = lock_id
        self.holder = holder
