"""Database models for the lock reconciler."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RunStatus(str, Enum):
    """Lifecycle state of a reconciliation run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


class Reservation(Base):
    """A reservation fetched from the reservation source."""

    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True)  # Duve _id
    first_name: Mapped[str] = mapped_column(String(255), default="")
    last_name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    booking_status: Mapped[str] = mapped_column(String(50), default="unknown")
    booking_source: Mapped[str] = mapped_column(String(100), default="unknown")
    check_in: Mapped[datetime] = mapped_column(DateTime)
    check_out: Mapped[datetime] = mapped_column(DateTime)

    # Property information
    property_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    property_name: Mapped[str] = mapped_column(String(255), default="")
    property_street: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    property_street_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    property_city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Vendor lock id this reservation was matched to (None when unresolved)
    lock_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Reservation {self.external_id}>"


class LockProfile(Base):
    """A physical lock keyed by street number and lock name."""

    __tablename__ = "lock_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    street_number: Mapped[str] = mapped_column(String(20))
    lock_name: Mapped[str] = mapped_column(String(100))
    full_property_name: Mapped[str] = mapped_column(String(255), default="")
    lock_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # Sifely lockId
    lock_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # e.g. "#1234"
    reservation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reservations.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    reservation: Mapped[Optional["Reservation"]] = relationship("Reservation")
    passcode_slots: Mapped[list["PasscodeSlot"]] = relationship(
        "PasscodeSlot", back_populates="lock_profile", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("street_number", "lock_name", name="uq_lock_street_name"),
    )

    def __repr__(self) -> str:
        return f"<LockProfile {self.street_number} {self.lock_name}>"


class PasscodeSlot(Base):
    """A keyboard passcode slot on a lock."""

    __tablename__ = "passcode_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    passcode_id: Mapped[int] = mapped_column(Integer, unique=True)  # Sifely keyboardPwdId
    lock_profile_id: Mapped[int] = mapped_column(ForeignKey("lock_profiles.id"))
    name: Mapped[str] = mapped_column(String(100))
    code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    passcode_type: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[int] = mapped_column(Integer, default=0)  # 1 = active
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    lock_profile: Mapped["LockProfile"] = relationship(
        "LockProfile", back_populates="passcode_slots"
    )

    def __repr__(self) -> str:
        return f"<PasscodeSlot {self.passcode_id} {self.name}>"


class ReconciliationRun(Base):
    """One batch pass over due reservations."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trigger: Mapped[str] = mapped_column(String(20), default="scheduled")  # scheduled, manual
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value)
    start_time: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reservations_processed: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    failures: Mapped[list["FailedLockUpdate"]] = relationship(
        "FailedLockUpdate", back_populates="run"
    )
    successes: Mapped[list["SuccessfulLockUpdate"]] = relationship(
        "SuccessfulLockUpdate", back_populates="run"
    )

    def __repr__(self) -> str:
        return f"<ReconciliationRun {self.id} {self.status}>"


class RunLock(Base):
    """Single-row claim held by the active reconciliation run."""

    __tablename__ = "run_lock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)  # always 1
    run_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class LockLease(Base):
    """Short-lived lease serializing passcode changes on one lock."""

    __tablename__ = "lock_leases"

    lock_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100))
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)


class FailedLockUpdate(Base):
    """A failed lock code update, retried later."""

    __tablename__ = "failed_lock_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reconciliation_runs.id"), nullable=True
    )
    reservation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reservations.id"), nullable=True
    )
    external_reservation_id: Mapped[str] = mapped_column(String(64))
    lock_id: Mapped[str] = mapped_column(String(32))  # or "unknown"
    property_name: Mapped[str] = mapped_column(String(255), default="")
    full_address: Mapped[str] = mapped_column(String(255), default="")
    guest_name: Mapped[str] = mapped_column(String(255), default="")
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime)
    error_kind: Mapped[str] = mapped_column(String(20))
    error: Mapped[str] = mapped_column(Text, default="")
    raw_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON
    http_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    run: Mapped[Optional["ReconciliationRun"]] = relationship(
        "ReconciliationRun", back_populates="failures"
    )

    def __repr__(self) -> str:
        return f"<FailedLockUpdate {self.id} lock={self.lock_id} {self.error_kind}>"


class SuccessfulLockUpdate(Base):
    """A confirmed lock code change."""

    __tablename__ = "successful_lock_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reconciliation_runs.id"), nullable=True
    )
    reservation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reservations.id"), nullable=True
    )
    external_reservation_id: Mapped[str] = mapped_column(String(64))
    lock_id: Mapped[str] = mapped_column(String(32), index=True)
    property_name: Mapped[str] = mapped_column(String(255), default="")
    full_address: Mapped[str] = mapped_column(String(255), default="")
    guest_name: Mapped[str] = mapped_column(String(255), default="")
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime)
    lock_code: Mapped[str] = mapped_column(String(10))
    code_start: Mapped[datetime] = mapped_column(DateTime)
    code_end: Mapped[datetime] = mapped_column(DateTime)
    processing_ms: Mapped[int] = mapped_column(Integer, default=0)
    upstream_patched: Mapped[bool] = mapped_column(Boolean, default=True)
    source: Mapped[str] = mapped_column(String(20), default="run")  # run, retry, manual
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    run: Mapped[Optional["ReconciliationRun"]] = relationship(
        "ReconciliationRun", back_populates="successes"
    )

    def __repr__(self) -> str:
        return f"<SuccessfulLockUpdate {self.id} lock={self.lock_id}>"


class Configuration(Base):
    """Key/value credential store."""

    __tablename__ = "configuration"

    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
