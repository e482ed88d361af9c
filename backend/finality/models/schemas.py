"""
Finality Worker - Domain Schemas
Records as seen by the reconciliation core, independent of storage backend.

RULE: Exchange result codes are Optional[int]. An absent code (None) is NOT
      the same as a code of 0.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

UNKNOWN_REPORTS_PERIOD = timedelta(days=30)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# STORAGE EVENTS
# =============================================================================

class ExchangeReport(BaseModel):
    """Self-reported exchange result from one side of a transfer."""
    model_config = ConfigDict(from_attributes=True)

    exchange_result_code: Optional[int] = None
    exchange_start: Optional[datetime] = None
    exchange_end: Optional[datetime] = None


class StorageEvent(BaseModel):
    """One completed or failed data transfer between a user and a farmer."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    timestamp: datetime
    success: bool = False
    processed: bool = False
    user: Optional[str] = None
    farmer: Optional[str] = None
    client_report: Optional[ExchangeReport] = None
    farmer_report: Optional[ExchangeReport] = None
    storage: Optional[int] = None
    download_bandwidth: Optional[int] = None

    @property
    def client_code(self) -> Optional[int]:
        return self.client_report.exchange_result_code if self.client_report else None

    @property
    def farmer_code(self) -> Optional[int]:
        return self.farmer_report.exchange_result_code if self.farmer_report else None

    @property
    def transferred_bytes(self) -> int:
        """Bytes counted for rate accounting (storage or download, by event type)."""
        return self.storage or self.download_bandwidth or 0


# =============================================================================
# USERS
# =============================================================================

class UserAccount(BaseModel):
    """
    Account that requested the transfer.

    Tracks the share of transferred bytes whose outcome could not be
    determined ("unknown") within a rolling period.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    unknown_reports_started: Optional[datetime] = None
    unknown_reports_bytes: int = 0
    total_reports_bytes: int = 0

    @property
    def unknown_reports_rate(self) -> float:
        if self.total_reports_bytes <= 0:
            return 0.0
        return self.unknown_reports_bytes / self.total_reports_bytes

    def exceeds_unknown_reports_threshold(self, threshold: float) -> bool:
        return self.unknown_reports_rate > threshold

    def update_unknown_reports(
        self,
        unknown: bool,
        at: datetime,
        transferred_bytes: int,
        period: timedelta = UNKNOWN_REPORTS_PERIOD,
    ) -> None:
        """
        Accumulate one resolved event into the rolling period.

        An event past the end of the current period starts a new one.
        """
        started = self.unknown_reports_started
        if started is None or at >= started + period:
            self.unknown_reports_started = at
            self.unknown_reports_bytes = 0
            self.total_reports_bytes = 0

        self.total_reports_bytes += transferred_bytes
        if unknown:
            self.unknown_reports_bytes += transferred_bytes


# =============================================================================
# REPUTATION
# =============================================================================

class Contact(BaseModel):
    """A farmer node accruing reputation points."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    reputation: int = 0
    last_points_at: Optional[datetime] = None

    def record_points(
        self,
        points: int,
        minimum: int = 0,
        maximum: int = 5000,
    ) -> "Contact":
        """Return a copy with points applied, clamped into [minimum, maximum]."""
        reputation = max(minimum, min(maximum, self.reputation + points))
        return self.model_copy(
            update={"reputation": reputation, "last_points_at": utc_now()}
        )


# =============================================================================
# OUTCOME RESOLUTION
# =============================================================================

class Resolution(BaseModel):
    """Resolved outcome of a storage event."""
    model_config = ConfigDict(frozen=True)

    success: bool
    unknown: bool


# =============================================================================
# LOCK / CHECKPOINT
# =============================================================================

class LockResult(BaseModel):
    """Outcome of a lock acquire attempt."""
    locked: bool
    prior_state: Optional[dict[str, Any]] = None


class JobCheckpoint(BaseModel):
    """
    Lower edge of the next run's window.

    Persisted in the lock's state payload as {"lastTimestamp": <epoch ms>}.
    """
    last_timestamp: datetime

    @classmethod
    def from_raw_data(cls, raw_data: Optional[dict[str, Any]]) -> Optional["JobCheckpoint"]:
        """Parse a lock state payload. Returns None when absent or malformed."""
        if not isinstance(raw_data, dict):
            return None
        value = raw_data.get("lastTimestamp")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            return None
        try:
            return cls(last_timestamp=EPOCH + timedelta(milliseconds=value))
        except OverflowError:
            return None

    def to_raw_data(self) -> dict[str, Any]:
        millis = (self.last_timestamp - EPOCH) // timedelta(milliseconds=1)
        return {"lastTimestamp": millis}


# =============================================================================
# RUN CONTROLLER
# =============================================================================

class RunState(str, Enum):
    """Run controller states."""
    IDLE = "IDLE"
    LOCK_PENDING = "LOCK_PENDING"
    LOCK_DENIED = "LOCK_DENIED"
    RUNNING = "RUNNING"
    UNLOCK_PENDING = "UNLOCK_PENDING"


class RunReport(BaseModel):
    """Summary of one triggered run."""
    job_name: str
    locked: bool = False
    started_from: Optional[datetime] = None
    checkpoint: Optional[datetime] = None
    processed: int = 0
    error: Optional[str] = None
    checkpoint_saved: bool = False
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
