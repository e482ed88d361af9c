from finality.models.schemas import (
    EPOCH,
    Contact,
    ExchangeReport,
    JobCheckpoint,
    LockResult,
    Resolution,
    RunReport,
    RunState,
    StorageEvent,
    UserAccount,
    utc_now,
)

__all__ = [
    "EPOCH",
    "Contact",
    "ExchangeReport",
    "JobCheckpoint",
    "LockResult",
    "Resolution",
    "RunReport",
    "RunState",
    "StorageEvent",
    "UserAccount",
    "utc_now",
]
