from finality.core.config import Settings, get_settings
from finality.core.errors import (
    DeadlineExceeded,
    FinalityError,
    LockError,
    ReputationUpdateError,
    StoreError,
)

__all__ = [
    "Settings",
    "get_settings",
    "FinalityError",
    "LockError",
    "StoreError",
    "DeadlineExceeded",
    "ReputationUpdateError",
]
