"""
Finality Worker - Error Taxonomy

Run-ending errors (StoreError, DeadlineExceeded) abort the window and are
reported by the run controller with the last good checkpoint.
LockError skips the run or the checkpoint write.
ReputationUpdateError never leaves the reputation updater.

Lock contention is NOT an error: it surfaces as LockResult(locked=False).
"""


class FinalityError(Exception):
    """Base class for all worker errors."""


class LockError(FinalityError):
    """Lock acquire/release failed at the I/O level."""


class StoreError(FinalityError):
    """Fetching or persisting records failed during window processing."""


class DeadlineExceeded(FinalityError):
    """The run exceeded its wall-clock budget."""
    
    def __init__(self, message: str = "Job exceeded max duration") -> None:
        super().__init__(message)


class ReputationUpdateError(FinalityError):
    """A reputation point update could not be applied."""
