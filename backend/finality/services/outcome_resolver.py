"""
Finality Worker - Outcome Resolver

Classifies a storage event as success / failure, and whether the outcome is
"unknown" (not determinable from the two self-reports).

TRUST HIERARCHY (first match wins, order is load-bearing):
1. Declared success is never reclassified
2. Client reports success
3. Farmer reports failure, client silent
4. Farmer and client both report failure
5. Farmer silent, client reports failure
6. User's unknown rate over threshold -> success, flagged unknown
7. Otherwise failure, flagged unknown

A silent side means no exchange_result_code at all. A code of 0 is a report.
"""

from typing import Optional

from finality.core.config import Settings
from finality.models.schemas import Resolution, StorageEvent, UserAccount


SUCCESS_CODE = 1000
FAILURE_CODE = 1100

RESOLVED_SUCCESS = Resolution(success=True, unknown=False)
RESOLVED_FAILURE = Resolution(success=False, unknown=False)
UNKNOWN_SUCCESS = Resolution(success=True, unknown=True)
UNKNOWN_FAILURE = Resolution(success=False, unknown=True)


def resolve_outcome(
    event: StorageEvent,
    user: UserAccount,
    unknown_threshold: float,
    success_code: int = SUCCESS_CODE,
    failure_code: int = FAILURE_CODE,
) -> Resolution:
    """Resolve one event. Pure: identical inputs give identical output."""
    if event.success:
        return RESOLVED_SUCCESS

    client_code: Optional[int] = event.client_code
    farmer_code: Optional[int] = event.farmer_code

    if client_code == success_code:
        return RESOLVED_SUCCESS
    if farmer_code == failure_code and client_code is None:
        return RESOLVED_FAILURE
    if farmer_code == failure_code and client_code == failure_code:
        return RESOLVED_FAILURE
    if farmer_code is None and client_code == failure_code:
        return RESOLVED_FAILURE
    if user.exceeds_unknown_reports_threshold(unknown_threshold):
        return UNKNOWN_SUCCESS
    return UNKNOWN_FAILURE


class OutcomeResolver:
    """resolve_outcome bound to configured threshold and result codes."""

    def __init__(
        self,
        unknown_threshold: float,
        success_code: int = SUCCESS_CODE,
        failure_code: int = FAILURE_CODE,
    ) -> None:
        self.unknown_threshold = unknown_threshold
        self.success_code = success_code
        self.failure_code = failure_code

    @classmethod
    def from_settings(cls, settings: Settings) -> "OutcomeResolver":
        return cls(
            unknown_threshold=settings.UNKNOWN_REPORT_THRESHOLD,
            success_code=settings.SUCCESS_CODE,
            failure_code=settings.FAILURE_CODE,
        )

    def resolve(self, event: StorageEvent, user: UserAccount) -> Resolution:
        return resolve_outcome(
            event,
            user,
            self.unknown_threshold,
            success_code=self.success_code,
            failure_code=self.failure_code,
        )
