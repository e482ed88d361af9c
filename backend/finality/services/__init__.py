from finality.services.outcome_resolver import OutcomeResolver, resolve_outcome
from finality.services.reputation import ReputationUpdater
from finality.services.window_processor import WindowProcessor, WindowProgress, WindowResult

__all__ = [
    "OutcomeResolver",
    "resolve_outcome",
    "ReputationUpdater",
    "WindowProcessor",
    "WindowProgress",
    "WindowResult",
]
