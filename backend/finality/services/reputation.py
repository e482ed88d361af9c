"""
Finality Worker - Reputation Updater

Credits or debits the farmer that performed a transfer once the event's
outcome is resolved.

Reputation is a secondary signal. Failures here are logged and swallowed:
they never abort window processing or hold back the checkpoint.
"""

import logging
from typing import Optional

from finality.core.config import Settings
from finality.core.errors import ReputationUpdateError, StoreError
from finality.store.base import EventStore

logger = logging.getLogger(__name__)


class ReputationUpdater:
    """Applies TRANSFER_SUCCESS / TRANSFER_FAILURE points to contacts."""

    def __init__(
        self,
        store: EventStore,
        success_points: int = 10,
        failure_points: int = -10,
        minimum: int = 0,
        maximum: int = 5000,
    ) -> None:
        self.store = store
        self.success_points = success_points
        self.failure_points = failure_points
        self.minimum = minimum
        self.maximum = maximum

    @classmethod
    def from_settings(cls, store: EventStore, settings: Settings) -> "ReputationUpdater":
        return cls(
            store,
            success_points=settings.TRANSFER_SUCCESS_POINTS,
            failure_points=settings.TRANSFER_FAILURE_POINTS,
            minimum=settings.REPUTATION_MIN,
            maximum=settings.REPUTATION_MAX,
        )

    def points_for(self, success: bool) -> int:
        return self.success_points if success else self.failure_points

    async def award(self, node_id: Optional[str], success: bool) -> None:
        """Apply points for one resolved transfer. Never raises."""
        try:
            await self._record_points(node_id, self.points_for(success))
        except ReputationUpdateError as e:
            logger.warning("updateReputation: %s", e)
        except Exception as e:
            logger.warning("updateReputation: unexpected error for contact %s, reason: %s", node_id, e)

    async def _record_points(self, node_id: Optional[str], points: int) -> None:
        if node_id is None:
            raise ReputationUpdateError("storage event has no farmer")

        try:
            contact = await self.store.get_contact(node_id)
        except StoreError as e:
            raise ReputationUpdateError(
                f"Error trying to find contact {node_id}, reason: {e}"
            ) from e
        if contact is None:
            raise ReputationUpdateError(
                f"Error trying to find contact {node_id}, reason: unknown"
            )

        updated = contact.record_points(points, minimum=self.minimum, maximum=self.maximum)
        try:
            await self.store.save_contact(updated)
        except StoreError as e:
            raise ReputationUpdateError(
                f"Error saving contact {node_id}, reason: {e}"
            ) from e

        logger.debug(
            "contact %s reputation %d -> %d (%+d)",
            node_id, contact.reputation, updated.reputation, points,
        )
