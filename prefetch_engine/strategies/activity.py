"""Refresh everyone seen since the last tick."""

import logging

from prefetch_engine.strategies.base import Strategy

logger = logging.getLogger(__name__)


class ActivityStrategy(Strategy):
    """Tracks recently-active users and emits them at high priority.

    The set is swapped for a fresh one without awaiting, so activity recorded
    while a tick is enqueueing lands in the next tick.
    """

    name = "activity"

    def __init__(self):
        self._active: set[str] = set()

    def track_activity(self, user_id: str):
        self._active.add(user_id)

    def contains(self, user_id: str) -> bool:
        return user_id in self._active

    def __len__(self) -> int:
        return len(self._active)

    def schedule(self) -> list[tuple[str, str]]:
        drained, self._active = self._active, set()
        if drained:
            logger.debug("Activity drained | users=%d", len(drained))
        return [(user_id, "high") for user_id in sorted(drained)]
