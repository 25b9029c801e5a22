"""Explicit refresh requests from other components, drained per tick."""

from prefetch_engine.schemas import PRIORITY_RANK
from prefetch_engine.strategies.base import Strategy


class TriggerStrategy(Strategy):
    """Accumulates triggers between ticks; the highest priority per user wins."""

    name = "trigger"

    def __init__(self):
        self._pending: dict[str, str] = {}

    def trigger(self, user_id: str, priority: str = "medium"):
        if priority not in PRIORITY_RANK:
            raise ValueError(f"unknown priority: {priority}")
        current = self._pending.get(user_id)
        if current is None or PRIORITY_RANK[priority] < PRIORITY_RANK[current]:
            self._pending[user_id] = priority

    def __len__(self) -> int:
        return len(self._pending)

    def schedule(self) -> list[tuple[str, str]]:
        drained, self._pending = self._pending, {}
        return list(drained.items())
