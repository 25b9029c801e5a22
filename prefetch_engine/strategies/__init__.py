"""Prefetch strategies and the scheduler that drives them."""

from prefetch_engine.strategies.activity import ActivityStrategy
from prefetch_engine.strategies.base import Strategy
from prefetch_engine.strategies.scheduler import StrategyScheduler
from prefetch_engine.strategies.trigger import TriggerStrategy

__all__ = ["ActivityStrategy", "Strategy", "StrategyScheduler", "TriggerStrategy"]
