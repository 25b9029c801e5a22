"""Timeline Prefetch Engine."""

__version__ = "1.0.0"
