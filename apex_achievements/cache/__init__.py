"""In-memory caches shared across engine services."""

from .totals_cache import PointsTotalCache

__all__ = ["PointsTotalCache"]
