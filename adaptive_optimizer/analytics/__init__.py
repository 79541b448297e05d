"""Analytics module: per-request-type rolling aggregates."""

from .store import AnalyticsStore

__all__ = ["AnalyticsStore"]
