"""Monitoring module: metric history, system insights and background tasks."""

from .time_series import TimeSeriesStore
from .insights import SystemInsightsAggregator
from .scheduler import PeriodicTask, TaskScheduler

__all__ = ["TimeSeriesStore", "SystemInsightsAggregator", "PeriodicTask", "TaskScheduler"]
