"""
Bounded in-memory metric time series used by the insights aggregator.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

SYSTEM_COMPONENT = "system"


class TimeSeriesStore:
    """Per (component, metric) ring buffers of timestamped values."""

    def __init__(self, max_points: int = 10000):
        self.max_points = max_points
        self._lock = threading.Lock()
        self._series: Dict[Tuple[str, str], deque] = {}

    def add(self, component: str, metric: str, value: float, timestamp: Optional[datetime] = None):
        point = (timestamp or datetime.now(), float(value))
        key = (component, metric)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = deque(maxlen=self.max_points)
                self._series[key] = series
            series.append(point)

    def add_many(self, component: str, values: Dict[str, float], timestamp: Optional[datetime] = None):
        timestamp = timestamp or datetime.now()
        for metric, value in values.items():
            self.add(component, metric, value, timestamp)

    def series(self, component: str, metric: str, since: Optional[datetime] = None) -> pd.Series:
        """
        Values for one metric as a time-indexed pandas Series.

        Args:
            component: Request type name or ``system``
            metric: Metric name
            since: Drop points older than this

        Returns:
            pd.Series: Sorted by timestamp; empty when nothing was recorded
        """
        with self._lock:
            points = list(self._series.get((component, metric), ()))
        if since is not None:
            points = [p for p in points if p[0] >= since]
        if not points:
            return pd.Series(dtype=float, name=metric)
        timestamps, values = zip(*points)
        result = pd.Series(values, index=pd.DatetimeIndex(timestamps), name=metric, dtype=float)
        return result.sort_index()

    def latest(self, component: str, metric: str) -> Optional[float]:
        with self._lock:
            series = self._series.get((component, metric))
            if not series:
                return None
            return series[-1][1]

    def keys(self) -> List[Tuple[str, str]]:
        with self._lock:
            return sorted(self._series.keys())

    def components(self) -> List[str]:
        return sorted({component for component, _ in self.keys()})

    def clear(self):
        with self._lock:
            self._series = {}

    def __len__(self) -> int:
        with self._lock:
            return sum(len(s) for s in self._series.values())
