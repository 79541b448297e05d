"""
Tests for the metric time series store.
"""

import pytest
from datetime import datetime, timedelta

from adaptive_optimizer.monitoring.time_series import SYSTEM_COMPONENT, TimeSeriesStore

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture
def series_store():
    return TimeSeriesStore(max_points=50)


@pytest.mark.unit
class TestTimeSeriesStore:

    def test_series_is_sorted_by_time(self, series_store):
        series_store.add("Orders", "error_rate", 0.2, BASE_TIME + timedelta(seconds=60))
        series_store.add("Orders", "error_rate", 0.1, BASE_TIME)

        series = series_store.series("Orders", "error_rate")

        assert list(series.values) == [0.1, 0.2]
        assert series.index[0] == BASE_TIME
        assert series.name == "error_rate"

    def test_since_filter(self, series_store):
        for i in range(5):
            series_store.add("Orders", "error_rate", float(i), BASE_TIME + timedelta(minutes=i))

        series = series_store.series("Orders", "error_rate", since=BASE_TIME + timedelta(minutes=3))

        assert list(series.values) == [3.0, 4.0]

    def test_missing_series_is_empty(self, series_store):
        series = series_store.series("Orders", "error_rate")

        assert series.empty
        assert series_store.latest("Orders", "error_rate") is None

    def test_bounded(self, series_store):
        for i in range(80):
            series_store.add("Orders", "mean_duration_ms", float(i), BASE_TIME + timedelta(seconds=i))

        assert len(series_store) == 50
        assert series_store.latest("Orders", "mean_duration_ms") == 79.0
        assert series_store.series("Orders", "mean_duration_ms").iloc[0] == 30.0

    def test_add_many_and_keys(self, series_store):
        series_store.add_many(SYSTEM_COMPONENT, {"cpu_utilization": 0.5, "queue_depth": 3}, BASE_TIME)
        series_store.add("Orders", "error_rate", 0.0, BASE_TIME)

        assert series_store.keys() == [
            ("Orders", "error_rate"),
            (SYSTEM_COMPONENT, "cpu_utilization"),
            (SYSTEM_COMPONENT, "queue_depth"),
        ]
        assert series_store.components() == ["Orders", SYSTEM_COMPONENT]

    def test_clear(self, series_store):
        series_store.add("Orders", "error_rate", 0.0, BASE_TIME)
        series_store.clear()

        assert len(series_store) == 0
        assert series_store.keys() == []
