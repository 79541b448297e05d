"""
Loading recorded telemetry for offline replay.

Execution samples, access patterns and system load snapshots can be read
from CSV or JSON. A JSON file may hold a list of sample records or an
object with ``samples``, ``access_patterns`` and ``system_load`` lists.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from .exceptions import ValidationError
from .models import AccessPattern, ExecutionSample, SystemLoadMetrics

logger = logging.getLogger(__name__)

SAMPLE_COLUMNS = {
    "duration_ms": float,
    "success": bool,
    "memory_delta_bytes": int,
    "database_calls": int,
    "external_calls": int,
    "concurrent_executions": int,
}

ACCESS_COLUMNS = {
    "request_key": str,
    "execution_time_ms": float,
    "was_cache_hit": bool,
    "user_context": str,
    "region": str,
}

LOAD_COLUMNS = {
    "cpu_utilization": float,
    "memory_utilization": float,
    "queue_depth": int,
    "throughput_per_second": float,
    "active_connections": int,
    "database_pool_utilization": float,
    "thread_pool_utilization": float,
}

TRUE_STRINGS = {"true", "1", "yes", "y", "t"}


@dataclass
class TelemetryBundle:
    """Everything loaded from one or more telemetry files."""

    samples: List[Tuple[str, ExecutionSample]] = field(default_factory=list)
    access_patterns: Dict[str, List[AccessPattern]] = field(default_factory=dict)
    system_load: List[SystemLoadMetrics] = field(default_factory=list)
    rejected_rows: int = 0

    @property
    def request_types(self) -> List[str]:
        names = {name for name, _ in self.samples} | set(self.access_patterns)
        return sorted(names)

    def merge(self, other: "TelemetryBundle") -> "TelemetryBundle":
        access = {k: list(v) for k, v in self.access_patterns.items()}
        for name, patterns in other.access_patterns.items():
            access.setdefault(name, []).extend(patterns)
        return TelemetryBundle(
            samples=self.samples + other.samples,
            access_patterns=access,
            system_load=self.system_load + other.system_load,
            rejected_rows=self.rejected_rows + other.rejected_rows,
        )


def _read_frame(filepath: str) -> Tuple[pd.DataFrame, Optional[Dict[str, Any]]]:
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    if path.suffix.lower() == ".csv":
        return pd.read_csv(path), None

    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON in {filepath}: {e}")

    if isinstance(data, list):
        return pd.DataFrame(data), None
    if isinstance(data, dict):
        return pd.DataFrame(data.get("samples", [])), data
    raise ValidationError(f"Unsupported telemetry layout in {filepath}")


def _timestamps(frame: pd.DataFrame, source: str) -> List[datetime]:
    if "timestamp" not in frame.columns:
        raise ValidationError(f"{source} is missing the timestamp column")
    stamps = pd.to_datetime(frame["timestamp"], errors="coerce")
    if getattr(stamps.dt, "tz", None) is not None:
        stamps = stamps.dt.tz_convert("UTC").dt.tz_localize(None)
    return [ts.to_pydatetime() if not pd.isna(ts) else None for ts in stamps]


def _coerce(value: Any, kind: type, default: Any):
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return default
    if kind is bool:
        if isinstance(value, str):
            return value.strip().lower() in TRUE_STRINGS
        return bool(value)
    if kind is str:
        return str(value)
    return kind(value)


def _rows(frame: pd.DataFrame, columns: Dict[str, type], defaults: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows = []
    for record in frame.to_dict(orient="records"):
        row = {}
        for name, kind in columns.items():
            value = _coerce(record.get(name), kind, defaults.get(name))
            if value is not None:
                row[name] = value
        rows.append(row)
    return rows


def _frame_to_samples(frame: pd.DataFrame, source: str) -> Tuple[List[Tuple[str, ExecutionSample]], int]:
    if frame.empty:
        return [], 0
    missing = {"request_type", "duration_ms"} - set(frame.columns)
    if missing:
        raise ValidationError(f"{source} is missing required columns: {sorted(missing)}")

    stamps = _timestamps(frame, source)
    defaults = {"success": True, "memory_delta_bytes": 0, "database_calls": 0,
                "external_calls": 0, "concurrent_executions": 1}
    samples = []
    rejected = 0
    for request_type, stamp, row in zip(frame["request_type"], stamps, _rows(frame, SAMPLE_COLUMNS, defaults)):
        try:
            if stamp is None or pd.isna(request_type):
                raise ValidationError("missing timestamp or request type")
            samples.append((str(request_type), ExecutionSample(timestamp=stamp, **row)))
        except (ValidationError, TypeError, ValueError) as e:
            rejected += 1
            logger.warning(f"Skipping sample row in {source}: {e}")

    samples.sort(key=lambda item: item[1].timestamp)
    return samples, rejected


def _frame_to_access_patterns(frame: pd.DataFrame, source: str) -> Tuple[Dict[str, List[AccessPattern]], int]:
    if frame.empty:
        return {}, 0
    missing = {"request_type", "request_key"} - set(frame.columns)
    if missing:
        raise ValidationError(f"{source} is missing required access pattern columns: {sorted(missing)}")

    stamps = _timestamps(frame, source)
    defaults = {"execution_time_ms": 0.0, "was_cache_hit": False, "user_context": "", "region": ""}
    patterns: Dict[str, List[AccessPattern]] = {}
    rejected = 0
    for request_type, stamp, row in zip(frame["request_type"], stamps, _rows(frame, ACCESS_COLUMNS, defaults)):
        try:
            if stamp is None:
                raise ValidationError("missing timestamp")
            patterns.setdefault(str(request_type), []).append(AccessPattern(timestamp=stamp, **row))
        except (ValidationError, TypeError, ValueError) as e:
            rejected += 1
            logger.warning(f"Skipping access pattern row in {source}: {e}")
    return patterns, rejected


def _frame_to_system_load(frame: pd.DataFrame, source: str) -> Tuple[List[SystemLoadMetrics], int]:
    if frame.empty:
        return [], 0
    stamps = _timestamps(frame, source)
    loads = []
    rejected = 0
    for stamp, row in zip(stamps, _rows(frame, LOAD_COLUMNS, {})):
        try:
            if stamp is None:
                raise ValidationError("missing timestamp")
            loads.append(SystemLoadMetrics(timestamp=stamp, **row))
        except (ValidationError, TypeError, ValueError) as e:
            rejected += 1
            logger.warning(f"Skipping system load row in {source}: {e}")
    loads.sort(key=lambda load: load.timestamp)
    return loads, rejected


def load_telemetry(filepath: str) -> TelemetryBundle:
    """
    Load execution samples (and, for JSON bundles, access patterns and load).

    Args:
        filepath: CSV or JSON telemetry file

    Returns:
        TelemetryBundle: Samples ordered by timestamp plus any extra sections
    """
    frame, document = _read_frame(filepath)
    samples, rejected = _frame_to_samples(frame, filepath)
    bundle = TelemetryBundle(samples=samples, rejected_rows=rejected)

    if document is not None:
        access, access_rejected = _frame_to_access_patterns(
            pd.DataFrame(document.get("access_patterns", [])), filepath
        )
        loads, load_rejected = _frame_to_system_load(pd.DataFrame(document.get("system_load", [])), filepath)
        bundle.access_patterns = access
        bundle.system_load = loads
        bundle.rejected_rows += access_rejected + load_rejected

    logger.info(
        f"Loaded {len(bundle.samples)} samples for {len(bundle.request_types)} request types "
        f"from {filepath} ({bundle.rejected_rows} rows rejected)"
    )
    return bundle


def load_access_patterns(filepath: str) -> TelemetryBundle:
    frame, document = _read_frame(filepath)
    if document is not None:
        frame = pd.DataFrame(document.get("access_patterns", []))
    access, rejected = _frame_to_access_patterns(frame, filepath)
    return TelemetryBundle(access_patterns=access, rejected_rows=rejected)


def load_system_load(filepath: str) -> TelemetryBundle:
    frame, document = _read_frame(filepath)
    if document is not None:
        frame = pd.DataFrame(document.get("system_load", []))
    loads, rejected = _frame_to_system_load(frame, filepath)
    return TelemetryBundle(system_load=loads, rejected_rows=rejected)


class ReplayClock:
    """Clock that follows the timestamps of replayed telemetry."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now()

    def __call__(self) -> datetime:
        return self.now

    def advance_to(self, timestamp: datetime):
        if timestamp > self.now:
            self.now = timestamp


def replay(engine, bundle: TelemetryBundle, clock: Optional[ReplayClock] = None,
           collect_interval_seconds: Optional[float] = None) -> int:
    """
    Feed recorded telemetry through an engine in timestamp order.

    Metrics are collected every ``collect_interval_seconds`` of telemetry
    time (the engine's metrics collection interval by default), and access
    patterns are analyzed once all samples are in.

    Args:
        engine: OptimizationEngine to feed
        bundle: Loaded telemetry
        clock: Clock the engine was built with, advanced as telemetry plays
        collect_interval_seconds: Telemetry-time spacing of metric collection

    Returns:
        int: Number of samples accepted by the engine
    """
    interval = collect_interval_seconds or engine.config.metrics_collection_interval_seconds
    loads = list(bundle.system_load)
    accepted = 0
    next_collect: Optional[datetime] = None

    for request_type, sample in bundle.samples:
        if clock is not None:
            clock.advance_to(sample.timestamp)
        while loads and loads[0].timestamp <= sample.timestamp:
            engine.record_system_load(loads.pop(0))
        if next_collect is None:
            next_collect = sample.timestamp
        if sample.timestamp >= next_collect:
            engine.collect_metrics(sample.timestamp)
            next_collect = sample.timestamp + timedelta(seconds=interval)
        if engine.record_execution(request_type, sample):
            accepted += 1

    for load in loads:
        engine.record_system_load(load)
    if bundle.samples:
        engine.collect_metrics(bundle.samples[-1][1].timestamp)

    for request_type, patterns in sorted(bundle.access_patterns.items()):
        engine.should_cache(request_type, patterns)

    engine.refresh_recommendations()
    return accepted
