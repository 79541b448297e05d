"""
Thread-safe per-request-type rolling aggregates.

Request types are spread over a fixed number of shards. A shard lock only
guards the shard's dictionary (lookup and lazy creation); each request type
then carries its own lock, so updates to different request types never wait
on each other and updates to the same request type are serialized.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..config import OptimizerConfig
from ..models import (
    AccessPattern,
    CacheKeyStrategy,
    CacheScope,
    CachingProfile,
    ExecutionSample,
    RequestTypeProfile,
)
from ..utils import exponential_moving_average, welford_update

logger = logging.getLogger(__name__)

DEFAULT_SHARD_COUNT = 16


class _ProfileState:
    """Mutable aggregates for one request type. Guarded by ``lock``."""

    __slots__ = (
        "lock", "count", "success_count", "failure_count", "mean", "m2",
        "min_duration", "max_duration", "error_rate", "high_memory_ratio",
        "memory_mean", "db_calls_mean", "external_calls_mean",
        "concurrency_hwm", "first_seen", "last_seen", "access_timestamps",
        "patterns", "total_accesses", "cache_hits", "predicted_hit_rate",
        "recommended_ttl", "cache_scope", "key_strategy", "latest_sample",
    )

    def __init__(self, history_size: int):
        self.lock = threading.Lock()
        self.count = 0
        self.success_count = 0
        self.failure_count = 0
        self.mean = 0.0
        self.m2 = 0.0
        self.min_duration = 0.0
        self.max_duration = 0.0
        self.error_rate = 0.0
        self.high_memory_ratio = 0.0
        self.memory_mean = 0.0
        self.db_calls_mean = 0.0
        self.external_calls_mean = 0.0
        self.concurrency_hwm = 0
        self.first_seen: Optional[datetime] = None
        self.last_seen: Optional[datetime] = None
        self.access_timestamps = deque(maxlen=history_size)
        self.patterns = deque(maxlen=history_size)
        self.total_accesses = 0
        self.cache_hits = 0
        self.predicted_hit_rate = 0.0
        self.recommended_ttl: Optional[float] = None
        self.cache_scope: Optional[CacheScope] = None
        self.key_strategy: Optional[CacheKeyStrategy] = None
        self.latest_sample: Optional[ExecutionSample] = None


class _Shard:
    __slots__ = ("lock", "states")

    def __init__(self):
        self.lock = threading.Lock()
        self.states: Dict[str, _ProfileState] = {}


class AnalyticsStore:
    """Owns every request-type profile; hands out read-only snapshots."""

    def __init__(self, config: OptimizerConfig, shard_count: int = DEFAULT_SHARD_COUNT):
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self.config = config
        self._shards = [_Shard() for _ in range(shard_count)]

    def _shard(self, request_type: str) -> _Shard:
        return self._shards[hash(request_type) % len(self._shards)]

    def _state(self, request_type: str, create: bool) -> Optional[_ProfileState]:
        shard = self._shard(request_type)
        with shard.lock:
            state = shard.states.get(request_type)
            if state is None and create:
                state = _ProfileState(self.config.access_history_size)
                shard.states[request_type] = state
            return state

    def record(self, request_type: str, sample: ExecutionSample):
        """
        Fold one execution sample into the request type's profile.

        Args:
            request_type: Request type identifier
            sample: Observed execution
        """
        state = self._state(request_type, create=True)
        config = self.config

        with state.lock:
            state.count, state.mean, state.m2 = welford_update(
                state.count, state.mean, state.m2, sample.duration_ms
            )
            n = state.count
            if n == 1:
                state.min_duration = state.max_duration = sample.duration_ms
            else:
                state.min_duration = min(state.min_duration, sample.duration_ms)
                state.max_duration = max(state.max_duration, sample.duration_ms)

            if sample.success:
                state.success_count += 1
            else:
                state.failure_count += 1

            # Bias-corrected while there are fewer than 1/alpha samples
            alpha = max(config.error_rate_smoothing, 1.0 / n)
            state.error_rate = exponential_moving_average(
                state.error_rate, 0.0 if sample.success else 1.0, alpha
            )
            high_memory = sample.memory_delta_bytes > config.high_memory_allocation_threshold_bytes
            state.high_memory_ratio = exponential_moving_average(
                state.high_memory_ratio, 1.0 if high_memory else 0.0, alpha
            )

            state.memory_mean += (sample.memory_delta_bytes - state.memory_mean) / n
            state.db_calls_mean += (sample.database_calls - state.db_calls_mean) / n
            state.external_calls_mean += (sample.external_calls - state.external_calls_mean) / n
            state.concurrency_hwm = max(state.concurrency_hwm, sample.concurrent_executions)

            if state.first_seen is None or sample.timestamp < state.first_seen:
                state.first_seen = sample.timestamp
            if state.last_seen is None or sample.timestamp > state.last_seen:
                state.last_seen = sample.timestamp
            state.access_timestamps.append(sample.timestamp)
            state.latest_sample = sample

    def record_access(self, request_type: str, patterns: Iterable[AccessPattern]):
        """Append access events to the request type's bounded access history."""
        ordered = sorted(patterns, key=lambda p: p.timestamp)
        if not ordered:
            return
        state = self._state(request_type, create=True)
        with state.lock:
            state.patterns.extend(ordered)
            state.total_accesses += len(ordered)
            state.cache_hits += sum(1 for p in ordered if p.was_cache_hit)

    def update_caching_result(self, request_type: str, predicted_hit_rate: float,
                              ttl_seconds: Optional[float], scope: Optional[CacheScope],
                              key_strategy: Optional[CacheKeyStrategy]):
        state = self._state(request_type, create=True)
        with state.lock:
            state.predicted_hit_rate = predicted_hit_rate
            state.recommended_ttl = ttl_seconds
            state.cache_scope = scope
            state.key_strategy = key_strategy

    def prune_access_history(self, cutoff: datetime) -> int:
        """
        Drop access events older than ``cutoff`` from every request type.

        Returns:
            int: Number of access events removed
        """
        removed = 0
        for request_type in self.request_types():
            state = self._state(request_type, create=False)
            if state is None:
                continue
            with state.lock:
                kept = [p for p in state.patterns if p.timestamp >= cutoff]
                dropped = len(state.patterns) - len(kept)
                if dropped:
                    state.total_accesses -= dropped
                    state.cache_hits -= sum(1 for p in state.patterns if p.timestamp < cutoff and p.was_cache_hit)
                    state.patterns.clear()
                    state.patterns.extend(kept)
                    removed += dropped
        if removed:
            logger.debug(f"Pruned {removed} access events older than {cutoff.isoformat()}")
        return removed

    def snapshot(self, request_type: str) -> RequestTypeProfile:
        """Consistent point-in-time copy; an empty profile for unknown types."""
        state = self._state(request_type, create=False)
        if state is None:
            return RequestTypeProfile.empty(request_type)
        with state.lock:
            return RequestTypeProfile(
                request_type=request_type,
                sample_count=state.count,
                success_count=state.success_count,
                failure_count=state.failure_count,
                mean_duration_ms=state.mean,
                duration_variance=state.m2 / (state.count - 1) if state.count > 1 else 0.0,
                min_duration_ms=state.min_duration,
                max_duration_ms=state.max_duration,
                error_rate=state.error_rate,
                high_memory_ratio=state.high_memory_ratio,
                mean_memory_delta_bytes=state.memory_mean,
                mean_database_calls=state.db_calls_mean,
                mean_external_calls=state.external_calls_mean,
                concurrency_high_water_mark=state.concurrency_hwm,
                first_seen=state.first_seen,
                last_seen=state.last_seen,
                access_timestamps=tuple(state.access_timestamps),
            )

    def latest_sample(self, request_type: str) -> Optional[ExecutionSample]:
        """The sample most recently recorded for a request type."""
        state = self._state(request_type, create=False)
        if state is None:
            return None
        with state.lock:
            return state.latest_sample

    def caching_snapshot(self, request_type: str) -> CachingProfile:
        state = self._state(request_type, create=False)
        if state is None:
            return CachingProfile.empty(request_type)
        with state.lock:
            stamps = [p.timestamp for p in state.patterns]
            intervals = tuple(
                (later - earlier).total_seconds() for earlier, later in zip(stamps, stamps[1:])
            )
            return CachingProfile(
                request_type=request_type,
                access_intervals=intervals,
                total_accesses=state.total_accesses,
                cache_hits=state.cache_hits,
                predicted_hit_rate=state.predicted_hit_rate,
                recommended_ttl_seconds=state.recommended_ttl,
                cache_scope=state.cache_scope,
                key_strategy=state.key_strategy,
            )

    def access_history(self, request_type: str) -> List[AccessPattern]:
        state = self._state(request_type, create=False)
        if state is None:
            return []
        with state.lock:
            return list(state.patterns)

    def request_types(self) -> List[str]:
        names = []
        for shard in self._shards:
            with shard.lock:
                names.extend(shard.states.keys())
        return sorted(names)

    def snapshots(self) -> Dict[str, RequestTypeProfile]:
        return {name: self.snapshot(name) for name in self.request_types()}

    def total_samples(self) -> int:
        return sum(p.sample_count for p in self.snapshots().values())

    def reset(self):
        """Clear every profile. All shard locks are taken, in order, for the swap."""
        for shard in self._shards:
            shard.lock.acquire()
        try:
            for shard in self._shards:
                shard.states = {}
        finally:
            for shard in reversed(self._shards):
                shard.lock.release()
        logger.info("Analytics store reset")

    def __len__(self) -> int:
        return len(self.request_types())

    def __contains__(self, request_type: str) -> bool:
        return self._state(request_type, create=False) is not None
