"""
Usage recording and statistical rollups.

Every completed operation is appended to a bounded in-process buffer. The
oldest records are dropped first once the buffer is full or a record
outlives the retention age. All views are computed on demand from the
records within a time window.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional

from usage_governor.config.loader import PricingConfig, UsageBufferConfig
from usage_governor.storage.base import UsageArchive
from usage_governor.storage.models import UsageRecord

from .pricing import CostCategory, classify_endpoint, cost_for_record
from .window_counter import utc_clock

logger = logging.getLogger(__name__)

TOP_N = 10
SLOWEST_N = 5


@dataclass(frozen=True)
class EndpointUsage:
    endpoint: str
    count: int
    cost: float


@dataclass(frozen=True)
class UserUsage:
    subject: str
    requests: int
    cost: float


@dataclass(frozen=True)
class ModelUsage:
    requests: int
    cost: float
    tokens: int


@dataclass(frozen=True)
class UsageStats:
    """Aggregate over a population of usage records.

    Rates are fractions in [0, 1] and are 0 for an empty population.
    """
    total_requests: int = 0
    total_cost: float = 0.0
    average_response_time: float = 0.0
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    requests_per_minute: float = 0.0
    cost_per_minute: float = 0.0
    top_endpoints: List[EndpointUsage] = field(default_factory=list)
    top_users: List[UserUsage] = field(default_factory=list)
    model_usage: Dict[str, ModelUsage] = field(default_factory=dict)


@dataclass(frozen=True)
class HourlyUsage:
    hour: datetime
    requests: int
    cost: float


@dataclass(frozen=True)
class UserStats:
    """Usage of a single subject."""
    total_requests: int
    total_cost: float
    average_response_time: float
    endpoint_breakdown: Dict[str, EndpointUsage]
    hourly_usage: List[HourlyUsage]


@dataclass(frozen=True)
class CategoryCost:
    category: CostCategory
    cost: float
    percentage: float


@dataclass(frozen=True)
class CostBreakdown:
    """Spend per cost category."""
    total: float
    breakdown: List[CategoryCost]

    def cost_of(self, category: CostCategory) -> float:
        for item in self.breakdown:
            if item.category == category:
                return item.cost
        return 0.0


@dataclass(frozen=True)
class EndpointLatency:
    endpoint: str
    average_time: float


@dataclass(frozen=True)
class PerformanceMetrics:
    """Latency and reliability over a time window."""
    average_response_time: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0
    error_rate: float = 0.0
    cache_hit_rate: float = 0.0
    requests_per_minute: float = 0.0
    slowest_endpoints: List[EndpointLatency] = field(default_factory=list)


def _ratio(part: float, whole: float) -> float:
    return part / whole if whole else 0.0


def compute_percentile(values: List[float], percentile: float) -> float:
    """Compute exact percentile using linear interpolation.

    Same method as numpy.percentile with the default linear interpolation.

    Args:
        values: List of numeric values
        percentile: Percentile to compute (0-100)

    Returns:
        Exact percentile value, 0 for an empty list
    """
    if not values:
        return 0.0

    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)

    position = (percentile / 100.0) * (n - 1)
    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + fraction * (upper_value - lower_value)


class UsageAggregator:
    """Bounded usage buffer with on-demand rollups."""

    def __init__(
        self,
        capacity: int = 10000,
        max_age_hours: float = 24.0,
        pricing: Optional[PricingConfig] = None,
        archive: Optional[UsageArchive] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            capacity: Maximum records held; the oldest is dropped beyond it
            max_age_hours: Records older than this are dropped on append
            pricing: Rates used when a record arrives without a cost
            archive: Optional durable sink every logged record is written to
            clock: Returns the current UTC time
        """
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if max_age_hours <= 0:
            raise ValueError("max_age_hours must be > 0")
        self.capacity = capacity
        self.max_age = timedelta(hours=max_age_hours)
        self.pricing = pricing or PricingConfig()
        self.archive = archive
        self.clock = utc_clock(clock)
        self._buffer: Deque[UsageRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: UsageBufferConfig,
        pricing: Optional[PricingConfig] = None,
        archive: Optional[UsageArchive] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "UsageAggregator":
        return cls(
            capacity=config.capacity,
            max_age_hours=config.max_age_hours,
            pricing=pricing,
            archive=archive,
            clock=clock,
        )

    @classmethod
    def from_records(cls, records: Iterable[UsageRecord], **kwargs) -> "UsageAggregator":
        """Rebuild an aggregator from previously archived records.

        Records are loaded oldest first and are not written back to any archive.
        """
        kwargs.pop("archive", None)
        aggregator = cls(**kwargs)
        for record in sorted(records, key=lambda r: r.timestamp):
            aggregator._append(aggregator._priced(record))
        return aggregator

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._buffer)

    def _priced(self, record: UsageRecord) -> UsageRecord:
        if record.cost is not None:
            return record
        return replace(record, cost=cost_for_record(record, self.pricing))

    def _append(self, record: UsageRecord) -> None:
        cutoff = self.clock() - self.max_age
        if record.timestamp < cutoff:
            logger.debug("Dropping usage record older than %s: %s", self.max_age, record.timestamp)
            return
        with self._lock:
            # deque(maxlen) drops the head when full
            self._buffer.append(record)
            while self._buffer and self._buffer[0].timestamp < cutoff:
                self._buffer.popleft()

    def _evict_expired(self) -> None:
        """Remove every record past the age threshold, wherever it sits in the buffer.

        Late records can sit behind newer ones, so head eviction alone may miss them.
        """
        cutoff = self.clock() - self.max_age
        with self._lock:
            if any(r.timestamp < cutoff for r in self._buffer):
                kept = [r for r in self._buffer if r.timestamp >= cutoff]
                self._buffer.clear()
                self._buffer.extend(kept)

    def log_usage(self, record: UsageRecord) -> UsageRecord:
        """Record one completed operation.

        Derives the cost if the record has none, appends it to the buffer
        (dropping the oldest records as needed) and writes it through to the
        archive, if configured.

        Args:
            record: Usage record of the completed operation

        Returns:
            The record as stored, with its cost filled in

        Raises:
            StorageUnavailableError: If the archive write fails; the record
                is already in the in-process buffer
        """
        priced = self._priced(record)
        self._append(priced)
        logger.debug(
            "API usage: %s %s - %.0fms - status %d - $%.4f",
            priced.method, priced.endpoint, priced.response_time_ms,
            priced.status_code, priced.cost,
        )
        if self.archive is not None:
            self.archive.append_usage(priced)
        return priced

    def _snapshot(self) -> List[UsageRecord]:
        self._evict_expired()
        with self._lock:
            return list(self._buffer)

    def _select_recent(self, hours: Optional[float] = None) -> List[UsageRecord]:
        """Records newer than now - hours; all retained records when hours is None."""
        records = self._snapshot()
        if hours is None:
            return records
        cutoff = self.clock() - timedelta(hours=hours)
        return [r for r in records if r.timestamp >= cutoff]

    def _select_between(self, start: datetime, end: datetime) -> List[UsageRecord]:
        return [r for r in self._snapshot() if start <= r.timestamp <= end]

    def get_stats(self, window_hours: Optional[float] = None) -> UsageStats:
        """Aggregate statistics over the last ``window_hours`` (default: all retained)."""
        return self._compute_stats(self._select_recent(window_hours))

    def get_stats_for_period(self, start: datetime, end: datetime) -> UsageStats:
        """Aggregate statistics over records with ``start <= timestamp <= end``."""
        return self._compute_stats(self._select_between(start, end))

    def get_user_stats(self, subject: str, hours: float = 24) -> UserStats:
        """Usage of one subject over the last ``hours``, with hourly buckets."""
        records = [r for r in self._select_recent(hours) if r.subject == subject]

        total_requests = len(records)
        total_cost = sum(r.cost for r in records)
        average_response_time = _ratio(sum(r.response_time_ms for r in records), total_requests)

        endpoint_counts: Dict[str, List[float]] = {}
        hourly: Dict[datetime, List[float]] = {}
        for record in records:
            endpoint_counts.setdefault(record.endpoint, []).append(record.cost)
            hour = record.timestamp.replace(minute=0, second=0, microsecond=0)
            hourly.setdefault(hour, []).append(record.cost)

        return UserStats(
            total_requests=total_requests,
            total_cost=total_cost,
            average_response_time=average_response_time,
            endpoint_breakdown={
                endpoint: EndpointUsage(endpoint, len(costs), sum(costs))
                for endpoint, costs in sorted(endpoint_counts.items())
            },
            hourly_usage=[
                HourlyUsage(hour, len(costs), sum(costs))
                for hour, costs in sorted(hourly.items())
            ],
        )

    def get_cost_breakdown(self, hours: float = 24) -> CostBreakdown:
        """Spend per cost category over the last ``hours``."""
        totals = {category: 0.0 for category in CostCategory}
        for record in self._select_recent(hours):
            totals[classify_endpoint(record.endpoint)] += record.cost

        total = sum(totals.values())
        return CostBreakdown(
            total=total,
            breakdown=[
                CategoryCost(category, cost, _ratio(cost, total) * 100)
                for category, cost in totals.items()
            ],
        )

    def get_performance_metrics(self, hours: float = 1) -> PerformanceMetrics:
        """Latency percentiles, error and cache rates over the last ``hours``."""
        records = self._select_recent(hours)
        if not records:
            return PerformanceMetrics()

        total = len(records)
        response_times = [r.response_time_ms for r in records]

        endpoint_times: Dict[str, List[float]] = {}
        for record in records:
            endpoint_times.setdefault(record.endpoint, []).append(record.response_time_ms)
        latencies = [
            EndpointLatency(endpoint, sum(times) / len(times))
            for endpoint, times in endpoint_times.items()
        ]
        latencies.sort(key=lambda e: (-e.average_time, e.endpoint))

        return PerformanceMetrics(
            average_response_time=sum(response_times) / total,
            p95_response_time=compute_percentile(response_times, 95),
            p99_response_time=compute_percentile(response_times, 99),
            error_rate=sum(1 for r in records if r.is_error) / total,
            cache_hit_rate=sum(1 for r in records if r.cached) / total,
            requests_per_minute=total / (hours * 60),
            slowest_endpoints=latencies[:SLOWEST_N],
        )

    def export_usage_data(self, start: datetime, end: datetime) -> List[UsageRecord]:
        """Records with ``start <= timestamp <= end``, oldest first."""
        return sorted(self._select_between(start, end), key=lambda r: r.timestamp)

    def reset_stats(self) -> None:
        """Drop every buffered record.

        Destructive and unconfirmed: intended for test isolation and
        administrative resets only. Archived records are untouched.
        """
        with self._lock:
            dropped = len(self._buffer)
            self._buffer.clear()
        logger.warning("Usage statistics reset; %d records dropped", dropped)

    def _compute_stats(self, records: List[UsageRecord]) -> UsageStats:
        if not records:
            return UsageStats()

        total_requests = len(records)
        total_cost = sum(r.cost for r in records)

        oldest = min(r.timestamp for r in records)
        minutes = max(1.0, (self.clock() - oldest).total_seconds() / 60)

        endpoints: Dict[str, List[float]] = {}
        users: Dict[str, List[float]] = {}
        models: Dict[str, List[UsageRecord]] = {}
        for record in records:
            endpoints.setdefault(record.endpoint, []).append(record.cost)
            users.setdefault(record.subject, []).append(record.cost)
            if record.model:
                models.setdefault(record.model, []).append(record)

        top_endpoints = sorted(
            (EndpointUsage(name, len(costs), sum(costs)) for name, costs in endpoints.items()),
            key=lambda e: (-e.count, e.endpoint),
        )[:TOP_N]
        top_users = sorted(
            (UserUsage(name, len(costs), sum(costs)) for name, costs in users.items()),
            key=lambda u: (-u.cost, u.subject),
        )[:TOP_N]
        model_usage = {
            name: ModelUsage(
                requests=len(entries),
                cost=sum(r.cost for r in entries),
                tokens=sum(r.tokens or 0 for r in entries),
            )
            for name, entries in sorted(models.items())
        }

        return UsageStats(
            total_requests=total_requests,
            total_cost=total_cost,
            average_response_time=sum(r.response_time_ms for r in records) / total_requests,
            cache_hit_rate=sum(1 for r in records if r.cached) / total_requests,
            error_rate=sum(1 for r in records if r.is_error) / total_requests,
            requests_per_minute=total_requests / minutes,
            cost_per_minute=total_cost / minutes,
            top_endpoints=top_endpoints,
            top_users=top_users,
            model_usage=model_usage,
        )
