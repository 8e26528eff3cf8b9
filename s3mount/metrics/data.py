"""Metric values and the maps that aggregate them."""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from typing import Iterator, Optional, Union

AGGREGATE_LOGGER_NAME = "s3mount.aggregate_metrics"

# Histograms are tuned for microsecond latency timers and saturate at 60 seconds.
HISTOGRAM_LOWEST = 1
HISTOGRAM_HIGHEST = 60 * 1000 * 1000
HISTOGRAM_SIGNIFICANT_FIGURES = 2

_UNIT_MAGNITUDE = HISTOGRAM_LOWEST.bit_length() - 1
_SUB_BUCKET_COUNT_MAGNITUDE = (2 * 10**HISTOGRAM_SIGNIFICANT_FIGURES - 1).bit_length()
_SUB_BUCKET_HALF_MAGNITUDE = _SUB_BUCKET_COUNT_MAGNITUDE - 1
_SUB_BUCKET_COUNT = 1 << _SUB_BUCKET_COUNT_MAGNITUDE
_SUB_BUCKET_HALF_COUNT = 1 << _SUB_BUCKET_HALF_MAGNITUDE
_SUB_BUCKET_MASK = (_SUB_BUCKET_COUNT - 1) << _UNIT_MAGNITUDE


def _buckets_needed() -> int:
    smallest_untrackable = _SUB_BUCKET_COUNT << _UNIT_MAGNITUDE
    buckets = 1
    while smallest_untrackable <= HISTOGRAM_HIGHEST:
        if smallest_untrackable > 2**63:
            buckets += 1
            break
        smallest_untrackable <<= 1
        buckets += 1
    return buckets


_COUNTS_LEN = (_buckets_needed() + 1) * _SUB_BUCKET_HALF_COUNT


def _bucket_index(value: int) -> int:
    return (value | _SUB_BUCKET_MASK).bit_length() - _UNIT_MAGNITUDE - _SUB_BUCKET_COUNT_MAGNITUDE


def _index_for(value: int) -> int:
    bucket = _bucket_index(value)
    sub_bucket = value >> (bucket + _UNIT_MAGNITUDE)
    return ((bucket + 1) << _SUB_BUCKET_HALF_MAGNITUDE) + sub_bucket - _SUB_BUCKET_HALF_COUNT


def _value_for(index: int) -> int:
    bucket = (index >> _SUB_BUCKET_HALF_MAGNITUDE) - 1
    sub_bucket = (index & (_SUB_BUCKET_HALF_COUNT - 1)) + _SUB_BUCKET_HALF_COUNT
    if bucket < 0:
        sub_bucket -= _SUB_BUCKET_HALF_COUNT
        bucket = 0
    return sub_bucket << (bucket + _UNIT_MAGNITUDE)


def _lowest_equivalent(value: int) -> int:
    bucket = _bucket_index(value)
    return (value >> (bucket + _UNIT_MAGNITUDE)) << (bucket + _UNIT_MAGNITUDE)


def _equivalent_range(value: int) -> int:
    return 1 << (_UNIT_MAGNITUDE + _bucket_index(value))


def _highest_equivalent(value: int) -> int:
    return _lowest_equivalent(value) + _equivalent_range(value) - 1


def _median_equivalent(value: int) -> int:
    return _lowest_equivalent(value) + (_equivalent_range(value) >> 1)


def _format_number(value: Union[int, float]) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "inf" if value > 0 else "-inf"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


class Histogram:
    """A high-dynamic-range histogram with two significant figures of precision."""

    def __init__(self) -> None:
        self._counts: dict[int, int] = {}
        self._total = 0
        self._min_non_zero: Optional[int] = None
        self._max = 0

    def record(self, value: int) -> None:
        """Record a value, saturating at the highest trackable value."""
        value = int(value)
        if value < 0:
            raise ValueError("histogram values must not be negative")
        if _index_for(value) >= _COUNTS_LEN:
            value = HISTOGRAM_HIGHEST
        self._add_count(_index_for(value), 1)
        self._note_value(value)

    def _add_count(self, index: int, count: int) -> None:
        self._counts[index] = self._counts.get(index, 0) + count
        self._total += count

    def _note_value(self, value: int) -> None:
        self._max = max(self._max, value)
        if value > 0 and (self._min_non_zero is None or value < self._min_non_zero):
            self._min_non_zero = value

    def add(self, other: Histogram) -> None:
        """Merge every recorded value of ``other`` into this histogram."""
        for index, count in other._counts.items():
            self._add_count(index, count)
        if other._total:
            self._max = max(self._max, other._max)
            if other._min_non_zero is not None:
                self._note_value(other._min_non_zero)

    def min(self) -> int:
        if self._total == 0 or self._counts.get(0, 0) or self._min_non_zero is None:
            return 0
        return _lowest_equivalent(self._min_non_zero)

    def max(self) -> int:
        if self._max == 0:
            return 0
        return _highest_equivalent(self._max)

    def value_at_quantile(self, quantile: float) -> int:
        """Return the value below which the given fraction of recorded values fall."""
        quantile = min(quantile, 1.0)
        count_at_quantile = max(1, math.ceil(quantile * self._total))
        running = 0
        for index in sorted(self._counts):
            running += self._counts[index]
            if running >= count_at_quantile:
                value = _value_for(index)
                if quantile == 0.0:
                    return _lowest_equivalent(value)
                return _highest_equivalent(value)
        return 0

    def mean(self) -> float:
        if self._total == 0:
            return 0.0
        weighted = sum(
            _median_equivalent(_value_for(index)) * count for index, count in self._counts.items()
        )
        return weighted / self._total

    def __len__(self) -> int:
        return self._total

    def __str__(self) -> str:
        return (
            f"n={len(self)}: min={self.min()} p10={self.value_at_quantile(0.1)} "
            f"p50={self.value_at_quantile(0.5)} avg={self.mean():.2f} "
            f"p90={self.value_at_quantile(0.9)} p99={self.value_at_quantile(0.99)} "
            f"p99.9={self.value_at_quantile(0.999)} max={self.max()}"
        )


@dataclass(frozen=True, order=True)
class MetricKey:
    """A metric name together with its ordered labels."""

    name: str
    labels: tuple[tuple[str, str], ...] = ()

    def __str__(self) -> str:
        if not self.labels:
            return self.name
        rendered = ",".join(f"{key}={value}" for key, value in self.labels)
        return f"{self.name}[{rendered}]"


class MetricType(enum.Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(eq=False)
class Metric:
    """A single metric value: a counter or gauge sum with count, or a histogram."""

    kind: MetricType
    sum: Union[int, float] = 0
    n: int = 0
    histogram: Optional[Histogram] = None

    @staticmethod
    def create(kind: MetricType) -> Metric:
        if kind is MetricType.HISTOGRAM:
            return Metric(kind, histogram=Histogram())
        if kind is MetricType.GAUGE:
            return Metric(kind, sum=0.0)
        return Metric(kind, sum=0)

    def increment(self, value: int) -> None:
        if self.kind is MetricType.COUNTER:
            self.sum += value
            self.n += 1
        elif self.kind is MetricType.GAUGE:
            raise TypeError("increment gauge values are not supported")
        else:
            self.histogram.record(value)

    def set(self, value: float) -> None:
        if self.kind is MetricType.GAUGE:
            self.sum = value
            self.n = 1
        elif self.kind is MetricType.COUNTER:
            raise TypeError("set counter values are not supported")
        else:
            raise TypeError("set histogram values are not supported")

    def aggregate(self, other: Metric) -> None:
        """Fold ``other``, which must be of the same kind, into this metric."""
        if self.kind is not other.kind:
            raise TypeError("can't aggregate different types")
        if self.kind is MetricType.HISTOGRAM:
            self.histogram.add(other.histogram)
        else:
            self.sum += other.sum
            self.n += other.n

    def __str__(self) -> str:
        if self.kind is MetricType.COUNTER:
            if self.sum == self.n:
                return _format_number(self.sum)
            return f"{_format_number(self.sum)} (n={self.n})"
        if self.kind is MetricType.GAUGE:
            return f"{_format_number(self.sum)} (n={self.n})"
        return str(self.histogram)


class Metrics:
    """A map from metric keys to metric values."""

    def __init__(self) -> None:
        self._metrics: dict[MetricKey, Metric] = {}

    def get_or_create(self, kind: MetricType, key: MetricKey) -> Metric:
        metric = self._metrics.get(key)
        if metric is None:
            metric = self._metrics[key] = Metric.create(kind)
        return metric

    def aggregate(self, other: Metrics) -> None:
        """Fold every metric of ``other`` into this map."""
        for key, metric in other._metrics.items():
            mine = self._metrics.get(key)
            if mine is None:
                self._metrics[key] = metric
            else:
                mine.aggregate(metric)

    def format_lines(self) -> list[str]:
        """Render one line per metric, sorted by key."""
        return [f"{key}: {self._metrics[key]}" for key in sorted(self._metrics)]

    def emit(self, logger: Optional[logging.Logger] = None) -> None:
        """Log every metric at INFO level."""
        logger = logger or logging.getLogger(AGGREGATE_LOGGER_NAME)
        for line in self.format_lines():
            logger.info("%s", line)

    def __iter__(self) -> Iterator[tuple[MetricKey, Metric]]:
        return iter(self._metrics.items())

    def __len__(self) -> int:
        return len(self._metrics)