"""Process-local metric instruments and their export formats.

Instruments are created once (lookup-or-create by name) and then only ever
incremented or observed. Each instrument owns its own lock, so concurrent
requests touching different instruments never contend, and a snapshot holds
each lock only long enough to copy that instrument's series.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

import structlog
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, HistogramMetricFamily
from prometheus_client.metrics_core import Metric


LabelSet = tuple[tuple[str, str], ...]

OVERFLOW_VALUE = "__overflow__"

DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class _Instrument:
    kind = "untyped"

    def __init__(self, name: str, description: str, *, max_label_sets: int, max_value_length: int) -> None:
        self.name = name
        self.description = description
        self._max_label_sets = max_label_sets
        self._max_value_length = max_value_length
        self._lock = Lock()
        self._series: dict[LabelSet, Any] = {}
        self._overflowed = False

    def _normalize(self, labels: Mapping[str, Any] | None) -> LabelSet:
        if not labels:
            return ()
        return tuple(sorted((str(k), str(v)[: self._max_value_length]) for k, v in labels.items()))

    def _series_key(self, labels: Mapping[str, Any] | None) -> tuple[LabelSet, bool]:
        """Resolve the series key; must be called with the lock held.

        Returns the key and whether this call is the first one to overflow.
        """

        key = self._normalize(labels)
        if key in self._series or len(self._series) < self._max_label_sets:
            return key, False
        first = not self._overflowed
        self._overflowed = True
        return tuple((k, OVERFLOW_VALUE) for k, _ in key), first

    def _warn_overflow(self) -> None:
        structlog.get_logger("meshobs.metrics").warning(
            "metric_label_overflow",
            metric=self.name,
            max_label_sets=self._max_label_sets,
        )

    def collect(self) -> list[dict[str, Any]]:
        raise NotImplementedError


class _Sum(_Instrument):
    def _add(self, delta: float, labels: Mapping[str, Any] | None) -> None:
        with self._lock:
            key, first_overflow = self._series_key(labels)
            self._series[key] = self._series.get(key, 0) + delta
        if first_overflow:
            self._warn_overflow()

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._series.items())
        return [{"labels": dict(key), "value": value} for key, value in sorted(items)]


class Counter(_Sum):
    kind = "counter"

    def add(self, delta: float = 1, labels: Mapping[str, Any] | None = None) -> None:
        if delta < 0:
            raise ValueError(f"counter {self.name!r} cannot decrease (delta={delta})")
        self._add(delta, labels)


class UpDownCounter(_Sum):
    kind = "gauge"

    def add(self, delta: float, labels: Mapping[str, Any] | None = None) -> None:
        self._add(delta, labels)


@dataclass
class _HistogramSeries:
    bucket_counts: list[int]
    count: int = 0
    sum: float = 0.0
    max: float = field(default=float("-inf"))

    def observe(self, value: float, bounds: tuple[float, ...]) -> None:
        self.count += 1
        self.sum += value
        if value > self.max:
            self.max = value
        for i, bound in enumerate(bounds):
            if value <= bound:
                self.bucket_counts[i] += 1
                break


class Histogram(_Instrument):
    kind = "histogram"

    def __init__(self, name: str, description: str, *, buckets: tuple[float, ...] = DEFAULT_BUCKETS, **kwargs: Any) -> None:
        super().__init__(name, description, **kwargs)
        self.buckets = tuple(sorted(buckets))

    def observe(self, value: float, labels: Mapping[str, Any] | None = None) -> None:
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"histogram {self.name!r} cannot observe NaN")
        with self._lock:
            key, first_overflow = self._series_key(labels)
            series = self._series.get(key)
            if series is None:
                series = _HistogramSeries(bucket_counts=[0] * len(self.buckets))
                self._series[key] = series
            series.observe(value, self.buckets)
        if first_overflow:
            self._warn_overflow()

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            items = [(key, (list(s.bucket_counts), s.count, s.sum, s.max)) for key, s in self._series.items()]

        out = []
        for key, (bucket_counts, count, total, max_value) in sorted(items):
            cumulative: dict[str, int] = {}
            running = 0
            for bound, n in zip(self.buckets, bucket_counts):
                running += n
                cumulative[repr(float(bound))] = running
            cumulative["+Inf"] = count
            out.append(
                {
                    "labels": dict(key),
                    "count": count,
                    "sum": total,
                    "max": max_value if count else 0.0,
                    "buckets": cumulative,
                }
            )
        return out


_SECTIONS = {"counter": "counters", "gauge": "gauges", "histogram": "histograms"}


class MetricsRegistry:
    """Named instruments for one process (or one test).

    Pass the registry around explicitly; nothing in the package looks it up
    globally, so tests can use a fresh registry each.
    """

    def __init__(self, max_label_sets: int = 200, max_label_value_length: int = 64) -> None:
        self._lock = Lock()
        self._instruments: dict[str, _Instrument] = {}
        self._limits = {"max_label_sets": max_label_sets, "max_value_length": max_label_value_length}
        self._exposition = CollectorRegistry(auto_describe=False)
        self._exposition.register(RegistryCollector(self))

    def _get_or_create(self, cls: type[_Instrument], name: str, description: str, **kwargs: Any) -> Any:
        instrument = self._instruments.get(name)
        if instrument is None:
            with self._lock:
                instrument = self._instruments.get(name)
                if instrument is None:
                    instrument = cls(name, description, **kwargs, **self._limits)
                    self._instruments[name] = instrument
        if type(instrument) is not cls:
            raise TypeError(f"metric {name!r} already registered as {instrument.kind}")
        return instrument

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(Counter, name, description)

    def gauge(self, name: str, description: str = "") -> UpDownCounter:
        return self._get_or_create(UpDownCounter, name, description)

    def histogram(self, name: str, description: str = "", buckets: tuple[float, ...] = DEFAULT_BUCKETS) -> Histogram:
        return self._get_or_create(Histogram, name, description, buckets=buckets)

    def instruments(self) -> list[_Instrument]:
        with self._lock:
            return sorted(self._instruments.values(), key=lambda i: i.name)

    def snapshot(self) -> dict[str, Any]:
        out: dict[str, Any] = {"counters": {}, "gauges": {}, "histograms": {}}
        for instrument in self.instruments():
            out[_SECTIONS[instrument.kind]][instrument.name] = {
                "description": instrument.description,
                "series": instrument.collect(),
            }
        return out

    def value(self, name: str, **labels: str) -> float:
        """Sum of a counter/gauge over every series matching ``labels`` (histograms: count)."""

        instrument = self._instruments.get(name)
        if instrument is None:
            return 0
        total: float = 0
        for series in instrument.collect():
            if all(series["labels"].get(k) == v for k, v in labels.items()):
                total += series["count"] if instrument.kind == "histogram" else series["value"]
        return total

    def generate_latest(self) -> bytes:
        """Render every instrument in the Prometheus text exposition format."""

        return generate_latest(self._exposition)


class RegistryCollector:
    """``prometheus_client`` collector that reads a ``MetricsRegistry`` snapshot at scrape time."""

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def describe(self) -> list[Metric]:
        # Instruments appear lazily, so there is nothing to declare up front.
        return []

    def collect(self) -> Iterator[Metric]:
        snapshot = self.registry.snapshot()
        for name, metric in snapshot["counters"].items():
            labelnames = _label_names(metric["series"])
            family = CounterMetricFamily(name, metric["description"], labels=labelnames)
            for series in metric["series"]:
                family.add_metric(_label_values(labelnames, series), series["value"])
            yield family
        for name, metric in snapshot["gauges"].items():
            labelnames = _label_names(metric["series"])
            family = GaugeMetricFamily(name, metric["description"], labels=labelnames)
            for series in metric["series"]:
                family.add_metric(_label_values(labelnames, series), series["value"])
            yield family
        for name, metric in snapshot["histograms"].items():
            labelnames = _label_names(metric["series"])
            family = HistogramMetricFamily(name, metric["description"], labels=labelnames)
            for series in metric["series"]:
                family.add_metric(
                    _label_values(labelnames, series),
                    list(series["buckets"].items()),
                    series["sum"],
                )
            yield family


def _label_names(series: list[dict[str, Any]]) -> list[str]:
    return sorted({name for s in series for name in s["labels"]})


def _label_values(labelnames: list[str], series: dict[str, Any]) -> list[str]:
    return [series["labels"].get(name, "") for name in labelnames]
