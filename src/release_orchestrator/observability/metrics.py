"""
release-orchestrator: in-process metrics

File: src/release_orchestrator/observability/metrics.py

Purpose
- Count and time what the scheduling loop does (ticks, release evaluations, task
  dispatches, callbacks, consumed builds) without an exporter dependency.
- A metric name is bound to one kind on first use; feeding a counter name to
  ``set_gauge`` raises instead of silently creating a second series.
- Snapshots are deterministic: families and label sets are sorted, so two
  registries fed the same samples serialize identically.
"""

from __future__ import annotations

import json
import math
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

LabelSet = tuple[tuple[str, str], ...]

_MAX_NAME_LEN: Final[int] = 128
_MAX_LABEL_LEN: Final[int] = 256


class MetricKind(StrEnum):
    COUNTER = "counter"
    GAUGE = "gauge"
    DISTRIBUTION = "distribution"


_SECTION_BY_KIND: Final[dict[MetricKind, str]] = {
    MetricKind.COUNTER: "counters",
    MetricKind.GAUGE: "gauges",
    MetricKind.DISTRIBUTION: "distributions",
}


@dataclass(slots=True)
class Summary:
    """Running count, sum and extrema of observed samples."""

    count: int = 0
    total: float = 0.0
    minimum: float = math.inf
    maximum: float = -math.inf

    def add(self, sample: float) -> None:
        self.count += 1
        self.total += sample
        self.minimum = min(self.minimum, sample)
        self.maximum = max(self.maximum, sample)

    def to_dict(self) -> dict[str, JSONValue]:
        if self.count == 0:
            return {"count": 0, "sum": 0.0, "min": None, "max": None, "avg": 0.0}
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count,
        }


@dataclass(slots=True)
class _Family:
    kind: MetricKind
    values: dict[LabelSet, float] = field(default_factory=dict)
    summaries: dict[LabelSet, Summary] = field(default_factory=dict)


class MetricsRegistry:
    """Thread-safe counters, gauges and distributions keyed by name and labels.

    Names the engine emits include ``ticks_total``, ``task_dispatch_total{outcome}``,
    ``callbacks_total{result}``, ``tasks_failed_total{task_type}``,
    ``phase_transitions_total{phase}``, the ``active_releases`` gauge and the
    ``tick_duration_seconds`` distribution.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._mutex = threading.Lock()
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._started_at = self._clock()
        self._families: dict[str, _Family] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        step = _finite(amount, "amount")
        if step < 0:
            raise ValueError("counter increment amount must be >= 0")
        metric, label_set = _check_name(name), _label_set(labels)
        with self._mutex:
            values = self._family(metric, MetricKind.COUNTER).values
            values[label_set] = values.get(label_set, 0.0) + step

    def set_gauge(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        reading = _finite(value, "value")
        metric, label_set = _check_name(name), _label_set(labels)
        with self._mutex:
            self._family(metric, MetricKind.GAUGE).values[label_set] = reading

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        sample = _finite(value, "value")
        metric, label_set = _check_name(name), _label_set(labels)
        with self._mutex:
            summaries = self._family(metric, MetricKind.DISTRIBUTION).summaries
            summaries.setdefault(label_set, Summary()).add(sample)

    @contextmanager
    def timed(self, name: str, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
        """Observe the wall-clock duration of the block in seconds, even when it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started, labels=labels)

    def kind_of(self, name: str) -> MetricKind | None:
        with self._mutex:
            family = self._families.get(_check_name(name))
        return None if family is None else family.kind

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        return self._read(name, MetricKind.COUNTER, labels) or 0.0

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        return self._read(name, MetricKind.GAUGE, labels)

    def get_distribution(
        self, name: str, *, labels: Mapping[str, str] | None = None
    ) -> dict[str, JSONValue] | None:
        metric, label_set = _check_name(name), _label_set(labels)
        with self._mutex:
            family = self._families.get(metric)
            if family is None or family.kind is not MetricKind.DISTRIBUTION:
                return None
            summary = family.summaries.get(label_set)
            return None if summary is None else summary.to_dict()

    def snapshot(self) -> dict[str, JSONValue]:
        """Every series grouped by kind, with sorted keys and timing metadata."""
        sections: dict[str, dict[str, JSONValue]] = {
            section: {} for section in _SECTION_BY_KIND.values()
        }
        with self._mutex:
            for metric in sorted(self._families):
                family = self._families[metric]
                target = sections[_SECTION_BY_KIND[family.kind]]
                if family.kind is MetricKind.DISTRIBUTION:
                    for label_set in sorted(family.summaries):
                        target[series_id(metric, label_set)] = family.summaries[
                            label_set
                        ].to_dict()
                else:
                    for label_set in sorted(family.values):
                        target[series_id(metric, label_set)] = family.values[label_set]

        now = self._clock()
        payload: dict[str, JSONValue] = {
            "metadata": {
                "started_at": _iso(self._started_at),
                "snapshot_at": _iso(now),
                "uptime_seconds": max(0.0, (now - self._started_at).total_seconds()),
            }
        }
        payload.update(sections)
        return payload

    def to_json(self, *, indent: int | None = None) -> str:
        if indent is None:
            return json.dumps(
                self.snapshot(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
            )
        return json.dumps(self.snapshot(), sort_keys=True, indent=indent, ensure_ascii=False)

    def _family(self, metric: str, kind: MetricKind) -> _Family:
        # Caller holds the mutex.
        family = self._families.get(metric)
        if family is None:
            family = self._families[metric] = _Family(kind)
        elif family.kind is not kind:
            raise ValueError(f"metric {metric!r} is a {family.kind.value}, not a {kind.value}")
        return family

    def _read(
        self, name: str, kind: MetricKind, labels: Mapping[str, str] | None
    ) -> float | None:
        metric, label_set = _check_name(name), _label_set(labels)
        with self._mutex:
            family = self._families.get(metric)
            if family is None or family.kind is not kind:
                return None
            return family.values.get(label_set)


def series_id(metric: str, label_set: LabelSet) -> str:
    """``name`` or ``name{k=v,...}`` with labels in key order."""
    if not label_set:
        return metric
    rendered = ",".join(f"{key}={value}" for key, value in label_set)
    return f"{metric}{{{rendered}}}"


def _check_name(name: object) -> str:
    if not isinstance(name, str):
        raise ValueError(f"metric name must be a string, got {type(name).__name__}")
    metric = name.strip()
    if not metric:
        raise ValueError("metric name must not be empty")
    if len(metric) > _MAX_NAME_LEN:
        raise ValueError(f"metric name must be <= {_MAX_NAME_LEN} characters")
    return metric


def _label_set(labels: Mapping[str, str] | None) -> LabelSet:
    if not labels:
        return ()
    pairs: dict[str, str] = {}
    for key, value in labels.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("label keys must be non-empty strings")
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"label value for {key!r} must be a non-empty string")
        if len(value) > _MAX_LABEL_LEN:
            raise ValueError(f"label value for {key!r} exceeds {_MAX_LABEL_LEN} characters")
        pairs[key.strip()] = value.strip()
    return tuple(sorted(pairs.items()))


def _finite(value: object, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be numeric, got {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{what} must be finite")
    return number


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = ["MetricKind", "MetricsRegistry", "Summary", "series_id"]
