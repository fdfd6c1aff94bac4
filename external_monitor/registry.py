from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from external_monitor.quantiles import (
    DEFAULT_AGE_BUCKETS,
    DEFAULT_MAX_AGE_SECONDS,
    DEFAULT_OBJECTIVES,
    SummaryEstimator,
)


@dataclass(frozen=True)
class LabelSnapshot:
    label: str
    count: int
    sum: float
    quantiles: dict[float, float]
    errors: int


@dataclass(frozen=True)
class RegistrySnapshot:
    taken_at: float
    entries: dict[str, LabelSnapshot] = field(default_factory=dict)

    def get(self, label: str) -> LabelSnapshot | None:
        return self.entries.get(label)


class LabelEntry:
    """Latency summary and error tally for one label, guarded by its own lock."""

    def __init__(self, label: str, estimator: SummaryEstimator) -> None:
        self.label = label
        self._lock = threading.Lock()
        self._estimator = estimator
        self._errors = 0

    def observe(self, elapsed_ms: float) -> None:
        with self._lock:
            self._estimator.observe(elapsed_ms)

    def increment_errors(self, amount: int = 1) -> None:
        with self._lock:
            self._errors += amount

    def snapshot(self) -> LabelSnapshot:
        with self._lock:
            return LabelSnapshot(
                label=self.label,
                count=self._estimator.count,
                sum=self._estimator.sum,
                quantiles=self._estimator.quantiles(),
                errors=self._errors,
            )


class MetricsRegistry:
    """
    Thread-safe per-label latency summaries and error counters.

    Entries are created lazily on the first write for a label and live for the
    lifetime of the registry. The registry lock only guards entry creation and
    the label index; all sample folding and reads happen under the entry's own
    lock, so a scrape never waits on more than one estimator update.
    """

    def __init__(
        self,
        objectives: dict[float, float] | None = None,
        *,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        age_buckets: int = DEFAULT_AGE_BUCKETS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.objectives = dict(objectives if objectives is not None else DEFAULT_OBJECTIVES)
        self.max_age_seconds = float(max_age_seconds)
        self.age_buckets = int(age_buckets)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, LabelEntry] = {}

        # Fail fast on bad summary options instead of on the first observation.
        self._new_estimator()

    def _new_estimator(self) -> SummaryEstimator:
        return SummaryEstimator(
            self.objectives,
            max_age_seconds=self.max_age_seconds,
            age_buckets=self.age_buckets,
            clock=self._clock,
        )

    def _entry(self, label: str) -> LabelEntry:
        entry = self._entries.get(label)
        if entry is not None:
            return entry
        with self._lock:
            entry = self._entries.get(label)
            if entry is None:
                entry = LabelEntry(label, self._new_estimator())
                self._entries[label] = entry
            return entry

    def labels(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def observe_latency(self, label: str, elapsed_ms: float) -> None:
        value = float(elapsed_ms)
        if not math.isfinite(value) or value < 0:
            raise ValueError(f"latency must be a finite, non-negative number of ms, got {elapsed_ms!r}")
        self._entry(label).observe(value)

    def increment_error(self, label: str, amount: int = 1) -> None:
        if int(amount) < 0:
            raise ValueError("error counter can only increase")
        self._entry(label).increment_errors(int(amount))

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            entries = list(self._entries.values())
        return RegistrySnapshot(
            taken_at=time.time(),
            entries={entry.label: entry.snapshot() for entry in entries},
        )
