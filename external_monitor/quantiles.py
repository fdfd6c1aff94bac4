from __future__ import annotations

import math
import time
from bisect import insort
from dataclasses import dataclass
from typing import Callable


# quantile -> allowed rank error, as in the Go client's summary objectives.
DEFAULT_OBJECTIVES: dict[float, float] = {0.5: 0.05, 0.9: 0.01, 0.99: 0.001}
DEFAULT_MAX_AGE_SECONDS = 600.0
DEFAULT_AGE_BUCKETS = 5
DEFAULT_BUFFER_SIZE = 500


@dataclass
class _Sample:
    value: float
    width: float
    delta: float


def _validate_objectives(objectives: dict[float, float]) -> dict[float, float]:
    if not objectives:
        raise ValueError("objectives must not be empty")
    out: dict[float, float] = {}
    for q, eps in objectives.items():
        q = float(q)
        eps = float(eps)
        if not (0.0 < q < 1.0):
            raise ValueError(f"quantile {q!r} must be in (0, 1)")
        if not (0.0 <= eps < 1.0):
            raise ValueError(f"error {eps!r} for quantile {q!r} must be in [0, 1)")
        out[q] = eps
    return out


class TargetedQuantileStream:
    """
    Streaming quantile estimator for a fixed set of target quantiles.

    Implements the CKMS "targeted quantiles" variant (Cormode, Korn,
    Muthukrishnan, Srivastava 2005). Incoming values are buffered, sorted and
    merged into a compressed sample list whose size is bounded by the allowed
    rank errors rather than by the number of observations.

    Not thread-safe; callers serialize access.
    """

    def __init__(self, objectives: dict[float, float], buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self._targets = sorted(_validate_objectives(objectives).items())
        self._buffer_size = max(1, int(buffer_size))
        self._buffer: list[float] = []
        self._samples: list[_Sample] = []
        self._n = 0.0

    def __len__(self) -> int:
        return int(self._n) + len(self._buffer)

    def _invariant(self, r: float) -> float:
        n = self._n
        m = math.inf
        for q, eps in self._targets:
            if q * n <= r:
                f = (2.0 * eps * r) / q
            else:
                f = (2.0 * eps * (n - r)) / (1.0 - q)
            if f < m:
                m = f
        return m

    def insert(self, value: float) -> None:
        insort(self._buffer, float(value))
        if len(self._buffer) >= self._buffer_size:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        self._merge(self._buffer)
        self._buffer = []

    def reset(self) -> None:
        self._buffer = []
        self._samples = []
        self._n = 0.0

    def query(self, q: float) -> float:
        if not self._samples:
            # Nothing merged yet: answer exactly from the sorted buffer.
            if not self._buffer:
                return math.nan
            i = int(math.ceil(len(self._buffer) * float(q)))
            if i > 0:
                i -= 1
            return self._buffer[min(i, len(self._buffer) - 1)]

        self.flush()
        samples = self._samples
        t = math.ceil(float(q) * self._n)
        t += math.ceil(self._invariant(t) / 2.0)
        prev = samples[0]
        r = 0.0
        for cur in samples[1:]:
            r += prev.width
            if r + cur.width + cur.delta > t:
                return prev.value
            prev = cur
        return prev.value

    def _merge(self, values: list[float]) -> None:
        samples = self._samples
        r = 0.0
        i = 0
        for v in values:
            inserted = False
            while i < len(samples):
                cur = samples[i]
                if cur.value > v:
                    delta = max(0.0, math.floor(self._invariant(r)) - 1.0)
                    samples.insert(i, _Sample(v, 1.0, delta))
                    i += 1
                    inserted = True
                    break
                r += cur.width
                i += 1
            if not inserted:
                samples.append(_Sample(v, 1.0, 0.0))
                i += 1
            self._n += 1.0
            r += 1.0
        self._compress()

    def _compress(self) -> None:
        samples = self._samples
        if len(samples) < 2:
            return
        xi = len(samples) - 1
        x = samples[xi]
        r = self._n - 1.0 - x.width
        for i in range(len(samples) - 2, -1, -1):
            cur = samples[i]
            if cur.width + x.width + x.delta <= self._invariant(r):
                x.width += cur.width
                del samples[i]
                xi -= 1
            else:
                x = cur
                xi = i
            r -= cur.width


class SummaryEstimator:
    """
    Sliding-window quantile summary with cumulative count and sum.

    Observations go into every one of ``age_buckets`` streams; queries read the
    head stream. Every ``max_age_seconds / age_buckets`` the head stream is
    cleared and the next one becomes head, so quantiles cover roughly the last
    ``max_age_seconds``. ``count`` and ``sum`` never reset.
    """

    def __init__(
        self,
        objectives: dict[float, float] | None = None,
        *,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        age_buckets: int = DEFAULT_AGE_BUCKETS,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.objectives = _validate_objectives(objectives if objectives is not None else DEFAULT_OBJECTIVES)
        if float(max_age_seconds) <= 0:
            raise ValueError("max_age_seconds must be positive")
        if int(age_buckets) < 1:
            raise ValueError("age_buckets must be >= 1")

        self._clock = clock
        self._bucket_seconds = float(max_age_seconds) / int(age_buckets)
        self._streams = [
            TargetedQuantileStream(self.objectives, buffer_size=buffer_size) for _ in range(int(age_buckets))
        ]
        self._head = 0
        self._head_expires = self._clock() + self._bucket_seconds
        self.count = 0
        self.sum = 0.0

    def _rotate(self, now: float) -> None:
        if now < self._head_expires:
            return
        buckets = len(self._streams)
        expired = int((now - self._head_expires) // self._bucket_seconds) + 1
        if expired >= buckets:
            # Idle for longer than the whole window: everything is stale.
            for stream in self._streams:
                stream.reset()
            self._head = (self._head + expired) % buckets
            self._head_expires += expired * self._bucket_seconds
            return
        while now >= self._head_expires:
            self._streams[self._head].reset()
            self._head = (self._head + 1) % len(self._streams)
            self._head_expires += self._bucket_seconds

    def observe(self, value: float) -> None:
        self._rotate(self._clock())
        for stream in self._streams:
            stream.insert(value)
        self.count += 1
        self.sum += float(value)

    def quantiles(self) -> dict[float, float]:
        self._rotate(self._clock())
        head = self._streams[self._head]
        return {q: head.query(q) for q in sorted(self.objectives)}
