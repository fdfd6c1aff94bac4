"""Sequential probe loop feeding the metrics registry."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

import httpx
import structlog

from external_monitor.prober import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    InvalidTargetError,
    ProbeFailure,
    ProbeInvalid,
    ProbeSuccess,
    probe,
)
from external_monitor.registry import MetricsRegistry


logger = structlog.get_logger(__name__)

DEFAULT_PERIOD_SECONDS = 15


class MonitorState(str, Enum):
    """IDLE before the first cycle, between a finished cycle and its pause, and after the loop stops."""

    IDLE = "idle"
    PROBING = "probing"
    SLEEPING = "sleeping"


@dataclass(frozen=True)
class CycleStats:
    probed: int
    succeeded: int
    failed: int
    invalid: int
    skipped: int
    elapsed_seconds: float


class Monitor:
    """Probes a fixed target list in order, one request at a time, forever."""

    def __init__(
        self,
        targets: Iterable[str],
        registry: MetricsRegistry,
        client: httpx.AsyncClient,
        *,
        period_seconds: int = DEFAULT_PERIOD_SECONDS,
        request_timeout_seconds: Optional[float] = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        fail_on_invalid_target: bool = False,
        observe_failed_latency: bool = True,
        align_to_cycle_start: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if int(period_seconds) < 0:
            raise ValueError("period_seconds must be >= 0")
        self.targets: tuple[str, ...] = tuple(targets)
        self.registry = registry
        self.client = client
        self.period_seconds = int(period_seconds)
        self.request_timeout_seconds = request_timeout_seconds
        self.fail_on_invalid_target = bool(fail_on_invalid_target)
        self.observe_failed_latency = bool(observe_failed_latency)
        self.align_to_cycle_start = bool(align_to_cycle_start)
        self.state = MonitorState.IDLE
        self.cycles_completed = 0
        self._sleep = sleep

    async def run_cycle(self) -> CycleStats:
        """
        Probe every target once, in list order.

        Raises InvalidTargetError for a malformed target when
        ``fail_on_invalid_target`` is set; otherwise the target is logged and
        skipped without creating any metric entry.
        """
        self.state = MonitorState.PROBING
        started = time.perf_counter()
        probed = succeeded = failed = invalid = skipped = 0

        for target in self.targets:
            outcome = await probe(target, self.client, timeout_seconds=self.request_timeout_seconds)
            if outcome is None:
                skipped += 1
                continue

            if isinstance(outcome, ProbeInvalid):
                invalid += 1
                logger.error("Invalid target", target=outcome.target, reason=outcome.reason)
                if self.fail_on_invalid_target:
                    raise InvalidTargetError(outcome.target, outcome.reason)
                continue

            probed += 1
            if isinstance(outcome, ProbeSuccess):
                succeeded += 1
                self.registry.observe_latency(outcome.label, outcome.elapsed_ms)
                logger.info(
                    "Probe succeeded",
                    target=outcome.target,
                    label=outcome.label,
                    elapsed_ms=int(outcome.elapsed_ms),
                    status_code=outcome.status_code,
                )
            elif isinstance(outcome, ProbeFailure):
                failed += 1
                self.registry.increment_error(outcome.label)
                if self.observe_failed_latency and outcome.elapsed_ms is not None:
                    self.registry.observe_latency(outcome.label, outcome.elapsed_ms)
                logger.error(
                    "Probe failed",
                    target=outcome.target,
                    label=outcome.label,
                    elapsed_ms=None if outcome.elapsed_ms is None else int(outcome.elapsed_ms),
                    error=outcome.error,
                )

        self.cycles_completed += 1
        self.state = MonitorState.IDLE
        return CycleStats(
            probed=probed,
            succeeded=succeeded,
            failed=failed,
            invalid=invalid,
            skipped=skipped,
            elapsed_seconds=round(time.perf_counter() - started, 3),
        )

    def sleep_seconds_after(self, stats: CycleStats) -> float:
        if self.align_to_cycle_start:
            return max(0.0, float(self.period_seconds) - stats.elapsed_seconds)
        return float(self.period_seconds)

    async def run_forever(self) -> None:
        """Alternate probing and sleeping until cancelled; starts probing immediately."""
        try:
            while True:
                stats = await self.run_cycle()
                sleep_for = self.sleep_seconds_after(stats)
                logger.info(
                    "Cycle complete",
                    cycle=self.cycles_completed,
                    probed=stats.probed,
                    failed=stats.failed,
                    invalid=stats.invalid,
                    elapsed_seconds=stats.elapsed_seconds,
                )
                self.state = MonitorState.SLEEPING
                logger.info("Sleeping", seconds=round(sleep_for, 3))
                await self._sleep(sleep_for)
        finally:
            self.state = MonitorState.IDLE
