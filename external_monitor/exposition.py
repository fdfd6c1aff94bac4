from __future__ import annotations

import platform
from typing import Iterable

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Info,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)
from prometheus_client.core import CounterMetricFamily, Metric
from prometheus_client.registry import Collector

from external_monitor import __version__
from external_monitor.registry import MetricsRegistry


DURATIONS_METRIC = "external_monitor_durations_milliseconds"
ERRORS_METRIC = "external_monitor_error_count"
HOST_LABEL = "host"


def _format_quantile(q: float) -> str:
    return repr(float(q))


class MonitorCollector(Collector):
    """Exposes a MetricsRegistry snapshot as a latency summary and an error counter."""

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def describe(self) -> Iterable[Metric]:
        return []

    def collect(self) -> Iterable[Metric]:
        snap = self.registry.snapshot()

        durations = Metric(DURATIONS_METRIC, "External request monitor latency distributions.", "summary")
        errors = CounterMetricFamily(ERRORS_METRIC, "External request monitor error count.", labels=[HOST_LABEL])

        for label in sorted(snap.entries):
            entry = snap.entries[label]
            # Vector semantics: a label shows up only in the families it was written to.
            if entry.count > 0:
                for q, value in sorted(entry.quantiles.items()):
                    durations.add_sample(
                        DURATIONS_METRIC,
                        {HOST_LABEL: label, "quantile": _format_quantile(q)},
                        value,
                    )
                durations.add_sample(DURATIONS_METRIC + "_sum", {HOST_LABEL: label}, entry.sum)
                durations.add_sample(DURATIONS_METRIC + "_count", {HOST_LABEL: label}, float(entry.count))
            if entry.errors > 0:
                errors.add_metric([label], float(entry.errors))

        yield durations
        yield errors


def build_collector_registry(registry: MetricsRegistry) -> CollectorRegistry:
    collector_registry = CollectorRegistry()
    collector_registry.register(MonitorCollector(registry))
    ProcessCollector(registry=collector_registry)
    PlatformCollector(registry=collector_registry)
    build = Info("external_monitor_build", "External monitor build information.", registry=collector_registry)
    build.info({"version": __version__, "python_version": platform.python_version()})
    return collector_registry


def render_metrics(collector_registry: CollectorRegistry) -> bytes:
    return generate_latest(collector_registry)


def create_app(registry: MetricsRegistry, *, metrics_path: str = "/metrics") -> FastAPI:
    collector_registry = build_collector_registry(registry)
    app = FastAPI(title="External Monitor", version=__version__)
    app.state.registry = registry
    app.state.collector_registry = collector_registry

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "healthy", "service": "external-monitor"}

    # Plain def: FastAPI runs it in the threadpool, so scrapes never wait on the probe loop.
    def metrics() -> Response:
        return Response(content=render_metrics(collector_registry), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(metrics_path, metrics, methods=["GET"], include_in_schema=False)
    return app


def parse_listen_address(address: str) -> tuple[str, int]:
    """
    Split a Go-style listen address into (host, port).

    ":8080" binds every interface; "127.0.0.1:9000" and "[::1]:9000" bind one.
    """
    s = str(address or "").strip()
    if s.startswith("["):
        end = s.find("]")
        if end == -1 or s[end + 1 : end + 2] != ":":
            raise ValueError(f"Invalid listen address {address!r}")
        host, port_raw = s[1:end], s[end + 2 :]
    else:
        host, sep, port_raw = s.rpartition(":")
        if not sep:
            raise ValueError(f"Invalid listen address {address!r}; expected host:port or :port")
        if ":" in host:
            raise ValueError(f"Invalid listen address {address!r}; bracket IPv6 hosts as [addr]:port")

    try:
        port = int(port_raw)
    except ValueError as exc:
        raise ValueError(f"Invalid port in listen address {address!r}") from exc
    if not (0 <= port <= 65535):
        raise ValueError(f"Port out of range in listen address {address!r}")

    return (host or "0.0.0.0"), port
