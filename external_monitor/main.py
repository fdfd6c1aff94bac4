from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Awaitable, Callable, Sequence

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from external_monitor.config import MonitorConfig, load_config
from external_monitor.exposition import (
    DURATIONS_METRIC,
    ERRORS_METRIC,
    build_collector_registry,
    create_app,
    parse_listen_address,
    render_metrics,
)
from external_monitor.monitor import Monitor
from external_monitor.prober import InvalidTargetError
from external_monitor.registry import MetricsRegistry
from external_monitor.targets import read_targets


logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Request lines from the HTTP client would duplicate the probe log events.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_server(app: FastAPI, listen_address: str, log_level: str = "INFO") -> uvicorn.Server:
    host, port = parse_listen_address(listen_address)
    config = uvicorn.Config(app, host=host, port=port, log_level=str(log_level).lower(), access_log=False)
    return uvicorn.Server(config)


def build_monitor(
    config: MonitorConfig,
    targets: Sequence[str],
    registry: MetricsRegistry,
    client: httpx.AsyncClient,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Monitor:
    return Monitor(
        targets,
        registry,
        client,
        period_seconds=config.period_seconds,
        request_timeout_seconds=config.request_timeout_seconds,
        fail_on_invalid_target=config.fail_on_invalid_target,
        observe_failed_latency=config.observe_failed_latency,
        align_to_cycle_start=config.align_to_cycle_start,
        sleep=sleep,
    )


async def run(
    config: MonitorConfig,
    targets: Sequence[str],
    *,
    once: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    registry = MetricsRegistry(
        max_age_seconds=config.summary_max_age_seconds,
        age_buckets=config.summary_age_buckets,
    )

    async with httpx.AsyncClient() as client:
        monitor = build_monitor(config, targets, registry, client, sleep)

        if once:
            try:
                await monitor.run_cycle()
            except InvalidTargetError as e:
                logger.error("Stopping on invalid target", target=e.target, reason=e.reason)
                return 1
            sys.stdout.write(render_metrics(build_collector_registry(registry)).decode("utf-8"))
            return 0

        app = create_app(registry, metrics_path=config.metrics_path)
        server = build_server(app, config.listen_address, config.log_level)
        logger.info(
            "Starting external monitor",
            listen_address=config.listen_address,
            metrics_path=config.metrics_path,
            targets=len(monitor.targets),
            period_seconds=config.period_seconds,
        )

        monitor_task = asyncio.create_task(monitor.run_forever(), name="monitor-loop")
        server_task = asyncio.create_task(server.serve(), name="metrics-endpoint")
        try:
            await asyncio.wait({monitor_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not server_task.done():
                server.should_exit = True
                await server_task
            if not monitor_task.done():
                monitor_task.cancel()
                try:
                    await monitor_task
                except asyncio.CancelledError:
                    pass

        if not monitor_task.cancelled():
            exc = monitor_task.exception()
            if isinstance(exc, InvalidTargetError):
                logger.error("Stopping on invalid target", target=exc.target, reason=exc.reason)
                return 1
            if exc is not None:
                raise exc

    logger.info("External monitor stopped")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Probe HTTP targets read from stdin (or --targets) and expose latency/error metrics",
        epilog=(
            f"Metrics: {DURATIONS_METRIC}{{host}} (summary) and {ERRORS_METRIC}_total{{host}} (counter). "
            f"Queries written against a bare {ERRORS_METRIC} series need the _total suffix."
        ),
    )
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--listen-address", default=None, help="The address to listen on for HTTP requests (default :8080)")
    parser.add_argument(
        "--period",
        type=int,
        default=None,
        help="The number of seconds to wait between a request cycle (default 15)",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help="Per-request timeout in seconds, 0 disables it (default 10)",
    )
    parser.add_argument("--targets", default=None, help="File with one target URL per line ('-' for stdin)")
    parser.add_argument(
        "--fail-on-invalid-target",
        action="store_true",
        default=None,
        help="Exit when a target is not a valid URL instead of skipping it",
    )
    parser.add_argument(
        "--no-failed-latency",
        dest="observe_failed_latency",
        action="store_false",
        default=None,
        help="Only record latency for probes that got a response",
    )
    parser.add_argument(
        "--align-to-cycle-start",
        action="store_true",
        default=None,
        help="Count the period from the start of each cycle instead of its end",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    parser.add_argument("--once", action="store_true", help="Run one probe cycle, print the metrics and exit")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(
            args.config,
            listen_address=args.listen_address,
            period_seconds=args.period,
            request_timeout_seconds=args.request_timeout,
            targets_file=args.targets,
            fail_on_invalid_target=args.fail_on_invalid_target,
            observe_failed_latency=args.observe_failed_latency,
            align_to_cycle_start=args.align_to_cycle_start,
            log_level=args.log_level,
        )
        parse_listen_address(config.listen_address)
    except (OSError, ValueError) as e:
        configure_logging("INFO")
        logger.error("Invalid configuration", error=str(e))
        return 2

    configure_logging(config.log_level)

    try:
        targets = read_targets(config.targets_file)
    except OSError as e:
        logger.error("Failed to read targets", path=config.targets_file, error=str(e))
        return 2

    return asyncio.run(run(config, targets, once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
