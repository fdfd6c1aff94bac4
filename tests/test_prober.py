from __future__ import annotations

import httpx
import pytest

from external_monitor.prober import (
    InvalidTargetError,
    ProbeFailure,
    ProbeInvalid,
    ProbeSuccess,
    clean_target,
    parse_target,
    probe,
)


def test_clean_target_strips_whitespace_and_carriage_returns() -> None:
    assert clean_target("  http://a.example/\r") == "http://a.example/"
    assert clean_target("\r") == ""
    assert clean_target("   ") == ""


def test_parse_target_builds_label_from_host_and_port() -> None:
    parsed = parse_target("http://bad.example:9999/health?x=1")
    assert parsed.url == "http://bad.example:9999/health?x=1"
    assert parsed.host == "bad.example:9999"
    assert parsed.label == "bad_example_"

    parsed = parse_target("https://user:pw@Good.Example/")
    assert parsed.host == "Good.Example"
    assert parsed.label == "Good_Example"


@pytest.mark.parametrize(
    "target",
    [
        "not a url",
        "good.example",
        "ftp://files.example/",
        "http://",
        "http:///path-only",
        "http://host.example:99999/",
        "http://host.example:port/",
        "http://[::1/",
        "",
    ],
)
def test_parse_target_rejects_malformed(target: str) -> None:
    with pytest.raises(InvalidTargetError):
        parse_target(target)


@pytest.mark.asyncio
async def test_probe_blank_target_is_noop() -> None:
    async with httpx.AsyncClient() as client:
        assert await probe("  \r", client) is None
        assert await probe("", client) is None


@pytest.mark.asyncio
async def test_probe_invalid_target() -> None:
    async with httpx.AsyncClient() as client:
        outcome = await probe("not a url", client)
    assert isinstance(outcome, ProbeInvalid)
    assert outcome.target == "not a url"
    assert outcome.reason


@pytest.mark.asyncio
async def test_probe_success(local_server_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await probe(f"{local_server_base_url}/ok\r", client)
    assert isinstance(outcome, ProbeSuccess)
    assert outcome.status_code == 200
    assert outcome.elapsed_ms >= 0
    assert outcome.label == "_"  # 127.0.0.1:<port>


@pytest.mark.asyncio
async def test_probe_non_2xx_is_not_a_failure(local_server_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await probe(f"{local_server_base_url}/error", client)
    assert isinstance(outcome, ProbeSuccess)
    assert outcome.status_code == 500


@pytest.mark.asyncio
async def test_probe_follows_redirects(local_server_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await probe(f"{local_server_base_url}/redirect", client)
    assert isinstance(outcome, ProbeSuccess)
    assert outcome.status_code == 200


@pytest.mark.asyncio
async def test_probe_releases_connections_without_reading_bodies(local_server_base_url: str) -> None:
    limits = httpx.Limits(max_connections=1, max_keepalive_connections=1)
    async with httpx.AsyncClient(limits=limits) as client:
        # With a single-connection pool, a leaked response would block the second probe.
        for _ in range(3):
            outcome = await probe(f"{local_server_base_url}/large", client, timeout_seconds=5.0)
            assert isinstance(outcome, ProbeSuccess)


@pytest.mark.asyncio
async def test_probe_connection_refused_is_failure(closed_port_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await probe(closed_port_url, client, timeout_seconds=5.0)
    assert isinstance(outcome, ProbeFailure)
    assert outcome.label == "_"
    assert outcome.elapsed_ms is not None and outcome.elapsed_ms >= 0
    assert "ConnectError" in outcome.error


@pytest.mark.asyncio
async def test_probe_timeout_is_failure(silent_server_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await probe(silent_server_url, client, timeout_seconds=0.2)
    assert isinstance(outcome, ProbeFailure)
    assert "Timeout" in outcome.error
