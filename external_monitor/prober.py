from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Union
from urllib.parse import urlsplit

import httpx

from external_monitor.labels import authority_host, sanitize


DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

_ALLOWED_SCHEMES = {"http", "https"}


class InvalidTargetError(ValueError):
    """A configured target cannot be used as an absolute http(s) URL."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"invalid target {target!r}: {reason}")
        self.target = target
        self.reason = reason


@dataclass(frozen=True)
class ParsedTarget:
    url: str
    host: str
    label: str


@dataclass(frozen=True)
class ProbeSuccess:
    target: str
    label: str
    elapsed_ms: float
    status_code: int


@dataclass(frozen=True)
class ProbeFailure:
    target: str
    label: str
    elapsed_ms: float | None
    error: str


@dataclass(frozen=True)
class ProbeInvalid:
    target: str
    reason: str


ProbeOutcome = Union[ProbeSuccess, ProbeFailure, ProbeInvalid]


def clean_target(raw: str) -> str:
    return (raw or "").strip()


def parse_target(raw: str) -> ParsedTarget:
    url = clean_target(raw)
    if not url:
        raise InvalidTargetError(raw, "empty target")
    if any(ch.isspace() for ch in url):
        raise InvalidTargetError(url, "contains whitespace")

    try:
        parts = urlsplit(url)
        # .port validates the port component and raises ValueError when it is out of range.
        parts.port
    except ValueError as exc:
        raise InvalidTargetError(url, str(exc)) from exc

    scheme = parts.scheme.lower()
    if scheme not in _ALLOWED_SCHEMES:
        raise InvalidTargetError(url, f"unsupported scheme {parts.scheme!r}" if scheme else "missing scheme")
    if not parts.hostname:
        raise InvalidTargetError(url, "missing host")

    host = authority_host(parts.netloc)
    return ParsedTarget(url=url, host=host, label=sanitize(host))


async def probe(
    target: str,
    client: httpx.AsyncClient,
    *,
    timeout_seconds: float | None = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> ProbeOutcome | None:
    """
    Issue one timed GET against ``target``.

    Returns None for blank targets, ProbeInvalid when the target does not parse,
    ProbeFailure on transport-level errors (connect, DNS, TLS, timeout) and
    ProbeSuccess for any HTTP response, whatever its status code. Latency is
    measured up to the response headers; the body is never read and the
    response is always closed.
    """
    url = clean_target(target)
    if not url:
        return None

    try:
        parsed = parse_target(url)
    except InvalidTargetError as e:
        return ProbeInvalid(target=url, reason=e.reason)

    started = time.perf_counter()
    try:
        async with client.stream("GET", parsed.url, follow_redirects=True, timeout=timeout_seconds) as resp:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            status_code = resp.status_code
    except httpx.InvalidURL as e:
        return ProbeInvalid(target=url, reason=str(e))
    except httpx.RequestError as e:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return ProbeFailure(
            target=url,
            label=parsed.label,
            elapsed_ms=round(elapsed_ms, 3),
            error=f"{type(e).__name__}: {e}",
        )

    return ProbeSuccess(
        target=url,
        label=parsed.label,
        elapsed_ms=round(elapsed_ms, 3),
        status_code=status_code,
    )
