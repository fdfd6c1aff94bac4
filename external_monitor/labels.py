from __future__ import annotations

import re


_INVALID_LABEL_CHARS_RE = re.compile(r"[^A-Z_a-z]+")


def sanitize(host: str) -> str:
    """
    Turn a host (optionally with port) into a metric-safe label.

    Every run of characters outside [A-Za-z_] becomes a single underscore, so
    "a.b.c", "a-b-c" and "a..b--c" all map to "a_b_c".
    """
    return _INVALID_LABEL_CHARS_RE.sub("_", host or "")


def authority_host(netloc: str) -> str:
    # userinfo never ends up in a label; the port does (bad.example:9999 -> bad_example_).
    return (netloc or "").rpartition("@")[2]
