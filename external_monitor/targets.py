from __future__ import annotations

import sys
from pathlib import Path


def parse_target_lines(text: str) -> tuple[str, ...]:
    """
    Split newline-separated targets, keeping order and blank lines.

    Blank lines are skipped by the monitor at probe time, not dropped here.
    """
    if not text:
        return ()
    lines = text.split("\n")
    # A trailing newline is not an extra (blank) target.
    if lines and lines[-1] == "":
        lines.pop()
    return tuple(lines)


def read_targets(path: str | Path | None = None) -> tuple[str, ...]:
    if path is None or str(path) == "-":
        return parse_target_lines(sys.stdin.read())
    with open(path, "r", encoding="utf-8") as f:
        return parse_target_lines(f.read())
