"""Logging setup and log-file helpers used by the server and the CLI."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"

LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def configure_logging(log_file: str | None = None, verbose: bool = False) -> None:
    """Console logging plus an appending file handler on *log_file*."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # httpx logs every request at INFO, which drowns the relay output
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def tail(log_file: str | Path, lines: int = 50) -> list[str]:
    """Return the last *lines* non-blank lines of *log_file*."""
    with open(log_file, encoding="utf-8", errors="replace") as fh:
        last = deque((line.rstrip("\n") for line in fh if line.strip()), maxlen=lines)
    return list(last)


def truncate(log_file: str | Path) -> bool:
    path = Path(log_file)
    if not path.exists():
        return False
    path.write_text("", encoding="utf-8")
    return True


def line_level(line: str) -> str | None:
    """Level name found in a formatted log line, if any."""
    for level in LEVELS:
        if f"  {level}" in line:
            return level
    return None
