"""
Logging configuration: central setup for the CLI entrypoint.

Called once at startup by main.py.  Every module that does
``logger = logging.getLogger(__name__)`` inherits this config.

Levels are resolved in precedence order:
    CLI flag  >  FTSETUP_LOG_LEVEL env var  >  INFO (default)

Console lines carry a severity prefix ([INFO], [WARNING], [ERROR]).
Every run also writes a timestamped log file (mode 600) with full
detail, so a failed run can be diagnosed from the file alone.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path

import click

# ── Format strings ──────────────────────────────────────────────

# INFO and above: severity prefix + message
_FMT_CONSOLE = "%(message)s"

# DEBUG level: full diagnostic with file:line
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d - %(message)s"
_DATEFMT_DEBUG = "%H:%M:%S"

# File output: always full detail
_FMT_FILE = "%(asctime)s %(levelname)-7s %(name)s:%(lineno)d - %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

LOG_FILE_PREFIX = "ftsetup_"

_PREFIXES: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("[DEBUG]", "white"),
    logging.INFO: ("[INFO]", "blue"),
    logging.WARNING: ("[WARNING]", "yellow"),
    logging.ERROR: ("[ERROR]", "red"),
    logging.CRITICAL: ("[ERROR]", "red"),
}


class SeverityFormatter(logging.Formatter):
    """Prefix each console line with a colour-coded severity tag."""

    def __init__(self, fmt: str, datefmt: str | None = None, color: bool = True):
        super().__init__(fmt, datefmt=datefmt)
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        tag, colour = _PREFIXES.get(record.levelno, ("[INFO]", "blue"))
        if self._color:
            tag = click.style(tag, fg=colour, bold=record.levelno >= logging.ERROR)
        return f"{tag} {message}"


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    log_file_level: str | None = "DEBUG",
) -> None:
    """Configure Python logging for the entire process.

    Args:
        level: Console log level name (DEBUG, INFO, WARNING, ERROR).
        log_file: Optional path to the run's log file.
        log_file_level: Level for the log file. Defaults to DEBUG so the
            file holds every command that ran.
    """
    numeric_level = _parse_level(level)

    # ── Console handler (stderr) ────────────────────────────────
    if numeric_level <= logging.DEBUG:
        fmt, datefmt = _FMT_DEBUG, _DATEFMT_DEBUG
    else:
        fmt, datefmt = _FMT_CONSOLE, None

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(SeverityFormatter(fmt, datefmt=datefmt, color=sys.stderr.isatty()))

    # ── Root logger ─────────────────────────────────────────────
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(console)

    effective_level = numeric_level

    # ── File handler (optional) ─────────────────────────────────
    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)

    root.setLevel(effective_level)

    # Don't propagate exceptions from logging itself
    logging.raiseExceptions = False


def prepare_log_file(log_dir: Path, retention_days: int = 7) -> Path:
    """Create this run's log file (mode 600) and prune old ones.

    Returns:
        Path to ``<log_dir>/ftsetup_<YYYYmmdd_HHMMSS>.log``.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    cleanup_old_logs(log_dir, retention_days)

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path = log_dir / f"{LOG_FILE_PREFIX}{stamp}.log"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
    os.close(fd)
    os.chmod(path, 0o600)
    return path


def cleanup_old_logs(log_dir: Path, retention_days: int) -> list[Path]:
    """Delete our log files older than ``retention_days``. Returns removed paths."""
    cutoff = time.time() - retention_days * 86400
    removed: list[Path] = []
    for path in log_dir.glob(f"{LOG_FILE_PREFIX}*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except OSError:
            # Another user's file in a shared /tmp
            continue
    return removed


def _parse_level(level: str | None) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return logging.INFO
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric
