"""
Tests for observability — console format, the per-run log file and retention.
"""

import logging
import os
import time
from pathlib import Path

from ftsetup.core.observability.logging_config import (
    LOG_FILE_PREFIX,
    SeverityFormatter,
    cleanup_old_logs,
    prepare_log_file,
    setup_logging,
)


def _record(level: int, message: str) -> logging.LogRecord:
    return logging.LogRecord("ftsetup.test", level, __file__, 1, message, None, None)


# ── Console Format ───────────────────────────────────────────────────


class TestSeverityFormatter:
    def test_prefixes(self):
        formatter = SeverityFormatter("%(message)s", color=False)
        assert formatter.format(_record(logging.INFO, "hello")) == "[INFO] hello"
        assert formatter.format(_record(logging.WARNING, "careful")) == "[WARNING] careful"
        assert formatter.format(_record(logging.ERROR, "broken")) == "[ERROR] broken"
        assert formatter.format(_record(logging.CRITICAL, "dead")) == "[ERROR] dead"

    def test_color(self):
        formatter = SeverityFormatter("%(message)s", color=True)
        line = formatter.format(_record(logging.ERROR, "broken"))
        assert "\x1b[" in line
        assert line.endswith("broken")


# ── Log File ─────────────────────────────────────────────────────────


class TestLogFile:
    def test_prepare_creates_private_file(self, tmp_path: Path):
        path = prepare_log_file(tmp_path / "logs")

        assert path.is_file()
        assert path.parent == tmp_path / "logs"
        assert path.name.startswith(LOG_FILE_PREFIX)
        assert path.suffix == ".log"
        assert path.stat().st_mode & 0o777 == 0o600

    def test_cleanup_removes_only_old_own_files(self, tmp_path: Path):
        old = tmp_path / f"{LOG_FILE_PREFIX}20200101_000000.log"
        recent = tmp_path / f"{LOG_FILE_PREFIX}20990101_000000.log"
        foreign = tmp_path / "other.log"
        for path in (old, recent, foreign):
            path.write_text("x")
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old, (ten_days_ago, ten_days_ago))
        os.utime(foreign, (ten_days_ago, ten_days_ago))

        removed = cleanup_old_logs(tmp_path, retention_days=7)

        assert removed == [old]
        assert recent.exists()
        assert foreign.exists()

    def test_file_gets_debug_detail(self, tmp_path: Path):
        log_file = prepare_log_file(tmp_path)
        setup_logging(level="WARNING", log_file=log_file)

        logger = logging.getLogger("ftsetup.test")
        logger.debug("apt-get install -y jq")
        logger.warning("low RAM")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text()
        assert "DEBUG" in content
        assert "apt-get install -y jq" in content
        assert "low RAM" in content

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(level="LOUD")
        console = logging.getLogger().handlers[0]
        assert console.level == logging.INFO
