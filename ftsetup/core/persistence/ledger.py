"""
Run ledger: append-only history of provisioning runs.

Every pipeline run writes one entry to an NDJSON (newline-delimited
JSON) file next to the log files: which profile, which steps, how each
ended, and how long it took. Entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_FILE = "ftsetup-runs.ndjson"


class RunEntry(BaseModel):
    """A single ledger entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    profile: str = ""
    invoking_user: str = ""

    # What ran
    steps: list[str] = Field(default_factory=list)
    step_status: dict[str, str] = Field(default_factory=dict)

    # Results
    status: str = ""               # ok, failed, interrupted
    failed_step: str | None = None
    exit_code: int = 0
    duration_ms: int = 0
    verification_issues: int | None = None

    # Errors (if any)
    errors: list[str] = Field(default_factory=list)

    # Extensible context
    context: dict[str, Any] = Field(default_factory=dict)


class RunLedger:
    """Append-only ledger writer and reader.

    Each call to write() appends a single JSON line. The file is
    created (mode 600) if it doesn't exist.
    """

    def __init__(self, path: Path | None = None, log_dir: Path | None = None):
        if path is not None:
            self._path = path
        elif log_dir is not None:
            self._path = log_dir / DEFAULT_LEDGER_FILE
        else:
            self._path = Path(DEFAULT_LEDGER_FILE)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: RunEntry) -> None:
        """Append an entry. A write failure is logged, never raised."""
        data = entry.model_dump(mode="json")
        line = json.dumps(data, ensure_ascii=False) + "\n"

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
            with os.fdopen(fd, "a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Ledger entry written: %s/%s", entry.profile, entry.run_id)
        except OSError as e:
            logger.error("Failed to write ledger entry: %s", e)

    def read_all(self) -> list[RunEntry]:
        """Read all entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(RunEntry.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read run ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[RunEntry]:
        return self.read_all()[-n:]

    def entry_count(self) -> int:
        """Count entries without parsing them."""
        if not self._path.is_file():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())
        except OSError:
            return 0
