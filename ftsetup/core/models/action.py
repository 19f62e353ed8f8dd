"""
Command and Receipt models: the execution contract.

Commands describe an external program invocation. Receipts describe
what happened. The command runner takes Commands and returns Receipts,
never exceptions.
"""

from __future__ import annotations

import shlex
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Command(BaseModel):
    """An external program invocation.

    ``sudo`` runs it as root, ``as_user`` runs it as that account.
    Both go through the single run-as implementation in the shell
    adapter; steps never build ``sudo`` argv themselves.
    """

    argv: list[str]
    label: str = ""                 # human-readable name for logs/errors
    sudo: bool = False
    as_user: str | None = None
    input: str | None = None        # piped to stdin
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    timeout: int = 1800
    probe: bool = False             # read-only; still runs under dry-run

    @property
    def display(self) -> str:
        """Shell-quoted command line, for logs."""
        return shlex.join(self.argv)

    @property
    def name(self) -> str:
        return self.label or self.display


class Receipt(BaseModel):
    """Result of running a Command.

    Receipts capture the full outcome. The runner NEVER raises;
    failures are captured here.
    """

    command: str
    status: Literal["ok", "skipped", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    return_code: int | None = None
    output: str = ""
    error: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the command succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        """Whether the command failed."""
        return self.status == "failed"

    @classmethod
    def success(cls, command: str, output: str = "", **kwargs: Any) -> Receipt:
        """Create a success receipt."""
        return cls(command=command, status="ok", output=output, **kwargs)

    @classmethod
    def failure(cls, command: str, error: str, **kwargs: Any) -> Receipt:
        """Create a failure receipt."""
        return cls(command=command, status="failed", error=error, **kwargs)

    @classmethod
    def skip(cls, command: str, reason: str = "", **kwargs: Any) -> Receipt:
        """Create a skip receipt."""
        return cls(command=command, status="skipped", output=reason, **kwargs)
