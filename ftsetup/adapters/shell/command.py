"""
Shell command runner: the SINGLE PLACE where ``subprocess.run`` is called.

Privilege crossings (root via sudo, or another account via
``sudo -u``) are built only by ``RunAs.wrap``, so every boundary
crossing can be audited here.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time

from ftsetup.adapters.base import Runner
from ftsetup.core.models.action import Command, Receipt

logger = logging.getLogger(__name__)

# Keep receipts readable; apt and pip are chatty.
_MAX_CAPTURE = 4000


class RunAs:
    """Builds the argv that runs a command with the requested identity.

    - ``as_user`` different from the invoker: ``sudo -u USER -H -- env ...``
    - ``sudo``: ``sudo -- env ...`` (no prefix when already root)
    - otherwise: argv unchanged, env passed through the process environment

    ``env --chdir`` and ``env K=V`` carry cwd and environment across sudo,
    which resets both.
    """

    def __init__(self, invoking_user: str, euid: int | None = None):
        self.invoking_user = invoking_user
        self._euid = os.geteuid() if euid is None else euid

    def crosses_boundary(self, command: Command) -> bool:
        if command.as_user and command.as_user != self.invoking_user:
            return True
        return command.sudo and self._euid != 0

    def wrap(self, command: Command) -> list[str]:
        if not self.crosses_boundary(command):
            return list(command.argv)

        if command.as_user and command.as_user != self.invoking_user:
            prefix = ["sudo", "-u", command.as_user, "-H", "--"]
        else:
            prefix = ["sudo", "--"]

        carried = ["env"]
        if command.cwd:
            carried.append(f"--chdir={command.cwd}")
        carried.extend(f"{key}={value}" for key, value in command.env.items())
        return prefix + carried + list(command.argv)


class ShellCommandRunner(Runner):
    """Execute commands with subprocess and capture their output.

    In dry-run mode only ``probe`` commands (read-only) execute; every
    other command is logged and returned as a skipped receipt.
    """

    def __init__(self, invoking_user: str, dry_run: bool = False):
        self._run_as = RunAs(invoking_user)
        self._dry_run = dry_run

    @property
    def name(self) -> str:
        return "shell"

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def run_as(self) -> RunAs:
        return self._run_as

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def run(self, command: Command) -> Receipt:
        argv = self._run_as.wrap(command)
        display = command.display

        if self._dry_run and not command.probe:
            logger.info("[dry-run] would run: %s", " ".join(argv))
            return Receipt.skip(
                command=display,
                reason="[dry-run] not executed",
                metadata={"argv": argv, "dry_run": True},
            )

        env = None
        cwd = command.cwd
        if not self._run_as.crosses_boundary(command):
            env = {**os.environ, **command.env} if command.env else None
        else:
            cwd = None  # carried by env --chdir

        logger.debug("Executing: %s", " ".join(argv))
        start = time.monotonic()

        try:
            result = subprocess.run(
                argv,
                input=command.input,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=command.timeout,
                env=env,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired:
            return Receipt.failure(
                command=display,
                error=f"Command timed out after {command.timeout}s",
                metadata={"argv": argv, "timeout": command.timeout},
            )
        except OSError as e:
            return Receipt.failure(
                command=display,
                error=f"Command execution error: {e}",
                metadata={"argv": argv},
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        stdout = (result.stdout or "").strip()[-_MAX_CAPTURE:]
        stderr = (result.stderr or "").strip()[-_MAX_CAPTURE:]

        if result.returncode == 0:
            return Receipt.success(
                command=display,
                output=stdout,
                return_code=0,
                duration_ms=elapsed_ms,
                metadata={"argv": argv, "stderr": stderr},
            )
        return Receipt.failure(
            command=display,
            error=stderr or f"Command exited with code {result.returncode}",
            output=stdout,
            return_code=result.returncode,
            duration_ms=elapsed_ms,
            metadata={"argv": argv},
        )
