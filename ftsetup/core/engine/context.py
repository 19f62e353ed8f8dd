"""
Step context: everything a step needs, passed in explicitly.

Steps receive the resolved settings, the command runner, the
filesystem adapter and the retry policy through this object. There is
no module-level state shared between steps.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ftsetup.adapters.base import Runner
from ftsetup.adapters.shell.filesystem import FilesystemAdapter
from ftsetup.core.errors import ProvisionError
from ftsetup.core.models.action import Command, Receipt
from ftsetup.core.models.packages import PackageCatalog
from ftsetup.core.models.settings import ProvisionSettings
from ftsetup.core.reliability.retry import RetryPolicy, run_with_retry

if TYPE_CHECKING:
    from ftsetup.core.services.verify import VerificationReport

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    settings: ProvisionSettings
    runner: Runner
    fs: FilesystemAdapter
    retry: RetryPolicy
    catalog: PackageCatalog = field(default_factory=PackageCatalog)
    euid: int = field(default_factory=os.geteuid)
    sleep: Callable[[float], None] = time.sleep
    verification: VerificationReport | None = None

    @classmethod
    def create(
        cls,
        settings: ProvisionSettings,
        runner: Runner,
        catalog: PackageCatalog | None = None,
        **kwargs: Any,
    ) -> StepContext:
        """Build a context with the filesystem adapter and retry policy
        derived from ``settings``."""
        return cls(
            settings=settings,
            runner=runner,
            fs=FilesystemAdapter(runner, settings.invoking_user),
            retry=RetryPolicy(settings.retry_attempts, settings.retry_delay),
            catalog=catalog or PackageCatalog(),
            **kwargs,
        )

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    # ── Command helpers ─────────────────────────────────────────

    def probe(self, argv: list[str], **kwargs: Any) -> Receipt:
        """Run a read-only command. Never raises; runs under dry-run too."""
        return self.runner.run(Command(argv=argv, probe=True, **kwargs))

    def execute(
        self,
        argv: list[str],
        label: str = "",
        retry: bool = False,
        **kwargs: Any,
    ) -> Receipt:
        """Run a mutating command and require it to succeed.

        Args:
            retry: Re-attempt per the retry policy (network and
                package-manager calls).

        Raises:
            ProvisionError: If the command fails.
            RetryExhaustedError: If a retried command fails every attempt.
        """
        command = Command(argv=argv, label=label, **kwargs)
        if retry:
            return run_with_retry(self.runner, command, self.retry, sleep=self.sleep)

        receipt = self.runner.run(command)
        if receipt.failed:
            raise ProvisionError(f"{command.name} failed: {receipt.error}")
        return receipt

    def as_service(self, argv: list[str], label: str = "", **kwargs: Any) -> Receipt:
        """``execute`` as the service account."""
        return self.execute(argv, label, as_user=self.settings.service_user, **kwargs)
