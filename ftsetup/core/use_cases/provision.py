"""
Provision use case: the vertical slice from a profile name to an
audited pipeline run.

Loads the profile and the package catalog, builds the step context
(real or mock runner), plans and executes the steps and records the
run in the ledger. The CLI and the interactive menu both go through
here; neither builds runners or contexts itself.
"""

from __future__ import annotations

import getpass
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ftsetup.adapters.base import Runner
from ftsetup.adapters.mock import MockRunner
from ftsetup.adapters.shell.command import ShellCommandRunner
from ftsetup.core.config.loader import DEFAULT_PROFILE, load_catalog, load_profile
from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.executor import ExecutionPlan, PipelineReport, build_plan, execute_plan
from ftsetup.core.errors import ConfigError
from ftsetup.core.models.step import StepResult
from ftsetup.core.models.settings import ProvisionSettings
from ftsetup.core.persistence.ledger import RunLedger
from ftsetup.core.services.diagnose import run_diagnosis
from ftsetup.core.services.preflight import check_sudo, refuse_root
from ftsetup.core.services.verify import VerificationReport, run_verification

logger = logging.getLogger(__name__)


@dataclass
class ProvisionRun:
    """Result of a provisioning run."""

    report: PipelineReport | None = None
    plan: ExecutionPlan | None = None
    verification: VerificationReport | None = None
    error: str | None = None

    @property
    def exit_code(self) -> int:
        if self.error or self.report is None:
            return 1
        return self.report.exit_code

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.error:
            result["error"] = self.error
            return result
        if self.report:
            result["report"] = self.report.to_dict()
        if self.verification:
            result["verification"] = self.verification.to_dict()
        return result


def load_settings(
    profile: str | None = None,
    config_path: Path | None = None,
) -> ProvisionSettings:
    """Resolve the settings for a run; ``config_path`` wins over ``profile``.

    Raises:
        ConfigError: If the profile cannot be loaded.
    """
    source: str | Path = config_path or profile or DEFAULT_PROFILE
    return load_profile(source, invoking_user=getpass.getuser())


def make_context(
    settings: ProvisionSettings,
    dry_run: bool = False,
    mock: bool = False,
    runner: Runner | None = None,
) -> StepContext:
    """Build the step context with the shell runner, or a mock one."""
    if runner is None:
        if mock:
            runner = MockRunner(dry_run=dry_run)
        else:
            runner = ShellCommandRunner(settings.invoking_user, dry_run=dry_run)
    return StepContext.create(settings, runner, catalog=load_catalog())


def check_invoker(
    settings: ProvisionSettings,
    dry_run: bool = False,
    mock: bool = False,
    runner: Runner | None = None,
) -> None:
    """Refuse the superuser and require sudo, before anything touches the host.

    Raises:
        PreflightError: If either condition does not hold.
    """
    refuse_root()
    ctx = make_context(settings, dry_run=dry_run, mock=mock, runner=runner)
    check_sudo(ctx, StepResult(step="preflight"))


def run_provision(
    settings: ProvisionSettings,
    only: list[str] | tuple[str, ...] | None = None,
    dry_run: bool = False,
    mock: bool = False,
    runner: Runner | None = None,
    ctx: StepContext | None = None,
) -> ProvisionRun:
    """Run the profile's pipeline (or just the ``only`` steps).

    Dry-run and mock runs are not recorded in the ledger.
    """
    result = ProvisionRun()
    ctx = ctx or make_context(settings, dry_run=dry_run, mock=mock, runner=runner)

    try:
        plan = build_plan(settings, only=only)
    except ConfigError as e:
        result.error = str(e)
        return result
    result.plan = plan

    ledger = None
    if not ctx.dry_run and ctx.runner.name != "mock":
        ledger = RunLedger(log_dir=settings.log_dir)

    result.report = execute_plan(plan, ctx, ledger=ledger)
    result.verification = ctx.verification
    return result


def run_verify(
    settings: ProvisionSettings,
    mock: bool = False,
    runner: Runner | None = None,
) -> VerificationReport:
    """Standalone verification. Never raises."""
    return run_verification(make_context(settings, mock=mock, runner=runner))


def run_diagnose(
    settings: ProvisionSettings,
    mock: bool = False,
    runner: Runner | None = None,
) -> VerificationReport:
    """Standalone diagnostics. Never raises."""
    return run_diagnosis(make_context(settings, mock=mock, runner=runner))
