"""
Engine executor: the provisioning pipeline loop.

Takes the profile's step list, resolves each name against the step
registry, runs the steps in order and collects their results.

Flow:
    profile steps → resolve definitions → run in order → stop at first failure → ledger

A failing step stops the pipeline; the steps before it stay applied.
Read-only steps (verification, diagnostics) never stop it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import StepDefinition, get_step, validate_step_names
from ftsetup.core.errors import ProvisionError
from ftsetup.core.models.settings import ProvisionSettings
from ftsetup.core.models.step import StepResult
from ftsetup.core.persistence.ledger import RunEntry, RunLedger

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """The ordered steps of one run."""

    run_id: str = ""
    profile: str = ""
    steps: list[StepDefinition] = field(default_factory=list)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]


@dataclass
class PipelineReport:
    """Result of executing a plan."""

    run_id: str = ""
    profile: str = ""
    results: list[StepResult] = field(default_factory=list)
    failed_step: str | None = None
    interrupted: bool = False
    duration_ms: int = 0
    verification_issues: int | None = None

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_step or self.interrupted else 0

    @property
    def status(self) -> str:
        if self.interrupted:
            return "interrupted"
        return "failed" if self.failed_step else "ok"

    @property
    def changed(self) -> list[str]:
        return [r.step for r in self.results if r.changed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "profile": self.profile,
            "status": self.status,
            "exit_code": self.exit_code,
            "failed_step": self.failed_step,
            "duration_ms": self.duration_ms,
            "verification_issues": self.verification_issues,
            "steps": [r.model_dump(mode="json") for r in self.results],
        }


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"run-{now}-{uuid.uuid4().hex[:6]}"


def build_plan(
    settings: ProvisionSettings,
    only: list[str] | tuple[str, ...] | None = None,
    run_id: str | None = None,
) -> ExecutionPlan:
    """Resolve the steps to run.

    Args:
        settings: The resolved profile.
        only: Run these steps (in this order) instead of the profile's list.

    Raises:
        ConfigError: If a step name is unknown.
    """
    names = list(only) if only else list(settings.steps)
    validate_step_names(names)
    return ExecutionPlan(
        run_id=run_id or generate_run_id(),
        profile=settings.profile,
        steps=[get_step(name) for name in names],
    )


def _run_step(definition: StepDefinition, ctx: StepContext, result: StepResult) -> None:
    """Run one step, turning provisioning errors into a failed result."""
    start = time.monotonic()
    logger.info("▶ %s: %s", definition.name, definition.description)
    try:
        definition.func(ctx, result)
    except (ProvisionError, OSError) as e:
        result.status = "failed"
        result.error = str(e)
    except Exception as e:
        logger.exception("Unexpected error in step '%s'", definition.name)
        result.status = "failed"
        result.error = f"{type(e).__name__}: {e}"
    finally:
        result.duration_ms = int((time.monotonic() - start) * 1000)

    marker = {"changed": "✓", "unchanged": "=", "skipped": "⊘", "failed": "✗"}[result.status]
    if result.status == "failed":
        logger.error("%s %s failed after %d ms: %s", marker, definition.name, result.duration_ms, result.error)
    else:
        logger.info("%s %s → %s (%d ms)", marker, definition.name, result.status, result.duration_ms)
    for message in result.messages:
        logger.debug("  %s: %s", definition.name, message)


def execute_plan(
    plan: ExecutionPlan,
    ctx: StepContext,
    ledger: RunLedger | None = None,
) -> PipelineReport:
    """Run every step of ``plan`` in order, stopping at the first failure.

    A KeyboardInterrupt (SIGINT, or SIGTERM via ``Interrupted``) marks
    the running step failed, writes the ledger entry and propagates.
    """
    report = PipelineReport(run_id=plan.run_id, profile=plan.profile)
    start = time.monotonic()
    if ctx.dry_run:
        logger.info("[dry-run] no command or file write will be performed")
    logger.info("Run %s: profile '%s', %d step(s)", plan.run_id, plan.profile, len(plan.steps))

    try:
        for definition in plan.steps:
            result = StepResult(step=definition.name)
            report.results.append(result)
            try:
                _run_step(definition, ctx, result)
            except KeyboardInterrupt:
                result.status = "failed"
                result.error = "interrupted"
                report.failed_step = definition.name
                report.interrupted = True
                logger.error("Interrupted during step '%s'", definition.name)
                raise

            if definition.name == "verify" and ctx.verification is not None:
                report.verification_issues = ctx.verification.issues

            if result.status != "failed":
                continue
            if definition.read_only:
                logger.warning("Read-only step '%s' failed; continuing", definition.name)
                continue
            report.failed_step = definition.name
            logger.error("Stopping: step '%s' failed. Earlier steps remain applied.", definition.name)
            break
    finally:
        report.duration_ms = int((time.monotonic() - start) * 1000)
        if ledger is not None:
            write_ledger_entry(report, plan, ctx, ledger)

    logger.info(
        "Run %s finished: %s (%d changed, %d ms)",
        report.run_id, report.status, len(report.changed), report.duration_ms,
    )
    return report


def write_ledger_entry(
    report: PipelineReport,
    plan: ExecutionPlan,
    ctx: StepContext,
    ledger: RunLedger,
) -> None:
    """Write a run's outcome to the ledger."""
    entry = RunEntry(
        run_id=report.run_id,
        profile=report.profile,
        invoking_user=ctx.settings.invoking_user,
        steps=plan.step_names,
        step_status={r.step: r.status for r in report.results},
        status=report.status,
        failed_step=report.failed_step,
        exit_code=report.exit_code,
        duration_ms=report.duration_ms,
        verification_issues=report.verification_issues,
        errors=[f"{r.step}: {r.error}" for r in report.results if r.error],
        context={"dry_run": ctx.dry_run, "runner": ctx.runner.name},
    )
    ledger.write(entry)
