"""
Verification: a fixed checklist run against the provisioned system.

Each check produces a ``CheckResult`` (ok, warning or fail). Failed
checks are the issue count; warnings are reported but do not count.
Verification never mutates anything and never raises: a probe that
blows up becomes a failing check.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import step
from ftsetup.core.models.step import StepResult
from ftsetup.core.services import system
from ftsetup.core.services.account import account_exists, groups_of
from ftsetup.core.services.artifacts import expected_owner

logger = logging.getLogger(__name__)

CheckStatus = Literal["ok", "warning", "fail"]


@dataclass
class CheckResult:
    """Outcome of one check."""

    name: str
    status: CheckStatus = "ok"
    message: str = ""
    section: str = "general"

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "section": self.section,
        }


@dataclass
class VerificationReport:
    """Aggregate of every check for one profile."""

    profile: str
    timestamp: str = ""
    checks: list[CheckResult] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, check: CheckResult) -> None:
        self.checks.append(check)

    @property
    def issues(self) -> int:
        return sum(1 for c in self.checks if c.status == "fail")

    @property
    def warnings(self) -> int:
        return sum(1 for c in self.checks if c.status == "warning")

    @property
    def passed(self) -> bool:
        return self.issues == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile,
            "timestamp": self.timestamp,
            "issues": self.issues,
            "warnings": self.warnings,
            "checks": [c.to_dict() for c in self.checks],
        }


# ═══════════════════════════════════════════════════════════════════
#  Checks
# ═══════════════════════════════════════════════════════════════════


def _check(report: VerificationReport, section: str, name: str, probe: Callable[[], CheckResult]) -> None:
    """Run one check; an exception becomes a failing result."""
    try:
        result = probe()
    except Exception as e:
        logger.debug("Check '%s' raised", name, exc_info=True)
        result = CheckResult(name, "fail", f"check error: {e}")
    result.name = name
    result.section = section
    report.add(result)


def _passfail(condition: bool, ok_msg: str, fail_msg: str, status: CheckStatus = "fail") -> CheckResult:
    return CheckResult("", "ok", ok_msg) if condition else CheckResult("", status, fail_msg)


def _check_account(ctx: StepContext, report: VerificationReport) -> None:
    user = ctx.settings.service_user
    _check(report, "account", "account exists", lambda: _passfail(
        account_exists(user), f"'{user}' exists", f"'{user}' does not exist"))

    def whoami() -> CheckResult:
        receipt = ctx.probe(["whoami"], as_user=user)
        return _passfail(
            receipt.ok and receipt.output.strip() == user,
            f"commands run as '{user}'",
            f"cannot run commands as '{user}': {receipt.error or receipt.output.strip()}",
        )

    _check(report, "account", "run as service user", whoami)


def _check_directories(ctx: StepContext, report: VerificationReport) -> None:
    s = ctx.settings
    for spec in s.directories:
        def probe(spec=spec) -> CheckResult:
            info = ctx.fs.stat(spec.path)
            if info is None or not info.is_dir:
                return CheckResult("", "fail", "missing")
            owner = s.owner_of(spec)
            problems = []
            if info.owner != owner:
                problems.append(f"owner {info.owner} (expected {owner})")
            if info.mode != spec.mode:
                problems.append(f"mode {info.mode_str} (expected {spec.mode:o})")
            if problems:
                return CheckResult("", "fail", ", ".join(problems))
            return CheckResult("", "ok", f"{info.owner} {info.mode_str}")

        _check(report, "directories", str(spec.path), probe)


def _check_runtime(ctx: StepContext, report: VerificationReport) -> None:
    s = ctx.settings
    if s.python_provider == "pyenv":
        pyenv_bin = s.pyenv_root / "bin" / "pyenv"
        _check(report, "runtime", "pyenv", lambda: _passfail(
            ctx.fs.exists(pyenv_bin), str(pyenv_bin), f"{pyenv_bin} missing"))

    _check(report, "runtime", "venv interpreter", lambda: _passfail(
        ctx.fs.exists(s.venv_python), str(s.venv_python), f"{s.venv_python} missing"))

    def python_version() -> CheckResult:
        receipt = ctx.probe([str(s.venv_python), "--version"], as_user=s.service_user)
        return _passfail(receipt.ok, receipt.output.strip(), receipt.error or "failed")

    def freqtrade_version() -> CheckResult:
        receipt = ctx.probe([str(s.freqtrade_bin), "--version"], as_user=s.service_user)
        lines = receipt.output.strip().splitlines()
        return _passfail(receipt.ok, lines[-1] if lines else "ok", receipt.error or "failed")

    _check(report, "runtime", "python --version", python_version)
    _check(report, "runtime", "freqtrade --version", freqtrade_version)


def _check_config(ctx: StepContext, report: VerificationReport) -> None:
    s = ctx.settings
    path = s.config_file

    _check(report, "config", "config present", lambda: _passfail(
        ctx.fs.exists(path), str(path), f"{path} missing"))

    def valid_json() -> CheckResult:
        text = ctx.fs.read_text(path)
        if text is None:
            return CheckResult("", "fail", "unreadable")
        try:
            json.loads(text)
        except json.JSONDecodeError as e:
            return CheckResult("", "fail", f"invalid JSON: {e}")
        return CheckResult("", "ok", "valid JSON")

    def mode_600() -> CheckResult:
        info = ctx.fs.stat(path)
        if info is None:
            return CheckResult("", "fail", "missing")
        return _passfail(info.mode == 0o600, "600", f"mode {info.mode_str} (expected 600)")

    def show_config() -> CheckResult:
        receipt = ctx.probe(
            [str(s.freqtrade_bin), "show-config", "--config", str(path)],
            as_user=s.service_user, cwd=str(s.app_dir), timeout=120,
        )
        return _passfail(receipt.ok, "accepted by freqtrade", receipt.error or "rejected")

    _check(report, "config", "config valid JSON", valid_json)
    _check(report, "config", "config mode 600", mode_600)
    _check(report, "config", "freqtrade show-config", show_config)


def _check_artifacts(ctx: StepContext, report: VerificationReport) -> None:
    s = ctx.settings
    for spec in s.artifacts:
        if spec.dest == s.config_file:
            continue

        def probe(spec=spec) -> CheckResult:
            info = ctx.fs.stat(spec.dest)
            if info is None:
                return CheckResult("", "fail", f"{spec.dest} missing")
            if spec.executable and not info.executable:
                return CheckResult("", "fail", f"{spec.dest} not executable")
            if spec.sensitivity == "secret" and info.mode != 0o600:
                return CheckResult("", "fail", f"{spec.dest} mode {info.mode_str} (expected 600)")
            owner = expected_owner(spec, s)
            if info.owner != owner:
                return CheckResult("", "warning", f"{spec.dest} owned by {info.owner} (expected {owner})")
            return CheckResult("", "ok", str(spec.dest))

        _check(report, "artifacts", spec.name, probe)


def _check_environment(ctx: StepContext, report: VerificationReport) -> None:
    """Warning-only checks: group membership, services, keyboard."""
    s = ctx.settings
    if "docker" in s.extra_groups or "docker" in s.steps:
        _check(report, "environment", "docker group", lambda: _passfail(
            "docker" in groups_of(s.service_user),
            f"'{s.service_user}' in docker",
            f"'{s.service_user}' not in the docker group (log in again after install)",
            status="warning"))

    for group_name in s.apt_groups:
        group = ctx.catalog.apt_groups.get(group_name)
        for service in group.services if group else ():
            def active(service=service) -> CheckResult:
                receipt = ctx.probe(["systemctl", "is-active", service])
                return _passfail(receipt.output.strip() == "active", "active",
                                 receipt.output.strip() or "inactive", status="warning")

            _check(report, "environment", f"service {service}", active)

    if s.keyboard_layout:
        wanted = f'XKBLAYOUT="{s.keyboard_layout}"'
        _check(report, "environment", "keyboard layout", lambda: _passfail(
            wanted in (ctx.fs.read_text(system.KEYBOARD_FILE) or ""),
            s.keyboard_layout, f"{system.KEYBOARD_FILE} does not set {wanted}", status="warning"))


def run_verification(ctx: StepContext) -> VerificationReport:
    """Run the checklist for the context's profile. Never raises."""
    report = VerificationReport(profile=ctx.settings.profile)
    for section in (_check_account, _check_directories, _check_runtime,
                    _check_config, _check_artifacts, _check_environment):
        section(ctx, report)

    logger.info(
        "Verification of '%s': %d check(s), %d issue(s), %d warning(s)",
        report.profile, len(report.checks), report.issues, report.warnings,
    )
    for check in report.checks:
        if check.status == "fail":
            logger.error("✗ %s: %s", check.name, check.message)
        elif check.status == "warning":
            logger.warning("⚠ %s: %s", check.name, check.message)
    return report


@step("verify", "Run the verification checklist", "verification", read_only=True)
def verify(ctx: StepContext, result: StepResult) -> None:
    report = run_verification(ctx)
    ctx.verification = report
    result.note(
        f"{len(report.checks)} check(s): {report.issues} issue(s), {report.warnings} warning(s)"
    )
