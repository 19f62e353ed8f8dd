"""
Diagnostics: who am I, who is the service account, what do the key
paths look like, and can we cross into that account.

Read-only. Produces the same report type as verification so the CLI
renders both the same way.
"""

from __future__ import annotations

import getpass
import logging
import os
import pwd
from pathlib import Path

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import step
from ftsetup.core.models.step import StepResult
from ftsetup.core.services.account import account_exists, groups_of
from ftsetup.core.services.verify import CheckResult, VerificationReport

logger = logging.getLogger(__name__)


def _describe(ctx: StepContext, path: Path) -> CheckResult:
    info = ctx.fs.stat(path)
    if info is None:
        return CheckResult(str(path), "fail", "does not exist", "paths")
    return CheckResult(str(path), "ok", f"{info.mode_str} {info.owner}:{info.group}", "paths")


def run_diagnosis(ctx: StepContext) -> VerificationReport:
    """Collect identity, path and access facts. Never raises."""
    s = ctx.settings
    report = VerificationReport(profile=s.profile)

    me = getpass.getuser()
    report.add(CheckResult(
        "current user", "ok",
        f"{me} (uid {os.getuid()}, gid {os.getgid()}) groups: {' '.join(sorted(groups_of(me)))}",
        "identity",
    ))

    if account_exists(s.service_user):
        entry = pwd.getpwnam(s.service_user)
        report.add(CheckResult(
            "service user", "ok",
            f"{s.service_user} (uid {entry.pw_uid}) groups: {' '.join(sorted(groups_of(s.service_user)))}",
            "identity",
        ))
    else:
        report.add(CheckResult("service user", "fail", f"{s.service_user} does not exist", "identity"))

    paths = [s.home, s.app_dir, s.venv_dir]
    if s.secrets_dir is not None:
        paths.append(s.secrets_dir)
    paths += [s.config_file, s.venv_dir / "bin" / "activate", s.venv_python, s.freqtrade_bin]
    for path in paths:
        report.add(_describe(ctx, path))

    receipt = ctx.probe(["sudo", "-n", "-l"])
    report.add(CheckResult(
        "sudo", "ok" if receipt.ok else "fail",
        f"sudo available for {me}" if receipt.ok else f"sudo not usable by {me}",
        "access",
    ))

    receipt = ctx.probe(["whoami"], as_user=s.service_user)
    crossed = receipt.ok and receipt.output.strip() == s.service_user
    report.add(CheckResult(
        "run as service user", "ok" if crossed else "fail",
        f"can run as {s.service_user}" if crossed else f"cannot run as {s.service_user}",
        "access",
    ))

    for check in report.checks:
        log = logger.info if check.ok else logger.error
        log("%s: %s", check.name, check.message)
    return report


@step("diagnose", "Show identity, permissions and sudo access", "verification", read_only=True)
def diagnose(ctx: StepContext, result: StepResult) -> None:
    report = run_diagnosis(ctx)
    for check in report.checks:
        result.note(f"{'✅' if check.ok else '❌'} {check.name}: {check.message}")
