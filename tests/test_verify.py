"""
Tests for verification and diagnostics — the read-only checklists.
"""

from pathlib import Path

from conftest import ME, make_ctx, write_profile
from ftsetup.core.config.loader import load_profile
from ftsetup.core.engine.executor import build_plan, execute_plan
from ftsetup.core.services.diagnose import run_diagnosis
from ftsetup.core.services.verify import CheckResult, VerificationReport, run_verification


def _by_name(report: VerificationReport) -> dict[str, CheckResult]:
    return {c.name: c for c in report.checks}


class TestVerificationReport:
    def test_counts(self):
        report = VerificationReport(profile="p", checks=[
            CheckResult("a"),
            CheckResult("b", "warning", "meh"),
            CheckResult("c", "fail", "broken"),
        ])
        assert report.issues == 1
        assert report.warnings == 1
        assert not report.passed
        assert report.timestamp

    def test_to_dict(self):
        report = VerificationReport(profile="p", checks=[CheckResult("a", section="account")])
        data = report.to_dict()
        assert data["issues"] == 0
        assert data["checks"][0] == {"name": "a", "status": "ok", "message": "", "section": "account"}


class TestRunVerification:
    def test_fresh_host_reports_issues(self, step_ctx):
        report = run_verification(step_ctx)
        checks = _by_name(report)

        assert report.issues > 0
        assert checks["account exists"].ok
        assert checks["config present"].status == "fail"
        assert checks["venv interpreter"].status == "fail"

    def test_missing_account_is_an_issue(self, tmp_path: Path, runner, keyboard_file):
        settings = load_profile(
            write_profile(tmp_path, extra="service_user: ftsetup-no-such-user\n"),
            invoking_user=ME,
        )
        report = run_verification(make_ctx(settings, runner))
        checks = _by_name(report)

        assert checks["account exists"].status == "fail"
        assert "does not exist" in checks["account exists"].message
        assert report.issues >= 1

    def test_never_raises(self, step_ctx, monkeypatch):
        def explode(path):
            raise RuntimeError("stat exploded")

        monkeypatch.setattr(step_ctx.fs, "stat", explode)
        report = run_verification(step_ctx)
        assert any("stat exploded" in c.message for c in report.checks)

    def test_after_provisioning(self, settings, step_ctx):
        execute_plan(build_plan(settings), step_ctx)
        report = run_verification(step_ctx)

        assert report.passed
        assert {c.section for c in report.checks} >= {
            "account", "directories", "runtime", "config", "artifacts", "environment",
        }

    def test_loose_config_mode_is_an_issue(self, settings, step_ctx):
        execute_plan(build_plan(settings), step_ctx)
        settings.config_file.chmod(0o644)

        checks = _by_name(run_verification(step_ctx))
        assert checks["config mode 600"].status == "fail"
        assert "644" in checks["config mode 600"].message

    def test_script_not_executable(self, settings, step_ctx):
        execute_plan(build_plan(settings), step_ctx)
        (settings.app_dir / "backtest.sh").chmod(0o644)

        checks = _by_name(run_verification(step_ctx))
        assert checks["backtest.sh"].status == "fail"
        assert "not executable" in checks["backtest.sh"].message

    def test_inactive_service_is_a_warning(self, settings, host, step_ctx):
        execute_plan(build_plan(settings), step_ctx)
        host.active.discard("redis-server")

        report = run_verification(step_ctx)
        check = _by_name(report)["service redis-server"]
        assert check.status == "warning"
        assert report.passed


class TestDiagnosis:
    def test_reports_identity_paths_and_access(self, step_ctx, settings):
        report = run_diagnosis(step_ctx)
        checks = _by_name(report)

        assert checks["current user"].ok
        assert checks["service user"].ok
        assert checks[str(settings.config_file)].status == "fail"
        assert checks["run as service user"].ok
        assert {c.section for c in report.checks} == {"identity", "paths", "access"}

    def test_diagnose_step_never_aborts(self, settings, step_ctx):
        report = execute_plan(build_plan(settings, only=["diagnose", "account"]), step_ctx)
        assert report.failed_step is None
        assert any("❌" in m for m in report.results[0].messages)
