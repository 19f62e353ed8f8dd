"""
Tests for engine executor — planning, the pipeline loop, and the run ledger.

The provisioning runs here execute every real step against a temporary
home with a simulated host behind the mock runner.
"""

from pathlib import Path

import pytest

from conftest import ME, FakeHost, make_ctx, write_profile
from ftsetup.adapters.mock import MockRunner
from ftsetup.core.config.loader import load_profile
from ftsetup.core.engine.executor import (
    ExecutionPlan,
    PipelineReport,
    build_plan,
    execute_plan,
    generate_run_id,
)
from ftsetup.core.engine.registry import StepDefinition, get_step, known_steps
from ftsetup.core.errors import ConfigError, Interrupted, ProvisionError
from ftsetup.core.models.step import StepResult
from ftsetup.core.persistence.ledger import RunLedger

# ── Registry ─────────────────────────────────────────────────────────


class TestRegistry:
    def test_builtin_steps_registered(self):
        names = set(known_steps())
        assert {
            "preflight", "keyboard", "system-update", "packages", "docker", "cleanup",
            "account", "directories", "permissions", "pyenv", "python", "venv",
            "freqtrade", "pip-groups", "config", "strategy", "scripts", "wrapper",
            "systemd", "docs", "verify", "diagnose", "shell-aliases",
        } <= names

    def test_read_only_steps(self):
        assert get_step("verify").read_only
        assert get_step("diagnose").read_only
        assert not get_step("packages").read_only

    def test_unknown_step(self):
        with pytest.raises(ConfigError, match="Unknown step 'nope'"):
            get_step("nope")


# ── Planning ─────────────────────────────────────────────────────────


class TestBuildPlan:
    def test_profile_order(self, settings):
        plan = build_plan(settings)
        assert plan.step_names == list(settings.steps)
        assert plan.profile == "test"
        assert plan.run_id.startswith("run-")

    def test_only_keeps_given_order(self, settings):
        plan = build_plan(settings, only=["verify", "account"])
        assert plan.step_names == ["verify", "account"]

    def test_unknown_only_step(self, settings):
        with pytest.raises(ConfigError, match="bogus"):
            build_plan(settings, only=["account", "bogus"])

    def test_run_ids_unique(self):
        assert generate_run_id() != generate_run_id()


# ── Pipeline loop ────────────────────────────────────────────────────


def _definition(name, func, read_only=False):
    return StepDefinition(name, func, f"test step {name}", "test", read_only)


def _changes(ctx, result):
    result.note("did something", changed=True)


def _fails(ctx, result):
    raise ProvisionError("cannot reach desired state")


class TestExecutePlan:
    def test_failure_stops_pipeline(self, step_ctx):
        ran = []
        plan = ExecutionPlan(run_id="run-test", profile="test", steps=[
            _definition("first", _changes),
            _definition("second", _fails),
            _definition("third", lambda ctx, result: ran.append("third")),
        ])
        report = execute_plan(plan, step_ctx)

        assert report.failed_step == "second"
        assert [r.step for r in report.results] == ["first", "second"]
        assert report.results[1].error == "cannot reach desired state"
        assert ran == []
        assert report.exit_code == 1
        assert report.status == "failed"

    def test_read_only_failure_continues(self, step_ctx):
        plan = ExecutionPlan(steps=[
            _definition("inspect", _fails, read_only=True),
            _definition("after", _changes),
        ])
        report = execute_plan(plan, step_ctx)

        assert report.failed_step is None
        assert [r.status for r in report.results] == ["failed", "changed"]
        assert report.exit_code == 0

    def test_os_error_fails_step(self, step_ctx):
        def broken(ctx, result):
            raise PermissionError("denied")

        report = execute_plan(ExecutionPlan(steps=[_definition("broken", broken)]), step_ctx)
        assert report.failed_step == "broken"
        assert "denied" in report.results[0].error

    def test_unexpected_error_fails_step(self, step_ctx):
        def buggy(ctx, result):
            raise KeyError("venv")

        report = execute_plan(ExecutionPlan(steps=[
            _definition("buggy", buggy),
            _definition("after", _changes),
        ]), step_ctx)
        assert report.failed_step == "buggy"
        assert report.results[0].error == "KeyError: 'venv'"
        assert len(report.results) == 1

    def test_interrupt_writes_ledger_and_propagates(self, step_ctx, tmp_path: Path):
        def interrupted(ctx, result):
            raise Interrupted("signal 15")

        ledger = RunLedger(path=tmp_path / "runs.ndjson")
        plan = ExecutionPlan(run_id="run-int", profile="test", steps=[
            _definition("first", _changes),
            _definition("slow", interrupted),
        ])
        with pytest.raises(KeyboardInterrupt):
            execute_plan(plan, step_ctx, ledger=ledger)

        entry = ledger.read_all()[0]
        assert entry.status == "interrupted"
        assert entry.failed_step == "slow"
        assert entry.step_status == {"first": "changed", "slow": "failed"}
        assert entry.exit_code == 1

    def test_ledger_entry(self, step_ctx, tmp_path: Path):
        ledger = RunLedger(path=tmp_path / "runs.ndjson")
        plan = ExecutionPlan(run_id="run-ok", profile="test", steps=[_definition("first", _changes)])
        execute_plan(plan, step_ctx, ledger=ledger)

        entry = ledger.read_all()[0]
        assert entry.run_id == "run-ok"
        assert entry.status == "ok"
        assert entry.steps == ["first"]
        assert entry.invoking_user == ME
        assert entry.context == {"dry_run": False, "runner": "mock"}


class TestPipelineReport:
    def test_ok(self):
        report = PipelineReport(results=[StepResult(step="a", status="changed"), StepResult(step="b")])
        assert report.status == "ok"
        assert report.exit_code == 0
        assert report.changed == ["a"]

    def test_interrupted(self):
        report = PipelineReport(failed_step="a", interrupted=True)
        assert report.status == "interrupted"
        assert report.exit_code == 1

    def test_to_dict(self):
        report = PipelineReport(run_id="r", profile="p", results=[StepResult(step="a")])
        data = report.to_dict()
        assert data["status"] == "ok"
        assert data["steps"][0]["step"] == "a"


# ── Full provisioning runs ───────────────────────────────────────────


class TestProvisioning:
    def test_converges_and_verifies(self, settings, step_ctx):
        report = execute_plan(build_plan(settings), step_ctx)

        assert report.failed_step is None, report.to_dict()
        assert "packages" in report.changed
        assert "config" in report.changed
        assert report.verification_issues == 0, [
            c.to_dict() for c in step_ctx.verification.checks if c.status == "fail"
        ]

        config = settings.config_file
        assert config.is_file()
        assert config.stat().st_mode & 0o777 == 0o600
        assert (settings.strategies_dir / "RSI_MACD_Strategy.py").is_file()
        assert settings.unit_path.is_file()
        assert (settings.app_dir / "backtest.sh").stat().st_mode & 0o777 == 0o755
        assert settings.secrets_dir.stat().st_mode & 0o777 == 0o700

    def test_second_run_changes_nothing(self, settings, step_ctx):
        first = execute_plan(build_plan(settings), step_ctx)
        assert first.failed_step is None

        second = execute_plan(build_plan(settings), step_ctx)
        assert second.failed_step is None
        assert second.changed == []

    def test_second_run_issues_no_install(self, settings, runner, step_ctx):
        execute_plan(build_plan(settings), step_ctx)
        runner.call_log.clear()

        execute_plan(build_plan(settings), step_ctx)
        assert runner.calls_matching("apt-get install") == []
        assert runner.calls_matching("pip install") == []
        assert runner.calls_matching("useradd") == []
        assert runner.calls_matching("daemon-reload") == []

    def test_existing_config_is_kept(self, settings, step_ctx):
        settings.app_dir.mkdir(parents=True)
        settings.config_file.write_text('{"custom": true}\n')
        settings.config_file.chmod(0o600)

        report = execute_plan(build_plan(settings, only=["config"]), step_ctx)
        assert report.failed_step is None
        assert settings.config_file.read_text() == '{"custom": true}\n'

    def test_failure_keeps_earlier_steps(self, settings, runner, step_ctx):
        runner.set_failure("apt-get install", "E: Unable to locate package")
        report = execute_plan(build_plan(settings), step_ctx)

        assert report.failed_step == "packages"
        assert report.results[-1].step == "packages"
        assert "3 attempt(s)" in report.results[-1].error
        assert len(runner.calls_matching("apt-get install")) == 3
        # Steps before the failure stay applied
        assert settings.app_dir.is_dir()
        assert runner.calls_matching("pyenv") == []

    def test_root_refused_before_any_command(self, tmp_path: Path, keyboard_file):
        settings = load_profile(
            write_profile(tmp_path, steps=["preflight", "account", "directories"]),
            invoking_user=ME,
        )
        runner = MockRunner()
        report = execute_plan(build_plan(settings), make_ctx(settings, runner, euid=0))

        assert report.failed_step == "preflight"
        assert "root" in report.results[0].error
        assert runner.call_log == []
        assert not settings.home.exists()

    def test_dry_run_mutates_nothing(self, settings, keyboard_file):
        runner = MockRunner(dry_run=True)
        runner.set_responder("", FakeHost(settings.home))
        report = execute_plan(build_plan(settings), make_ctx(settings, runner))

        assert report.failed_step is None
        assert runner.executed, "probes still run under dry-run"
        assert all(c.probe for c in runner.executed)
        assert runner.calls_matching("apt-get install")
        assert not settings.home.exists()
        assert not keyboard_file.exists()
        assert not settings.unit_dir.exists()
