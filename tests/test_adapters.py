"""
Tests for the runner protocol, mock and shell runners, and the filesystem adapter.
"""

from pathlib import Path

import pytest

from conftest import ME
from ftsetup.adapters.mock import MockRunner
from ftsetup.adapters.shell.command import RunAs, ShellCommandRunner
from ftsetup.adapters.shell.filesystem import FilesystemAdapter
from ftsetup.core.errors import ProvisionError
from ftsetup.core.models.action import Command, Receipt

# ── Run-as Tests ─────────────────────────────────────────────────────


class TestRunAs:
    def test_same_user_unchanged(self):
        run_as = RunAs("alice", euid=1000)
        command = Command(argv=["ls", "-l"], as_user="alice", cwd="/tmp")
        assert run_as.wrap(command) == ["ls", "-l"]
        assert not run_as.crosses_boundary(command)

    def test_other_user(self):
        run_as = RunAs("alice", euid=1000)
        command = Command(argv=["pip", "list"], as_user="freqtrade", cwd="/srv/app", env={"A": "1"})
        assert run_as.wrap(command) == [
            "sudo", "-u", "freqtrade", "-H", "--", "env", "--chdir=/srv/app", "A=1", "pip", "list",
        ]

    def test_sudo(self):
        run_as = RunAs("alice", euid=1000)
        command = Command(argv=["apt-get", "update"], sudo=True, env={"DEBIAN_FRONTEND": "noninteractive"})
        assert run_as.wrap(command) == [
            "sudo", "--", "env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "update",
        ]

    def test_sudo_as_root_unchanged(self):
        run_as = RunAs("root", euid=0)
        assert run_as.wrap(Command(argv=["apt-get", "update"], sudo=True)) == ["apt-get", "update"]


# ── Mock Runner Tests ────────────────────────────────────────────────


class TestMockRunner:
    def test_default_success(self):
        mock = MockRunner()
        receipt = mock.run(Command(argv=["echo", "hi"]))
        assert receipt.ok
        assert mock.call_count == 1
        assert mock.name == "mock"

    def test_set_output(self):
        mock = MockRunner()
        mock.set_output("whoami", "freqtrade")
        assert mock.run(Command(argv=["whoami"])).output == "freqtrade"

    def test_set_failure(self):
        mock = MockRunner()
        mock.set_failure("apt-get", error="Intentional failure")
        receipt = mock.run(Command(argv=["apt-get", "update"]))
        assert receipt.failed
        assert receipt.error == "Intentional failure"

    def test_sequence_then_last_repeats(self):
        mock = MockRunner()
        mock.set_response(
            "curl",
            Receipt.failure(command="curl", error="timeout"),
            Receipt.success(command="curl", output="done"),
        )
        command = Command(argv=["curl", "https://pyenv.run"])
        assert mock.run(command).failed
        assert mock.run(command).output == "done"
        assert mock.run(command).output == "done"

    def test_latest_registration_wins(self):
        mock = MockRunner()
        mock.set_output("", "generic")
        mock.set_output("whoami", "specific")
        assert mock.run(Command(argv=["whoami"])).output == "specific"
        assert mock.run(Command(argv=["id"])).output == "generic"

    def test_dry_run_skips_mutations(self):
        mock = MockRunner(dry_run=True)
        skipped = mock.run(Command(argv=["useradd", "bot"]))
        probed = mock.run(Command(argv=["getent", "passwd", "bot"], probe=True))

        assert skipped.status == "skipped"
        assert probed.ok
        assert [c.argv[0] for c in mock.call_log] == ["useradd", "getent"]
        assert [c.argv[0] for c in mock.executed] == ["getent"]

    def test_reset(self):
        mock = MockRunner()
        mock.set_failure("x")
        mock.run(Command(argv=["x"]))
        mock.reset()
        assert mock.call_count == 0
        assert mock.run(Command(argv=["x"])).ok


# ── Shell Command Runner Tests ──────────────────────────────────────


class TestShellCommandRunner:
    def test_is_available(self):
        runner = ShellCommandRunner(ME)
        assert runner.is_available()
        assert runner.name == "shell"

    def test_run_echo(self, tmp_path: Path):
        runner = ShellCommandRunner(ME)
        receipt = runner.run(Command(argv=["echo", "hello world"], cwd=str(tmp_path)))
        assert receipt.ok
        assert receipt.output == "hello world"
        assert receipt.return_code == 0

    def test_run_failure(self):
        runner = ShellCommandRunner(ME)
        receipt = runner.run(Command(argv=["sh", "-c", "echo oops >&2; exit 3"]))
        assert receipt.failed
        assert receipt.return_code == 3
        assert receipt.error == "oops"

    def test_undecodable_output(self):
        runner = ShellCommandRunner(ME)
        receipt = runner.run(Command(argv=["printf", "\\377\\376 bad bytes"]))
        assert receipt.ok
        assert receipt.output.endswith("bad bytes")
        assert "�" in receipt.output

    def test_missing_program(self):
        runner = ShellCommandRunner(ME)
        receipt = runner.run(Command(argv=["ftsetup-no-such-program"]))
        assert receipt.failed
        assert "execution error" in receipt.error

    def test_timeout(self):
        runner = ShellCommandRunner(ME)
        receipt = runner.run(Command(argv=["sleep", "5"], timeout=1))
        assert receipt.failed
        assert "timed out" in receipt.error

    def test_env_passed(self):
        runner = ShellCommandRunner(ME)
        receipt = runner.run(Command(argv=["sh", "-c", "echo $FTSETUP_TEST"], env={"FTSETUP_TEST": "yes"}))
        assert receipt.output == "yes"

    def test_dry_run(self, tmp_path: Path):
        runner = ShellCommandRunner(ME, dry_run=True)
        target = tmp_path / "created"
        receipt = runner.run(Command(argv=["touch", str(target)]))

        assert receipt.status == "skipped"
        assert receipt.metadata["dry_run"] is True
        assert not target.exists()

    def test_dry_run_still_probes(self):
        runner = ShellCommandRunner(ME, dry_run=True)
        assert runner.run(Command(argv=["echo", "probe"], probe=True)).output == "probe"


# ── Filesystem Adapter Tests ────────────────────────────────────────


@pytest.fixture
def fs() -> FilesystemAdapter:
    return FilesystemAdapter(MockRunner(), ME)


class TestFilesystemAdapter:
    def test_stat_missing(self, fs, tmp_path: Path):
        assert fs.stat(tmp_path / "missing") is None
        assert not fs.exists(tmp_path / "missing")

    def test_ensure_dir(self, fs, tmp_path: Path):
        path = tmp_path / "a" / "b"
        assert fs.ensure_dir(path, ME, 0o700)

        info = fs.stat(path)
        assert info.is_dir
        assert info.mode == 0o700
        assert info.owner == ME
        assert not fs.ensure_dir(path, ME, 0o700)

    def test_ensure_dir_over_file(self, fs, tmp_path: Path):
        (tmp_path / "file").write_text("x")
        with pytest.raises(ProvisionError, match="not a directory"):
            fs.ensure_dir(tmp_path / "file", ME)

    def test_write_file(self, fs, tmp_path: Path):
        path = tmp_path / "sub" / "secret.json"
        fs.write_file(path, "{}\n", ME, 0o600)

        assert fs.read_text(path) == "{}\n"
        info = fs.stat(path)
        assert info.mode == 0o600
        assert info.is_file
        assert not info.executable

    def test_set_mode(self, fs, tmp_path: Path):
        path = tmp_path / "run.sh"
        path.write_text("#!/bin/sh\n")
        path.chmod(0o644)

        assert fs.set_mode(path, 0o755, ME)
        assert fs.stat(path).executable
        assert not fs.set_mode(path, 0o755, ME)
        assert not fs.set_mode(tmp_path / "missing", 0o755, ME)

    def test_set_owner_unchanged(self, fs, tmp_path: Path):
        assert not fs.set_owner(tmp_path, ME)

    def test_foreign_owner_goes_through_sudo(self, tmp_path: Path):
        runner = MockRunner()
        fs = FilesystemAdapter(runner, ME)
        assert fs.ensure_dir(tmp_path / "svc", "freqtrade", 0o750)

        command = runner.call_log[-1]
        assert command.sudo
        assert command.argv[:5] == ["install", "-d", "-m", "750", "-o"]

    def test_sudo_failure_raises(self, tmp_path: Path):
        runner = MockRunner()
        runner.set_failure("install", "permission denied")
        fs = FilesystemAdapter(runner, ME)
        with pytest.raises(ProvisionError, match="permission denied"):
            fs.write_file(tmp_path / "x", "data", "freqtrade", 0o644)

    def test_dry_run(self, tmp_path: Path):
        fs = FilesystemAdapter(MockRunner(dry_run=True), ME)
        path = tmp_path / "new"

        assert fs.ensure_dir(path, ME)
        fs.write_file(path / "file", "x", ME, 0o644)
        assert not path.exists()
