"""
Shared test fixtures and configuration.

Provisioning tests run the real steps against a temporary home
directory. External programs go through ``MockRunner`` with a
``FakeHost`` responder that simulates apt, systemd, pyenv, venv and
pip just enough for the steps to converge.
"""

from __future__ import annotations

import json
import logging
import os
import pwd
import textwrap
from pathlib import Path

import pytest

from ftsetup.adapters.mock import MockRunner
from ftsetup.core.config.loader import load_catalog, load_profile
from ftsetup.core.engine.context import StepContext
from ftsetup.core.models.action import Command, Receipt
from ftsetup.core.models.settings import ProvisionSettings
from ftsetup.core.services import system
from ftsetup.core.services.runtime import dist_name


def _current_user() -> str:
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


ME = _current_user()

PIPELINE_STEPS = [
    "account",
    "directories",
    "keyboard",
    "system-update",
    "packages",
    "shell-aliases",
    "pyenv",
    "python",
    "venv",
    "freqtrade",
    "pip-groups",
    "config",
    "strategy",
    "scripts",
    "systemd",
    "docs",
    "permissions",
    "cleanup",
    "verify",
]


# ═══════════════════════════════════════════════════════════════════
#  Simulated host
# ═══════════════════════════════════════════════════════════════════


class FakeHost:
    """Stateful stand-in for the programs the steps call.

    Package managers record what they install; pyenv, venv and pip
    create the files the steps probe for afterwards.
    """

    def __init__(self, home: Path, user: str = ME):
        self.home = home
        self.user = user
        self.packages: set[str] = set()
        self.enabled: set[str] = set()
        self.active: set[str] = set()
        self.distributions: set[str] = set()
        self.keymap = ""
        self.x11_layout = ""
        self.upgraded = False

    def __call__(self, command: Command) -> Receipt:
        argv = command.argv

        def ok(output: str = "") -> Receipt:
            return Receipt.success(command=command.display, output=output)

        program = argv[0]

        if program == "dpkg-query":
            wanted = [a for a in argv[2:] if not a.startswith("-")]
            lines = [f"{p} install ok installed" for p in wanted if p in self.packages]
            return ok("\n".join(lines))
        if program == "apt-get":
            if argv[1] == "install":
                self.packages.update(argv[3:])
            elif argv[1] == "upgrade":
                self.upgraded = True
            elif argv[1:3] == ["-s", "upgrade"] and not self.upgraded:
                return ok("Inst libc6 [2.39-0ubuntu8] (2.39-0ubuntu8.1 Ubuntu:24.04/noble-updates)")
            return ok()
        if program == "apt-cache":
            return ok(f"{argv[2]}:\n  Installed: (none)\n  Candidate: 3.11.9-1")
        if program == "localectl":
            return self._localectl(argv, ok)
        if program == "systemctl":
            return self._systemctl(argv, ok)
        if program == "whoami":
            return ok(self.user)
        if program == "bash" and "pyenv.run" in " ".join(argv):
            _touch(self.home / ".pyenv" / "bin" / "pyenv")
            return ok()
        if program.endswith("/bin/pyenv"):
            return self._pyenv(argv, ok)
        if program.endswith("python") and argv[1:3] == ["-m", "venv"]:
            venv = Path(argv[3])
            _touch(venv / "bin" / "python")
            _touch(venv / "bin" / "pip")
            return ok()
        if program.endswith("python") and argv[1:3] == ["-m", "pip"]:
            return self._pip(argv, ok)
        if program.endswith("/freqtrade"):
            if argv[1] == "create-userdir":
                (Path(argv[3]) / "backtest_results").mkdir(parents=True, exist_ok=True)
                return ok()
            if argv[1] == "--version":
                return ok("Operating System:\tLinux\nfreqtrade 2024.1")
            return ok()
        if program.endswith("python") and argv[1:] == ["--version"]:
            return ok("Python 3.11.9")
        return ok()

    # ── Programs ────────────────────────────────────────────────

    def _localectl(self, argv: list[str], ok) -> Receipt:
        if argv[1] == "set-keymap":
            self.keymap = argv[2]
        elif argv[1] == "set-x11-keymap":
            self.x11_layout = argv[2]
        elif argv[1] == "status":
            lines = []
            if self.keymap:
                lines.append(f"     VC Keymap: {self.keymap}")
            if self.x11_layout:
                lines.append(f"    X11 Layout: {self.x11_layout}")
            return ok("\n".join(lines))
        return ok()

    def _systemctl(self, argv: list[str], ok) -> Receipt:
        action, name = argv[1], argv[-1]
        if action == "is-enabled":
            return ok("enabled" if name in self.enabled else "disabled")
        if action == "is-active":
            return ok("active" if name in self.active else "inactive")
        if action == "enable":
            self.enabled.add(name)
        elif action == "start":
            self.active.add(name)
        return ok()

    def _pyenv(self, argv: list[str], ok) -> Receipt:
        root = Path(argv[0]).parents[1]
        if argv[1] == "install":
            _touch(root / "versions" / argv[-1] / "bin" / "python")
        elif argv[1] == "global":
            (root / "version").write_text(argv[2] + "\n")
        return ok()

    def _pip(self, argv: list[str], ok) -> Receipt:
        verb = argv[3]
        if verb == "list":
            return ok(json.dumps([{"name": n, "version": "1.0"} for n in sorted(self.distributions)]))
        if verb != "install":
            return ok()

        args = argv[4:]
        skip_next = False
        for arg in args:
            if skip_next:
                skip_next = False
                continue
            if arg == "--index-url":
                skip_next = True
                continue
            if arg.startswith("-"):
                continue
            name = dist_name(arg)
            self.distributions.add(name)
            if name == "freqtrade":
                _touch(Path(argv[0]).parent / "freqtrade")
        return ok()


def _touch(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    path.chmod(0o755)


# ═══════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════


@pytest.fixture(autouse=True)
def _restore_logging():
    """The CLI reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def keyboard_file(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "etc" / "default" / "keyboard"
    monkeypatch.setattr(system, "KEYBOARD_FILE", path)
    return path


def write_profile(tmp_path: Path, extra: str = "", steps: list[str] | None = None) -> Path:
    """A profile extending 'dedicated' with every path under ``tmp_path``."""
    steps = PIPELINE_STEPS if steps is None else steps
    content = textwrap.dedent(f"""\
        extends: dedicated
        profile: test
        service_user: {ME}
        system_owner: {ME}
        home: "{tmp_path / 'home'}"
        unit_dir: "{tmp_path / 'systemd'}"
        wrapper_dir: "{tmp_path / 'bin'}"
        log_dir: "{tmp_path / 'logs'}"
        extra_groups: []
        apt_groups: [essential, databases]
        network_hosts: [127.0.0.1]
        network_urls: []
        retry_delay: 0
    """)
    content += extra
    content += "steps:\n" + "".join(f"  - {name}\n" for name in steps)
    path = tmp_path / "profile.yml"
    path.write_text(content)
    return path


@pytest.fixture
def settings(tmp_path: Path) -> ProvisionSettings:
    return load_profile(write_profile(tmp_path), invoking_user=ME)


@pytest.fixture
def host(settings: ProvisionSettings) -> FakeHost:
    return FakeHost(settings.home)


@pytest.fixture
def runner(host: FakeHost) -> MockRunner:
    runner = MockRunner()
    runner.set_responder("", host)
    return runner


def make_ctx(settings: ProvisionSettings, runner: MockRunner, euid: int = 1000) -> StepContext:
    return StepContext.create(
        settings, runner, catalog=load_catalog(), euid=euid, sleep=lambda seconds: None,
    )


@pytest.fixture
def step_ctx(settings: ProvisionSettings, runner: MockRunner, keyboard_file: Path) -> StepContext:
    return make_ctx(settings, runner)
