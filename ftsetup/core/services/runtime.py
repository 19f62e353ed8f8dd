"""
Runtime provisioning: pyenv, the pinned CPython, the virtual
environment, Freqtrade itself and the extra pip package groups.

Everything under the service account's home runs as that account.
Downloads and installs go through the retry layer.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import step
from ftsetup.core.errors import ProvisionError
from ftsetup.core.models.step import StepResult
from ftsetup.core.services.system import apt_install, apt_update

logger = logging.getLogger(__name__)

PYENV_INSTALLER = "https://pyenv.run"

PYENV_BASHRC = """
# Pyenv configuration
export PYENV_ROOT="$HOME/.pyenv"
command -v pyenv >/dev/null || export PATH="$PYENV_ROOT/bin:$PATH"
eval "$(pyenv init -)"
"""

_PIP_BOOTSTRAP = ["pip", "setuptools", "wheel"]


# ═══════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════


def dist_name(requirement: str) -> str:
    """``freqtrade[all]>=2023.1`` -> ``freqtrade``; normalized like pip."""
    name = re.split(r"[\[<>=!~; ]", requirement.strip(), maxsplit=1)[0]
    return name.lower().replace("_", "-")


def system_python(minor: str) -> Path:
    return Path(f"/usr/bin/python{minor}")


def pyenv_python(ctx: StepContext) -> str:
    return str(ctx.settings.pyenv_root / "versions" / ctx.settings.python_version / "bin" / "python")


def installed_distributions(ctx: StepContext) -> set[str]:
    """Normalized names of the packages in the venv (empty if none)."""
    receipt = ctx.probe(
        [str(ctx.settings.venv_python), "-m", "pip", "list", "--format=json"],
        as_user=ctx.settings.service_user,
    )
    if not receipt.ok or not receipt.output.strip():
        return set()
    try:
        entries = json.loads(receipt.output)
    except json.JSONDecodeError:
        logger.warning("Unreadable 'pip list' output; assuming nothing installed")
        return set()
    return {dist_name(e["name"]) for e in entries if isinstance(e, dict) and "name" in e}


def pip_install(ctx: StepContext, requirements: list[str], label: str, index_url: str | None = None) -> None:
    argv = [str(ctx.settings.venv_python), "-m", "pip", "install", *requirements]
    if index_url:
        argv += ["--index-url", index_url]
    ctx.as_service(argv, label, retry=True, timeout=3600)


# ═══════════════════════════════════════════════════════════════════
#  Python runtime
# ═══════════════════════════════════════════════════════════════════


@step("pyenv", "Install pyenv for the service account", "runtime")
def pyenv(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    if s.python_provider != "pyenv":
        result.status = "skipped"
        result.note("Profile uses the system Python")
        return

    if ctx.fs.exists(s.pyenv_root):
        result.note(f"pyenv present in {s.pyenv_root}")
    else:
        ctx.as_service(
            ["bash", "-c", f"curl -fsSL {PYENV_INSTALLER} | bash"],
            "install pyenv", retry=True, timeout=600,
        )
        result.note(f"Installed pyenv in {s.pyenv_root}", changed=True)

    bashrc = s.home / ".bashrc"
    current = ctx.fs.read_text(bashrc) or ""
    if "pyenv init" not in current:
        info = ctx.fs.stat(bashrc)
        mode = info.mode if info is not None else 0o644
        content = current + ("" if not current or current.endswith("\n") else "\n") + PYENV_BASHRC
        ctx.fs.write_file(bashrc, content, s.service_user, mode)
        result.note(f"Added pyenv initialisation to {bashrc}", changed=True)


def _pyenv_cpython(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    env = {"PYENV_ROOT": str(s.pyenv_root)}
    pyenv_bin = str(s.pyenv_root / "bin" / "pyenv")

    if ctx.fs.exists(s.pyenv_root / "versions" / s.python_version / "bin" / "python"):
        result.note(f"CPython {s.python_version} present")
    else:
        logger.info("Building CPython %s with pyenv (this takes a while)", s.python_version)
        ctx.as_service(
            [pyenv_bin, "install", "-s", s.python_version],
            f"pyenv install {s.python_version}", retry=True, timeout=3600, env=env,
        )
        result.note(f"Built CPython {s.python_version}", changed=True)

    current = (ctx.fs.read_text(s.pyenv_root / "version") or "").strip()
    if current != s.python_version:
        ctx.as_service([pyenv_bin, "global", s.python_version], "pyenv global", env=env)
        result.note(f"pyenv global set to {s.python_version}", changed=True)


def _system_cpython(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    minor = s.python_minor
    wanted = [f"python{minor}", f"python{minor}-dev", f"python{minor}-venv",
              f"libpython{minor}-dev", "python3-pip"]

    policy = ctx.probe(["apt-cache", "policy", f"python{minor}"]).output
    if s.python_ppa and ("Candidate:" not in policy or "Candidate: (none)" in policy):
        ctx.execute(
            ["add-apt-repository", "-y", s.python_ppa], f"add {s.python_ppa}",
            retry=True, sudo=True, timeout=300,
        )
        apt_update(ctx)
        result.note(f"Added {s.python_ppa}", changed=True)

    installed = apt_install(ctx, wanted, label=f"python{minor}")
    if installed:
        result.note(f"Installed {', '.join(installed)}", changed=True)
    else:
        result.note(f"python{minor} packages present")


@step("python", "Install the pinned CPython (pyenv or system packages)", "runtime")
def python(ctx: StepContext, result: StepResult) -> None:
    if ctx.settings.python_provider == "pyenv":
        _pyenv_cpython(ctx, result)
    else:
        _system_cpython(ctx, result)


@step("venv", "Create the virtual environment and upgrade pip tooling", "runtime")
def venv(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    if ctx.fs.exists(s.venv_python):
        result.note(f"Virtual environment present at {s.venv_dir}")
        return

    if s.python_provider == "pyenv" and ctx.fs.exists(s.pyenv_root / "versions" / s.python_version):
        interpreter = pyenv_python(ctx)
    elif ctx.fs.exists(system_python(s.python_minor)):
        interpreter = str(system_python(s.python_minor))
    else:
        interpreter = "python3"
        logger.warning("python%s not found, creating the venv with python3", s.python_minor)
        result.note(f"WARNING: using python3 instead of python{s.python_minor}")

    ctx.as_service([interpreter, "-m", "venv", str(s.venv_dir)], "create venv", timeout=600)
    result.note(f"Created virtual environment {s.venv_dir} ({interpreter})", changed=True)

    ctx.as_service(
        [str(s.venv_python), "-m", "pip", "install", "--upgrade", *_PIP_BOOTSTRAP],
        "upgrade pip tooling", retry=True, timeout=900,
    )
    result.note("Upgraded pip, setuptools and wheel")


# ═══════════════════════════════════════════════════════════════════
#  Application
# ═══════════════════════════════════════════════════════════════════


@step("freqtrade", "Install Freqtrade into the venv and create user_data", "application")
def freqtrade(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    if ctx.fs.exists(s.freqtrade_bin):
        result.note(f"Freqtrade present in {s.venv_dir}")
    else:
        logger.info("Installing %s (this takes a while)", s.framework_spec)
        pip_install(ctx, [s.framework_spec], f"pip install {s.framework_spec}")
        result.note(f"Installed {s.framework_spec}", changed=True)

    if not ctx.fs.exists(s.user_data_dir / "backtest_results"):
        ctx.as_service(
            [str(s.freqtrade_bin), "create-userdir", "--userdir", str(s.user_data_dir)],
            "freqtrade create-userdir", cwd=str(s.app_dir),
        )
        result.note(f"Created user data directory {s.user_data_dir}", changed=True)


@step("pip-groups", "Install the profile's extra pip package groups", "application")
def pip_groups(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    if not s.pip_groups:
        result.status = "skipped"
        result.note("No pip groups in profile")
        return
    if ctx.dry_run and not ctx.fs.exists(s.venv_python):
        result.note("Virtual environment not created yet; pip groups not inspected")
        return

    have = installed_distributions(ctx)
    for name in s.pip_groups:
        group = ctx.catalog.pip_groups.get(name)
        if group is None:
            raise ProvisionError(f"Unknown pip group '{name}'")

        missing = [r for r in group.packages if dist_name(r) not in have]
        if not missing:
            result.note(f"{name}: all {len(group.packages)} package(s) present")
            continue

        try:
            pip_install(ctx, missing, f"pip install {name}", index_url=group.index_url)
        except ProvisionError as e:
            if not group.optional:
                raise
            logger.warning("Optional pip group '%s' failed: %s", name, e)
            result.note(f"WARNING: optional group {name} not installed")
            continue
        have.update(dist_name(r) for r in missing)
        result.note(f"{name}: installed {', '.join(missing)}", changed=True)
