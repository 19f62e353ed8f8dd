"""
System configuration steps: keyboard layout, apt update/upgrade,
package groups (with their services), Docker Engine and final cleanup.

Every apt call that touches the network goes through the retry layer.
Package installs pass only the packages ``dpkg-query`` does not report
as installed, so a second run issues no install command at all.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import step
from ftsetup.core.errors import ProvisionError
from ftsetup.core.models.action import Command
from ftsetup.core.models.step import StepResult
from ftsetup.core.services.artifacts import TemplateContext, render_template
from ftsetup.core.services.preflight import read_os_release

logger = logging.getLogger(__name__)

KEYBOARD_FILE = Path("/etc/default/keyboard")
DOCKER_KEYRING = Path("/etc/apt/keyrings/docker.gpg")
DOCKER_SOURCES = Path("/etc/apt/sources.list.d/docker.list")
DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_REPO_URL = "https://download.docker.com/linux/ubuntu"

# Distribution packages that conflict with docker-ce.
DOCKER_CONFLICTS = ("docker.io", "docker-doc", "docker-compose", "podman-docker", "containerd", "runc")

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


# ═══════════════════════════════════════════════════════════════════
#  apt helpers
# ═══════════════════════════════════════════════════════════════════


def installed_packages(ctx: StepContext, packages: list[str] | tuple[str, ...]) -> set[str]:
    """The subset of ``packages`` dpkg reports as installed."""
    if not packages:
        return set()
    receipt = ctx.probe(["dpkg-query", "-W", "-f=${Package} ${Status}\\n", *packages])
    # dpkg-query exits 1 when any name is unknown but still lists the rest.
    installed = set()
    for line in receipt.output.splitlines():
        name, _, status = line.partition(" ")
        if status.strip() == "install ok installed":
            installed.add(name.split(":")[0])
    return installed


def apt_update(ctx: StepContext) -> None:
    ctx.execute(["apt-get", "update"], "apt-get update", retry=True, sudo=True, timeout=600)


def apt_install(ctx: StepContext, packages: list[str], label: str = "") -> list[str]:
    """Install the packages of ``packages`` that are missing.

    Returns:
        The packages that were (or, under dry-run, would be) installed.
    """
    have = installed_packages(ctx, packages)
    missing = [p for p in dict.fromkeys(packages) if p not in have]
    if not missing:
        return []
    logger.info("Installing %d package(s)%s: %s", len(missing),
                f" for {label}" if label else "", " ".join(missing))
    ctx.execute(
        ["apt-get", "install", "-y", *missing],
        f"apt-get install {label or ' '.join(missing)}",
        retry=True, sudo=True, env=_APT_ENV, timeout=3600,
    )
    return missing


def ensure_service(ctx: StepContext, service: str, result: StepResult) -> None:
    """Enable and start a systemd service when it is not already."""
    if ctx.probe(["systemctl", "is-enabled", service]).output.strip() != "enabled":
        ctx.execute(["systemctl", "enable", service], f"enable {service}", sudo=True)
        result.note(f"Enabled {service}", changed=True)
    if ctx.probe(["systemctl", "is-active", service]).output.strip() != "active":
        ctx.execute(["systemctl", "start", service], f"start {service}", sudo=True)
        result.note(f"Started {service}", changed=True)


def _simulated(ctx: StepContext, argv: list[str], prefix: str) -> list[str]:
    """Lines of an ``apt-get -s`` simulation that start with ``prefix``."""
    receipt = ctx.probe(argv, env=_APT_ENV)
    return [line for line in receipt.output.splitlines() if line.startswith(prefix)]


# ═══════════════════════════════════════════════════════════════════
#  Keyboard
# ═══════════════════════════════════════════════════════════════════


@step("keyboard", "Set the console and X11 keyboard layout", "system")
def keyboard(ctx: StepContext, result: StepResult) -> None:
    layout = ctx.settings.keyboard_layout
    if not layout:
        result.status = "skipped"
        result.note("No keyboard layout configured")
        return

    wanted = f'XKBLAYOUT="{layout}"'
    current = ctx.fs.read_text(KEYBOARD_FILE) or ""
    file_changed = wanted not in current
    if file_changed:
        content = render_template("system/keyboard.tmpl", TemplateContext.from_settings(ctx.settings))
        ctx.fs.write_file(KEYBOARD_FILE, content, ctx.settings.system_owner, 0o644)
        result.note(f"Wrote {KEYBOARD_FILE} ({layout})", changed=True)

    status = ctx.probe(["localectl", "status"]).output
    if f"VC Keymap: {layout}" not in status:
        ctx.execute(["localectl", "set-keymap", layout], "localectl set-keymap", sudo=True)
        result.note(f"Console keymap set to {layout}", changed=True)
    if "X11 Layout" not in status:
        ctx.execute(["localectl", "set-x11-keymap", layout], "localectl set-x11-keymap", sudo=True)
        result.note(f"X11 layout set to {layout}", changed=True)

    if file_changed:
        receipt = ctx.runner.run(Command(argv=["setupcon", "-k", "--force"], sudo=True))
        if receipt.failed:
            logger.warning("setupcon failed, the layout applies after a reboot: %s", receipt.error)
            result.note("WARNING: setupcon failed; layout applies after reboot")


# ═══════════════════════════════════════════════════════════════════
#  Packages
# ═══════════════════════════════════════════════════════════════════


@step("system-update", "apt-get update and upgrade", "system")
def system_update(ctx: StepContext, result: StepResult) -> None:
    apt_update(ctx)
    result.note("Package lists refreshed")

    pending = _simulated(ctx, ["apt-get", "-s", "upgrade"], "Inst ")
    if not pending:
        result.note("System up to date")
        return

    ctx.execute(
        ["apt-get", "upgrade", "-y"], "apt-get upgrade",
        retry=True, sudo=True, env=_APT_ENV, timeout=3600,
    )
    result.note(f"Upgraded {len(pending)} package(s)", changed=True)


@step("packages", "Install the profile's apt package groups", "system")
def packages(ctx: StepContext, result: StepResult) -> None:
    groups = ctx.settings.apt_groups
    if not groups:
        result.status = "skipped"
        result.note("No apt groups in profile")
        return

    for name in groups:
        group = ctx.catalog.apt_groups.get(name)
        if group is None:
            raise ProvisionError(f"Unknown apt group '{name}'")
        installed = apt_install(ctx, list(group.packages), label=name)
        if installed:
            result.note(f"{name}: installed {', '.join(installed)}", changed=True)
        else:
            result.note(f"{name}: all {len(group.packages)} package(s) present")
        for service in group.services:
            ensure_service(ctx, service, result)


# ═══════════════════════════════════════════════════════════════════
#  Docker
# ═══════════════════════════════════════════════════════════════════


def _docker_repository(ctx: StepContext, result: StepResult) -> None:
    if not ctx.fs.exists(DOCKER_KEYRING):
        ctx.execute(
            ["install", "-d", "-m", "0755", str(DOCKER_KEYRING.parent)],
            "create apt keyring directory", sudo=True,
        )
        ctx.execute(
            ["bash", "-c", f"curl -fsSL {DOCKER_GPG_URL} | gpg --dearmor --yes -o {DOCKER_KEYRING}"],
            "download Docker GPG key", retry=True, sudo=True, timeout=120,
        )
        ctx.execute(["chmod", "644", str(DOCKER_KEYRING)], "chmod docker.gpg", sudo=True)
        result.note("Installed Docker apt key", changed=True)

    if ctx.fs.exists(DOCKER_SOURCES):
        return
    arch = ctx.probe(["dpkg", "--print-architecture"]).output.strip() or "amd64"
    codename = read_codename()
    line = f"deb [arch={arch} signed-by={DOCKER_KEYRING}] {DOCKER_REPO_URL} {codename} stable\n"
    ctx.fs.write_file(DOCKER_SOURCES, line, ctx.settings.system_owner, 0o644)
    result.note(f"Added Docker apt repository ({codename})", changed=True)
    apt_update(ctx)


def read_codename() -> str:
    release = read_os_release()
    return release.get("VERSION_CODENAME") or release.get("UBUNTU_CODENAME") or "noble"


@step("docker", "Install Docker Engine from download.docker.com", "system")
def docker(ctx: StepContext, result: StepResult) -> None:
    group = ctx.catalog.apt_groups.get("docker")
    if group is None:
        raise ProvisionError("Package catalog has no 'docker' group")

    if installed_packages(ctx, list(group.packages)) != set(group.packages):
        conflicts = sorted(installed_packages(ctx, DOCKER_CONFLICTS))
        if conflicts:
            ctx.execute(
                ["apt-get", "remove", "-y", *conflicts], "remove conflicting packages",
                sudo=True, env=_APT_ENV,
            )
            result.note(f"Removed {', '.join(conflicts)}", changed=True)

    _docker_repository(ctx, result)

    installed = apt_install(ctx, list(group.packages), label="docker")
    if installed:
        result.note(f"Installed {', '.join(installed)}", changed=True)

    members = _group_members(ctx, "docker")
    for user in dict.fromkeys([ctx.settings.invoking_user, ctx.settings.service_user]):
        if user in members:
            continue
        ctx.execute(["usermod", "-aG", "docker", user], f"add {user} to docker", sudo=True)
        result.note(f"Added {user} to the docker group", changed=True)

    for service in group.services:
        ensure_service(ctx, service, result)


def _group_members(ctx: StepContext, group: str) -> set[str]:
    receipt = ctx.probe(["getent", "group", group])
    if not receipt.ok:
        return set()
    fields = receipt.output.strip().split(":")
    return {m for m in fields[3].split(",") if m} if len(fields) > 3 else set()


# ═══════════════════════════════════════════════════════════════════
#  Cleanup
# ═══════════════════════════════════════════════════════════════════


@step("cleanup", "apt autoremove/autoclean, journal and pip cache", "system")
def cleanup(ctx: StepContext, result: StepResult) -> None:
    removable = _simulated(ctx, ["apt-get", "-s", "autoremove"], "Remv ")
    if removable:
        ctx.execute(["apt-get", "autoremove", "-y"], "apt-get autoremove", sudo=True, env=_APT_ENV)
        result.note(f"Removed {len(removable)} unused package(s)", changed=True)

    for argv, label in (
        (["apt-get", "autoclean"], "apt-get autoclean"),
        (["journalctl", "--vacuum-time=7d"], "journal vacuum"),
    ):
        receipt = ctx.runner.run(Command(argv=argv, label=label, sudo=True))
        if receipt.failed:
            result.note(f"WARNING: {label} failed: {receipt.error}")

    if ctx.fs.exists(ctx.settings.venv_python):
        receipt = ctx.runner.run(Command(
            argv=[str(ctx.settings.venv_python), "-m", "pip", "cache", "purge"],
            label="pip cache purge", as_user=ctx.settings.service_user,
        ))
        if receipt.failed:
            result.note(f"pip cache purge skipped: {receipt.error}")
